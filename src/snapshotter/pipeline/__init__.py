"""Snapshot pipeline — Charts → Normalize → Store → Anchor → Ledger.

The pipeline turns one (date, region) job into one committed snapshot:
1. Fetch the raw chart CSV (bounded retry)
2. Normalize to the canonical Top-100 schema and hash both artifacts
3. Store raw + normalized artifacts idempotently
4. Pin the normalized artifact to IPFS (best effort)
5. Upsert the ledger row

Components:
- SnapshotPipeline: Main coordinator
- ChartFetcher: Charts → raw bytes
- Normalizer: raw bytes → NormalizedArtifact
- AnchorService: NormalizedArtifact → CID
"""

from snapshotter.pipeline.anchor import AnchorService
from snapshotter.pipeline.fetcher import ChartFetcher
from snapshotter.pipeline.normalizer import Normalizer
from snapshotter.pipeline.orchestrator import PipelineResult, PipelineState, SnapshotPipeline

__all__ = [
    "AnchorService",
    "ChartFetcher",
    "Normalizer",
    "PipelineResult",
    "PipelineState",
    "SnapshotPipeline",
]
