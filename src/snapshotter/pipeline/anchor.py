"""Anchor — best-effort IPFS pinning of the normalized artifact."""

import logging

import httpx

from snapshotter.clients import IPFSClient
from snapshotter.config import Settings
from snapshotter.errors import AnchorFailure
from snapshotter.models import BestEffortResult, NormalizedArtifact

logger = logging.getLogger(__name__)


class AnchorService:
    """Pins artifacts to IPFS. Never raises.

    Disabled (returns an empty CID) when endpoint or token is missing.

    Args:
        endpoint: IPFS HTTP API base URL
        token: Bearer token
        transport: Optional httpx transport (tests)
    """

    def __init__(
        self,
        endpoint: str | None = None,
        token: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.endpoint = endpoint
        self.token = token
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Settings) -> "AnchorService":
        return cls(endpoint=settings.ipfs_endpoint, token=settings.ipfs_token)

    @property
    def enabled(self) -> bool:
        return bool(self.endpoint and self.token)

    async def anchor(self, artifact: NormalizedArtifact) -> BestEffortResult[str]:
        """Pin the artifact's canonical JSON bytes.

        Returns:
            Result whose value is the CID, or "" when disabled or failed
        """
        if not self.enabled:
            logger.debug("IPFS not configured, skipping pin operation")
            return BestEffortResult.disabled("")

        try:
            async with IPFSClient(
                endpoint=self.endpoint, token=self.token, transport=self._transport,
            ) as client:
                cid = await client.add(artifact.to_json_bytes(), filename="t.json")
        except Exception as e:
            failure = AnchorFailure(f"IPFS pinning failed: {e}")
            logger.warning("IPFS pinning failed, continuing without CID: %s", e)
            return BestEffortResult(ok=False, value="", error=failure)

        logger.info("Pinned %s/%s to IPFS: %s", artifact.date_utc, artifact.region, cid)
        return BestEffortResult.success(cid)
