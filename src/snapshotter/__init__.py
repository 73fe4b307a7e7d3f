"""Hitcastor Snapshotter — daily tamper-evident chart snapshots.

Fetches the daily Spotify Top-100 per region, normalizes it into a canonical
schema, stores raw and normalized artifacts as hashed evidence, optionally pins
to IPFS, and records one authoritative ledger row per (date, region).
"""

__version__ = "1.0.0"
