"""HTTP client layer for Hitcastor Snapshotter.

Async clients for the external HTTP collaborators:
- Spotify Charts: raw daily CSV
- IPFS: add-and-pin of the normalized artifact
- Slack webhook: fetch-exhaustion alerts
"""

from snapshotter.clients.base import APIProviderError, BaseAsyncClient
from snapshotter.clients.charts import ChartSourceClient, build_chart_url
from snapshotter.clients.ipfs import IPFSClient
from snapshotter.clients.alerts import SlackNotifier

__all__ = [
    "BaseAsyncClient",
    "APIProviderError",
    "ChartSourceClient",
    "build_chart_url",
    "IPFSClient",
    "SlackNotifier",
]
