"""Slack-compatible webhook notification sink.

Fire-and-forget: send failures are logged and returned as a failed
BestEffortResult, never raised.
"""

import logging

from snapshotter.clients.base import BaseAsyncClient
from snapshotter.models import BestEffortResult

logger = logging.getLogger(__name__)


class SlackNotifier(BaseAsyncClient):
    """Posts alert messages to an incoming webhook.

    Args:
        webhook_url: Incoming webhook URL (None disables alerts)
        timeout: Request timeout in seconds (default: 10)
    """

    def __init__(self, webhook_url: str | None, timeout: float = 10.0, **kwargs) -> None:
        super().__init__(timeout=timeout, **kwargs)
        self.webhook_url = webhook_url

    @staticmethod
    def fetch_failure_payload(date_utc: str, region: str, error: Exception | None) -> dict:
        message = str(error) if error else "unknown error"
        return {
            "text": "Hitcastor Snapshotter Alert",
            "blocks": [
                {
                    "type": "section",
                    "text": {
                        "type": "mrkdwn",
                        "text": (
                            "*Failed to fetch Spotify chart data*\n\n"
                            f"*Date:* {date_utc}\n*Region:* {region}\n*Error:* {message}"
                        ),
                    },
                }
            ],
        }

    async def send_fetch_alert(
        self,
        date_utc: str,
        region: str,
        error: Exception | None,
    ) -> BestEffortResult[None]:
        """Send a fetch-exhaustion alert. Never raises."""
        if not self.webhook_url:
            return BestEffortResult.disabled()

        payload = self.fetch_failure_payload(date_utc, region, error)
        try:
            async with self:
                await self.post(self.webhook_url, json=payload)
        except Exception as e:
            logger.error("Failed to send Slack alert: %s", e)
            return BestEffortResult.failure(e)

        logger.info("Fetch failure alert sent for %s/%s", date_utc, region)
        return BestEffortResult.success(None)
