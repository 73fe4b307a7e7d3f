"""Spotify Charts CSV client.

The chart URL comes from a template with ``${REGION}`` and, where the source
supports historical lookups, ``${DATE}`` placeholders.

Usage:
    async with ChartSourceClient(url_template=settings.spotify_charts_url_template) as client:
        raw = await client.get_csv("2024-01-15", "global")
"""

from snapshotter.clients.base import APIProviderError, BaseAsyncClient


def build_chart_url(template: str, date_utc: str, region: str) -> str:
    """Substitute region and date into the chart URL template."""
    return template.replace("${REGION}", region).replace("${DATE}", date_utc)


class ChartSourceClient(BaseAsyncClient):
    """Async client for the chart CSV source.

    Args:
        url_template: Chart URL template
        timeout: Request timeout in seconds (default: 30)
    """

    def __init__(self, url_template: str, timeout: float = 30.0, **kwargs) -> None:
        super().__init__(
            headers={"Accept": "text/csv,*/*"},
            timeout=timeout,
            **kwargs,
        )
        self.url_template = url_template

    def chart_url(self, date_utc: str, region: str) -> str:
        return build_chart_url(self.url_template, date_utc, region)

    async def get_csv(self, date_utc: str, region: str) -> bytes:
        """Download the raw chart CSV bytes, untouched.

        Raises:
            APIProviderError: On transport failure, non-2xx status, or an
                empty/whitespace-only body
        """
        response = await self.get(self.chart_url(date_utc, region))
        body = response.content
        if not body.strip():
            raise APIProviderError(
                "Empty CSV response",
                status_code=response.status_code,
            )
        return body
