"""IPFS HTTP API client (add-and-pin).

Talks to a Kubo-compatible ``/api/v0/add`` endpoint, including hosted pinning
gateways that accept a bearer token.

API Documentation: https://docs.ipfs.tech/reference/kubo/rpc/#api-v0-add

Usage:
    async with IPFSClient(endpoint="https://ipfs.example.com", token="...") as client:
        cid = await client.add(b'{"hello": "world"}', filename="t.json")
"""

from snapshotter.clients.base import APIProviderError, BaseAsyncClient


class IPFSClient(BaseAsyncClient):
    """Async client for the IPFS add/pin API.

    Args:
        endpoint: IPFS HTTP API base URL
        token: Bearer token for the pinning service
        timeout: Request timeout in seconds (default: 60)
    """

    def __init__(self, endpoint: str, token: str, timeout: float = 60.0, **kwargs) -> None:
        super().__init__(
            base_url=endpoint,
            headers={"Authorization": f"Bearer {token}"},
            timeout=timeout,
            **kwargs,
        )

    async def add(self, content: bytes, filename: str = "t.json", pin: bool = True) -> str:
        """Add content and pin it.

        Returns:
            The content identifier (CID) string

        Raises:
            APIProviderError: On HTTP failure or a response without a CID
        """
        response = await self.post(
            "/api/v0/add",
            params={"pin": "true" if pin else "false", "cid-version": "1"},
            files={"file": (filename, content, "application/json")},
        )
        try:
            payload = response.json()
        except ValueError as e:
            raise APIProviderError(
                f"Invalid JSON response: {e}",
                status_code=response.status_code,
                response_body=response.text[:500],
            ) from e

        cid = payload.get("Hash") or payload.get("cid") or ""
        if not cid:
            raise APIProviderError(
                "IPFS add response did not include a CID",
                status_code=response.status_code,
                response_body=response.text[:500],
            )
        return cid
