"""
Property API client for Gateway.
"""

from typing import Dict, Optional
import httpx

from shared.logging import get_logger
from shared.errors import ExternalServiceError


# Request headers the upstream API needs to authorize and parse a call
FORWARDED_REQUEST_HEADERS = ("authorization", "content-type", "accept", "x-api-key", "x-request-id")
# Hop-by-hop and framing headers recomputed on the way back
DROPPED_RESPONSE_HEADERS = {"content-length", "content-encoding", "transfer-encoding", "connection"}


class PropertyApiClient:
    """Forwards `/api/...` calls to the property-management backend."""

    def __init__(
        self,
        property_api_url: str,
        *,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = property_api_url.rstrip('/')
        self.logger = get_logger("gateway.property_api_client")
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            transport=transport,
        )

    async def forward(
        self,
        method: str,
        path: str,
        *,
        query: str = "",
        headers: Optional[Dict[str, str]] = None,
        body: Optional[bytes] = None,
    ) -> httpx.Response:
        """Send a request upstream and return the raw response."""
        forwarded = {
            name: value
            for name, value in (headers or {}).items()
            if name.lower() in FORWARDED_REQUEST_HEADERS
        }
        url = f"{path}?{query}" if query else path

        try:
            response = await self._client.request(method, url, headers=forwarded, content=body or None)
        except httpx.HTTPError as exc:
            self.logger.error("Property API request failed", method=method, path=path, error=str(exc))
            raise ExternalServiceError(
                service="property_api",
                message=str(exc) or exc.__class__.__name__,
                details={"method": method, "path": path}
            )

        if response.status_code >= 500:
            self.logger.warning(
                "Property API returned server error",
                method=method,
                path=path,
                status_code=response.status_code
            )
        else:
            self.logger.debug("Property API response", method=method, path=path, status_code=response.status_code)

        return response

    @staticmethod
    def response_headers(response: httpx.Response) -> Dict[str, str]:
        """Headers safe to relay to the gateway caller."""
        return {
            name: value
            for name, value in response.headers.items()
            if name.lower() not in DROPPED_RESPONSE_HEADERS
        }

    async def health(self) -> str:
        """Probe the upstream API."""
        try:
            response = await self._client.get("/health")
        except httpx.HTTPError:
            return "unreachable"
        return "ok" if response.status_code < 500 else "error"

    async def close(self):
        await self._client.aclose()
