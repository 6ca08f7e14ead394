"""
API Gateway service for the property-management access layer.

Forwards `/api/...` calls to the property-management backend and serves
repeated reads from the response cache.
"""

from typing import Dict, Optional

from fastapi import Request, Response

from shared.base_service import BaseService
from shared.config import ServiceConfig, get_config
from service_gateway.app.adapters.property_api_client import PropertyApiClient
from service_gateway.app.caching.middleware import ResponseCacheMiddleware
from service_gateway.app.caching.response_cache import ResponseCacheStore, create_response_store


PROXIED_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE"]


class GatewayService(BaseService):
    """API Gateway service implementation."""

    def __init__(
        self,
        config: Optional[ServiceConfig] = None,
        *,
        property_client: Optional[PropertyApiClient] = None,
        response_store: Optional[ResponseCacheStore] = None,
    ):
        config = config or get_config("gateway", 8000)
        self.response_store = response_store if response_store is not None else create_response_store(config)
        self.property_client = property_client or PropertyApiClient(
            config.property_api_url,
            timeout=config.upstream_timeout_seconds,
        )
        super().__init__("gateway", config.port, config=config)

        @self.app.on_event("shutdown")
        async def _shutdown():
            await self.property_client.close()
            if self.response_store is not None:
                await self.response_store.close()

        self._setup_gateway_routes()

        # Expose service instance via app state for introspection/testing
        self.app.state.gateway_service = self

    def _setup_middleware(self):
        """Install the response cache inside the request timing middleware."""
        if self.response_store is not None:
            self.response_cache_middleware = ResponseCacheMiddleware(
                self.response_store,
                path_prefixes=self.config.response_cache_prefixes,
                public_paths=self.config.response_cache_public_paths,
                metrics=self.metrics,
            )
            self.app.middleware("http")(self.response_cache_middleware)
        else:
            self.response_cache_middleware = None
            self.logger.info("Response cache disabled")

        super()._setup_middleware()

    async def _check_dependencies(self) -> Dict[str, str]:
        dependencies = {"property_api": await self.property_client.health()}
        dependencies["response_cache"] = self.response_store.backend if self.response_store else "disabled"
        return dependencies

    def _setup_gateway_routes(self):
        """Set up gateway routes."""

        @self.app.get("/")
        async def root():
            return {
                "service": "gateway",
                "message": "Property Management Access Layer - API Gateway",
                "version": "1.0.0",
            }

        @self.app.get("/cache/stats")
        async def cache_stats():
            """Response cache statistics."""
            if self.response_store is None:
                return {"backend": "disabled"}
            return await self.response_store.stats()

        @self.app.api_route("/api/{path:path}", methods=PROXIED_METHODS)
        async def proxy_api(path: str, request: Request):
            """Forward a property API call upstream."""
            body = await request.body()
            try:
                upstream = await self.property_client.forward(
                    request.method,
                    f"/api/{path}",
                    query=request.url.query,
                    headers=dict(request.headers),
                    body=body,
                )
            except Exception:
                self.metrics.increment_counter("upstream_requests_total", method=request.method, result="error")
                raise

            result = "ok" if upstream.status_code < 500 else "server_error"
            self.metrics.increment_counter("upstream_requests_total", method=request.method, result=result)

            return Response(
                content=upstream.content,
                status_code=upstream.status_code,
                headers=PropertyApiClient.response_headers(upstream),
            )


def create_app(**kwargs):
    """Create FastAPI application."""
    service = GatewayService(**kwargs)
    return service.app


if __name__ == "__main__":
    service = GatewayService()
    service.run()
