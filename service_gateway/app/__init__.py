"""
API Gateway Service package for the property-management access layer.

The gateway fronts the property-management API, providing:
- Forwarding of `/api/...` calls to the upstream backend
- Response caching of JSON reads keyed by caller and exact URL
- Invalidation of cached reads after successful writes

Structure:
- app.main: FastAPI app, routes, and middleware wiring.
- app.adapters: HTTP client for the upstream property API.
- app.caching: Response cache stores and middleware.
"""
