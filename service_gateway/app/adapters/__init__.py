"""
Adapters package for the Gateway Service.

Contains HTTP client wrappers for the upstream property-management API.
These adapters encapsulate:

- Base URLs and request shapes
- Header forwarding rules
- Error handling that maps to shared errors

Keep adapters thin and side-effect free outside of explicit calls.
"""

from .property_api_client import PropertyApiClient

__all__ = [
    "PropertyApiClient",
]
