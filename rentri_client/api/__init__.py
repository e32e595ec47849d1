"""API routers for the RENTRI client."""

from rentri_client.api import rentri

__all__ = [
    "rentri",
]
