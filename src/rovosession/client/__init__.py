"""HTTP client for the RovoDev serve process."""

from rovosession.client.api import RovoDevApiClient, RovoDevApiError

__all__ = ["RovoDevApiClient", "RovoDevApiError"]
