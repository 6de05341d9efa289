"""client/ -- Async HTTP client for the Minimarket auth API.

Layer rule: client/ talks to the server only over HTTP. It does NOT import
from api/ or auth/.
"""

from client.api_client import ApiClient, ApiError, RefreshCoordinator

__all__ = ["ApiClient", "ApiError", "RefreshCoordinator"]
