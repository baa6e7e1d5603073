from token_refresh.client.auth import BearerRefreshAuth
from token_refresh.client.errors import (
    RefreshFailedError,
    RequestFailedError,
    TokenRefreshClientError,
    TokenRefreshError,
)
from token_refresh.client.refresh import (
    CoordinatorState,
    RefreshCoordinator,
    RefreshEndpoint,
    RefreshOutcome,
)
from token_refresh.client.session import TokenRefreshClient
from token_refresh.client.settings import ClientSettings
from token_refresh.client.storage import (
    CredentialStore,
    FileCredentialStore,
    InMemoryCredentialStore,
)
from token_refresh.client.transport import HttpxTransport, Transport
from token_refresh.shared.request import RequestAttempt, RequestDescriptor

__all__ = [
    "BearerRefreshAuth",
    "ClientSettings",
    "CoordinatorState",
    "CredentialStore",
    "FileCredentialStore",
    "HttpxTransport",
    "InMemoryCredentialStore",
    "RefreshCoordinator",
    "RefreshEndpoint",
    "RefreshFailedError",
    "RefreshOutcome",
    "RequestAttempt",
    "RequestDescriptor",
    "RequestFailedError",
    "TokenRefreshClient",
    "TokenRefreshClientError",
    "TokenRefreshError",
    "Transport",
]
