import logging
from typing import Any

import httpx

from token_refresh.client.interceptor import AuthInterceptor
from token_refresh.client.refresh import RefreshCoordinator, RefreshEndpoint
from token_refresh.client.settings import ClientSettings
from token_refresh.client.storage import CredentialStore
from token_refresh.client.transport import HttpxTransport
from token_refresh.shared._httpx_utils import HttpClientFactory, create_http_client
from token_refresh.shared.request import RequestDescriptor, join_url

logger = logging.getLogger(__name__)


class TokenRefreshClient:
    """
    HTTP client for APIs guarded by short-lived bearer tokens.

    Behaves like issuing the requests directly, except that an expired access
    token is refreshed transparently: concurrent requests that hit the expiry
    share a single refresh call and are replayed once it succeeds.

    Successful responses (status < 400) are returned. Anything else raises
    RequestFailedError, or RefreshFailedError when the token could not be
    refreshed; in that case the stored tokens have already been cleared.
    """

    def __init__(
        self,
        settings: ClientSettings,
        storage: CredentialStore,
        http_client: httpx.AsyncClient | None = None,
        httpx_client_factory: HttpClientFactory = create_http_client,
    ):
        self.settings = settings
        self.storage = storage

        self._owns_http_client = http_client is None
        self.http_client = http_client or httpx_client_factory(timeout=httpx.Timeout(settings.request_timeout))

        self.transport = HttpxTransport(self.http_client)
        self.coordinator = RefreshCoordinator(
            storage,
            self.transport,
            RefreshEndpoint.from_base_url(self.transport, self.base_url, settings.refresh_path),
            refresh_timeout=settings.refresh_timeout,
        )
        self.interceptor = AuthInterceptor(
            self.transport,
            storage,
            self.coordinator,
            auth_failure_status=settings.auth_failure_status,
        )

    @property
    def base_url(self) -> str:
        return str(self.settings.base_url)

    async def __aenter__(self) -> "TokenRefreshClient":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self.http_client.aclose()

    async def request(
        self,
        method: str,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        params: dict[str, Any] | None = None,
        json: Any = None,
        content: bytes | None = None,
    ) -> httpx.Response:
        """Send a request. Relative URLs are resolved against the configured base URL."""
        descriptor = RequestDescriptor(
            method,
            join_url(self.base_url, url),
            headers=headers or {},
            params=params,
            content=content,
            json=json,
        )
        return await self.interceptor.send(descriptor)

    async def get(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("POST", url, **kwargs)

    async def put(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("PUT", url, **kwargs)

    async def patch(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("PATCH", url, **kwargs)

    async def delete(self, url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("DELETE", url, **kwargs)
