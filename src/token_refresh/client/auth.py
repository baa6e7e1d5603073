"""
Bearer token authentication for HTTPX with single-flight refresh.

Lets code that talks to an httpx.AsyncClient directly share the same refresh
coordinator as TokenRefreshClient.
"""

import logging
from collections.abc import AsyncGenerator, Generator

import httpx

from token_refresh.client.refresh import RefreshCoordinator
from token_refresh.client.storage import CredentialStore
from token_refresh.shared.request import RequestDescriptor

logger = logging.getLogger(__name__)


class BearerRefreshAuth(httpx.Auth):
    """
    Authentication for httpx that refreshes expired access tokens.

    An authentication failure triggers (or joins) a refresh on the coordinator
    and the request is replayed once with the new token. When no refresh is
    possible the failing response is returned to the caller as-is.

    The coordinator must reach the refresh endpoint through a client that does
    not itself use this auth, otherwise a rejected refresh call would queue
    behind its own refresh.
    """

    def __init__(self, storage: CredentialStore, coordinator: RefreshCoordinator, auth_failure_status: int = 401):
        self.storage = storage
        self.coordinator = coordinator
        self.auth_failure_status = auth_failure_status

    def sync_auth_flow(self, request: httpx.Request) -> Generator[httpx.Request, httpx.Response, None]:
        raise RuntimeError("BearerRefreshAuth only supports httpx.AsyncClient")
        yield request

    async def async_auth_flow(self, request: httpx.Request) -> AsyncGenerator[httpx.Request, httpx.Response]:
        """HTTPX auth flow integration."""
        # A replay needs the body again, so buffer it up front
        await request.aread()

        if "Authorization" not in request.headers:
            access_token = self.storage.get_access_token()
            if access_token:
                request.headers["Authorization"] = f"Bearer {access_token}"

        response = yield request

        if response.status_code != self.auth_failure_status or not self.storage.get_refresh_token():
            return

        outcome = await self.coordinator.await_token(RequestDescriptor.from_httpx(request))
        if not outcome.succeeded:
            logger.debug(f"Returning {response.status_code} for {request.method} {request.url}: {outcome.error}")
            return

        request.headers["Authorization"] = f"Bearer {outcome.token}"
        yield request
