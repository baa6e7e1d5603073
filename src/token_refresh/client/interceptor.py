import logging

import httpx

from token_refresh.client.errors import RequestFailedError
from token_refresh.client.refresh import RefreshCoordinator
from token_refresh.client.storage import CredentialStore
from token_refresh.client.transport import Transport
from token_refresh.shared.request import RequestAttempt, RequestDescriptor

logger = logging.getLogger(__name__)


class AuthInterceptor:
    """
    Attaches the current access token to outgoing requests and hands
    authentication failures to the refresh coordinator.
    """

    def __init__(
        self,
        transport: Transport,
        storage: CredentialStore,
        coordinator: RefreshCoordinator,
        auth_failure_status: int = 401,
    ):
        self.transport = transport
        self.storage = storage
        self.coordinator = coordinator
        self.auth_failure_status = auth_failure_status

    def authorize(self, descriptor: RequestDescriptor) -> RequestDescriptor:
        """Add the stored access token unless the request already carries credentials."""
        if descriptor.authorization is not None:
            return descriptor

        # Read at send time so requests pick up tokens stored by a refresh
        access_token = self.storage.get_access_token()
        if not access_token:
            return descriptor

        return descriptor.with_bearer(access_token)

    async def send(self, descriptor: RequestDescriptor) -> httpx.Response:
        """
        Send a request, recovering from one authentication failure.

        Raises:
            RequestFailedError: for any terminal HTTP failure.
            RefreshFailedError: if the request needed a refresh and it failed.
            httpx.HTTPError: transport errors are not intercepted.
        """
        attempt = RequestAttempt(self.authorize(descriptor))
        response = await self.transport.execute(attempt.descriptor)

        while response.is_error:
            if not self._can_recover(attempt, response):
                raise RequestFailedError(attempt.descriptor, response)

            attempt.mark_retried()
            response = await self.coordinator.handle_auth_failure(attempt, response)

        return response

    def _can_recover(self, attempt: RequestAttempt, response: httpx.Response) -> bool:
        if response.status_code != self.auth_failure_status:
            return False

        if attempt.retried:
            logger.debug(f"{attempt.descriptor.method} {attempt.descriptor.url} still unauthorized after refresh")
            return False

        if not self.storage.get_refresh_token():
            logger.debug("Authentication failed and no refresh token is available")
            return False

        return True
