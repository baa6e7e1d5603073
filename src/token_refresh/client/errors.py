import httpx

from token_refresh.shared.request import RequestDescriptor


class TokenRefreshClientError(Exception):
    """Base exception for token refresh client errors."""

    pass


class RequestFailedError(TokenRefreshClientError):
    """
    Terminal HTTP failure returned to the caller.

    Carries the descriptor that was sent and the response that was received so
    applications can decide what to do next (for example, send the user back to
    a login flow).
    """

    def __init__(self, descriptor: RequestDescriptor, response: httpx.Response, message: str | None = None):
        self.descriptor = descriptor
        self.response = response
        super().__init__(message or f"{descriptor.method} {descriptor.url} failed with HTTP {response.status_code}")

    @property
    def status_code(self) -> int:
        return self.response.status_code


class RefreshFailedError(RequestFailedError):
    """Raised to every request that was waiting on a refresh that failed."""

    def __init__(
        self,
        descriptor: RequestDescriptor,
        response: httpx.Response,
        cause: BaseException | None = None,
    ):
        self.cause = cause
        reason = f": {cause}" if cause is not None else ""
        super().__init__(
            descriptor,
            response,
            f"{descriptor.method} {descriptor.url} failed with HTTP {response.status_code} "
            f"and the access token could not be refreshed{reason}",
        )


class TokenRefreshError(TokenRefreshClientError):
    """Raised by the refresh endpoint when a refresh call does not yield a token."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code
