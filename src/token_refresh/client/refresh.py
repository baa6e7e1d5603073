"""
Single-flight access token refresh.

When several requests run into an expired access token at the same time, only
the first one calls the refresh endpoint. Every failing request, the first one
included, parks a continuation on a FIFO queue; once the refresh call settles
the whole queue is drained in arrival order and each request is either replayed
with the new token or failed.
"""

import logging
from collections import deque
from dataclasses import dataclass
from enum import Enum, auto

import anyio
import httpx
from pydantic import ValidationError

from token_refresh.client.errors import RefreshFailedError, TokenRefreshError
from token_refresh.client.storage import CredentialStore
from token_refresh.client.transport import Transport
from token_refresh.shared.auth import RefreshTokenRequest, RefreshTokenResponse
from token_refresh.shared.request import RequestAttempt, RequestDescriptor, join_url

logger = logging.getLogger(__name__)


class CoordinatorState(Enum):
    """Refresh coordinator states."""

    IDLE = auto()
    REFRESHING = auto()


@dataclass(frozen=True)
class RefreshOutcome:
    """Result of one refresh attempt: a new access token or the reason there isn't one."""

    access_token: str | None = None
    error: BaseException | None = None
    # Set when the server rotated the refresh token
    refresh_token: str | None = None

    def __post_init__(self) -> None:
        if (self.access_token is None) == (self.error is None):
            raise ValueError("RefreshOutcome requires exactly one of access_token or error")

    @property
    def succeeded(self) -> bool:
        return self.access_token is not None

    @property
    def token(self) -> str:
        """The new access token; only valid on a successful outcome."""
        if self.access_token is None:
            raise RuntimeError(f"Refresh did not produce an access token: {self.error}")
        return self.access_token


class PendingContinuation:
    """
    One-shot handle for a request blocked on the current refresh.

    Resolved exactly once by the coordinator; the blocked task wakes up in
    ``wait()`` and carries on with the outcome.
    """

    def __init__(self, descriptor: RequestDescriptor):
        self.descriptor = descriptor
        self._event = anyio.Event()
        self._outcome: RefreshOutcome | None = None

    @property
    def resolved(self) -> bool:
        return self._outcome is not None

    def resolve(self, outcome: RefreshOutcome) -> None:
        if self._outcome is not None:
            raise RuntimeError(
                f"Continuation for {self.descriptor.method} {self.descriptor.url} was already resolved"
            )
        self._outcome = outcome
        self._event.set()

    async def wait(self) -> RefreshOutcome:
        await self._event.wait()
        if self._outcome is None:
            raise RuntimeError(f"Continuation for {self.descriptor.method} {self.descriptor.url} woke up unresolved")
        return self._outcome


class RequestQueue:
    """FIFO of continuations waiting on a refresh. Only ever drained as a whole."""

    def __init__(self) -> None:
        self._entries: deque[PendingContinuation] = deque()

    def __len__(self) -> int:
        return len(self._entries)

    def append(self, continuation: PendingContinuation) -> None:
        self._entries.append(continuation)

    def drain(self) -> list[PendingContinuation]:
        entries = list(self._entries)
        self._entries.clear()
        return entries


class RefreshEndpoint:
    """Exchanges a refresh token for a new access token."""

    def __init__(self, transport: Transport, url: str):
        self.transport = transport
        self.url = url

    @classmethod
    def from_base_url(cls, transport: Transport, base_url: str, path: str = "/api/refresh-token") -> "RefreshEndpoint":
        return cls(transport, join_url(base_url, path))

    async def refresh(self, refresh_token: str) -> RefreshTokenResponse:
        """
        Call the refresh endpoint.

        Raises:
            TokenRefreshError: on a non-2xx status or a malformed body.
            httpx.HTTPError: when the request itself could not be completed.
        """
        body = RefreshTokenRequest(refresh_token=refresh_token).model_dump(by_alias=True)
        response = await self.transport.execute(RequestDescriptor("POST", self.url, json=body))

        if not response.is_success:
            raise TokenRefreshError(f"Token refresh failed: HTTP {response.status_code}", response.status_code)

        try:
            return RefreshTokenResponse.model_validate_json(response.content)
        except ValidationError as e:
            raise TokenRefreshError(f"Invalid refresh response: {e}", response.status_code)


class RefreshCoordinator:
    """
    Makes sure at most one refresh call is in flight per client.

    One instance belongs to one API client and owns the IDLE/REFRESHING state and
    the request queue. The enqueue and the IDLE -> REFRESHING check-and-set happen
    under a single lock, as do the drain and the transition back to IDLE, so a
    request that fails after a drain has started always seeds a new refresh.
    """

    def __init__(
        self,
        storage: CredentialStore,
        transport: Transport,
        endpoint: RefreshEndpoint,
        refresh_timeout: float | None = 30.0,
    ):
        self.storage = storage
        self.transport = transport
        self.endpoint = endpoint
        self.refresh_timeout = refresh_timeout

        # Number of refresh calls issued over the coordinator's lifetime
        self.refresh_count = 0

        self._state = CoordinatorState.IDLE
        self._queue = RequestQueue()
        self._lock = anyio.Lock()

    @property
    def state(self) -> CoordinatorState:
        return self._state

    @property
    def pending(self) -> int:
        """Number of requests currently waiting on a refresh."""
        return len(self._queue)

    async def handle_auth_failure(self, attempt: RequestAttempt, response: httpx.Response) -> httpx.Response:
        """
        Wait for a fresh access token and replay ``attempt`` with it once.

        The replay goes straight to the transport. Whatever it returns is handed
        back to the caller, which decides whether that response is terminal.

        Raises:
            RefreshFailedError: if the refresh failed; the original ``response``
                and the attempt's descriptor are attached.
        """
        outcome = await self.await_token(attempt.descriptor)

        if not outcome.succeeded:
            raise RefreshFailedError(attempt.descriptor, response, outcome.error)

        attempt.descriptor = attempt.descriptor.with_bearer(outcome.token)
        logger.debug(f"Replaying {attempt.descriptor.method} {attempt.descriptor.url} with refreshed token")
        return await self.transport.execute(attempt.descriptor)

    async def await_token(self, descriptor: RequestDescriptor) -> RefreshOutcome:
        """Queue behind the current refresh, starting one if none is running."""
        continuation = PendingContinuation(descriptor)

        async with self._lock:
            self._queue.append(continuation)
            start_refresh = self._state is CoordinatorState.IDLE
            if start_refresh:
                self._state = CoordinatorState.REFRESHING
                self.refresh_count += 1
                logger.debug(f"Transitioning from {CoordinatorState.IDLE} to {CoordinatorState.REFRESHING}")
            else:
                logger.debug(
                    f"Refresh in flight, queued {descriptor.method} {descriptor.url} ({len(self._queue)} waiting)"
                )

        if start_refresh:
            # Queued requests depend on this call settling even if our caller goes away
            with anyio.CancelScope(shield=True):
                await self._run_refresh()

        return await continuation.wait()

    async def _run_refresh(self) -> None:
        outcome = RefreshOutcome(error=TokenRefreshError("Token refresh did not complete"))
        try:
            outcome = await self._call_endpoint()
        except Exception as e:
            # Every waiter, the one that started the refresh included, sees a RefreshFailedError
            logger.exception("Unexpected error during token refresh")
            outcome = RefreshOutcome(error=e)
        finally:
            await self._settle(outcome)

    async def _call_endpoint(self) -> RefreshOutcome:
        refresh_token = self.storage.get_refresh_token()
        if not refresh_token:
            return RefreshOutcome(error=TokenRefreshError("No refresh token available"))

        try:
            with anyio.fail_after(self.refresh_timeout):
                tokens = await self.endpoint.refresh(refresh_token)
        except TimeoutError:
            logger.warning(f"Token refresh timed out after {self.refresh_timeout}s")
            return RefreshOutcome(error=TokenRefreshError(f"Token refresh timed out after {self.refresh_timeout}s"))
        except (TokenRefreshError, httpx.HTTPError) as e:
            logger.warning(f"Token refresh failed: {e}")
            return RefreshOutcome(error=e)

        return RefreshOutcome(access_token=tokens.jwt_token, refresh_token=tokens.refresh_token)

    async def _settle(self, outcome: RefreshOutcome) -> None:
        async with self._lock:
            try:
                if outcome.succeeded:
                    self.storage.set_access_token(outcome.token)
                    if outcome.refresh_token:
                        self.storage.set_refresh_token(outcome.refresh_token)
                    logger.info("Access token refreshed")
                else:
                    self.storage.clear_tokens()
                    logger.warning("Cleared stored tokens after failed refresh")
            finally:
                waiting = self._queue.drain()
                for continuation in waiting:
                    continuation.resolve(outcome)
                self._state = CoordinatorState.IDLE

        logger.debug(f"Transitioning from {CoordinatorState.REFRESHING} to {CoordinatorState.IDLE}")
        logger.debug(f"Resumed {len(waiting)} queued request(s)")
