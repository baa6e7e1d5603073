"""
Tests for the single-flight refresh coordinator.
"""

import json

import anyio
import httpx
import pytest

from token_refresh.client.errors import RefreshFailedError, TokenRefreshError
from token_refresh.client.refresh import (
    CoordinatorState,
    PendingContinuation,
    RefreshCoordinator,
    RefreshEndpoint,
    RefreshOutcome,
    RequestQueue,
)
from token_refresh.client.storage import InMemoryCredentialStore
from token_refresh.shared.auth import RefreshTokenResponse
from token_refresh.shared.request import RequestAttempt, RequestDescriptor


class MockRefreshEndpoint:
    """Refresh endpoint whose calls block until released."""

    def __init__(self, new_token: str = "fresh_access_token", error: Exception | None = None):
        self.new_token = new_token
        self.error = error
        self.rotated_refresh_token: str | None = None
        self.calls: list[str] = []
        self.released = anyio.Event()

    def release(self) -> None:
        self.released.set()

    async def refresh(self, refresh_token: str) -> RefreshTokenResponse:
        self.calls.append(refresh_token)
        await self.released.wait()
        if self.error is not None:
            raise self.error
        return RefreshTokenResponse(jwt_token=self.new_token, refresh_token=self.rotated_refresh_token)


class RecordingTransport:
    """Answers every request with 200 and remembers what it was sent."""

    def __init__(self):
        self.requests: list[RequestDescriptor] = []

    async def execute(self, descriptor: RequestDescriptor) -> httpx.Response:
        self.requests.append(descriptor)
        return httpx.Response(200, json={"authorization": descriptor.authorization})


def make_attempt(i: int) -> RequestAttempt:
    attempt = RequestAttempt(RequestDescriptor("GET", f"https://api.example.com/items/{i}").with_bearer("expired"))
    attempt.mark_retried()
    return attempt


async def wait_for_pending(coordinator: RefreshCoordinator, count: int) -> None:
    with anyio.fail_after(5):
        while coordinator.pending < count:
            await anyio.sleep(0.001)


@pytest.fixture
def storage():
    return InMemoryCredentialStore(access_token="expired", refresh_token="valid_refresh_token")


class TestSingleFlight:
    @pytest.mark.anyio
    @pytest.mark.parametrize("n", [1, 5, 100])
    async def test_concurrent_failures_share_one_refresh(self, storage, n):
        endpoint = MockRefreshEndpoint()
        transport = RecordingTransport()
        coordinator = RefreshCoordinator(storage, transport, endpoint)
        results: dict[int, httpx.Response] = {}

        async def fail(i: int):
            results[i] = await coordinator.handle_auth_failure(make_attempt(i), httpx.Response(401))

        async with anyio.create_task_group() as tg:
            for i in range(n):
                tg.start_soon(fail, i)
            await wait_for_pending(coordinator, n)
            assert coordinator.state is CoordinatorState.REFRESHING
            endpoint.release()

        assert endpoint.calls == ["valid_refresh_token"]
        assert coordinator.refresh_count == 1
        assert len(results) == n
        assert all(response.status_code == 200 for response in results.values())
        assert len(transport.requests) == n
        assert {d.authorization for d in transport.requests} == {"Bearer fresh_access_token"}
        assert storage.get_access_token() == "fresh_access_token"
        assert coordinator.state is CoordinatorState.IDLE
        assert coordinator.pending == 0

    @pytest.mark.anyio
    async def test_queued_requests_resolve_in_arrival_order(self, storage, monkeypatch):
        endpoint = MockRefreshEndpoint()
        coordinator = RefreshCoordinator(storage, RecordingTransport(), endpoint)
        resolved: list[str] = []
        original_resolve = PendingContinuation.resolve

        def recording_resolve(self, outcome):
            resolved.append(self.descriptor.url)
            original_resolve(self, outcome)

        monkeypatch.setattr(PendingContinuation, "resolve", recording_resolve)

        async with anyio.create_task_group() as tg:
            for i in (1, 2, 3):
                tg.start_soon(coordinator.handle_auth_failure, make_attempt(i), httpx.Response(401))
                await wait_for_pending(coordinator, i)
            endpoint.release()

        assert resolved == [
            "https://api.example.com/items/1",
            "https://api.example.com/items/2",
            "https://api.example.com/items/3",
        ]

    @pytest.mark.anyio
    async def test_replay_updates_attempt_descriptor(self, storage):
        endpoint = MockRefreshEndpoint()
        endpoint.release()
        coordinator = RefreshCoordinator(storage, RecordingTransport(), endpoint)
        attempt = make_attempt(1)

        response = await coordinator.handle_auth_failure(attempt, httpx.Response(401))

        assert response.json() == {"authorization": "Bearer fresh_access_token"}
        assert attempt.descriptor.authorization == "Bearer fresh_access_token"
        assert attempt.retried


class TestSettlement:
    @pytest.mark.anyio
    async def test_refresh_failure_fails_every_waiter_and_clears_tokens(self, storage):
        error = TokenRefreshError("Token refresh failed: HTTP 400", 400)
        endpoint = MockRefreshEndpoint(error=error)
        transport = RecordingTransport()
        coordinator = RefreshCoordinator(storage, transport, endpoint)
        failures: dict[int, RefreshFailedError] = {}
        original = httpx.Response(401)

        async def fail(i: int):
            with pytest.raises(RefreshFailedError) as exc_info:
                await coordinator.handle_auth_failure(make_attempt(i), original)
            failures[i] = exc_info.value

        async with anyio.create_task_group() as tg:
            for i in range(3):
                tg.start_soon(fail, i)
            await wait_for_pending(coordinator, 3)
            endpoint.release()

        assert len(failures) == 3
        for i, failure in failures.items():
            assert failure.cause is error
            assert failure.response is original
            assert failure.status_code == 401
            assert failure.descriptor.url == f"https://api.example.com/items/{i}"
        assert transport.requests == []
        assert storage.get_access_token() is None
        assert storage.get_refresh_token() is None
        assert coordinator.state is CoordinatorState.IDLE

    @pytest.mark.anyio
    async def test_network_error_during_refresh_is_a_refresh_failure(self, storage):
        endpoint = MockRefreshEndpoint(error=httpx.ConnectError("connection refused"))
        endpoint.release()
        coordinator = RefreshCoordinator(storage, RecordingTransport(), endpoint)

        with pytest.raises(RefreshFailedError) as exc_info:
            await coordinator.handle_auth_failure(make_attempt(1), httpx.Response(401))

        assert isinstance(exc_info.value.cause, httpx.ConnectError)
        assert storage.get_refresh_token() is None

    @pytest.mark.anyio
    async def test_unexpected_error_fails_every_waiter_alike(self, storage):
        error = httpx.InvalidURL("Invalid URL")
        endpoint = MockRefreshEndpoint(error=error)
        coordinator = RefreshCoordinator(storage, RecordingTransport(), endpoint)
        failures: dict[int, BaseException] = {}

        async def fail(i: int):
            try:
                await coordinator.handle_auth_failure(make_attempt(i), httpx.Response(401))
            except Exception as e:
                failures[i] = e

        async with anyio.create_task_group() as tg:
            for i in range(3):
                tg.start_soon(fail, i)
                await wait_for_pending(coordinator, i + 1)
            endpoint.release()

        # Task 0 started the refresh; it must fail the same way as the queued ones
        assert sorted(failures) == [0, 1, 2]
        for failure in failures.values():
            assert isinstance(failure, RefreshFailedError)
            assert failure.cause is error
        assert storage.get_access_token() is None
        assert coordinator.state is CoordinatorState.IDLE

    @pytest.mark.anyio
    async def test_hanging_refresh_times_out(self, storage):
        endpoint = MockRefreshEndpoint()
        coordinator = RefreshCoordinator(storage, RecordingTransport(), endpoint, refresh_timeout=0.05)

        with anyio.fail_after(5):
            with pytest.raises(RefreshFailedError) as exc_info:
                await coordinator.handle_auth_failure(make_attempt(1), httpx.Response(401))

        assert isinstance(exc_info.value.cause, TokenRefreshError)
        assert "timed out" in str(exc_info.value.cause)
        assert storage.get_access_token() is None
        assert coordinator.state is CoordinatorState.IDLE

    @pytest.mark.anyio
    async def test_missing_refresh_token_fails_without_calling_endpoint(self):
        storage = InMemoryCredentialStore(access_token="expired")
        endpoint = MockRefreshEndpoint()
        endpoint.release()
        coordinator = RefreshCoordinator(storage, RecordingTransport(), endpoint)

        outcome = await coordinator.await_token(RequestDescriptor("GET", "https://api.example.com/items"))

        assert not outcome.succeeded
        assert endpoint.calls == []

    @pytest.mark.anyio
    async def test_rotated_refresh_token_is_stored(self, storage):
        endpoint = MockRefreshEndpoint()
        endpoint.rotated_refresh_token = "rotated_refresh_token"
        endpoint.release()
        coordinator = RefreshCoordinator(storage, RecordingTransport(), endpoint)

        outcome = await coordinator.await_token(RequestDescriptor("GET", "https://api.example.com/items"))

        assert outcome.access_token == "fresh_access_token"
        assert storage.get_refresh_token() == "rotated_refresh_token"

    @pytest.mark.anyio
    async def test_state_returns_to_idle_between_cycles(self, storage):
        endpoint = MockRefreshEndpoint()
        endpoint.release()
        coordinator = RefreshCoordinator(storage, RecordingTransport(), endpoint)

        await coordinator.handle_auth_failure(make_attempt(1), httpx.Response(401))
        assert coordinator.state is CoordinatorState.IDLE

        endpoint.new_token = "second_access_token"
        response = await coordinator.handle_auth_failure(make_attempt(2), httpx.Response(401))

        assert coordinator.refresh_count == 2
        assert len(endpoint.calls) == 2
        assert response.json() == {"authorization": "Bearer second_access_token"}
        assert coordinator.state is CoordinatorState.IDLE

    @pytest.mark.anyio
    async def test_state_returns_to_idle_after_failed_cycle(self, storage):
        endpoint = MockRefreshEndpoint(error=TokenRefreshError("rejected", 401))
        endpoint.release()
        coordinator = RefreshCoordinator(storage, RecordingTransport(), endpoint)

        with pytest.raises(RefreshFailedError):
            await coordinator.handle_auth_failure(make_attempt(1), httpx.Response(401))

        storage.set_refresh_token("new_login_refresh_token")
        endpoint.error = None
        response = await coordinator.handle_auth_failure(make_attempt(2), httpx.Response(401))

        assert response.status_code == 200
        assert endpoint.calls == ["valid_refresh_token", "new_login_refresh_token"]

    @pytest.mark.anyio
    async def test_cancelled_trigger_still_settles_queue(self, storage):
        endpoint = MockRefreshEndpoint()
        coordinator = RefreshCoordinator(storage, RecordingTransport(), endpoint)
        leader_scope = anyio.CancelScope()
        follower_result: list[httpx.Response] = []

        async def leader():
            with leader_scope:
                await coordinator.handle_auth_failure(make_attempt(1), httpx.Response(401))

        async def follower():
            follower_result.append(await coordinator.handle_auth_failure(make_attempt(2), httpx.Response(401)))

        async with anyio.create_task_group() as tg:
            tg.start_soon(leader)
            await wait_for_pending(coordinator, 1)
            tg.start_soon(follower)
            await wait_for_pending(coordinator, 2)

            leader_scope.cancel()
            await anyio.sleep(0.01)
            assert coordinator.state is CoordinatorState.REFRESHING

            endpoint.release()

        assert leader_scope.cancelled_caught
        assert [r.status_code for r in follower_result] == [200]
        assert coordinator.state is CoordinatorState.IDLE
        assert storage.get_access_token() == "fresh_access_token"


class TestQueueAndContinuations:
    @pytest.mark.anyio
    async def test_drain_is_fifo_and_empties_queue(self):
        queue = RequestQueue()
        entries = [PendingContinuation(RequestDescriptor("GET", f"https://api.example.com/{i}")) for i in range(3)]
        for entry in entries:
            queue.append(entry)

        assert len(queue) == 3
        assert queue.drain() == entries
        assert len(queue) == 0
        assert queue.drain() == []

    @pytest.mark.anyio
    async def test_continuation_resolves_exactly_once(self):
        continuation = PendingContinuation(RequestDescriptor("GET", "https://api.example.com/items"))
        assert not continuation.resolved

        continuation.resolve(RefreshOutcome(access_token="token"))

        assert continuation.resolved
        assert (await continuation.wait()).access_token == "token"
        with pytest.raises(RuntimeError):
            continuation.resolve(RefreshOutcome(error=TokenRefreshError("late")))

    def test_outcome_requires_exactly_one_result(self):
        with pytest.raises(ValueError):
            RefreshOutcome()
        with pytest.raises(ValueError):
            RefreshOutcome(access_token="token", error=TokenRefreshError("both"))

    def test_outcome_token_requires_success(self):
        assert RefreshOutcome(access_token="token").token == "token"
        with pytest.raises(RuntimeError, match="rejected"):
            RefreshOutcome(error=TokenRefreshError("rejected")).token


class TestRefreshEndpoint:
    @pytest.mark.anyio
    async def test_posts_refresh_token_and_parses_response(self):
        class TokenTransport(RecordingTransport):
            async def execute(self, descriptor: RequestDescriptor) -> httpx.Response:
                self.requests.append(descriptor)
                return httpx.Response(200, json={"jwtToken": "new_access_token"})

        transport = TokenTransport()
        endpoint = RefreshEndpoint.from_base_url(transport, "https://api.example.com/v1/")

        tokens = await endpoint.refresh("valid_refresh_token")

        assert tokens.jwt_token == "new_access_token"
        assert tokens.refresh_token is None
        [request] = transport.requests
        assert request.method == "POST"
        assert request.url == "https://api.example.com/v1/api/refresh-token"
        assert request.json == {"refreshToken": "valid_refresh_token"}

    @pytest.mark.anyio
    @pytest.mark.parametrize(
        "response",
        [
            httpx.Response(400, json={"error": "invalid_grant"}),
            httpx.Response(500, text="Internal Server Error"),
            httpx.Response(200, json={"token": "wrong_field"}),
            httpx.Response(200, text="not json"),
        ],
    )
    async def test_unusable_responses_raise(self, response):
        class StaticTransport:
            async def execute(self, descriptor: RequestDescriptor) -> httpx.Response:
                return response

        endpoint = RefreshEndpoint(StaticTransport(), "https://api.example.com/api/refresh-token")

        with pytest.raises(TokenRefreshError) as exc_info:
            await endpoint.refresh("valid_refresh_token")

        assert exc_info.value.status_code == response.status_code

    def test_response_reads_wire_names(self):
        body = RefreshTokenResponse.model_validate_json(json.dumps({"jwtToken": "a", "refreshToken": "b"}))
        assert body.jwt_token == "a"
        assert body.refresh_token == "b"
