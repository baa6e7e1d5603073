"""Utilities for creating standardized httpx AsyncClient instances."""

from typing import Any, Protocol

import httpx

__all__ = ["create_http_client", "HttpClientFactory"]

DEFAULT_TIMEOUT = 30.0


class HttpClientFactory(Protocol):
    def __call__(
        self,
        headers: dict[str, str] | None = None,
        timeout: httpx.Timeout | None = None,
        auth: httpx.Auth | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> httpx.AsyncClient: ...


def create_http_client(
    headers: dict[str, str] | None = None,
    timeout: httpx.Timeout | None = None,
    auth: httpx.Auth | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> httpx.AsyncClient:
    """Create a standardized httpx AsyncClient.

    Redirects are always followed. Without an explicit timeout the client uses a
    30 second default for every operation.

    Args:
        headers: Optional headers to include with all requests.
        timeout: Request timeout as httpx.Timeout object.
        auth: Optional authentication handler.
        transport: Optional transport override, mostly useful in tests.

    Returns:
        Configured httpx.AsyncClient instance.
    """
    kwargs: dict[str, Any] = {
        "follow_redirects": True,
        "timeout": timeout if timeout is not None else httpx.Timeout(DEFAULT_TIMEOUT),
    }

    if headers is not None:
        kwargs["headers"] = headers

    if auth is not None:
        kwargs["auth"] = auth

    if transport is not None:
        kwargs["transport"] = transport

    return httpx.AsyncClient(**kwargs)
