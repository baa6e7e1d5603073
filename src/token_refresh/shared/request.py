"""
Request descriptors passed between the interceptor, the refresh coordinator and
the transport.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from typing import Any

import httpx

AUTHORIZATION = "Authorization"


def _merge_header(headers: Mapping[str, str], name: str, value: str) -> dict[str, str]:
    # Header names are unique case-insensitively; the new value wins.
    merged = {k: v for k, v in headers.items() if k.lower() != name.lower()}
    merged[name] = value
    return merged


def join_url(base_url: str, url: str) -> str:
    """
    Resolve ``url`` under ``base_url``, keeping any path the base already has.

    ``join_url("https://api.example.com/v1", "/profile")`` gives
    ``https://api.example.com/v1/profile``. Absolute URLs are returned unchanged.
    """
    if httpx.URL(url).is_absolute_url:
        return url
    if not url:
        return base_url
    return f"{base_url.rstrip('/')}/{url.lstrip('/')}"


@dataclass(frozen=True)
class RequestDescriptor:
    """
    Everything needed to (re)issue one HTTP request.

    Descriptors are immutable. Header changes produce a new descriptor so the
    one supplied by a caller is never modified behind its back.
    """

    method: str
    url: str
    headers: Mapping[str, str] = field(default_factory=dict)
    params: Mapping[str, Any] | None = None
    content: bytes | None = None
    json: Any = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "method", self.method.upper())
        normalized: dict[str, str] = {}
        for name, value in self.headers.items():
            normalized = _merge_header(normalized, name, value)
        object.__setattr__(self, "headers", normalized)

    @property
    def authorization(self) -> str | None:
        for name, value in self.headers.items():
            if name.lower() == AUTHORIZATION.lower():
                return value
        return None

    def with_header(self, name: str, value: str) -> "RequestDescriptor":
        return replace(self, headers=_merge_header(self.headers, name, value))

    def with_bearer(self, access_token: str) -> "RequestDescriptor":
        return self.with_header(AUTHORIZATION, f"Bearer {access_token}")

    @classmethod
    def from_httpx(cls, request: httpx.Request) -> "RequestDescriptor":
        """Snapshot an httpx request (used by the httpx.Auth integration)."""
        return cls(
            method=request.method,
            url=str(request.url),
            headers=dict(request.headers),
            content=request.content or None,
        )


class RequestAttempt:
    """
    Tracks one logical caller invocation through the pipeline.

    The ``retried`` flag can only ever go from False to True, which is what
    limits every original request to a single retry.
    """

    def __init__(self, descriptor: RequestDescriptor):
        self.descriptor = descriptor
        self._retried = False

    @property
    def retried(self) -> bool:
        return self._retried

    def mark_retried(self) -> None:
        self._retried = True

    def __repr__(self) -> str:
        return f"RequestAttempt({self.descriptor.method} {self.descriptor.url}, retried={self._retried})"
