import logging
from typing import Protocol

import httpx

from token_refresh.shared.request import RequestDescriptor

logger = logging.getLogger(__name__)


class Transport(Protocol):
    async def execute(self, descriptor: RequestDescriptor) -> httpx.Response:
        """
        Issue one HTTP request.

        Returns the response whatever its status code. Network-level problems
        raise httpx.TransportError (or another httpx.HTTPError).
        """
        ...


class HttpxTransport:
    """Transport backed by an httpx.AsyncClient."""

    def __init__(self, client: httpx.AsyncClient):
        self.client = client

    async def execute(self, descriptor: RequestDescriptor) -> httpx.Response:
        logger.debug(f"Sending {descriptor.method} {descriptor.url}")
        response = await self.client.request(
            descriptor.method,
            descriptor.url,
            headers=dict(descriptor.headers),
            params=descriptor.params,
            content=descriptor.content,
            json=descriptor.json,
        )
        logger.debug(f"{descriptor.method} {descriptor.url} -> {response.status_code}")
        return response
