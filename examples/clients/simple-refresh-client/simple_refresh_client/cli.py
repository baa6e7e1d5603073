"""
Fires a burst of concurrent requests at the demo token API to show them sharing
a single token refresh.

Usage:
    python -m simple_refresh_client --requests=20 --simulate-expiry
"""

import logging

import anyio
import click
import httpx

from token_refresh import (
    ClientSettings,
    CredentialStore,
    FileCredentialStore,
    InMemoryCredentialStore,
    RefreshFailedError,
    RequestFailedError,
    TokenRefreshClient,
)
from token_refresh.shared.auth import RefreshTokenResponse
from token_refresh.shared.request import join_url

logger = logging.getLogger(__name__)


async def login(settings: ClientSettings, storage: CredentialStore, username: str, password: str) -> None:
    """Obtain the initial token pair."""
    async with httpx.AsyncClient() as client:
        response = await client.post(
            join_url(str(settings.base_url), "/api/login"),
            json={"username": username, "password": password},
        )
        response.raise_for_status()

    tokens = RefreshTokenResponse.model_validate_json(response.content)
    storage.set_access_token(tokens.jwt_token)
    if tokens.refresh_token:
        storage.set_refresh_token(tokens.refresh_token)
    logger.info("Logged in")


async def run_burst(client: TokenRefreshClient, count: int) -> dict[str, int]:
    results = {"ok": 0, "refresh_failed": 0, "failed": 0}

    async def fetch(i: int) -> None:
        try:
            response = await client.get("/api/profile")
            logger.debug(f"Request {i}: {response.status_code} {response.json()}")
            results["ok"] += 1
        except RefreshFailedError as e:
            logger.warning(f"Request {i}: {e}")
            results["refresh_failed"] += 1
        except RequestFailedError as e:
            logger.warning(f"Request {i}: {e}")
            results["failed"] += 1

    async with anyio.create_task_group() as tg:
        for i in range(count):
            tg.start_soon(fetch, i)

    return results


async def _run(
    settings: ClientSettings,
    storage: CredentialStore,
    username: str,
    password: str,
    count: int,
    simulate_expiry: bool,
) -> None:
    if not storage.get_refresh_token():
        await login(settings, storage, username, password)

    if simulate_expiry:
        storage.set_access_token("expired-access-token")

    async with TokenRefreshClient(settings, storage) as client:
        results = await run_burst(client, count)

    print(f"Sent {count} requests: {results['ok']} succeeded, {results['refresh_failed']} lost to a failed refresh, "
          f"{results['failed']} failed otherwise")
    print(f"Refresh calls issued: {client.coordinator.refresh_count}")


@click.command()
@click.option("--server-url", default="http://localhost:8000", help="Base URL of the demo token API")
@click.option("--username", default="demo", help="Login username")
@click.option("--password", default="demo", help="Login password")
@click.option("--requests", "count", default=10, help="Number of concurrent requests to send")
@click.option("--credentials-file", default=None, help="Persist tokens to this JSON file")
@click.option("--simulate-expiry", is_flag=True, help="Replace the access token with an invalid one first")
@click.option(
    "--log-level",
    default="INFO",
    help="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
)
def main(
    server_url: str,
    username: str,
    password: str,
    count: int,
    credentials_file: str | None,
    simulate_expiry: bool,
    log_level: str,
) -> int:
    """Run the demo refresh client."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    settings = ClientSettings(base_url=server_url)
    storage: CredentialStore
    if credentials_file:
        storage = FileCredentialStore(credentials_file)
    else:
        storage = InMemoryCredentialStore()

    anyio.run(_run, settings, storage, username, password, count, simulate_expiry)
    return 0


if __name__ == "__main__":
    main()  # type: ignore[call-arg]
