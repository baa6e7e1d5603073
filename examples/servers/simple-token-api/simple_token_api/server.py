"""
Demo API guarded by short-lived bearer tokens.

Issues an access token and a refresh token on login, exchanges refresh tokens
for new access tokens, and rejects expired access tokens with 401 so the token
refresh client has something to recover from.

Usage:
    python -m simple_token_api --port=8000 --access-token-ttl=5
"""

import asyncio
import logging
import secrets
import time
from dataclasses import dataclass, field

import click
from pydantic import AnyHttpUrl, BaseModel, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route
from uvicorn import Config, Server

from token_refresh.shared.auth import RefreshTokenRequest, RefreshTokenResponse

logger = logging.getLogger(__name__)


class TokenApiSettings(BaseSettings):
    """Settings for the demo token API."""

    model_config = SettingsConfigDict(env_prefix="TOKEN_API_")

    host: str = "localhost"
    port: int = 8000
    server_url: AnyHttpUrl = AnyHttpUrl("http://localhost:8000")

    username: str = "demo"
    password: str = "demo"

    access_token_ttl: float = 10.0
    # Artificial latency so concurrent clients visibly queue behind one refresh
    refresh_delay: float = 0.5


class LoginRequest(BaseModel):
    username: str
    password: str


@dataclass
class TokenRegistry:
    access_token_ttl: float
    access_tokens: dict[str, float] = field(default_factory=dict)
    refresh_tokens: dict[str, str] = field(default_factory=dict)
    refresh_calls: int = 0

    def issue_access_token(self) -> str:
        token = secrets.token_urlsafe(32)
        self.access_tokens[token] = time.time() + self.access_token_ttl
        return token

    def issue_refresh_token(self, username: str) -> str:
        token = secrets.token_urlsafe(32)
        self.refresh_tokens[token] = username
        return token

    def is_valid(self, access_token: str) -> bool:
        expires_at = self.access_tokens.get(access_token)
        return expires_at is not None and time.time() < expires_at


def create_token_api(settings: TokenApiSettings) -> Starlette:
    registry = TokenRegistry(access_token_ttl=settings.access_token_ttl)

    async def login(request: Request) -> Response:
        try:
            credentials = LoginRequest.model_validate_json(await request.body())
        except ValidationError as e:
            return JSONResponse({"error": "invalid_request", "error_description": str(e)}, status_code=400)

        if not (
            secrets.compare_digest(credentials.username, settings.username)
            and secrets.compare_digest(credentials.password, settings.password)
        ):
            return JSONResponse({"error": "invalid_credentials"}, status_code=401)

        logger.info(f"Login for '{credentials.username}'")
        return JSONResponse(
            {
                "jwtToken": registry.issue_access_token(),
                "refreshToken": registry.issue_refresh_token(credentials.username),
            }
        )

    async def refresh_token(request: Request) -> Response:
        registry.refresh_calls += 1
        try:
            body = RefreshTokenRequest.model_validate_json(await request.body())
        except ValidationError as e:
            return JSONResponse({"error": "invalid_request", "error_description": str(e)}, status_code=400)

        await asyncio.sleep(settings.refresh_delay)

        if body.refresh_token not in registry.refresh_tokens:
            logger.warning("Rejected unknown refresh token")
            return JSONResponse({"error": "invalid_grant"}, status_code=400)

        logger.info(f"Refresh #{registry.refresh_calls} issued a new access token")
        response = RefreshTokenResponse(jwt_token=registry.issue_access_token())
        return JSONResponse(response.model_dump(by_alias=True, exclude_none=True))

    async def profile(request: Request) -> Response:
        auth_header = request.headers.get("authorization", "")
        if not auth_header.lower().startswith("bearer ") or not registry.is_valid(auth_header[7:]):
            return JSONResponse({"error": "invalid_token"}, status_code=401)

        return JSONResponse({"username": settings.username, "refresh_calls": registry.refresh_calls})

    return Starlette(
        routes=[
            Route("/api/login", endpoint=login, methods=["POST"]),
            Route("/api/refresh-token", endpoint=refresh_token, methods=["POST"]),
            Route("/api/profile", endpoint=profile, methods=["GET"]),
        ]
    )


async def run_server(settings: TokenApiSettings):
    """Run the demo token API."""
    app = create_token_api(settings)

    config = Config(
        app,
        host=settings.host,
        port=settings.port,
        log_level="info",
    )
    server = Server(config)

    logger.info("=" * 80)
    logger.info("DEMO TOKEN API")
    logger.info("=" * 80)
    logger.info(f"Server URL: {settings.server_url}")
    logger.info("Endpoints:")
    logger.info(f"  - Login: {settings.server_url}api/login")
    logger.info(f"  - Token Refresh: {settings.server_url}api/refresh-token")
    logger.info(f"  - Profile (protected): {settings.server_url}api/profile")
    logger.info(f"Access tokens expire after {settings.access_token_ttl}s")
    logger.info("=" * 80)

    await server.serve()


@click.command()
@click.option("--port", default=8000, help="Port to listen on")
@click.option("--host", default="localhost", help="Host to bind to")
@click.option("--access-token-ttl", default=10.0, help="Access token lifetime in seconds")
@click.option("--refresh-delay", default=0.5, help="Seconds the refresh endpoint takes to answer")
def main(port: int, host: str, access_token_ttl: float, refresh_delay: float) -> int:
    """
    Run the demo token API.

    Credentials default to demo/demo and can be changed with
    TOKEN_API_USERNAME and TOKEN_API_PASSWORD.
    """
    logging.basicConfig(level=logging.INFO)

    try:
        settings = TokenApiSettings(
            host=host,
            port=port,
            server_url=AnyHttpUrl(f"http://{host}:{port}"),
            access_token_ttl=access_token_ttl,
            refresh_delay=refresh_delay,
        )
    except ValueError as e:
        logger.error(f"Configuration error: {e}")
        return 1

    asyncio.run(run_server(settings))
    return 0


if __name__ == "__main__":
    main()  # type: ignore[call-arg]
