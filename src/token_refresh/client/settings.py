from pydantic import AnyHttpUrl, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ClientSettings(BaseSettings):
    """Settings for TokenRefreshClient.

    Every field can be supplied through the environment, e.g.
    TOKEN_REFRESH_BASE_URL or TOKEN_REFRESH_REFRESH_TIMEOUT.
    """

    model_config = SettingsConfigDict(env_prefix="TOKEN_REFRESH_")

    base_url: AnyHttpUrl = Field(..., description="Root URL of the API, used to resolve relative request URLs.")
    refresh_path: str = "/api/refresh-token"
    auth_failure_status: int = 401

    # None waits for the refresh endpoint indefinitely
    refresh_timeout: float | None = 30.0
    request_timeout: float = Field(default=30.0, gt=0)
