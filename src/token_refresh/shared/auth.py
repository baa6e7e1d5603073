from pydantic import BaseModel, ConfigDict, Field


class RefreshTokenRequest(BaseModel):
    """
    Body sent to the refresh endpoint.
    """

    refresh_token: str = Field(..., alias="refreshToken", min_length=1)

    model_config = ConfigDict(populate_by_name=True)


class RefreshTokenResponse(BaseModel):
    """
    Successful refresh endpoint response.

    Servers that rotate refresh tokens return the replacement alongside the new
    access token; servers that don't simply omit it.
    """

    jwt_token: str = Field(..., alias="jwtToken", min_length=1)
    refresh_token: str | None = Field(default=None, alias="refreshToken")

    model_config = ConfigDict(populate_by_name=True, extra="allow")


class StoredCredentials(BaseModel):
    """On-disk representation used by FileCredentialStore."""

    access_token: str | None = None
    refresh_token: str | None = None
