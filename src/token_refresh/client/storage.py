"""
Credential storage for access and refresh tokens.

Stores are synchronous and cheap to call; the interceptor reads the access token
on every outgoing request.
"""

import logging
import os
import tempfile
from pathlib import Path
from typing import Protocol

from pydantic import ValidationError

from token_refresh.shared.auth import StoredCredentials

logger = logging.getLogger(__name__)


class CredentialStore(Protocol):
    """Protocol for credential storage implementations."""

    def get_access_token(self) -> str | None:
        """Get the current access token."""
        ...

    def get_refresh_token(self) -> str | None:
        """Get the current refresh token."""
        ...

    def set_access_token(self, token: str) -> None:
        """Replace the access token."""
        ...

    def set_refresh_token(self, token: str) -> None:
        """Replace the refresh token."""
        ...

    def clear_tokens(self) -> None:
        """Forget both tokens."""
        ...


class InMemoryCredentialStore:
    def __init__(self, access_token: str | None = None, refresh_token: str | None = None):
        self._access_token = access_token
        self._refresh_token = refresh_token

    def get_access_token(self) -> str | None:
        return self._access_token

    def get_refresh_token(self) -> str | None:
        return self._refresh_token

    def set_access_token(self, token: str) -> None:
        self._access_token = token

    def set_refresh_token(self, token: str) -> None:
        self._refresh_token = token

    def clear_tokens(self) -> None:
        self._access_token = None
        self._refresh_token = None


class FileCredentialStore:
    """
    Persists tokens as JSON in a single file.

    Writes go to a temporary file in the same directory followed by an atomic
    replace, so a crash mid-write never leaves a truncated credentials file.
    The file is readable by the owner only.
    """

    def __init__(self, path: str | os.PathLike[str]):
        self.path = Path(path)
        self._credentials = self._load()

    def _load(self) -> StoredCredentials:
        if not self.path.exists():
            return StoredCredentials()
        try:
            return StoredCredentials.model_validate_json(self.path.read_text(encoding="utf-8"))
        except ValidationError as e:
            logger.warning(f"Ignoring unreadable credentials file '{self.path.name}': {e}")
            return StoredCredentials()

    def _save(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=self.path.parent, prefix=".tmp_", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(self._credentials.model_dump_json(indent=2))
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, self.path)
        except OSError:
            Path(tmp_path).unlink(missing_ok=True)
            raise
        logger.debug(f"Saved credentials to '{self.path.name}'")

    def get_access_token(self) -> str | None:
        return self._credentials.access_token

    def get_refresh_token(self) -> str | None:
        return self._credentials.refresh_token

    def set_access_token(self, token: str) -> None:
        self._credentials.access_token = token
        self._save()

    def set_refresh_token(self, token: str) -> None:
        self._credentials.refresh_token = token
        self._save()

    def clear_tokens(self) -> None:
        self._credentials = StoredCredentials()
        self._save()
