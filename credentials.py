"""OpenAI API key handling: validation, persisted storage and session resolution.

The pipeline never looks a key up on its own. Callers resolve a ``Session``
here (explicit value -> persisted value -> environment) and hand it in.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from errors import ValidationError

log = logging.getLogger(__name__)

API_KEY_PREFIX = "sk-"
API_KEY_ENV = "OPENAI_API_KEY"
CREDENTIALS_FILE_ENV = "ADPIRATE_CREDENTIALS_FILE"
DEFAULT_CREDENTIALS_FILE = Path.home() / ".adpirate" / "credentials.json"

_STORE_FIELD = "openai_api_key"


def validate_api_key(api_key: Optional[str], strict_length: Optional[int] = None) -> str:
    """Return the stripped key or raise ValidationError."""
    key = (api_key or "").strip()
    if not key:
        raise ValidationError("An OpenAI API key is required.")
    if not key.startswith(API_KEY_PREFIX):
        raise ValidationError(f"Invalid API key format - must start with {API_KEY_PREFIX}")
    if strict_length is not None and len(key) != strict_length:
        raise ValidationError(f"Invalid API key format - expected {strict_length} characters")
    return key


def mask_key(api_key: str) -> str:
    if len(api_key) <= 8:
        return API_KEY_PREFIX + "…"
    return f"{api_key[:3]}…{api_key[-4:]}"


@dataclass(frozen=True, repr=False)
class Session:
    """Holds the bearer key for one user. Validated on construction."""

    api_key: str

    def __post_init__(self) -> None:
        validate_api_key(self.api_key)

    @property
    def masked_key(self) -> str:
        return mask_key(self.api_key)

    def __repr__(self) -> str:
        return f"Session(api_key={self.masked_key!r})"


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------

class CredentialStore:
    """Interface for wherever the key is persisted between runs."""

    def get(self) -> Optional[str]:
        raise NotImplementedError

    def set(self, api_key: str) -> None:
        raise NotImplementedError

    def clear(self) -> None:
        raise NotImplementedError


class MemoryCredentialStore(CredentialStore):
    def __init__(self, api_key: Optional[str] = None) -> None:
        self._api_key = api_key

    def get(self) -> Optional[str]:
        return self._api_key

    def set(self, api_key: str) -> None:
        self._api_key = api_key

    def clear(self) -> None:
        self._api_key = None


class FileCredentialStore(CredentialStore):
    """Keeps the key in a small JSON file readable only by the owner."""

    def __init__(self, path: Optional[Path] = None) -> None:
        if path is None:
            env_path = os.environ.get(CREDENTIALS_FILE_ENV)
            path = Path(env_path) if env_path else DEFAULT_CREDENTIALS_FILE
        self.path = Path(path)

    def get(self) -> Optional[str]:
        if not self.path.exists():
            return None
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as exc:
            log.warning("Ignoring unreadable credentials file %s: %s", self.path, exc)
            return None
        value = data.get(_STORE_FIELD) if isinstance(data, dict) else None
        return value or None

    def set(self, api_key: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps({_STORE_FIELD: api_key}), encoding="utf-8")
        try:
            self.path.chmod(0o600)
        except OSError:
            log.debug("Could not restrict permissions on %s", self.path)

    def clear(self) -> None:
        if self.path.exists():
            self.path.unlink()


# ---------------------------------------------------------------------------
# Login / logout / resolution
# ---------------------------------------------------------------------------

def login(store: CredentialStore, api_key: str, strict_length: Optional[int] = None) -> Session:
    """Validate a key, persist it and return the session built from it."""
    key = validate_api_key(api_key, strict_length)
    store.set(key)
    session = Session(key)
    log.info("Logged in with API key %s", session.masked_key)
    return session


def logout(store: CredentialStore) -> None:
    store.clear()
    log.info("Stored API key cleared")


def resolve_session(
    explicit: Optional[str] = None,
    store: Optional[CredentialStore] = None,
    env_var: str = API_KEY_ENV,
    strict_length: Optional[int] = None,
) -> Session:
    """Pick the first available key: explicit, then stored, then environment.

    Only the chosen key is validated; a malformed explicit key is an error
    even if a good one is stored.
    """
    if explicit and explicit.strip():
        source, key = "explicit", explicit
    elif store is not None and store.get():
        source, key = "stored", store.get()
    elif os.environ.get(env_var):
        source, key = "environment", os.environ[env_var]
    else:
        raise ValidationError(
            f"No OpenAI API key configured. Log in or set {env_var}."
        )

    session = Session(validate_api_key(key, strict_length))
    log.debug("Using %s API key %s", source, session.masked_key)
    return session
