import json
import logging
import os
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .errors import CredentialsNotFoundError, CredentialStoreError, ProfileNotFoundError

logger = logging.getLogger(__name__)

DEFAULT_AUTH_PROFILES_PATH = os.path.join(os.path.expanduser("~"), ".clawdbot", "auth-profiles.json")
DEFAULT_PROFILE_ID = "spotify:default"

AUTH_PROFILES_VERSION = 1
PROFILE_TYPE = "oauth"
PROVIDER = "spotify"

# Subtracted from the provider TTL when a code is first exchanged, and required
# as headroom before a stored access token is reused.
TOKEN_EXPIRY_MARGIN_MS = 5 * 60 * 1000


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class Credential:
    """Long-lived Spotify OAuth credential.

    ``expires`` is an absolute instant in milliseconds since the epoch, the
    same unit the auth-profiles file uses.
    """

    access: str
    refresh: str
    expires: int
    email: Optional[str] = None
    display_name: Optional[str] = None

    @staticmethod
    def from_token_response(
        payload: Dict[str, Any],
        *,
        now: Optional[int] = None,
        margin_ms: int = 0,
        fallback_refresh: str = "",
    ) -> "Credential":
        """Convert a token endpoint response into a Credential.

        Spotify returns access_token, token_type, expires_in (seconds),
        scope and, except on some refreshes, refresh_token.
        """

        now_ts = now_ms() if now is None else int(now)
        expires_in = float(payload.get("expires_in") or 0)

        return Credential(
            access=str(payload.get("access_token") or ""),
            refresh=str(payload.get("refresh_token") or fallback_refresh or ""),
            expires=int(now_ts + expires_in * 1000 - margin_ms),
        )

    @staticmethod
    def from_profile_dict(data: Dict[str, Any]) -> "Credential":
        return Credential(
            access=str(data.get("access") or ""),
            refresh=str(data.get("refresh") or ""),
            expires=int(data.get("expires") or 0),
            email=data.get("email"),
            display_name=data.get("displayName"),
        )

    def to_profile_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "type": PROFILE_TYPE,
            "provider": PROVIDER,
            "access": self.access,
            "refresh": self.refresh,
            "expires": self.expires,
        }
        if self.email is not None:
            out["email"] = self.email
        if self.display_name is not None:
            out["displayName"] = self.display_name
        return out

    def is_fresh(self, *, now: Optional[int] = None, margin_ms: int = TOKEN_EXPIRY_MARGIN_MS) -> bool:
        """True while the access token can be used without a refresh."""
        if not self.expires:
            return False
        now_ts = now_ms() if now is None else int(now)
        return now_ts < self.expires - margin_ms


class CredentialStore:
    """Key-value persistence of one Credential per profile id.

    Implementations give no cross-process atomicity: two concurrent ``save``
    calls may lose one of the updates.
    """

    def load(self, profile_id: str) -> Credential:
        raise NotImplementedError

    def save(self, profile_id: str, fields: Dict[str, Any]) -> None:
        raise NotImplementedError


class JsonCredentialStore(CredentialStore):
    """Credential store backed by a single auth-profiles JSON file.

    File shape::

        {"version": 1, "profiles": {"spotify:default": {"type": "oauth", ...}}}
    """

    def __init__(self, path: str = DEFAULT_AUTH_PROFILES_PATH):
        self.path = path

    def exists(self) -> bool:
        return os.path.exists(self.path)

    def _read(self) -> Dict[str, Any]:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise CredentialStoreError(f"Auth profiles file {self.path} is not valid JSON: {e}") from e

        if not isinstance(data, dict):
            raise CredentialStoreError(f"Auth profiles file {self.path} does not contain an object")
        if not isinstance(data.get("profiles"), dict):
            data["profiles"] = {}
        return data

    def load(self, profile_id: str = DEFAULT_PROFILE_ID) -> Credential:
        if not self.exists():
            raise CredentialsNotFoundError("No auth credentials found. Run the OAuth flow first to authenticate.")

        profile = self._read()["profiles"].get(profile_id)
        if not isinstance(profile, dict) or profile.get("type") != PROFILE_TYPE or profile.get("provider") != PROVIDER:
            raise ProfileNotFoundError(
                f"Spotify OAuth profile '{profile_id}' not found. Run the OAuth flow first to authenticate."
            )

        return Credential.from_profile_dict(profile)

    def save(self, profile_id: str, fields: Dict[str, Any]) -> None:
        """Merge ``fields`` onto the stored profile and rewrite the whole file."""

        if self.exists():
            store = self._read()
        else:
            store = {"version": AUTH_PROFILES_VERSION, "profiles": {}}

        current = store["profiles"].get(profile_id)
        merged: Dict[str, Any] = dict(current) if isinstance(current, dict) else {}
        merged.update({k: v for k, v in (fields or {}).items() if v is not None})
        store["profiles"][profile_id] = merged

        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        with open(self.path, "w", encoding="utf-8") as f:
            json.dump(store, f, indent=2)
        logger.debug("Saved auth profile %s to %s", profile_id, self.path)
