import json
import logging
from typing import Any, Dict, Mapping, Optional

import httpx

from .auth import ClientCredentials, SpotifyPKCEAuth, get_client_credentials
from .credential_store import (
    DEFAULT_AUTH_PROFILES_PATH,
    DEFAULT_PROFILE_ID,
    Credential,
    CredentialStore,
    JsonCredentialStore,
)
from .errors import SpotifyAPIError, SpotifyRequestError

logger = logging.getLogger(__name__)

SPOTIFY_API_BASE_URL = "https://api.spotify.com/v1"


def _error_message(resp: httpx.Response) -> str:
    """Human-readable error text for a non-2xx Web API response."""

    content_type = resp.headers.get("content-type") or ""
    if "application/json" in content_type:
        try:
            data = resp.json()
        except ValueError:
            return resp.text
        error = data.get("error") if isinstance(data, dict) else None
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        return json.dumps(data)
    return resp.text


class SpotifyClient:
    """Thin Spotify Web API client.

    Every request loads the stored credential, refreshes it first when it is
    within five minutes of expiry (persisting the new token), then sends the
    call with a Bearer token. There is no retry and no backoff; callers
    decide what to do with a failure.
    """

    def __init__(
        self,
        config: Optional[Dict[str, Any]] = None,
        *,
        store: Optional[CredentialStore] = None,
        client_credentials: Optional[ClientCredentials] = None,
        transport: Optional[httpx.BaseTransport] = None,
        env: Optional[Mapping[str, str]] = None,
        timeout: float = 30.0,
    ):
        self.config = config or {}
        self.profile_id = str(self.config.get("spotify_profile_id") or DEFAULT_PROFILE_ID)
        self.store = store or JsonCredentialStore(self.config.get("auth_profiles_path") or DEFAULT_AUTH_PROFILES_PATH)
        self.transport = transport
        self.timeout = timeout
        self._client_credentials = client_credentials
        self._env = env

    # -----------------
    # Token management
    # -----------------

    def _auth(self) -> SpotifyPKCEAuth:
        # Client id/secret are only needed for a refresh.
        creds = self._client_credentials or get_client_credentials(self.config, self._env)
        return SpotifyPKCEAuth(creds.client_id, creds.client_secret, transport=self.transport, timeout=self.timeout)

    def refresh_token_if_needed(self, credential: Credential) -> str:
        if credential.is_fresh():
            return credential.access

        logger.info("Spotify access token expired or about to expire; refreshing")
        refreshed = self._auth().refresh_access_token(credential)
        self.store.save(
            self.profile_id,
            {
                "access": refreshed.access,
                "expires": refreshed.expires,
                "refresh": refreshed.refresh,
            },
        )
        return refreshed.access

    def get_access_token(self) -> str:
        return self.refresh_token_if_needed(self.store.load(self.profile_id))

    # -----------------
    # HTTP
    # -----------------

    def request(
        self,
        endpoint: str,
        *,
        method: str = "GET",
        params: Optional[Dict[str, Any]] = None,
        json_body: Any = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Optional[Any]:
        """Make an authenticated Web API request and return parsed JSON (or None)."""

        access_token = self.get_access_token()
        url = endpoint if endpoint.startswith("http") else f"{SPOTIFY_API_BASE_URL}{endpoint}"

        merged_headers = {
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
        }
        merged_headers.update(headers or {})

        query = {k: str(v) for k, v in params.items() if v is not None} if params else None

        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                resp = client.request(
                    method.upper(),
                    url,
                    params=query,
                    content=json.dumps(json_body) if json_body is not None else None,
                    headers=merged_headers,
                )
        except httpx.HTTPError as e:
            raise SpotifyRequestError(f"Spotify API request failed: {e}") from e

        if not resp.is_success:
            raise SpotifyAPIError(resp.status_code, _error_message(resp))

        if resp.status_code == 204 or not resp.content:
            return None

        try:
            return resp.json()
        except ValueError as e:
            raise SpotifyRequestError(f"Spotify API response was not JSON (status {resp.status_code}): {resp.text}") from e

    # -----------------
    # Convenience endpoints
    # -----------------

    def me(self) -> Dict[str, Any]:
        return self.request("/me") or {}
