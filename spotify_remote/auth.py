import base64
import hashlib
import json
import logging
import os
import secrets
import urllib.parse
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Type

import httpx

from .credential_store import TOKEN_EXPIRY_MARGIN_MS, Credential
from .errors import CallbackInputError, ConfigurationError, TokenExchangeError, TokenRefreshError

logger = logging.getLogger(__name__)

SPOTIFY_ACCOUNTS_BASE_URL = "https://accounts.spotify.com"
SPOTIFY_AUTHORIZE_URL = f"{SPOTIFY_ACCOUNTS_BASE_URL}/authorize"
SPOTIFY_TOKEN_URL = f"{SPOTIFY_ACCOUNTS_BASE_URL}/api/token"
SPOTIFY_PROFILE_URL = "https://api.spotify.com/v1/me"

REDIRECT_HOST = "localhost"
REDIRECT_PORT = 8888
CALLBACK_PATH = "/callback"
REDIRECT_URI = f"http://{REDIRECT_HOST}:{REDIRECT_PORT}{CALLBACK_PATH}"

SPOTIFY_SCOPES = (
    "user-read-playback-state",
    "user-modify-playback-state",
    "user-read-currently-playing",
    "user-library-read",
    "user-library-modify",
    "playlist-read-private",
    "playlist-read-collaborative",
    "playlist-modify-public",
    "playlist-modify-private",
    "user-follow-read",
    "user-follow-modify",
    "user-top-read",
    "user-read-recently-played",
)


CLIENT_ID_ENV = "SPOTIFY_CLIENT_ID"
CLIENT_SECRET_ENV = "SPOTIFY_CLIENT_SECRET"


@dataclass(frozen=True)
class ClientCredentials:
    client_id: str
    client_secret: str


def _lookup_client_credentials(config: Dict[str, Any], env: Optional[Mapping[str, str]]) -> Dict[str, str]:
    config = config or {}
    env = os.environ if env is None else env

    out: Dict[str, str] = {}
    for field_name, env_key, config_key in (
        ("client_id", CLIENT_ID_ENV, "spotify_client_id"),
        ("client_secret", CLIENT_SECRET_ENV, "spotify_client_secret"),
    ):
        env_value = str(env.get(env_key) or "").strip()
        if env_value:
            out[field_name] = env_value
            out[f"{field_name}_source"] = "env"
            continue
        config_value = str(config.get(config_key) or "").strip()
        out[field_name] = config_value
        out[f"{field_name}_source"] = "config" if config_value else "missing"
    return out


def get_client_credentials(config: Optional[Dict[str, Any]] = None, env: Optional[Mapping[str, str]] = None) -> ClientCredentials:
    """Return the Spotify app credentials (environment first, then config.json)."""

    found = _lookup_client_credentials(config or {}, env)
    if not found["client_id"] or not found["client_secret"]:
        raise ConfigurationError(
            "Missing Spotify credentials. Set SPOTIFY_CLIENT_ID and SPOTIFY_CLIENT_SECRET environment variables, "
            "or spotify_client_id and spotify_client_secret in config.json."
        )
    return ClientCredentials(client_id=found["client_id"], client_secret=found["client_secret"])


def check_spotify_credentials(config: Dict[str, Any], env: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    """Validate Spotify app credentials and return a structured status dict."""

    found = _lookup_client_credentials(config or {}, env)
    missing = [
        name
        for name, key in ((CLIENT_ID_ENV, "client_id"), (CLIENT_SECRET_ENV, "client_secret"))
        if not found[key]
    ]

    status: Dict[str, Any] = {
        "ok": not missing,
        "client_id": found["client_id"],
        "client_id_source": found["client_id_source"],
        "client_secret_source": found["client_secret_source"],
        "redirect_uri": REDIRECT_URI,
        "scopes": list(SPOTIFY_SCOPES),
    }
    if missing:
        status["message"] = (
            f"Missing {', '.join(missing)}.\n"
            "Set the environment variable(s) or add spotify_client_id / spotify_client_secret to config.json."
        )
    else:
        status["message"] = "Spotify credentials look OK."
    return status


def spotify_app_setup_instructions(*, redirect_uri: str = REDIRECT_URI) -> str:
    """Return user-facing setup instructions for creating a Spotify Developer app."""

    return (
        "Spotify app setup:\n"
        "1) Go to https://developer.spotify.com/dashboard\n"
        "2) Create an app (or select an existing app)\n"
        f"3) Add this Redirect URI in the app settings: {redirect_uri}\n"
        "4) Copy the Client ID and Client Secret, then either:\n"
        f"   export {CLIENT_ID_ENV}='your-client-id'\n"
        f"   export {CLIENT_SECRET_ENV}='your-client-secret'\n"
        "   or set spotify_client_id / spotify_client_secret in config.json\n\n"
        "Notes:\n"
        "- Redirect URI must match *exactly* what you configure in the Spotify dashboard.\n"
        "- Environment variables take precedence over config.json.\n"
    )


def _base64url_no_pad(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("utf-8").rstrip("=")


def code_challenge_from_verifier(verifier: str) -> str:
    """Compute PKCE S256 code_challenge from code_verifier."""

    digest = hashlib.sha256((verifier or "").encode("utf-8")).digest()
    return _base64url_no_pad(digest)


@dataclass(frozen=True)
class PKCEPair:
    code_verifier: str
    code_challenge: str


def generate_pkce_pair() -> PKCEPair:
    """Generate a PKCE verifier + challenge.

    The verifier is also sent as the OAuth ``state`` value, so a new pair
    must be generated for every authorization attempt.
    """

    # RFC 7636: verifier length 43-128 chars, characters from ALPHA / DIGIT / "-" / "." / "_" / "~"
    verifier = secrets.token_urlsafe(64).rstrip("=")[:128]
    challenge = code_challenge_from_verifier(verifier)
    return PKCEPair(code_verifier=verifier, code_challenge=challenge)


def build_authorize_url(client_id: str, code_challenge: str, state: str) -> str:
    params: Dict[str, str] = {
        "client_id": str(client_id),
        "response_type": "code",
        "redirect_uri": REDIRECT_URI,
        "scope": " ".join(SPOTIFY_SCOPES),
        "code_challenge": str(code_challenge),
        "code_challenge_method": "S256",
        "state": str(state),
        "show_dialog": "false",
    }
    return f"{SPOTIFY_AUTHORIZE_URL}?{urllib.parse.urlencode(params)}"


def extract_code_from_redirect_url(redirect_url: str) -> Dict[str, str]:
    """Parse a redirect URL and return {"code": ..., "state": ...} (missing keys omitted)."""

    parsed = urllib.parse.urlparse(str(redirect_url or "").strip())
    qs = urllib.parse.parse_qs(parsed.query)
    out: Dict[str, str] = {}
    if qs.get("code"):
        out["code"] = str(qs["code"][0])
    if qs.get("state"):
        out["state"] = str(qs["state"][0])
    if qs.get("error"):
        out["error"] = str(qs["error"][0])
    return out


def _is_absolute_url(text: str) -> bool:
    # "localhost:8888/callback?code=..." (no "http://") parses with scheme "localhost".
    parsed = urllib.parse.urlparse(text)
    return bool(parsed.scheme and (parsed.netloc or parsed.query))


@dataclass(frozen=True)
class CallbackResult:
    code: str
    state: str


def parse_callback_input(text: Optional[str], expected_state: Optional[str]) -> CallbackResult:
    """Turn a pasted redirect URL (or bare code) into a CallbackResult.

    A URL without ``state`` and a bare code both fall back to
    ``expected_state``; the caller still compares the result's state
    against the verifier of the current attempt.
    """

    trimmed = (text or "").strip()
    if not trimmed:
        raise CallbackInputError("No input provided")

    if _is_absolute_url(trimmed):
        parsed = extract_code_from_redirect_url(trimmed)
        code = parsed.get("code")
        state = parsed.get("state") or expected_state

        if not code:
            if parsed.get("error"):
                raise CallbackInputError(f"Missing 'code' parameter in URL (Spotify returned: {parsed['error']})")
            raise CallbackInputError("Missing 'code' parameter in URL")
        if not state:
            raise CallbackInputError("Missing 'state' parameter. Paste the full URL.")

        return CallbackResult(code=code, state=state)

    if not expected_state:
        raise CallbackInputError("Paste the full redirect URL, not just the code.")
    return CallbackResult(code=trimmed, state=expected_state)


class SpotifyPKCEAuth:
    """Spotify token endpoint client (Authorization Code + PKCE, confidential app)."""

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        *,
        transport: Optional[httpx.BaseTransport] = None,
        timeout: float = 30.0,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.transport = transport
        self.timeout = timeout

    def _http_client(self) -> httpx.Client:
        return httpx.Client(timeout=self.timeout, follow_redirects=False, transport=self.transport)

    def exchange_code_for_token(self, *, code: str, code_verifier: str) -> Credential:
        payload = self._post_form(
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": REDIRECT_URI,
                "code_verifier": code_verifier,
            },
            failure="Token exchange failed",
            error_cls=TokenExchangeError,
        )

        if not payload.get("access_token"):
            raise TokenExchangeError("No access token received")
        if not payload.get("refresh_token"):
            # Access without a refresh token is useless for a long-lived login.
            raise TokenExchangeError("No refresh token received. Please try again.")

        profile = self.fetch_user_profile(str(payload["access_token"]))

        token = Credential.from_token_response(payload, margin_ms=TOKEN_EXPIRY_MARGIN_MS)
        return Credential(
            access=token.access,
            refresh=token.refresh,
            expires=token.expires,
            email=profile.get("email"),
            display_name=profile.get("display_name"),
        )

    def refresh_access_token(self, credential: Credential) -> Credential:
        """Exchange the stored refresh token for a new access token.

        Spotify may omit refresh_token on refresh; the existing one is kept.
        """

        if not credential.refresh:
            raise TokenRefreshError("No refresh token stored. Run the OAuth flow again.")

        payload = self._post_form(
            {
                "grant_type": "refresh_token",
                "refresh_token": credential.refresh,
            },
            failure="Token refresh failed",
            error_cls=TokenRefreshError,
        )

        if not payload.get("access_token"):
            raise TokenRefreshError(f"Token refresh failed: no access token in response: {payload}")

        token = Credential.from_token_response(payload, fallback_refresh=credential.refresh)
        return Credential(
            access=token.access,
            refresh=token.refresh,
            expires=token.expires,
            email=credential.email,
            display_name=credential.display_name,
        )

    def fetch_user_profile(self, access_token: str) -> Dict[str, Any]:
        """Best-effort {email, display_name} lookup; returns {} on any failure."""

        try:
            with self._http_client() as client:
                resp = client.get(SPOTIFY_PROFILE_URL, headers={"Authorization": f"Bearer {access_token}"})
            if not resp.is_success:
                logger.debug("Profile lookup returned HTTP %s", resp.status_code)
                return {}
            data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.debug("Profile lookup failed: %s", e)
            return {}

        if not isinstance(data, dict):
            return {}
        return {"email": data.get("email"), "display_name": data.get("display_name")}

    def _post_form(
        self,
        form: Dict[str, Any],
        *,
        failure: str,
        error_cls: Type[TokenExchangeError],
    ) -> Dict[str, Any]:
        data = {k: str(v) for k, v in (form or {}).items() if v is not None}

        try:
            with self._http_client() as client:
                resp = client.post(
                    SPOTIFY_TOKEN_URL,
                    data=data,
                    headers={"Content-Type": "application/x-www-form-urlencoded"},
                    auth=httpx.BasicAuth(self.client_id, self.client_secret),
                )
        except httpx.HTTPError as e:
            raise error_cls(f"{failure}: {e}") from e

        if not resp.is_success:
            raise error_cls(f"{failure}: {resp.text}", body=resp.text)

        try:
            payload = resp.json()
        except json.JSONDecodeError as e:
            raise error_cls(f"{failure}: response was not JSON: {resp.text}", body=resp.text) from e

        if not isinstance(payload, dict):
            raise error_cls(f"{failure}: response was not an object: {payload}", body=resp.text)

        return payload
