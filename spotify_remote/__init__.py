"""Spotify Web API remote control: OAuth PKCE login and authenticated requests.

Login picks the loopback callback or the manual paste flow depending on the
environment (see environment.py); the resulting credential is stored in an
auth-profiles JSON file and refreshed on demand by SpotifyClient.
"""

from .auth import SpotifyPKCEAuth, get_client_credentials
from .client import SpotifyClient
from .credential_store import Credential, JsonCredentialStore
from .login import SpotifyLoginFlow, login_spotify_vps_aware

__all__ = [
    "Credential",
    "JsonCredentialStore",
    "SpotifyClient",
    "SpotifyLoginFlow",
    "SpotifyPKCEAuth",
    "get_client_credentials",
    "login_spotify_vps_aware",
]
