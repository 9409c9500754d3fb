"""Exception types raised by the Spotify auth flow and request layer."""

from enum import Enum
from typing import Optional


class SpotifyAuthError(RuntimeError):
    """Base class for OAuth, credential and configuration failures."""


class ConfigurationError(SpotifyAuthError):
    """Client id / secret (or other required settings) are missing."""


# -----------------
# Protocol errors
# -----------------


class OAuthCallbackError(SpotifyAuthError):
    """The provider redirect did not carry a usable authorization code."""


class CallbackInputError(OAuthCallbackError):
    """Pasted redirect URL / code could not be parsed."""


class StateMismatchError(OAuthCallbackError):
    """Callback `state` does not match the verifier of this attempt."""


# -----------------
# Transport errors
# -----------------


class CallbackServerErrorKind(Enum):
    ADDRESS_IN_USE = "address_in_use"
    LISTEN_FAILURE = "listen_failure"
    OTHER = "other"


class CallbackServerError(SpotifyAuthError):
    """The loopback callback listener could not bind, listen or serve."""

    def __init__(self, message: str, *, kind: CallbackServerErrorKind = CallbackServerErrorKind.OTHER):
        super().__init__(message)
        self.kind = kind

    @property
    def allows_manual_fallback(self) -> bool:
        return self.kind in (CallbackServerErrorKind.ADDRESS_IN_USE, CallbackServerErrorKind.LISTEN_FAILURE)


class TokenExchangeError(SpotifyAuthError):
    """Token endpoint rejected the request or returned an unusable payload."""

    def __init__(self, message: str, *, body: Optional[str] = None):
        super().__init__(message)
        self.body = body


class TokenRefreshError(TokenExchangeError):
    pass


# -----------------
# Storage errors
# -----------------


class CredentialStoreError(SpotifyAuthError):
    pass


class CredentialsNotFoundError(CredentialStoreError):
    """The credential file does not exist yet."""


class ProfileNotFoundError(CredentialStoreError):
    """The credential file exists but holds no Spotify OAuth entry for the profile."""


# -----------------
# Web API errors
# -----------------


class SpotifyRequestError(RuntimeError):
    """A Web API request could not be completed."""


class SpotifyAPIError(SpotifyRequestError):
    """Spotify answered a Web API request with a non-2xx status."""

    def __init__(self, status: int, message: str):
        super().__init__(f"Spotify API error ({status}): {message}")
        self.status = status
        self.message = message
