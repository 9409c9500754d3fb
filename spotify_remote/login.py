"""VPS-aware Spotify login.

On a local desktop the redirect is captured by a loopback listener on
http://localhost:8888/callback. Over SSH, in remote containers, on headless
Linux and under WSL2 the user opens the URL in a browser elsewhere and pastes
the redirect URL (or just the code) back into the terminal. If the loopback
listener cannot bind, the manual flow is used instead.
"""

import logging
import webbrowser
from typing import Any, Callable, Optional

import questionary

from .auth import (
    CALLBACK_PATH,
    REDIRECT_HOST,
    REDIRECT_PORT,
    REDIRECT_URI,
    SpotifyPKCEAuth,
    build_authorize_url,
    generate_pkce_pair,
    parse_callback_input,
)
from .callback_server import CallbackServer
from .credential_store import Credential
from .environment import EnvironmentSnapshot, OAuthFlow, select_oauth_flow
from .errors import CallbackServerError, StateMismatchError

logger = logging.getLogger(__name__)

UrlCallback = Callable[[str], Any]
ProgressCallback = Callable[[str], Any]
Prompt = Callable[[str], Optional[str]]

MANUAL_PROMPT = "Paste the redirect URL here:"


def manual_flow_instructions() -> str:
    rule = "=" * 60
    return "\n".join(
        [
            "",
            rule,
            "VPS/Remote Mode - Manual OAuth",
            rule,
            "",
            "1. Open the URL above in your LOCAL browser",
            "2. Complete the Spotify authorization",
            "3. Your browser will redirect to a localhost URL that won't load",
            "4. Copy the ENTIRE URL from your browser's address bar",
            "5. Paste it below",
            "",
            "The URL will look like:",
            f"{REDIRECT_URI}?code=xxx&state=yyy",
            "",
        ]
    )


def questionary_prompt(message: str) -> Optional[str]:
    return questionary.text(message).ask()


class SpotifyLoginFlow:
    """One login invocation: picks a strategy, acquires a code, exchanges it.

    Every strategy run generates its own PKCE pair; the verifier is also the
    ``state`` value checked on the way back.
    """

    def __init__(
        self,
        auth: SpotifyPKCEAuth,
        *,
        on_url: UrlCallback,
        on_progress: Optional[ProgressCallback] = None,
        on_instructions: Optional[ProgressCallback] = None,
        prompt: Optional[Prompt] = None,
        open_browser: Optional[Callable[[str], Any]] = webbrowser.open,
        callback_host: str = REDIRECT_HOST,
        callback_port: int = REDIRECT_PORT,
    ):
        self.auth = auth
        self.on_url = on_url
        self.on_progress = on_progress
        self.on_instructions = on_instructions
        self.prompt = prompt or questionary_prompt
        self.open_browser = open_browser
        self.callback_host = callback_host
        self.callback_port = callback_port

    def _progress(self, message: str) -> None:
        logger.debug(message)
        if self.on_progress is not None:
            self.on_progress(message)

    def _instructions(self, text: str) -> None:
        show = self.on_instructions or self.on_progress
        if show is None:
            logger.info(text)
        else:
            show(text)

    def run(self, environment: Optional[EnvironmentSnapshot] = None) -> Credential:
        if select_oauth_flow(environment) is OAuthFlow.MANUAL:
            return self.login_manual()

        try:
            return self.login_local()
        except CallbackServerError as e:
            if not e.allows_manual_fallback:
                raise
            logger.info("Local callback server unavailable (%s): %s", e.kind.value, e)
            self._progress("Local callback server failed. Switching to manual mode...")
            return self.login_manual()

    def login_local(self) -> Credential:
        pkce = generate_pkce_pair()
        auth_url = build_authorize_url(self.auth.client_id, pkce.code_challenge, pkce.code_verifier)

        # Bind before showing the URL so a busy port can still fall back to manual mode.
        server = CallbackServer(
            pkce.code_verifier,
            host=self.callback_host,
            port=self.callback_port,
            callback_path=CALLBACK_PATH,
        )
        with server:
            self.on_url(auth_url)
            self._progress("Opening browser for authorization...")
            self._open_browser(auth_url)
            result = server.wait_for_callback()

        self._progress("Exchanging authorization code for tokens...")
        return self.auth.exchange_code_for_token(code=result.code, code_verifier=pkce.code_verifier)

    def login_manual(self) -> Credential:
        pkce = generate_pkce_pair()
        auth_url = build_authorize_url(self.auth.client_id, pkce.code_challenge, pkce.code_verifier)

        self.on_url(auth_url)
        self._progress("Waiting for you to paste the callback URL...")
        self._instructions(manual_flow_instructions())

        pasted = self.prompt(MANUAL_PROMPT)
        result = parse_callback_input(pasted, pkce.code_verifier)

        if result.state != pkce.code_verifier:
            raise StateMismatchError("OAuth state mismatch - please try again")

        self._progress("Exchanging authorization code for tokens...")
        return self.auth.exchange_code_for_token(code=result.code, code_verifier=pkce.code_verifier)

    def _open_browser(self, url: str) -> None:
        if self.open_browser is None:
            return
        try:
            self.open_browser(url)
        except Exception as e:
            logger.warning("Could not open a browser (%s). Open the URL above manually.", e)


def login_spotify_vps_aware(
    client_id: str,
    client_secret: str,
    on_url: UrlCallback,
    on_progress: Optional[ProgressCallback] = None,
    *,
    environment: Optional[EnvironmentSnapshot] = None,
    **flow_options: Any,
) -> Credential:
    """Run the Spotify login, choosing loopback or manual mode for this environment."""

    auth = SpotifyPKCEAuth(client_id, client_secret, transport=flow_options.pop("transport", None))
    flow = SpotifyLoginFlow(auth, on_url=on_url, on_progress=on_progress, **flow_options)
    return flow.run(environment)
