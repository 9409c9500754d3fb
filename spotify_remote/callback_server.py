"""Single-use loopback listener that captures the OAuth redirect."""

import errno
import logging
import threading
import urllib.parse
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Optional, Union

from .auth import CALLBACK_PATH, REDIRECT_HOST, REDIRECT_PORT, CallbackResult
from .errors import (
    CallbackServerError,
    CallbackServerErrorKind,
    OAuthCallbackError,
    SpotifyAuthError,
    StateMismatchError,
)

logger = logging.getLogger(__name__)

# How often wait_for_callback wakes up to check whether a handler thread finished.
POLL_INTERVAL = 0.2

SUCCESS_HTML = (
    "<html><body><h1>Success!</h1>"
    "<p>You can close this window and return to the terminal.</p></body></html>"
)
NO_CODE_HTML = "<html><body><h1>Error</h1><p>No authorization code received.</p></body></html>"
STATE_MISMATCH_HTML = "<html><body><h1>Error</h1><p>State mismatch. Please try again.</p></body></html>"
SERVER_ERROR_HTML = "<html><body><h1>Error</h1></body></html>"
NOT_FOUND_HTML = "<html><body><h1>Not found</h1></body></html>"


def _first(qs, key: str) -> Optional[str]:
    values = qs.get(key)
    return str(values[0]) if values else None


class _CallbackHandler(BaseHTTPRequestHandler):
    server: "_CallbackHTTPServer"

    # Drop sockets that connect and never send a request (browser preconnects).
    timeout = 5

    def log_message(self, format, *args):
        logger.debug("callback server: " + format, *args)

    def _send_html(self, status: int, body: str) -> None:
        payload = body.encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "text/html; charset=utf-8")
        self.send_header("Content-Length", str(len(payload)))
        self.end_headers()
        self.wfile.write(payload)

    def _send_page(self, status: int, body: str) -> None:
        try:
            self._send_html(status, body)
        except OSError as e:
            logger.debug("Could not deliver the %s page to the browser: %s", status, e)

    def do_GET(self):
        parsed = urllib.parse.urlparse(self.path)
        if parsed.path != self.server.callback_path:
            self._send_page(404, NOT_FOUND_HTML)
            return

        try:
            qs = urllib.parse.parse_qs(parsed.query)
            code = _first(qs, "code")
            state = _first(qs, "state")

            if not code:
                error = _first(qs, "error")
                message = "No authorization code received"
                if error:
                    message = f"{message} (Spotify returned: {error})"
                self.server.resolve(OAuthCallbackError(message))
                self._send_page(400, NO_CODE_HTML)
                return

            if state != self.server.expected_state:
                self.server.resolve(StateMismatchError("OAuth state mismatch"))
                self._send_page(400, STATE_MISMATCH_HTML)
                return

            self.server.resolve(CallbackResult(code=code, state=state))
            self._send_page(200, SUCCESS_HTML)
        except Exception as e:
            logger.exception("Callback handler failed")
            self.server.resolve(CallbackServerError(f"Callback handling failed: {e}"))
            self._send_page(500, SERVER_ERROR_HTML)


class _CallbackHTTPServer(ThreadingHTTPServer):
    timeout = POLL_INTERVAL
    # Idle connections must not hold up close().
    block_on_close = False

    def __init__(self, address, expected_state: str, callback_path: str):
        self.expected_state = expected_state
        self.callback_path = callback_path
        self.outcome: Optional[Union[CallbackResult, SpotifyAuthError]] = None
        self._outcome_lock = threading.Lock()
        super().__init__(address, _CallbackHandler)

    def resolve(self, outcome: Union[CallbackResult, SpotifyAuthError]) -> None:
        """Record the first callback outcome; later ones are ignored."""

        with self._outcome_lock:
            if self.outcome is None:
                self.outcome = outcome


def _classify_bind_error(exc: OSError) -> CallbackServerErrorKind:
    if exc.errno == errno.EADDRINUSE:
        return CallbackServerErrorKind.ADDRESS_IN_USE
    return CallbackServerErrorKind.LISTEN_FAILURE


class CallbackServer:
    """Loopback HTTP listener for exactly one OAuth redirect.

    The socket is bound and listening as soon as the object is created, so a
    busy port is reported before the user is sent to Spotify. Call
    :meth:`wait_for_callback` to block (without timeout) until the redirect
    arrives; the listener is closed afterwards no matter the outcome.
    """

    def __init__(
        self,
        expected_state: str,
        *,
        host: str = REDIRECT_HOST,
        port: int = REDIRECT_PORT,
        callback_path: str = CALLBACK_PATH,
    ):
        try:
            self._httpd = _CallbackHTTPServer((host, port), expected_state, callback_path)
        except OSError as e:
            kind = _classify_bind_error(e)
            raise CallbackServerError(f"Could not listen on {host}:{port}: {e}", kind=kind) from e
        self._closed = False
        logger.debug("Callback server listening on %s:%s", host, self.port)

    @property
    def port(self) -> int:
        return int(self._httpd.server_address[1])

    def wait_for_callback(self) -> CallbackResult:
        try:
            while self._httpd.outcome is None:
                self._httpd.handle_request()
        finally:
            self.close()

        outcome = self._httpd.outcome
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._httpd.server_close()

    def __enter__(self) -> "CallbackServer":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
