import os
import socket
import sys
import threading
import unittest
import urllib.parse
from unittest import mock

THIS_DIR = os.path.dirname(os.path.abspath(__file__))
if THIS_DIR not in sys.path:
    sys.path.insert(0, THIS_DIR)

import httpx

from spotify_remote.auth import SpotifyPKCEAuth
from spotify_remote.callback_server import CallbackServer, _CallbackHandler
from spotify_remote.environment import EnvironmentSnapshot
from spotify_remote.errors import (
    CallbackInputError,
    CallbackServerError,
    CallbackServerErrorKind,
    OAuthCallbackError,
    StateMismatchError,
)
from spotify_remote.login import SpotifyLoginFlow, login_spotify_vps_aware

LOCAL_DESKTOP = EnvironmentSnapshot(env={}, platform="darwin")
SSH_SESSION = EnvironmentSnapshot(env={"SSH_CLIENT": "10.0.0.1 5000 22"}, platform="linux", read_file=lambda p: "")


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


def _state_from(auth_url: str) -> str:
    return urllib.parse.parse_qs(urllib.parse.urlparse(auth_url).query)["state"][0]


def _get(url: str) -> httpx.Response:
    return httpx.get(url, timeout=5.0, trust_env=False)


class CallbackWaiter:
    """Runs CallbackServer.wait_for_callback on a worker thread."""

    def __init__(self, server: CallbackServer):
        self.server = server
        self.result = None
        self.error = None
        self._thread = threading.Thread(target=self._run, daemon=True)
        self._thread.start()

    def _run(self):
        try:
            self.result = self.server.wait_for_callback()
        except Exception as e:
            self.error = e

    def join(self):
        self._thread.join(timeout=5)
        assert not self._thread.is_alive(), "callback server did not finish"


class TestCallbackServer(unittest.TestCase):
    def _server(self, expected_state="verifier"):
        return CallbackServer(expected_state, host="127.0.0.1", port=0)

    def _assert_closed(self, port):
        with self.assertRaises(httpx.ConnectError):
            _get(f"http://127.0.0.1:{port}/callback?code=again&state=verifier")

    def test_valid_callback_resolves(self):
        server = self._server()
        waiter = CallbackWaiter(server)

        resp = _get(f"http://127.0.0.1:{server.port}/callback?code=abc&state=verifier")
        waiter.join()

        self.assertEqual(resp.status_code, 200)
        self.assertIn("Success", resp.text)
        self.assertIsNone(waiter.error)
        self.assertEqual((waiter.result.code, waiter.result.state), ("abc", "verifier"))
        self._assert_closed(server.port)

    def test_state_mismatch_rejects_and_closes(self):
        server = self._server()
        waiter = CallbackWaiter(server)

        resp = _get(f"http://127.0.0.1:{server.port}/callback?code=abc&state=attacker")
        waiter.join()

        self.assertEqual(resp.status_code, 400)
        self.assertIsInstance(waiter.error, StateMismatchError)
        self.assertIn("state mismatch", str(waiter.error))
        self._assert_closed(server.port)

    def test_missing_code_rejects_and_closes(self):
        server = self._server()
        waiter = CallbackWaiter(server)

        resp = _get(f"http://127.0.0.1:{server.port}/callback?error=access_denied&state=verifier")
        waiter.join()

        self.assertEqual(resp.status_code, 400)
        self.assertIsInstance(waiter.error, OAuthCallbackError)
        self.assertIn("No authorization code received", str(waiter.error))
        self.assertIn("access_denied", str(waiter.error))
        self._assert_closed(server.port)

    def test_other_paths_do_not_end_the_wait(self):
        server = self._server()
        waiter = CallbackWaiter(server)

        self.assertEqual(_get(f"http://127.0.0.1:{server.port}/favicon.ico").status_code, 404)
        _get(f"http://127.0.0.1:{server.port}/callback?code=abc&state=verifier")
        waiter.join()

        self.assertEqual(waiter.result.code, "abc")

    def test_idle_connection_does_not_block_callback(self):
        server = self._server()
        waiter = CallbackWaiter(server)

        # A browser preconnect: the socket is opened but no request is sent.
        with socket.create_connection(("127.0.0.1", server.port)):
            resp = _get(f"http://127.0.0.1:{server.port}/callback?code=abc&state=verifier")
            waiter.join()

        self.assertEqual(resp.status_code, 200)
        self.assertIsNone(waiter.error)
        self.assertEqual(waiter.result.code, "abc")

    def test_outcome_survives_a_failed_page_write(self):
        cases = [
            ("code=abc&state=verifier", None),
            ("code=abc&state=attacker", StateMismatchError),
            ("error=access_denied&state=verifier", OAuthCallbackError),
        ]
        for query, expected_error in cases:
            with self.subTest(query=query):
                server = self._server()
                waiter = CallbackWaiter(server)

                broken_pipe = BrokenPipeError(32, "Broken pipe")
                with mock.patch.object(_CallbackHandler, "_send_html", side_effect=broken_pipe):
                    with socket.create_connection(("127.0.0.1", server.port), timeout=5) as conn:
                        conn.sendall(f"GET /callback?{query} HTTP/1.0\r\n\r\n".encode("ascii"))
                        waiter.join()

                if expected_error is None:
                    self.assertIsNone(waiter.error)
                    self.assertEqual(waiter.result.code, "abc")
                else:
                    self.assertIsInstance(waiter.error, expected_error)

    def test_busy_port_is_address_in_use(self):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as blocker:
            blocker.bind(("127.0.0.1", 0))
            blocker.listen(1)
            port = blocker.getsockname()[1]

            with self.assertRaises(CallbackServerError) as ctx:
                CallbackServer("verifier", host="127.0.0.1", port=port)

        self.assertIs(ctx.exception.kind, CallbackServerErrorKind.ADDRESS_IN_USE)
        self.assertTrue(ctx.exception.allows_manual_fallback)

    def test_unbindable_address_is_listen_failure(self):
        # TEST-NET-3 address, not assigned to any local interface.
        with self.assertRaises(CallbackServerError) as ctx:
            CallbackServer("verifier", host="203.0.113.7", port=0)

        self.assertIs(ctx.exception.kind, CallbackServerErrorKind.LISTEN_FAILURE)
        self.assertTrue(ctx.exception.allows_manual_fallback)


class FakeTokenEndpoint:
    def __init__(self):
        self.forms = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/api/token":
            form = {k: v[0] for k, v in urllib.parse.parse_qs(request.read().decode("utf-8")).items()}
            self.forms.append(form)
            return httpx.Response(200, json={"access_token": "at", "refresh_token": "rt", "expires_in": 3600})
        if request.url.path == "/v1/me":
            return httpx.Response(200, json={"email": "ann@example.com", "display_name": "Ann"})
        return httpx.Response(404)


class LoginTestCase(unittest.TestCase):
    def setUp(self):
        self.endpoint = FakeTokenEndpoint()
        self.transport = httpx.MockTransport(self.endpoint)
        self.urls = []
        self.progress = []
        self.prompts = []
        self.reply = None

    def prompt(self, message):
        self.prompts.append(message)
        return self.reply(self.urls[-1]) if callable(self.reply) else self.reply

    def flow(self, **options):
        options.setdefault("open_browser", None)
        auth = SpotifyPKCEAuth("cid", "secret", transport=self.transport)
        return SpotifyLoginFlow(
            auth,
            on_url=self.urls.append,
            on_progress=self.progress.append,
            prompt=self.prompt,
            **options,
        )


class TestManualLogin(LoginTestCase):
    def test_pasted_redirect_url(self):
        self.reply = lambda url: f"http://localhost:8888/callback?code=abc&state={_state_from(url)}"

        cred = self.flow().run(SSH_SESSION)

        self.assertEqual(cred.access, "at")
        self.assertEqual(cred.email, "ann@example.com")
        self.assertEqual(len(self.prompts), 1)
        form = self.endpoint.forms[0]
        self.assertEqual(form["code"], "abc")
        # The verifier doubles as the OAuth state value.
        self.assertEqual(form["code_verifier"], _state_from(self.urls[0]))
        self.assertIn("Waiting for you to paste the callback URL...", self.progress)

    def test_pasted_bare_code(self):
        self.reply = "bare-code"
        self.flow().login_manual()
        self.assertEqual(self.endpoint.forms[0]["code"], "bare-code")

    def test_state_mismatch_aborts(self):
        self.reply = "http://localhost:8888/callback?code=abc&state=stale-state"
        with self.assertRaises(StateMismatchError) as ctx:
            self.flow().run(SSH_SESSION)
        self.assertIn("OAuth state mismatch", str(ctx.exception))
        self.assertEqual(self.endpoint.forms, [])

    def test_cancelled_prompt_is_no_input(self):
        self.reply = None
        with self.assertRaises(CallbackInputError) as ctx:
            self.flow().login_manual()
        self.assertIn("No input provided", str(ctx.exception))

    def test_instructions_go_to_callback_not_stdout(self):
        self.reply = "bare-code"
        shown = []

        with mock.patch("builtins.print") as fake_print:
            self.flow(on_instructions=shown.append).login_manual()

        fake_print.assert_not_called()
        self.assertEqual(len(shown), 1)
        self.assertIn("Copy the ENTIRE URL", shown[0])
        self.assertIn("http://localhost:8888/callback?code=xxx&state=yyy", shown[0])

    def test_each_attempt_uses_a_new_verifier(self):
        self.reply = lambda url: f"http://localhost:8888/callback?code=abc&state={_state_from(url)}"
        flow = self.flow()
        flow.login_manual()
        flow.login_manual()
        self.assertNotEqual(_state_from(self.urls[0]), _state_from(self.urls[1]))


class TestLocalLogin(LoginTestCase):
    def test_loopback_callback(self):
        port = _free_port()

        def browser(url):
            target = f"http://127.0.0.1:{port}/callback?code=local-code&state={_state_from(url)}"
            threading.Thread(target=_get, args=(target,), daemon=True).start()

        cred = self.flow(open_browser=browser, callback_host="127.0.0.1", callback_port=port).run(LOCAL_DESKTOP)

        self.assertEqual(cred.refresh, "rt")
        self.assertEqual(self.endpoint.forms[0]["code"], "local-code")
        self.assertEqual(self.prompts, [])
        self.assertIn("Opening browser for authorization...", self.progress)

    def test_busy_port_falls_back_to_manual(self):
        self.reply = lambda url: f"http://localhost:8888/callback?code=manual-code&state={_state_from(url)}"

        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as blocker:
            blocker.bind(("127.0.0.1", 0))
            blocker.listen(1)
            port = blocker.getsockname()[1]

            cred = self.flow(callback_host="127.0.0.1", callback_port=port).run(LOCAL_DESKTOP)

        self.assertEqual(cred.access, "at")
        self.assertIn("Local callback server failed. Switching to manual mode...", self.progress)
        self.assertEqual(self.endpoint.forms[0]["code"], "manual-code")
        # The URL is only shown for the manual attempt; the local one failed before that.
        self.assertEqual(len(self.urls), 1)

    def test_other_server_errors_propagate(self):
        failure = CallbackServerError("handler crashed", kind=CallbackServerErrorKind.OTHER)
        with mock.patch("spotify_remote.login.CallbackServer", side_effect=failure):
            with self.assertRaises(CallbackServerError):
                self.flow().run(LOCAL_DESKTOP)
        self.assertEqual(self.prompts, [])

    def test_browser_failure_is_not_fatal(self):
        port = _free_port()

        def browser(url):
            target = f"http://127.0.0.1:{port}/callback?code=c&state={_state_from(url)}"
            threading.Thread(target=_get, args=(target,), daemon=True).start()
            raise RuntimeError("no browser available")

        cred = self.flow(open_browser=browser, callback_host="127.0.0.1", callback_port=port).login_local()
        self.assertEqual(cred.access, "at")


class TestLoginEntryPoint(unittest.TestCase):
    def test_login_spotify_vps_aware_manual(self):
        endpoint = FakeTokenEndpoint()
        urls = []

        cred = login_spotify_vps_aware(
            "cid",
            "secret",
            urls.append,
            environment=SSH_SESSION,
            prompt=lambda message: f"http://localhost:8888/callback?code=xyz&state={_state_from(urls[-1])}",
            transport=httpx.MockTransport(endpoint),
        )

        self.assertEqual(cred.display_name, "Ann")
        self.assertEqual(endpoint.forms[0]["code"], "xyz")
        self.assertTrue(urls[0].startswith("https://accounts.spotify.com/authorize?"))


if __name__ == "__main__":
    unittest.main(verbosity=2)
