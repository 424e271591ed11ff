"""Tests for the loopback callback server."""

from __future__ import annotations

import gc
import http.client
import socket
import threading
import time

import pytest

from forge_login.exceptions import (
    CallbackTimeoutError,
    CallbackTransportError,
    FlowCancelledError,
    MalformedCallbackError,
    OAuthError,
    PortUnavailableError,
    ProviderDeniedError,
    ServerAlreadyConsumedError,
)
from forge_login.oauth.loopback import (
    CallbackCancelled,
    CallbackCode,
    CallbackError,
    CallbackMalformed,
    CallbackOutcome,
    CallbackTimeout,
    CallbackTransportFailure,
    LoopbackServer,
    parse_callback_query,
    parse_redirect_url,
    render_failure_page,
)


def _request(port: int, path: str, method: str = "GET") -> tuple[int, str]:
    conn = http.client.HTTPConnection("127.0.0.1", port, timeout=5)
    try:
        conn.request(method, path)
        response = conn.getresponse()
        return response.status, response.read().decode("utf-8")
    finally:
        conn.close()


class TestParseCallbackQuery:
    """Tests for parse_callback_query function."""

    def test_code(self) -> None:
        """Test a code with state."""
        assert parse_callback_query("code=abc123&state=xyz") == CallbackCode("abc123", "xyz")

    def test_error_with_description(self) -> None:
        """Test provider errors are decoded."""
        outcome = parse_callback_query("error=access_denied&error_description=User+denied")
        assert outcome == CallbackError("access_denied", "User denied")

    def test_error_default_description(self) -> None:
        """Test a missing error_description defaults to Unknown error."""
        outcome = parse_callback_query("error=server_error")
        assert outcome == CallbackError("server_error", "Unknown error")

    def test_error_wins_over_code(self) -> None:
        """Test error takes precedence when both are present."""
        outcome = parse_callback_query("code=abc&error=access_denied&state=s")
        assert isinstance(outcome, CallbackError)
        assert outcome.state == "s"

    @pytest.mark.parametrize("query", ["", "state=xyz", "code=", "foo=bar"])
    def test_malformed(self, query: str) -> None:
        """Test queries without a usable code or error."""
        assert isinstance(parse_callback_query(query), CallbackMalformed)

    def test_percent_decoding(self) -> None:
        """Test values are percent-decoded."""
        assert parse_callback_query("code=a%2Fb%3D").unwrap() == "a/b="

    def test_parse_redirect_url(self) -> None:
        """Test parsing a custom-scheme deep link."""
        outcome = parse_redirect_url("leviathan://oauth/azure/callback?code=XYZ&state=s1")
        assert outcome == CallbackCode("XYZ", "s1")


class TestCallbackOutcome:
    """Tests for outcome to exception mapping."""

    def test_code_unwraps(self) -> None:
        """Test a code outcome unwraps to the code."""
        outcome = CallbackCode("abc")
        assert outcome.ok is True
        assert outcome.unwrap() == "abc"

    @pytest.mark.parametrize(
        ("outcome", "error_type"),
        [
            (CallbackError("access_denied", "User denied"), ProviderDeniedError),
            (CallbackMalformed(), MalformedCallbackError),
            (CallbackTimeout(0.05), CallbackTimeoutError),
            (CallbackTransportFailure("Failed to read request"), CallbackTransportError),
            (CallbackCancelled(), FlowCancelledError),
        ],
    )
    def test_failures_raise_typed_errors(self, outcome: object, error_type: type) -> None:
        """Test each failure outcome raises its typed error."""
        assert outcome.ok is False  # type: ignore[attr-defined]
        with pytest.raises(error_type):
            outcome.unwrap()  # type: ignore[attr-defined]

    def test_denied_message(self) -> None:
        """Test the provider error message combines code and description."""
        with pytest.raises(ProviderDeniedError, match="access_denied: User denied") as exc_info:
            CallbackError("access_denied", "User denied").unwrap()
        assert exc_info.value.error == "access_denied"
        assert exc_info.value.description == "User denied"

    def test_malformed_message(self) -> None:
        """Test the malformed callback message."""
        with pytest.raises(MalformedCallbackError, match="No authorization code received"):
            CallbackMalformed().unwrap()

    def test_base_outcome_has_generic_error(self) -> None:
        """Test the base outcome maps to a plain OAuthError."""
        outcome = CallbackOutcome()

        assert type(outcome.to_exception()) is OAuthError
        with pytest.raises(OAuthError, match="Authorization failed"):
            outcome.unwrap()


class TestLoopbackServerBinding:
    """Tests for port selection."""

    def test_binds_preferred_port(self, free_port: int) -> None:
        """Test the first free preferred port is used."""
        with LoopbackServer.bind([free_port]) as server:
            assert server.port == free_port
            assert server.redirect_uri == f"http://127.0.0.1:{free_port}/callback"

    def test_skips_occupied_preferred_port(self, occupied_port: int, free_port: int) -> None:
        """Test an occupied preferred port is skipped for the next one."""
        with LoopbackServer.bind([occupied_port, free_port]) as server:
            assert server.port == free_port

    def test_falls_back_to_ephemeral(self, occupied_port: int) -> None:
        """Test fallback to an OS-assigned port when preferred ports are taken."""
        with LoopbackServer.bind([occupied_port]) as server:
            assert server.port != occupied_port
            assert server.port > 0
            assert server.is_running

    def test_default_ports_or_fallback(self) -> None:
        """Test default binding yields 8080, 8081 or an ephemeral port."""
        with LoopbackServer.bind() as server:
            assert server.port > 0
            assert server.host == "127.0.0.1"

    def test_bind_required_occupied(self, occupied_port: int) -> None:
        """Test a required port that is taken fails without fallback."""
        with pytest.raises(PortUnavailableError) as exc_info:
            LoopbackServer.bind_required(occupied_port)

        assert exc_info.value.port == occupied_port
        assert f"Port {occupied_port} is not available" in str(exc_info.value)

    def test_bind_required_free(self, free_port: int) -> None:
        """Test binding a free required port."""
        with LoopbackServer.bind_required(free_port) as server:
            assert server.port == free_port

    def test_rebind_right_after_served_callback(self, free_port: int) -> None:
        """Test a port is reusable while the last callback sits in TIME_WAIT."""
        server = LoopbackServer.bind_required(free_port)
        status, _ = _request(free_port, "/callback?code=abc")
        assert status == 200
        assert server.wait_for_callback(5) == CallbackCode("abc")

        with LoopbackServer.bind_required(free_port) as again:
            assert again.port == free_port

    def test_second_listener_refused(self) -> None:
        """Test two live servers never share a required port."""
        with LoopbackServer.bind([]) as server:
            with pytest.raises(PortUnavailableError):
                LoopbackServer.bind_required(server.port)

    def test_concurrent_servers_use_distinct_ports(self) -> None:
        """Test simultaneous servers never share a port."""
        servers = [LoopbackServer.bind([]) for _ in range(3)]
        try:
            assert len({s.port for s in servers}) == 3
        finally:
            for server in servers:
                server.shutdown()


class TestLoopbackServerCallback:
    """Tests for receiving callbacks over real sockets."""

    def test_ignores_other_paths_then_resolves(self) -> None:
        """Test favicon requests do not end the wait."""
        server = LoopbackServer.bind([])

        status, _ = _request(server.port, "/favicon.ico")
        assert status == 404
        assert server.is_running

        status, body = _request(server.port, "/callback?code=abc123&state=xyz")
        assert status == 200
        assert "Authorization Successful" in body

        assert server.wait_for_callback(5) == CallbackCode("abc123", "xyz")
        assert not server.is_running

    def test_provider_error(self) -> None:
        """Test an error redirect resolves to a failure and renders it."""
        server = LoopbackServer.bind([])

        status, body = _request(
            server.port, "/callback?error=access_denied&error_description=User+denied"
        )

        assert status == 200
        assert "Authorization Failed" in body
        assert "User denied" in body
        assert server.wait_for_callback(5) == CallbackError("access_denied", "User denied")

    def test_missing_code(self) -> None:
        """Test a bare callback resolves as malformed."""
        server = LoopbackServer.bind([])

        status, body = _request(server.port, "/callback?state=xyz")

        assert status == 200
        assert "No authorization code received" in body
        assert isinstance(server.wait_for_callback(5), CallbackMalformed)

    def test_head_and_options_are_not_terminal(self) -> None:
        """Test probe requests are answered without resolving."""
        server = LoopbackServer.bind([])

        assert _request(server.port, "/callback", method="HEAD")[0] == 404
        assert _request(server.port, "/callback", method="OPTIONS")[0] == 204
        assert server.is_running

        _request(server.port, "/callback/?code=late")
        assert server.wait_for_callback(5).unwrap() == "late"

    def test_idle_connection_does_not_delay_callback(self) -> None:
        """Test a silent pre-connection does not hold up the real callback."""
        server = LoopbackServer.bind([])
        idle = socket.create_connection(("127.0.0.1", server.port), timeout=5)
        try:
            start = time.monotonic()
            status, _ = _request(server.port, "/callback?code=abc")
            elapsed = time.monotonic() - start

            assert status == 200
            assert elapsed < 1.0
            assert server.wait_for_callback(5) == CallbackCode("abc")
        finally:
            idle.close()
            server.shutdown()

    def test_callback_from_another_thread(self) -> None:
        """Test a wait started before the browser arrives."""
        server = LoopbackServer.bind([])
        port = server.port

        timer = threading.Timer(0.1, _request, args=(port, "/callback?code=later"))
        timer.start()
        try:
            assert server.wait_for_callback(5) == CallbackCode("later")
        finally:
            timer.join()


class TestLoopbackServerLifecycle:
    """Tests for timeout, shutdown and single use."""

    def test_timeout(self) -> None:
        """Test the wait times out promptly and stops the server."""
        server = LoopbackServer.bind([])

        start = time.monotonic()
        outcome = server.wait_for_callback(0.05)
        elapsed = time.monotonic() - start

        assert outcome == CallbackTimeout(0.05)
        assert elapsed < 0.2
        assert not server.is_running

    def test_port_released_after_timeout(self) -> None:
        """Test the port can be rebound after the server stops."""
        server = LoopbackServer.bind([])
        port = server.port
        server.wait_for_callback(0.05)

        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.bind(("127.0.0.1", port))

    def test_wait_twice(self) -> None:
        """Test a server's outcome can only be read once."""
        server = LoopbackServer.bind([])
        server.wait_for_callback(0.05)

        with pytest.raises(ServerAlreadyConsumedError):
            server.wait_for_callback(0.05)

    def test_shutdown_idempotent(self) -> None:
        """Test repeated shutdowns are no-ops."""
        server = LoopbackServer.bind([])

        server.shutdown()
        server.shutdown()

        assert not server.is_running

    def test_dropped_server_shuts_down(self) -> None:
        """Test garbage collecting an unresolved server stops its worker."""
        server = LoopbackServer.bind([])
        port = server.port
        worker = server._thread

        del server
        gc.collect()

        assert not worker.is_alive()
        with LoopbackServer.bind_required(port) as again:
            assert again.port == port

    def test_stop_does_not_wait(self) -> None:
        """Test stop() only signals the worker, which then exits."""
        server = LoopbackServer.bind([])

        server.stop()
        server._thread.join(1)

        assert not server.is_running
        assert server.wait_for_callback(1) == CallbackCancelled()

    def test_shutdown_before_wait(self) -> None:
        """Test waiting on a shut-down server reports cancellation."""
        server = LoopbackServer.bind([])
        server.shutdown()

        assert server.wait_for_callback(1) == CallbackCancelled()

    def test_shutdown_from_another_thread(self) -> None:
        """Test shutdown wakes a blocked waiter."""
        server = LoopbackServer.bind([])
        timer = threading.Timer(0.1, server.shutdown)
        timer.start()
        try:
            start = time.monotonic()
            outcome = server.wait_for_callback(5)
            assert outcome == CallbackCancelled()
            assert time.monotonic() - start < 2
        finally:
            timer.join()

    def test_repr(self) -> None:
        """Test repr shows the port."""
        with LoopbackServer.bind([]) as server:
            assert f"port={server.port}" in repr(server)


class TestRenderPages:
    """Tests for the HTML pages."""

    def test_failure_page_escapes_message(self) -> None:
        """Test provider-supplied text is HTML escaped."""
        page = render_failure_page("<script>alert(1)</script>")
        assert "<script>alert(1)</script>" not in page
        assert "&lt;script&gt;" in page
