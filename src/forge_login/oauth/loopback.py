"""Loopback HTTP server for OAuth redirects.

A short-lived listener on ``127.0.0.1`` receives the provider redirect
that the user's browser follows after authorizing. The server accepts
requests on a dedicated worker thread until one request to ``/callback``
resolves it, then answers with a small HTML page and stops listening.
Requests for any other path (favicons, probes) are answered with 404 and
do not end the wait.
"""

from __future__ import annotations

import html
import os
import socket
import threading
import weakref
from collections.abc import Iterable
from dataclasses import dataclass
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any
from urllib.parse import parse_qs, urlsplit

from forge_login.exceptions import (
    BindFailureError,
    CallbackTimeoutError,
    CallbackTransportError,
    FlowCancelledError,
    MalformedCallbackError,
    OAuthError,
    PortUnavailableError,
    ProviderDeniedError,
    ServerAlreadyConsumedError,
)
from forge_login.logging_config import get_logger
from forge_login.oauth.providers import CALLBACK_PATH, LOOPBACK_HOST, loopback_redirect_uri

logger = get_logger(__name__)

# Ports registered as redirect URIs with the OAuth apps
DEFAULT_PREFERRED_PORTS = (8080, 8081)

# Reference wait for the user to finish in the browser
DEFAULT_CALLBACK_TIMEOUT = 300.0

# Upper bound on how long a shutdown request waits for the accept loop
POLL_INTERVAL = 0.05

# Per-connection read timeout
READ_TIMEOUT = 5.0

# How long shutdown() waits for the worker thread to exit
JOIN_TIMEOUT = 2.0


@dataclass(frozen=True)
class CallbackOutcome:
    """Result of waiting on a loopback server or parsing a redirect."""

    @property
    def ok(self) -> bool:
        return False

    def to_exception(self) -> OAuthError:
        """Return the typed error for a failed outcome.

        Failure variants return their own error type; this generic error
        is what any other outcome reports.
        """
        return OAuthError(f"Authorization failed ({type(self).__name__})")

    def unwrap(self) -> str:
        """Return the authorization code or raise the typed error."""
        raise self.to_exception()


@dataclass(frozen=True)
class CallbackCode(CallbackOutcome):
    """The provider redirected back with an authorization code."""

    code: str
    state: str | None = None

    @property
    def ok(self) -> bool:
        return True

    def unwrap(self) -> str:
        return self.code


@dataclass(frozen=True)
class CallbackError(CallbackOutcome):
    """The provider redirected back with ``error``/``error_description``."""

    error: str
    description: str
    state: str | None = None

    def to_exception(self) -> OAuthError:
        return ProviderDeniedError(self.error, self.description)


@dataclass(frozen=True)
class CallbackMalformed(CallbackOutcome):
    """A ``/callback`` request carried neither ``code`` nor ``error``."""

    reason: str = "No authorization code received"

    def to_exception(self) -> OAuthError:
        return MalformedCallbackError(self.reason)


@dataclass(frozen=True)
class CallbackTimeout(CallbackOutcome):
    """No callback arrived within the wait."""

    timeout: float

    def to_exception(self) -> OAuthError:
        return CallbackTimeoutError(
            f"Login timed out after {self.timeout:g} seconds waiting for the browser callback."
        )


@dataclass(frozen=True)
class CallbackTransportFailure(CallbackOutcome):
    """Accepting or reading the callback request failed."""

    reason: str

    def to_exception(self) -> OAuthError:
        return CallbackTransportError(self.reason)


@dataclass(frozen=True)
class CallbackCancelled(CallbackOutcome):
    """The server was shut down before any callback arrived."""

    def to_exception(self) -> OAuthError:
        return FlowCancelledError()


def parse_callback_query(query: str) -> CallbackOutcome:
    """Classify the query string of a redirect.

    ``error`` wins over ``code`` when both are present.

    Args:
        query: Raw (percent-encoded) query string without the leading ``?``

    Returns:
        CallbackCode, CallbackError or CallbackMalformed
    """
    params = parse_qs(query)
    state = params.get("state", [None])[0]

    if "error" in params:
        description = params.get("error_description", ["Unknown error"])[0]
        return CallbackError(error=params["error"][0], description=description, state=state)

    if "code" in params:
        return CallbackCode(code=params["code"][0], state=state)

    return CallbackMalformed()


def parse_redirect_url(url: str) -> CallbackOutcome:
    """Classify a full redirect URL, e.g. a custom-scheme deep link."""
    return parse_callback_query(urlsplit(url).query)


_PAGE_TEMPLATE = """<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <title>{title}</title>
    <style>
        body {{
            font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif;
            display: flex;
            justify-content: center;
            align-items: center;
            height: 100vh;
            margin: 0;
            background: {background};
            color: white;
        }}
        .container {{
            text-align: center;
            padding: 40px;
            background: rgba(255, 255, 255, 0.1);
            border-radius: 12px;
        }}
        h1 {{ margin: 0 0 10px 0; }}
        p {{ margin: 0; opacity: 0.9; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>{title}</h1>
        <p>{message}</p>
    </div>
    {script}
</body>
</html>"""


def render_success_page() -> str:
    return _PAGE_TEMPLATE.format(
        title="Authorization Successful",
        background="linear-gradient(135deg, #667eea 0%, #764ba2 100%)",
        message="You can close this window and return to the application.",
        script="<script>setTimeout(() => window.close(), 3000);</script>",
    )


def render_failure_page(message: str) -> str:
    return _PAGE_TEMPLATE.format(
        title="Authorization Failed",
        background="linear-gradient(135deg, #ff6b6b 0%, #ee5a5a 100%)",
        message=html.escape(message),
        script="",
    )


def _failure_message(outcome: CallbackOutcome) -> str:
    if isinstance(outcome, CallbackError):
        return outcome.description
    if isinstance(outcome, CallbackMalformed):
        return outcome.reason
    return "Authorization failed"


class _CallbackRequestHandler(BaseHTTPRequestHandler):
    """Answers one HTTP request on the loopback listener."""

    server: _CallbackHTTPServer
    timeout = READ_TIMEOUT

    def do_GET(self) -> None:
        parsed = urlsplit(self.path)
        if parsed.path.rstrip("/") != CALLBACK_PATH:
            self._send_html(404, render_failure_page("Not found"))
            return

        outcome = parse_callback_query(parsed.query)
        if outcome.ok:
            self._send_html(200, render_success_page())
        else:
            self._send_html(200, render_failure_page(_failure_message(outcome)))

        logger.info(
            "Received OAuth callback on port %d (%s)",
            self.server.server_port,
            type(outcome).__name__,
        )
        self.server.resolve(outcome)

    def do_HEAD(self) -> None:
        self._send_html(404, "")

    def do_OPTIONS(self) -> None:
        self.send_response(204)
        self.send_header("Allow", "GET")
        self.send_header("Content-Length", "0")
        self.end_headers()

    def _send_html(self, status: int, body: str) -> None:
        data = body.encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "text/html; charset=utf-8")
        self.send_header("Content-Length", str(len(data)))
        self.send_header("Connection", "close")
        self.end_headers()
        if self.command != "HEAD":
            self.wfile.write(data)

    def log_message(self, format: str, *args: Any) -> None:
        # Route http.server access logs away from stderr; never includes the query
        logger.debug("%s %s", self.address_string(), getattr(self, "command", None) or "-")


class _CallbackHTTPServer(ThreadingHTTPServer):
    """HTTP server that records the first terminal outcome.

    Each connection is read on its own daemon thread, so an idle browser
    pre-connection cannot hold up the real callback.
    """

    # POSIX SO_REUSEADDR lets a port in TIME_WAIT be rebound but still
    # refuses a second listener; Windows needs an exclusive bind instead.
    allow_reuse_address = os.name != "nt"
    daemon_threads = True
    timeout = POLL_INTERVAL

    def __init__(self, address: tuple[str, int]) -> None:
        self.outcome: CallbackOutcome | None = None
        self._outcome_lock = threading.Lock()
        super().__init__(address, _CallbackRequestHandler)

    def server_bind(self) -> None:
        if os.name == "nt":
            self.socket.setsockopt(socket.SOL_SOCKET, socket.SO_EXCLUSIVEADDRUSE, 1)
        super().server_bind()

    def resolve(self, outcome: CallbackOutcome) -> None:
        with self._outcome_lock:
            if self.outcome is None:
                self.outcome = outcome

    def get_request(self) -> tuple[Any, Any]:
        try:
            return super().get_request()
        except OSError as e:
            self.resolve(CallbackTransportFailure(f"Accept error: {e}"))
            raise

    def handle_error(self, request: Any, client_address: Any) -> None:
        logger.exception("Failed to read OAuth callback request from %s", client_address)
        self.resolve(CallbackTransportFailure("Failed to read request"))


def _serve_until_resolved(
    httpd: _CallbackHTTPServer,
    stop: threading.Event,
    finished: threading.Event,
) -> None:
    """Accept loop run on the worker thread."""
    try:
        while not stop.is_set() and httpd.outcome is None:
            httpd.handle_request()
    except Exception as e:
        logger.exception("OAuth loopback server on port %d failed", httpd.server_port)
        httpd.resolve(CallbackTransportFailure(f"Server error: {e}"))
    finally:
        httpd.server_close()
        finished.set()
        logger.debug("OAuth loopback server on port %d stopped", httpd.server_port)


def _stop_worker(stop: threading.Event, thread: threading.Thread) -> None:
    stop.set()
    if thread is not threading.current_thread():
        thread.join(JOIN_TIMEOUT)


class LoopbackServer:
    """A temporary loopback server for one OAuth callback.

    Use :meth:`bind` or :meth:`bind_required` to create one; the port is
    bound and the worker thread running before either returns. Exactly one
    outcome is produced. Shutting down (explicitly, via the context
    manager, or when the object is garbage collected) stops the worker and
    closes the listening socket; repeated shutdowns are no-ops.
    """

    def __init__(self, httpd: _CallbackHTTPServer) -> None:
        self._httpd = httpd
        self._stop = threading.Event()
        self._finished = threading.Event()
        self._consumed = False
        self._lock = threading.Lock()

        self._thread = threading.Thread(
            target=_serve_until_resolved,
            args=(httpd, self._stop, self._finished),
            name=f"oauth-loopback-{httpd.server_port}",
            daemon=True,
        )
        self._thread.start()
        self._finalizer = weakref.finalize(self, _stop_worker, self._stop, self._thread)

    @classmethod
    def bind(
        cls,
        preferred_ports: Iterable[int] = DEFAULT_PREFERRED_PORTS,
        host: str = LOOPBACK_HOST,
    ) -> LoopbackServer:
        """Bind the first free preferred port, else an ephemeral port.

        Args:
            preferred_ports: Ports tried in order
            host: Interface to bind

        Returns:
            Running LoopbackServer

        Raises:
            BindFailureError: If not even an ephemeral port can be bound
        """
        for port in preferred_ports:
            try:
                httpd = _CallbackHTTPServer((host, port))
            except OSError as e:
                logger.debug("Preferred callback port %d unavailable: %s", port, e)
                continue
            logger.info("OAuth loopback server bound to preferred port %d", port)
            return cls(httpd)

        logger.info("Preferred ports unavailable, using an ephemeral port")
        try:
            httpd = _CallbackHTTPServer((host, 0))
        except OSError as e:
            raise BindFailureError(f"Failed to bind loopback server: {e}") from e
        logger.info("OAuth loopback server bound to port %d", httpd.server_port)
        return cls(httpd)

    @classmethod
    def bind_required(cls, port: int, host: str = LOOPBACK_HOST) -> LoopbackServer:
        """Bind exactly ``port`` without falling back.

        Raises:
            PortUnavailableError: If the port cannot be bound
        """
        try:
            httpd = _CallbackHTTPServer((host, port))
        except OSError as e:
            raise PortUnavailableError(port, str(e)) from e
        logger.info("OAuth loopback server bound to required port %d", port)
        return cls(httpd)

    @property
    def port(self) -> int:
        return self._httpd.server_port

    @property
    def host(self) -> str:
        return str(self._httpd.server_address[0])

    @property
    def redirect_uri(self) -> str:
        return loopback_redirect_uri(self.port, self.host)

    @property
    def is_running(self) -> bool:
        return self._thread.is_alive()

    def wait_for_callback(self, timeout: float = DEFAULT_CALLBACK_TIMEOUT) -> CallbackOutcome:
        """Block until the callback resolves, the timeout elapses, or shutdown.

        Run this off the event loop (e.g. ``asyncio.to_thread``). The server
        is stopped before this returns.

        Args:
            timeout: Seconds to wait

        Returns:
            The server's single outcome

        Raises:
            ServerAlreadyConsumedError: If called more than once
        """
        with self._lock:
            if self._consumed:
                raise ServerAlreadyConsumedError()
            self._consumed = True

        resolved = self._finished.wait(timeout)
        self.shutdown()

        outcome = self._httpd.outcome
        if outcome is not None:
            return outcome
        if not resolved:
            logger.warning("OAuth callback on port %d timed out after %gs", self.port, timeout)
            return CallbackTimeout(timeout)
        return CallbackCancelled()

    def stop(self) -> None:
        """Ask the worker to stop without waiting for it.

        The worker closes the listening socket within ``POLL_INTERVAL``.
        Safe to call from an event loop; use :meth:`shutdown` to wait.
        """
        self._stop.set()

    def shutdown(self) -> None:
        """Stop the worker, wait for it, and close the socket (idempotent).

        Joins the worker thread for up to ``JOIN_TIMEOUT``; from async code
        call it through ``asyncio.to_thread`` or use :meth:`stop`.
        """
        self._finalizer()

    def __enter__(self) -> LoopbackServer:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.shutdown()

    def __repr__(self) -> str:
        return f"LoopbackServer(port={self.port}, running={self.is_running})"
