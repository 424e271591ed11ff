"""Exceptions raised by the login subsystem."""

from __future__ import annotations


class OAuthError(Exception):
    """Base exception for OAuth login errors.

    Attributes:
        message: Human-readable error message
        status_code: HTTP status code (if applicable)
        response_body: Raw response body (if available)
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response_body: dict | str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.response_body = response_body

    def __str__(self) -> str:
        if self.status_code:
            return f"[{self.status_code}] {self.message}"
        return self.message


class UnknownProviderError(OAuthError):
    """Raised when a provider name does not match a supported provider."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Unknown OAuth provider: {name}")
        self.name = name


class PortUnavailableError(OAuthError):
    """Raised when a required callback port cannot be bound."""

    def __init__(self, port: int, reason: str = "") -> None:
        message = (
            f"Port {port} is not available for OAuth callback. "
            "Please close any application using this port and try again."
        )
        if reason:
            message = f"{message} Error: {reason}"
        super().__init__(message)
        self.port = port


class BindFailureError(OAuthError):
    """Raised when no callback port, preferred or ephemeral, could be bound."""


class CallbackTimeoutError(OAuthError):
    """Raised when no callback arrives before the wait times out."""

    def __init__(self, message: str = "Login timed out waiting for the browser callback.") -> None:
        super().__init__(message)


class ProviderDeniedError(OAuthError):
    """Raised when the provider redirects back with an ``error`` parameter.

    Attributes:
        error: OAuth error code (e.g. ``access_denied``)
        description: Provider supplied ``error_description``
    """

    def __init__(self, error: str, description: str) -> None:
        super().__init__(f"{error}: {description}")
        self.error = error
        self.description = description


class MalformedCallbackError(OAuthError):
    """Raised when a callback carries neither ``code`` nor ``error``."""

    def __init__(self, message: str = "No authorization code received") -> None:
        super().__init__(message)


class CallbackTransportError(OAuthError):
    """Raised when the callback server fails to accept or read a request."""


class FlowCancelledError(OAuthError):
    """Raised when a pending flow is shut down before its callback arrives."""

    def __init__(self, message: str = "Login was cancelled before a callback arrived.") -> None:
        super().__init__(message)


class StateMismatchError(OAuthError):
    """Raised when the callback ``state`` does not match the issued value."""

    def __init__(self, message: str = "State mismatch - possible CSRF attack") -> None:
        super().__init__(message)


class TokenExchangeError(OAuthError):
    """Raised when the token endpoint rejects a request or is unreachable."""


class ProviderTokenError(TokenExchangeError):
    """Raised when the token endpoint answers with an ``error`` payload.

    GitHub reports failures this way with HTTP 200.

    Attributes:
        error: OAuth error code from the body
        description: ``error_description`` from the body
    """

    def __init__(
        self,
        error: str,
        description: str,
        status_code: int | None = None,
        response_body: dict | str | None = None,
    ) -> None:
        super().__init__(f"{error}: {description}", status_code, response_body)
        self.error = error
        self.description = description


class TokenParseError(OAuthError):
    """Raised when a token response is not JSON or lacks ``access_token``."""


class ServerNotFoundError(OAuthError):
    """Raised when no pending callback server is registered for a port."""

    def __init__(self, port: int) -> None:
        super().__init__(f"No server found for port {port}")
        self.port = port


class ServerAlreadyConsumedError(OAuthError):
    """Raised when a callback server's outcome has already been read."""

    def __init__(self, message: str = "Server already consumed") -> None:
        super().__init__(message)
