"""Token endpoint client.

Exchanges authorization codes and refresh tokens against the provider
token endpoints and normalizes their different response shapes.
"""

from __future__ import annotations

import json
from typing import Any

import httpx
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

from forge_login.exceptions import ProviderTokenError, TokenExchangeError, TokenParseError
from forge_login.logging_config import get_logger
from forge_login.oauth.providers import OAuthProvider, get_provider
from forge_login.security import mask_sensitive_data, redact

logger = get_logger(__name__)

# Default HTTP timeout for token requests
DEFAULT_TIMEOUT = 30.0


class OAuthTokenResponse(BaseModel):
    """Tokens returned by a provider.

    Accepts snake_case keys as sent by providers and camelCase keys as
    already normalized by a front end.
    """

    model_config = ConfigDict(frozen=True)

    access_token: str = Field(
        validation_alias=AliasChoices("access_token", "accessToken"),
        serialization_alias="accessToken",
    )
    refresh_token: str | None = Field(
        default=None,
        validation_alias=AliasChoices("refresh_token", "refreshToken"),
        serialization_alias="refreshToken",
    )
    expires_in: int | None = Field(
        default=None,
        validation_alias=AliasChoices("expires_in", "expiresIn"),
        serialization_alias="expiresIn",
    )
    token_type: str | None = Field(
        default=None,
        validation_alias=AliasChoices("token_type", "tokenType"),
        serialization_alias="tokenType",
    )
    scope: str | None = None

    def to_frontend(self) -> dict[str, Any]:
        """Dump with camelCase keys, omitting unset optional fields."""
        return self.model_dump(by_alias=True, exclude_none=True)

    def __repr__(self) -> str:
        return (
            f"OAuthTokenResponse(access_token={redact(self.access_token)}, "
            f"refresh_token={redact(self.refresh_token)}, expires_in={self.expires_in}, "
            f"token_type={self.token_type}, scope={self.scope})"
        )

    __str__ = __repr__


def parse_token_response(body: str, status_code: int | None = None) -> OAuthTokenResponse:
    """Parse a token endpoint body.

    Any JSON object carrying an ``error`` key is treated as a failure,
    whatever the HTTP status and whichever the provider.

    Args:
        body: Raw response text
        status_code: HTTP status, kept on raised errors for diagnostics

    Returns:
        Parsed token response

    Raises:
        ProviderTokenError: If the body carries an ``error`` field
        TokenParseError: If the body is not JSON or lacks ``access_token``
    """
    try:
        data = json.loads(body)
    except ValueError as e:
        raise TokenParseError(
            f"Failed to parse token response: {e}", status_code=status_code
        ) from e

    if not isinstance(data, dict):
        raise TokenParseError("Token response is not a JSON object", status_code=status_code)

    error = data.get("error")
    if error:
        description = data.get("error_description") or "Unknown error"
        raise ProviderTokenError(
            str(error),
            str(description),
            status_code=status_code,
            response_body=data,
        )

    try:
        return OAuthTokenResponse.model_validate(data)
    except ValidationError as e:
        fields = ", ".join(str(err["loc"][0]) for err in e.errors() if err["loc"])
        raise TokenParseError(
            f"Invalid token response (fields: {fields or 'unknown'})",
            status_code=status_code,
        ) from e


def _error_payload(body: str) -> dict[str, Any] | None:
    """Return the body as a dict if it is a JSON object with ``error``."""
    try:
        data = json.loads(body)
    except ValueError:
        return None
    if isinstance(data, dict) and data.get("error"):
        return data
    return None


class TokenClient:
    """Performs authorization-code and refresh-token grants.

    Calls share no state beyond the HTTP connection pool and may run
    concurrently. No retries are attempted; a failed exchange means the
    caller restarts the login.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        """Initialize the token client.

        Args:
            http_client: Optional custom HTTP client
            timeout: Request timeout when the client is created here
        """
        self._http_client = http_client
        self._owns_client = http_client is None
        self._timeout = timeout

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self._timeout)
        return self._http_client

    async def close(self) -> None:
        """Close HTTP client if we own it."""
        if self._owns_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    async def __aenter__(self) -> TokenClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def exchange(
        self,
        provider: OAuthProvider | str,
        code: str,
        verifier: str,
        redirect_uri: str,
        client_id: str,
        client_secret: str | None = None,
        instance_url: str | None = None,
    ) -> OAuthTokenResponse:
        """Exchange an authorization code for tokens.

        Args:
            provider: Provider the code was issued by
            code: Authorization code from the callback
            verifier: PKCE verifier generated for this attempt
            redirect_uri: Redirect URI used in the authorize request
            client_id: OAuth client identifier
            client_secret: Client secret, if the app requires one
            instance_url: GitLab base URL or Azure tenant

        Returns:
            OAuthTokenResponse

        Raises:
            TokenExchangeError: On transport failure or non-2xx status
            ProviderTokenError: If the body carries an ``error`` field
            TokenParseError: If the body cannot be parsed as tokens
        """
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
            "client_id": client_id,
            "code_verifier": verifier,
        }
        if client_secret:
            data["client_secret"] = client_secret

        logger.debug(
            "Exchanging authorization code with %s (client: %s, secret: %s)",
            provider,
            client_id,
            redact(client_secret),
        )
        tokens = await self._request_tokens(provider, data, instance_url, "Token exchange")
        logger.info(
            "Exchanged authorization code with %s (refresh token: %s)",
            provider,
            "yes" if tokens.refresh_token else "no",
        )
        return tokens

    async def refresh(
        self,
        provider: OAuthProvider | str,
        refresh_token: str,
        client_id: str,
        client_secret: str | None = None,
        instance_url: str | None = None,
    ) -> OAuthTokenResponse:
        """Obtain fresh tokens with a refresh token.

        Args:
            provider: Provider that issued the refresh token
            refresh_token: The refresh token
            client_id: OAuth client identifier
            client_secret: Client secret, if the app requires one
            instance_url: GitLab base URL or Azure tenant

        Returns:
            OAuthTokenResponse

        Raises:
            TokenExchangeError: On transport failure or non-2xx status
            ProviderTokenError: If the body carries an ``error`` field
            TokenParseError: If the body cannot be parsed as tokens
        """
        data = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": client_id,
        }
        if client_secret:
            data["client_secret"] = client_secret

        logger.debug("Refreshing access token with %s", provider)
        tokens = await self._request_tokens(provider, data, instance_url, "Token refresh")
        logger.info("Refreshed access token with %s", provider)
        return tokens

    async def _request_tokens(
        self,
        provider: OAuthProvider | str,
        data: dict[str, str],
        instance_url: str | None,
        action: str,
    ) -> OAuthTokenResponse:
        token_url = get_provider(provider).token_endpoint(instance_url)
        client = await self._get_client()
        logger.debug("%s request to %s: %s", action, token_url, mask_sensitive_data(data))

        try:
            response = await client.post(
                token_url,
                data=data,
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as e:
            logger.error("%s request to %s failed: %s", action, token_url, e)
            raise TokenExchangeError(f"{action} request failed: {e}") from e

        if not response.is_success:
            logger.error(
                "%s failed: %s %s",
                action,
                response.status_code,
                response.reason_phrase,
            )
            payload = _error_payload(response.text)
            if payload is not None:
                raise ProviderTokenError(
                    str(payload["error"]),
                    str(payload.get("error_description") or "Unknown error"),
                    status_code=response.status_code,
                    response_body=payload,
                )
            raise TokenExchangeError(
                f"{action} failed with status {response.status_code}: {response.text}",
                status_code=response.status_code,
                response_body=response.text,
            )

        try:
            return parse_token_response(response.text, response.status_code)
        except ProviderTokenError as e:
            logger.error("%s rejected by %s: %s", action, provider, e.error)
            raise
