"""Login flow orchestration.

Ties PKCE/state generation, provider configuration, the loopback server
registry and the token client into the two-step flow a front end drives:

1. ``start_flow`` returns the authorize URL immediately (the loopback
   server is already listening) so the caller can open a browser.
2. ``wait_for_callback`` later resolves the redirect to a code, after
   which ``exchange_code`` obtains tokens.
"""

from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass, replace
from typing import TYPE_CHECKING, Any

from forge_login.exceptions import OAuthError, StateMismatchError
from forge_login.logging_config import get_logger
from forge_login.oauth.loopback import LoopbackServer, parse_redirect_url
from forge_login.oauth.pkce import new_pkce
from forge_login.oauth.providers import (
    OAuthProvider,
    ProviderStrategy,
    RedirectStrategy,
    provider_from_config,
)
from forge_login.oauth.registry import PendingServerRegistry
from forge_login.oauth.token_client import TokenClient
from forge_login.security import constant_time_equals, generate_state

if TYPE_CHECKING:
    from forge_login.config import Config
    from forge_login.oauth.loopback import CallbackOutcome
    from forge_login.oauth.token_client import OAuthTokenResponse

logger = get_logger(__name__)


@dataclass(frozen=True)
class StartOAuthResponse:
    """Everything the caller keeps between starting and finishing a login.

    Attributes:
        authorize_url: URL to open in the browser
        verifier: PKCE verifier for the token exchange
        state: CSRF state the callback must echo
        loopback_port: Port of the pending loopback server, None for
            custom-scheme providers
        redirect_uri: Redirect URI to repeat in the token exchange
        provider: Provider the flow was started for
    """

    authorize_url: str
    verifier: str
    state: str
    loopback_port: int | None
    redirect_uri: str
    provider: OAuthProvider

    def to_frontend(self) -> dict[str, Any]:
        """Dump with camelCase keys."""
        data = asdict(self)
        return {
            "authorizeUrl": data["authorize_url"],
            "verifier": data["verifier"],
            "state": data["state"],
            "loopbackPort": data["loopback_port"],
            "redirectUri": data["redirect_uri"],
            "provider": str(self.provider),
        }


def verify_state(expected: str, received: str | None) -> None:
    """Reject a callback whose state does not match the issued one.

    Raises:
        StateMismatchError: If the values differ or the state is missing
    """
    if not received or not constant_time_equals(expected, received):
        raise StateMismatchError()


def _resolve_code(outcome: CallbackOutcome, expected_state: str) -> str:
    code = outcome.unwrap()
    verify_state(expected_state, getattr(outcome, "state", None))
    return code


class LoginFlowManager:
    """Drives OAuth logins for all supported providers.

    Owns the registry of pending loopback servers; pass one in to share it
    or to inspect it in tests.
    """

    def __init__(
        self,
        config: Config,
        registry: PendingServerRegistry | None = None,
        token_client: TokenClient | None = None,
    ) -> None:
        """Initialize the manager.

        Args:
            config: Login configuration
            registry: Pending server registry (a private one by default)
            token_client: Token client (created from config by default)
        """
        self.config = config
        self.registry = registry if registry is not None else PendingServerRegistry()
        self.token_client = token_client or TokenClient(timeout=config.http_timeout)

    def provider(self, provider: OAuthProvider | str) -> ProviderStrategy:
        """Return the strategy for a provider with configured defaults."""
        return provider_from_config(provider, self.config)

    def _client_id(self, provider: OAuthProvider, client_id: str | None) -> str:
        resolved = client_id or self.config.client_id_for(provider)
        if not resolved:
            msg = f"No OAuth client ID configured for {provider}"
            raise OAuthError(msg)
        return resolved

    def _bind_server(self, strategy: ProviderStrategy) -> LoopbackServer:
        if strategy.redirect_strategy is RedirectStrategy.FIXED_PORT:
            if strategy.fixed_port is None:
                msg = f"{strategy.provider} requires a fixed callback port"
                raise OAuthError(msg)
            return LoopbackServer.bind_required(strategy.fixed_port, host=self.config.callback_host)
        return LoopbackServer.bind(self.config.preferred_ports, host=self.config.callback_host)

    def start_flow(
        self,
        provider: OAuthProvider | str,
        client_id: str | None = None,
        instance_url: str | None = None,
    ) -> StartOAuthResponse:
        """Start a login and return the authorize URL.

        For loopback providers the callback server is bound and registered
        before this returns.

        Args:
            provider: Provider enum member or name
            client_id: OAuth client ID (falls back to configuration)
            instance_url: GitLab base URL, or the tenant for Azure

        Returns:
            StartOAuthResponse

        Raises:
            UnknownProviderError: If the provider is not supported
            PortUnavailableError: If Bitbucket's fixed port is taken
            BindFailureError: If no callback port could be bound
        """
        strategy = self.provider(provider)
        resolved_client_id = self._client_id(strategy.provider, client_id)

        pkce = new_pkce()
        state = generate_state()

        server: LoopbackServer | None = None
        port: int | None = None
        if strategy.uses_loopback:
            server = self._bind_server(strategy)
            try:
                port = self.registry.register(server)
            except OAuthError:
                server.shutdown()
                raise

        config = strategy.build_config(resolved_client_id, instance=instance_url, port=port)
        if server is not None:
            # The listener may sit on a configured host other than 127.0.0.1
            config = replace(config, redirect_uri=server.redirect_uri)
        logger.info(
            "Started %s OAuth flow (redirect: %s)",
            strategy.provider,
            config.redirect_uri,
        )

        return StartOAuthResponse(
            authorize_url=config.build_authorize_url(pkce, state),
            verifier=pkce.verifier,
            state=state,
            loopback_port=port,
            redirect_uri=config.redirect_uri,
            provider=strategy.provider,
        )

    async def wait_for_outcome(
        self,
        port: int,
        timeout: float | None = None,
    ) -> CallbackOutcome:
        """Wait for the pending server on ``port`` to resolve.

        The server leaves the registry immediately, so waiting twice on
        the same port raises ``ServerNotFoundError``. If the awaiting task
        is cancelled the server is told to stop; its worker exits and
        releases the port on its own thread, so the event loop never joins it.

        Raises:
            ServerNotFoundError: If no server is pending on the port
        """
        server = self.registry.take(port)
        wait = timeout if timeout is not None else self.config.callback_timeout
        try:
            return await asyncio.to_thread(server.wait_for_callback, wait)
        except asyncio.CancelledError:
            server.stop()
            raise

    async def wait_for_callback(
        self,
        port: int,
        expected_state: str,
        timeout: float | None = None,
    ) -> str:
        """Wait for the loopback callback and return the authorization code.

        Args:
            port: Port returned by ``start_flow``
            expected_state: State returned by ``start_flow``
            timeout: Seconds to wait (configured default when None)

        Returns:
            Authorization code

        Raises:
            ServerNotFoundError: If no server is pending on the port
            CallbackTimeoutError: If no callback arrived in time
            ProviderDeniedError: If the provider returned an error
            MalformedCallbackError: If the callback had no code or error
            CallbackTransportError: If the request could not be read
            FlowCancelledError: If the flow was cancelled while waiting
            StateMismatchError: If the callback state does not match
        """
        outcome = await self.wait_for_outcome(port, timeout)
        return _resolve_code(outcome, expected_state)

    def complete_redirect(self, url: str, expected_state: str) -> str:
        """Resolve a custom-scheme redirect (e.g. Azure) to a code.

        Args:
            url: Full redirect URL delivered by the host OS
            expected_state: State returned by ``start_flow``

        Returns:
            Authorization code
        """
        return _resolve_code(parse_redirect_url(url), expected_state)

    def cancel_flow(self, port: int) -> bool:
        """Abandon a pending loopback flow (no-op if already gone)."""
        return self.registry.cancel(port)

    async def exchange_code(
        self,
        provider: OAuthProvider | str,
        code: str,
        verifier: str,
        redirect_uri: str,
        client_id: str | None = None,
        client_secret: str | None = None,
        instance_url: str | None = None,
    ) -> OAuthTokenResponse:
        """Exchange a code for tokens, filling credentials from configuration."""
        strategy = self.provider(provider)
        return await self.token_client.exchange(
            strategy.provider,
            code,
            verifier,
            redirect_uri,
            self._client_id(strategy.provider, client_id),
            client_secret or self.config.client_secret_for(strategy.provider),
            instance_url=strategy.resolve_instance(instance_url),
        )

    async def refresh_token(
        self,
        provider: OAuthProvider | str,
        refresh_token: str,
        client_id: str | None = None,
        client_secret: str | None = None,
        instance_url: str | None = None,
    ) -> OAuthTokenResponse:
        """Refresh tokens, filling credentials from configuration."""
        strategy = self.provider(provider)
        return await self.token_client.refresh(
            strategy.provider,
            refresh_token,
            self._client_id(strategy.provider, client_id),
            client_secret or self.config.client_secret_for(strategy.provider),
            instance_url=strategy.resolve_instance(instance_url),
        )

    async def close(self) -> None:
        """Shut down pending servers and the HTTP client."""
        await asyncio.to_thread(self.registry.shutdown_all)
        await self.token_client.close()

    async def __aenter__(self) -> LoginFlowManager:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()
