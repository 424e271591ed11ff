"""OAuth 2.0 login module.

Provides PKCE generation, provider configuration, the loopback callback
server and token exchange for the Authorization Code flow.
"""

from forge_login.oauth.login import LoginFlowManager, StartOAuthResponse
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
)
from forge_login.oauth.pkce import PKCEChallenge, generate_code_challenge, generate_code_verifier
from forge_login.oauth.providers import (
    OAuthConfig,
    OAuthProvider,
    build_config,
    get_provider,
    provider_from_config,
)
from forge_login.oauth.registry import PendingServerRegistry
from forge_login.oauth.token_client import OAuthTokenResponse, TokenClient

__all__ = [
    "CallbackCancelled",
    "CallbackCode",
    "CallbackError",
    "CallbackMalformed",
    "CallbackOutcome",
    "CallbackTimeout",
    "CallbackTransportFailure",
    "LoginFlowManager",
    "LoopbackServer",
    "OAuthConfig",
    "OAuthProvider",
    "OAuthTokenResponse",
    "PKCEChallenge",
    "PendingServerRegistry",
    "StartOAuthResponse",
    "TokenClient",
    "build_config",
    "generate_code_challenge",
    "generate_code_verifier",
    "get_provider",
    "parse_callback_query",
    "parse_redirect_url",
    "provider_from_config",
]
