"""Git hosting OAuth providers.

Each provider is a small strategy object exposing its endpoints, default
scopes and the way the browser redirect reaches us. Adding a provider
means adding one strategy class and one enum member.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, ClassVar
from urllib.parse import quote, urlencode

from forge_login.exceptions import UnknownProviderError
from forge_login.oauth.pkce import PKCEChallenge

if TYPE_CHECKING:
    from forge_login.config import Config

LOOPBACK_HOST = "127.0.0.1"
CALLBACK_PATH = "/callback"

DEFAULT_GITLAB_URL = "https://gitlab.com"
DEFAULT_AZURE_TENANT = "common"
DEFAULT_AZURE_REDIRECT_URI = "leviathan://oauth/azure/callback"

# Bitbucket allows exactly one registered callback URL
BITBUCKET_PORT = 8085

# Azure DevOps resource scope
AZURE_DEVOPS_SCOPE = "499b84ac-1321-427f-aa17-267ca6975798/user_impersonation"


class OAuthProvider(str, Enum):
    """Supported OAuth providers."""

    GITHUB = "github"
    GITLAB = "gitlab"
    AZURE = "azure"
    BITBUCKET = "bitbucket"

    def __str__(self) -> str:
        return self.value

    @classmethod
    def parse(cls, name: OAuthProvider | str) -> OAuthProvider:
        """Parse a provider name case-insensitively.

        Raises:
            UnknownProviderError: If the name is not a supported provider
        """
        if isinstance(name, OAuthProvider):
            return name
        try:
            return cls(name.strip().lower())
        except ValueError:
            raise UnknownProviderError(name) from None


class RedirectStrategy(str, Enum):
    """How the authorization redirect reaches the application."""

    # Loopback server on a preferred port, falling back to an ephemeral one
    LOOPBACK = "loopback"
    # Loopback server on one fixed port, no fallback
    FIXED_PORT = "fixed_port"
    # Custom URL scheme delivered by the host OS
    CUSTOM_SCHEME = "custom_scheme"


def loopback_redirect_uri(port: int, host: str = LOOPBACK_HOST) -> str:
    """Return the loopback redirect URI for a bound port."""
    return f"http://{host}:{port}{CALLBACK_PATH}"


@dataclass(frozen=True)
class OAuthConfig:
    """Resolved OAuth settings for a single login attempt."""

    client_id: str
    authorize_url: str
    token_url: str
    scopes: tuple[str, ...]
    redirect_uri: str

    @property
    def scope(self) -> str:
        """Scopes joined the way they are sent on the wire."""
        return " ".join(self.scopes)

    def build_authorize_url(self, pkce: PKCEChallenge, state: str) -> str:
        """Render the browser authorization URL.

        Args:
            pkce: PKCE pair for this attempt
            state: CSRF state token

        Returns:
            Authorization URL with every query value percent-encoded
        """
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": self.scope,
            "state": state,
            "code_challenge": pkce.challenge,
            "code_challenge_method": "S256",
        }
        return f"{self.authorize_url}?{urlencode(params, quote_via=quote)}"


class ProviderStrategy(ABC):
    """Per-provider endpoints, scopes and redirect handling.

    ``instance`` is the GitLab base URL for GitLab and the tenant for
    Azure; other providers ignore it.
    """

    provider: ClassVar[OAuthProvider]
    redirect_strategy: ClassVar[RedirectStrategy]
    scopes: ClassVar[tuple[str, ...]]

    # The single callback port a FIXED_PORT provider has registered
    fixed_port: int | None = None

    @classmethod
    def from_config(cls, config: Config) -> ProviderStrategy:
        """Build the strategy with the defaults configured for it."""
        return cls()

    @property
    def default_instance(self) -> str | None:
        """Instance used when the caller does not name one."""
        return None

    def resolve_instance(self, instance: str | None) -> str | None:
        return instance or self.default_instance

    @abstractmethod
    def authorize_endpoint(self, instance: str | None = None) -> str:
        """Return the authorization endpoint URL."""

    @abstractmethod
    def token_endpoint(self, instance: str | None = None) -> str:
        """Return the token endpoint URL."""

    def default_scopes(self) -> tuple[str, ...]:
        return self.scopes

    @property
    def uses_loopback(self) -> bool:
        return self.redirect_strategy is not RedirectStrategy.CUSTOM_SCHEME

    def redirect_uri(self, port: int | None) -> str:
        """Return the redirect URI for the given callback port."""
        if port is None:
            msg = f"{self.provider} requires a loopback callback port"
            raise ValueError(msg)
        return loopback_redirect_uri(port)

    def build_config(
        self,
        client_id: str,
        instance: str | None = None,
        port: int | None = None,
    ) -> OAuthConfig:
        """Assemble the OAuth settings for one login attempt."""
        return OAuthConfig(
            client_id=client_id,
            authorize_url=self.authorize_endpoint(instance),
            token_url=self.token_endpoint(instance),
            scopes=self.default_scopes(),
            redirect_uri=self.redirect_uri(port),
        )


class GitHubProvider(ProviderStrategy):
    provider = OAuthProvider.GITHUB
    redirect_strategy = RedirectStrategy.LOOPBACK
    scopes = ("repo", "read:user")

    def authorize_endpoint(self, instance: str | None = None) -> str:
        return "https://github.com/login/oauth/authorize"

    def token_endpoint(self, instance: str | None = None) -> str:
        return "https://github.com/login/oauth/access_token"


class GitLabProvider(ProviderStrategy):
    provider = OAuthProvider.GITLAB
    redirect_strategy = RedirectStrategy.LOOPBACK
    scopes = ("api", "read_user")

    def __init__(self, default_url: str = DEFAULT_GITLAB_URL) -> None:
        self.default_url = default_url

    @classmethod
    def from_config(cls, config: Config) -> GitLabProvider:
        return cls(default_url=config.gitlab_url)

    @property
    def default_instance(self) -> str:
        return self.default_url

    def _base_url(self, instance: str | None) -> str:
        return (instance or self.default_url).rstrip("/")

    def authorize_endpoint(self, instance: str | None = None) -> str:
        return f"{self._base_url(instance)}/oauth/authorize"

    def token_endpoint(self, instance: str | None = None) -> str:
        return f"{self._base_url(instance)}/oauth/token"


class AzureProvider(ProviderStrategy):
    """Microsoft Entra ID for Azure DevOps.

    Only work/school accounts are supported; personal Microsoft accounts
    must use a personal access token instead.
    """

    provider = OAuthProvider.AZURE
    redirect_strategy = RedirectStrategy.CUSTOM_SCHEME
    scopes = (AZURE_DEVOPS_SCOPE, "offline_access")

    def __init__(
        self,
        default_tenant: str = DEFAULT_AZURE_TENANT,
        custom_redirect_uri: str = DEFAULT_AZURE_REDIRECT_URI,
    ) -> None:
        self.default_tenant = default_tenant
        self.custom_redirect_uri = custom_redirect_uri

    @classmethod
    def from_config(cls, config: Config) -> AzureProvider:
        return cls(
            default_tenant=config.azure_tenant,
            custom_redirect_uri=config.azure_redirect_uri,
        )

    @property
    def default_instance(self) -> str:
        return self.default_tenant

    def authorize_endpoint(self, instance: str | None = None) -> str:
        tenant = instance or self.default_tenant
        return f"https://login.microsoftonline.com/{tenant}/oauth2/v2.0/authorize"

    def token_endpoint(self, instance: str | None = None) -> str:
        tenant = instance or self.default_tenant
        return f"https://login.microsoftonline.com/{tenant}/oauth2/v2.0/token"

    def redirect_uri(self, port: int | None) -> str:
        return self.custom_redirect_uri


class BitbucketProvider(ProviderStrategy):
    """Bitbucket Cloud.

    Bitbucket only accepts http(s) redirects and a single registered
    callback URL, so the loopback server must own ``fixed_port``.
    """

    provider = OAuthProvider.BITBUCKET
    redirect_strategy = RedirectStrategy.FIXED_PORT
    scopes = ("repository", "pullrequest", "account")

    def __init__(self, fixed_port: int = BITBUCKET_PORT) -> None:
        self.fixed_port = fixed_port

    @classmethod
    def from_config(cls, config: Config) -> BitbucketProvider:
        return cls(fixed_port=config.bitbucket_port)

    def authorize_endpoint(self, instance: str | None = None) -> str:
        return "https://bitbucket.org/site/oauth2/authorize"

    def token_endpoint(self, instance: str | None = None) -> str:
        return "https://bitbucket.org/site/oauth2/access_token"


_STRATEGIES: dict[OAuthProvider, type[ProviderStrategy]] = {
    OAuthProvider.GITHUB: GitHubProvider,
    OAuthProvider.GITLAB: GitLabProvider,
    OAuthProvider.AZURE: AzureProvider,
    OAuthProvider.BITBUCKET: BitbucketProvider,
}


def get_provider(provider: OAuthProvider | str) -> ProviderStrategy:
    """Return a strategy with default settings for a provider.

    Raises:
        UnknownProviderError: If the provider is not supported
    """
    return _STRATEGIES[OAuthProvider.parse(provider)]()


def provider_from_config(provider: OAuthProvider | str, config: Config) -> ProviderStrategy:
    """Return a strategy carrying the defaults from ``config``.

    Raises:
        UnknownProviderError: If the provider is not supported
    """
    return _STRATEGIES[OAuthProvider.parse(provider)].from_config(config)


def build_config(
    provider: OAuthProvider | str,
    client_id: str,
    instance_url: str | None = None,
    tenant: str | None = None,
    port: int | None = None,
) -> OAuthConfig:
    """Build the OAuth settings for a provider.

    Args:
        provider: Provider enum member or name
        client_id: OAuth client identifier
        instance_url: GitLab base URL (default https://gitlab.com)
        tenant: Azure tenant (default "common")
        port: Bound loopback port; required for loopback providers

    Returns:
        OAuthConfig for one login attempt
    """
    strategy = get_provider(provider)
    instance = tenant if strategy.provider is OAuthProvider.AZURE else instance_url
    return strategy.build_config(client_id, instance=instance, port=port)
