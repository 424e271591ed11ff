"""Forge Login.

Browser-based OAuth 2.0 (Authorization Code + PKCE) login for GitHub,
GitLab, Azure DevOps and Bitbucket desktop clients.
"""

__version__ = "0.1.0"

from forge_login.config import Config, ConfigError, load_config
from forge_login.oauth.login import LoginFlowManager, StartOAuthResponse

__all__ = [
    "Config",
    "ConfigError",
    "LoginFlowManager",
    "StartOAuthResponse",
    "__version__",
    "load_config",
]
