"""Command-line interface for forge-login.

Provides CLI commands for running a browser login, refreshing tokens and
printing authorization URLs for manual flows.
"""

from __future__ import annotations

import asyncio
import json
import sys
import webbrowser
from typing import Any

import typer

from forge_login import __version__
from forge_login.config import Config, ConfigError, load_config
from forge_login.exceptions import OAuthError
from forge_login.logging_config import get_logger, setup_logging
from forge_login.oauth.login import LoginFlowManager
from forge_login.oauth.token_client import OAuthTokenResponse

app = typer.Typer(
    name="forge-login",
    help="Forge Login - OAuth 2.0 browser login for Git hosting providers",
    add_completion=False,
)

logger = get_logger(__name__)

CONFIG_OPTION = typer.Option(
    None,
    "--config",
    "-c",
    help="Path to configuration file (JSON or YAML)",
)
LOG_LEVEL_OPTION = typer.Option(
    None,
    "--log-level",
    "-l",
    help="Log level override (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
)
CLIENT_ID_OPTION = typer.Option(None, "--client-id", help="OAuth client ID override")
CLIENT_SECRET_OPTION = typer.Option(
    None, "--client-secret", help="OAuth client secret override"
)
INSTANCE_URL_OPTION = typer.Option(
    None,
    "--instance-url",
    help="GitLab base URL, or the tenant for Azure",
)


def _load(config_path: str | None, log_level: str | None, **overrides: Any) -> Config:
    cli_args: dict[str, Any] = {"log_level": log_level, **overrides}
    config = load_config(path=config_path, cli_args=cli_args)
    setup_logging(config)
    return config


def _echo_json(data: dict[str, Any]) -> None:
    typer.echo(json.dumps(data, indent=2))


def _fail(message: str) -> typer.Exit:
    typer.echo(f"Error: {message}", err=True)
    return typer.Exit(code=1)


@app.command()
def login(
    provider: str = typer.Argument(..., help="github, gitlab, azure or bitbucket"),
    client_id: str | None = CLIENT_ID_OPTION,
    client_secret: str | None = CLIENT_SECRET_OPTION,
    instance_url: str | None = INSTANCE_URL_OPTION,
    no_browser: bool = typer.Option(
        False,
        "--no-browser",
        help="Print the authorization URL instead of opening a browser",
    ),
    timeout: float | None = typer.Option(
        None,
        "--timeout",
        "-t",
        help="Seconds to wait for the browser callback",
    ),
    config_path: str | None = CONFIG_OPTION,
    log_level: str | None = LOG_LEVEL_OPTION,
) -> None:
    """Log in through the browser and print the tokens as JSON.

    Loopback providers (GitHub, GitLab, Bitbucket) receive the redirect on
    a local port. For Azure the redirect uses a custom URL scheme, so the
    redirected URL has to be pasted back.
    """
    try:
        config = _load(config_path, log_level, callback_timeout=timeout)
        tokens = asyncio.run(
            _run_login(
                config,
                provider,
                client_id=client_id,
                client_secret=client_secret,
                instance_url=instance_url,
                open_browser=not no_browser,
            )
        )
    except (ConfigError, OAuthError) as e:
        raise _fail(str(e)) from None
    except KeyboardInterrupt:
        logger.info("Login interrupted")
        raise _fail("Login interrupted") from None

    _echo_json(tokens.to_frontend())


async def _run_login(
    config: Config,
    provider: str,
    client_id: str | None,
    client_secret: str | None,
    instance_url: str | None,
    open_browser: bool,
) -> OAuthTokenResponse:
    """Run one complete login.

    Args:
        config: Login configuration
        provider: Provider name
        client_id: Client ID override
        client_secret: Client secret override
        instance_url: GitLab base URL or Azure tenant
        open_browser: Whether to launch the system browser

    Returns:
        Tokens from the exchange
    """
    async with LoginFlowManager(config) as manager:
        start = manager.start_flow(provider, client_id=client_id, instance_url=instance_url)

        typer.echo(f"Open this URL to log in:\n{start.authorize_url}", err=True)
        if open_browser and not webbrowser.open(start.authorize_url):
            logger.warning("Could not open a browser; open the URL manually")

        if start.loopback_port is None:
            redirect_url = await asyncio.to_thread(
                typer.prompt, "Paste the URL you were redirected to", err=True
            )
            code = manager.complete_redirect(redirect_url, start.state)
        else:
            code = await manager.wait_for_callback(start.loopback_port, start.state)

        return await manager.exchange_code(
            start.provider,
            code,
            start.verifier,
            start.redirect_uri,
            client_id=client_id,
            client_secret=client_secret,
            instance_url=instance_url,
        )


@app.command()
def refresh(
    provider: str = typer.Argument(..., help="github, gitlab, azure or bitbucket"),
    refresh_token: str = typer.Argument(..., help="Refresh token to redeem"),
    client_id: str | None = CLIENT_ID_OPTION,
    client_secret: str | None = CLIENT_SECRET_OPTION,
    instance_url: str | None = INSTANCE_URL_OPTION,
    config_path: str | None = CONFIG_OPTION,
    log_level: str | None = LOG_LEVEL_OPTION,
) -> None:
    """Redeem a refresh token and print the new tokens as JSON."""
    try:
        config = _load(config_path, log_level)
        tokens = asyncio.run(
            _run_refresh(config, provider, refresh_token, client_id, client_secret, instance_url)
        )
    except (ConfigError, OAuthError) as e:
        raise _fail(str(e)) from None

    _echo_json(tokens.to_frontend())


async def _run_refresh(
    config: Config,
    provider: str,
    refresh_token: str,
    client_id: str | None,
    client_secret: str | None,
    instance_url: str | None,
) -> OAuthTokenResponse:
    async with LoginFlowManager(config) as manager:
        return await manager.refresh_token(
            provider,
            refresh_token,
            client_id=client_id,
            client_secret=client_secret,
            instance_url=instance_url,
        )


@app.command("authorize-url")
def authorize_url(
    provider: str = typer.Argument(..., help="github, gitlab, azure or bitbucket"),
    client_id: str | None = CLIENT_ID_OPTION,
    instance_url: str | None = INSTANCE_URL_OPTION,
    config_path: str | None = CONFIG_OPTION,
    log_level: str | None = LOG_LEVEL_OPTION,
) -> None:
    """Print the start-of-flow details (URL, verifier, state) as JSON.

    Nothing waits for the callback; any loopback server started for the
    flow is shut down before the command exits.
    """
    try:
        config = _load(config_path, log_level)
        manager = LoginFlowManager(config)
        try:
            start = manager.start_flow(provider, client_id=client_id, instance_url=instance_url)
        finally:
            asyncio.run(manager.close())
    except (ConfigError, OAuthError) as e:
        raise _fail(str(e)) from None

    _echo_json(start.to_frontend())


@app.command()
def version() -> None:
    """Print version information."""
    typer.echo(f"forge-login version {__version__}")
    typer.echo(f"Python {sys.version}")


def main() -> None:
    """Main entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
