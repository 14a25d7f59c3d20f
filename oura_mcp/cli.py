"""CLI entry point for oura-mcp."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import NoReturn

import click

from . import __version__
from .config import ConfigError, OAuthSettings, load_settings
from .oauth import (
    AuthorizationTimeoutError,
    ListenerBindError,
    OAuthError,
    OAuthManager,
    ProviderDeniedError,
    StateMismatchError,
    UpstreamRejectedError,
)
from .output import OutputHandler

# Logger for CLI
logger = logging.getLogger("oura_mcp")


def _help_for(error: OAuthError, settings: OAuthSettings) -> str | None:
    """Operator guidance for the errors that have an obvious fix."""
    if isinstance(error, ListenerBindError):
        return (
            f"Free port {error.port}, or set OURA_REDIRECT_URI to another local URI "
            f"that is also registered for your Oura application."
        )
    if isinstance(error, StateMismatchError):
        return (
            "The callback did not belong to the authorization started here. "
            "Run 'oura-mcp auth login' again and use the URL it prints."
        )
    if isinstance(error, AuthorizationTimeoutError):
        return (
            f"Finish the browser authorization within {settings.auth_timeout:g} seconds, "
            f"or raise OURA_AUTH_TIMEOUT."
        )
    if isinstance(error, ProviderDeniedError):
        return "Authorization was declined or failed on the Oura side. Try again."
    if isinstance(error, UpstreamRejectedError):
        return (
            "Check OURA_CLIENT_ID, OURA_CLIENT_SECRET and that OURA_REDIRECT_URI "
            f"({settings.redirect_uri}) matches the registered redirect URI."
        )
    return None


@click.group()
@click.option("--json", "json_mode", is_flag=True, help="Output in JSON format")
@click.option("--env-file", "env_path", type=click.Path(exists=True), help="Path to a dotenv file")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
@click.version_option(version=__version__)
@click.pass_context
def main(ctx: click.Context, json_mode: bool, env_path: str | None, verbose: bool) -> None:
    """oura-mcp - Authenticate with the Oura Cloud API."""
    ctx.ensure_object(dict)
    ctx.obj["json_mode"] = json_mode
    ctx.obj["env_path"] = Path(env_path) if env_path else None
    ctx.obj["output"] = OutputHandler(json_mode)

    # Configure logging based on verbosity
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        )
    else:
        logging.basicConfig(level=logging.WARNING)


def get_settings(ctx: click.Context, require_credentials: bool = True) -> OAuthSettings | NoReturn:
    """Load settings, handling errors."""
    output: OutputHandler = ctx.obj["output"]
    try:
        return load_settings(ctx.obj["env_path"], require_credentials=require_credentials)
    except ConfigError as e:
        output.error(e, error_type="ConfigError", help_text=e.help_text)
        raise SystemExit(1)  # Never reached due to sys.exit in output.error


def get_manager(ctx: click.Context, require_credentials: bool = True) -> OAuthManager:
    """Build a manager whose status messages go to stderr."""
    output: OutputHandler = ctx.obj["output"]
    settings = get_settings(ctx, require_credentials)
    return OAuthManager(settings, on_status=output.status)


@main.group()
def auth() -> None:
    """Manage Oura authentication."""


@auth.command("login")
@click.option("--force", is_flag=True, help="Discard stored credentials and re-authorize")
@click.option("--timeout", "-t", type=float, default=None, help="Seconds to wait for the browser callback")
@click.pass_context
def auth_login(ctx: click.Context, force: bool, timeout: float | None) -> None:
    """Authenticate, reusing or refreshing stored credentials when possible."""
    output: OutputHandler = ctx.obj["output"]
    manager = get_manager(ctx)

    if timeout is not None:
        if timeout <= 0:
            output.error(click.BadParameter("--timeout must be positive"), error_type="UsageError")
        manager.settings.auth_timeout = timeout

    if force:
        manager.logout()

    try:
        asyncio.run(manager.ensure_authenticated())
    except OAuthError as e:
        logger.debug(f"Authentication failed: {e!r}")
        output.error(e, help_text=_help_for(e, manager.settings))

    status = manager.get_auth_status()
    output.success(
        status.to_dict(),
        f"Authenticated with Oura. Access token expires in {status.expires_in_human}.",
    )


@auth.command("status")
@click.pass_context
def auth_status(ctx: click.Context) -> None:
    """Show the state of the stored credentials (no secrets)."""
    output: OutputHandler = ctx.obj["output"]
    manager = get_manager(ctx, require_credentials=False)
    status = manager.get_auth_status()

    if not status.authenticated:
        output.success(
            status.to_dict(),
            "Not authenticated. Run 'oura-mcp auth login' to authorize.",
        )
        return

    state = "expired (will refresh on next use)" if status.expired else "valid"
    lines = [
        "Authenticated: yes",
        f"Access token:  {state}",
        f"Expires at:    {status.expires_at} ({status.expires_in_human})",
        f"Refresh token: {'present' if status.has_refresh_token else 'missing'}",
        f"Token file:    {status.token_file}",
    ]
    output.success(status.to_dict(), "\n".join(lines))


@auth.command("logout")
@click.pass_context
def auth_logout(ctx: click.Context) -> None:
    """Delete stored credentials."""
    output: OutputHandler = ctx.obj["output"]
    manager = get_manager(ctx, require_credentials=False)

    removed = manager.logout()
    message = "Stored Oura credentials removed." if removed else "No stored credentials to remove."
    output.success({"removed": removed}, message)


if __name__ == "__main__":
    main()
