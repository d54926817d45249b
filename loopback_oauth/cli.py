"""Command-line entry point for loopback-oauth."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, NoReturn

import click

from . import __version__
from .config import Settings, load_settings
from .oauth import (
    ConfigurationError,
    FlowLifecycleController,
    OAuthFlowError,
    PortUnavailable,
    build_authorization_url,
    create_flow_state,
)
from .oauth.tokens import TokenResult
from .output import OutputHandler

# Help shown for the errors users are most likely to hit
ERROR_HELP: dict[str, str] = {
    "PortUnavailable": "Another sign-in may still be running. Close it or use --port with a port registered for this client.",
    "ConfigurationError": "Check the client id, port and provider URL options or the LOOPBACK_OAUTH_* environment variables.",
    "CsrfMismatch": "The callback did not belong to this sign-in. Start a new sign-in.",
    "FlowTimeoutError": "No redirect arrived in time. Run the command again and finish signing in within the timeout.",
    "ExchangeRejectedError": "The provider refused the authorization code. Start a new sign-in.",
}


def _setting_options(func: Any) -> Any:
    """Options shared by commands that build a flow."""
    options = [
        click.option("--client-id", help="OAuth client id (or LOOPBACK_OAUTH_CLIENT_ID)"),
        click.option("--domain", "custom_domain", help="Org My Domain subdomain"),
        click.option("--sandbox", "is_sandbox", is_flag=True, default=None, help="Use sandbox login hosts"),
        click.option("--base-url", help="Explicit provider URL (overrides --domain/--sandbox)"),
        click.option("--port", "redirect_port", type=int, help="Loopback callback port"),
    ]
    for option in reversed(options):
        func = option(func)
    return func


@click.group()
@click.option("--json", "json_mode", is_flag=True, help="Output in JSON format")
@click.option("--env-file", "env_path", type=click.Path(exists=True), help="Path to .env file")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
@click.version_option(version=__version__)
@click.pass_context
def main(ctx: click.Context, json_mode: bool, env_path: str | None, verbose: bool) -> None:
    """Sign in to an OAuth provider through a loopback redirect."""
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


def get_settings(ctx: click.Context, **overrides: Any) -> Settings | NoReturn:
    """Load settings from context and options, handling errors."""
    output: OutputHandler = ctx.obj["output"]
    try:
        return load_settings(ctx.obj["env_path"], **overrides)
    except ConfigurationError as e:
        output.error(e, help_text=ERROR_HELP["ConfigurationError"])
        raise SystemExit(1)  # Never reached due to sys.exit in output.error


@main.command()
@_setting_options
@click.option("--timeout", "-t", "callback_timeout", type=float, help="Seconds to wait for the redirect (0 disables)")
@click.pass_context
def login(ctx: click.Context, callback_timeout: float | None, **options: Any) -> None:
    """Run one sign-in and print a masked summary of the issued tokens."""
    output: OutputHandler = ctx.obj["output"]
    settings = get_settings(ctx, callback_timeout=callback_timeout, **options)

    controller = FlowLifecycleController.from_settings(
        settings,
        on_status=output.status,
    )

    try:
        tokens: TokenResult = asyncio.run(controller.run(settings.resolve_base_url()))
    except PortUnavailable as e:
        output.error(e, help_text=ERROR_HELP["PortUnavailable"])
        return
    except OAuthFlowError as e:
        output.error(e, help_text=ERROR_HELP.get(type(e).__name__))
        return
    except KeyboardInterrupt:
        output.error(OAuthFlowError("Sign-in interrupted"), error_type="FlowCancelled")
        return

    summary = tokens.masked()
    lines = ["Signed in."]
    lines.extend(f"  {key}: {value}" for key, value in summary.items() if value is not None)
    output.success(summary, human_message="\n".join(lines))


@main.command("authorize-url")
@_setting_options
@click.pass_context
def authorize_url(ctx: click.Context, **options: Any) -> None:
    """Print the authorization URL for a fresh attempt without listening."""
    output: OutputHandler = ctx.obj["output"]
    settings = get_settings(ctx, **options)

    try:
        flow = create_flow_state(settings.resolve_base_url(), settings.client_id, settings.redirect_port)
    except ConfigurationError as e:
        output.error(e, help_text=ERROR_HELP["ConfigurationError"])
        return

    url = build_authorization_url(flow)
    output.success(
        {"authorization_url": url, "redirect_uri": flow.redirect_uri},
        human_message=url,
    )


if __name__ == "__main__":
    main()
