"""Settings discovery and loading for loopback-oauth."""

import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

from .oauth.callback import DEFAULT_HOST
from .oauth.controller import DEFAULT_CALLBACK_TIMEOUT, DEFAULT_REDIRECT_PORT
from .oauth.errors import ConfigurationError
from .oauth.exchange import DEFAULT_HTTP_TIMEOUT
from .oauth.state import validate_base_url, validate_port

ENV_PREFIX = "LOOPBACK_OAUTH_"

# Env file search paths in priority order
ENV_SEARCH_PATHS = [
    Path(".env"),
    Path.home() / ".config" / "loopback-oauth" / ".env",
]

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off", ""}


def get_base_url(custom_domain: str | None = None, is_sandbox: bool = False) -> str:
    """Derive the provider login URL for an org.

    Examples:
        - get_base_url() -> "https://login.salesforce.com"
        - get_base_url(is_sandbox=True) -> "https://test.salesforce.com"
        - get_base_url("acme") -> "https://acme.my.salesforce.com"
        - get_base_url("acme", True) -> "https://acme.sandbox.my.salesforce.com"
    """
    if custom_domain:
        qualifier = "sandbox.my" if is_sandbox else "my"
        subdomain = f"{custom_domain.strip()}.{qualifier}"
    else:
        subdomain = "test" if is_sandbox else "login"
    return f"https://{subdomain}.salesforce.com"


@dataclass
class Settings:
    """Recognized configuration options.

    Attributes:
        client_id: Provider-issued client id (required)
        redirect_port: Fixed loopback port registered as the redirect URI
        custom_domain: Org "My Domain" subdomain, if any
        is_sandbox: Use the sandbox login hosts
        base_url: Explicit provider URL; overrides custom_domain/is_sandbox
        listen_host: Loopback address the listener binds
        callback_timeout: Seconds to wait for the redirect; None disables
        http_timeout: Seconds allowed for the token request
        require_refresh_token: Fail sign-ins that yield no refresh token
    """

    client_id: str = ""
    redirect_port: int = DEFAULT_REDIRECT_PORT
    custom_domain: str | None = None
    is_sandbox: bool = False
    base_url: str | None = None
    listen_host: str = DEFAULT_HOST
    callback_timeout: float | None = DEFAULT_CALLBACK_TIMEOUT
    http_timeout: float = DEFAULT_HTTP_TIMEOUT
    require_refresh_token: bool = True

    def resolve_base_url(self) -> str:
        """The provider URL this configuration points at."""
        if self.base_url:
            return validate_base_url(self.base_url)
        return get_base_url(self.custom_domain, self.is_sandbox)

    def validate(self) -> "Settings":
        """Check the settings, raising ConfigurationError on the first problem."""
        if not self.client_id or not self.client_id.strip():
            raise ConfigurationError(
                f"No client id configured. Set {ENV_PREFIX}CLIENT_ID or pass --client-id."
            )
        self.redirect_port = validate_port(self.redirect_port)
        self.resolve_base_url()
        if self.http_timeout <= 0:
            raise ConfigurationError(f"http_timeout must be positive, got {self.http_timeout}")
        if self.callback_timeout is not None and self.callback_timeout <= 0:
            self.callback_timeout = None
        return self

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary."""
        return {f.name: getattr(self, f.name) for f in fields(self)}


def find_env_file(explicit_path: Path | None = None) -> Path | None:
    """Find the .env file, checking the explicit path, then project, then user level."""
    if explicit_path:
        if explicit_path.exists():
            return explicit_path
        return None

    for path in ENV_SEARCH_PATHS:
        if path.exists():
            return path
    return None


def _parse_bool(name: str, value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ConfigurationError(f"{name} must be a boolean, got {value!r}")


def _parse_number(name: str, value: str, kind: type) -> Any:
    try:
        return kind(value)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {value!r}") from None


def _settings_from_env() -> dict[str, Any]:
    """Read LOOPBACK_OAUTH_* variables into Settings keyword arguments."""
    values: dict[str, Any] = {}
    for f in fields(Settings):
        name = ENV_PREFIX + f.name.upper()
        raw = os.environ.get(name)
        if raw is None:
            continue

        if f.name in ("is_sandbox", "require_refresh_token"):
            values[f.name] = _parse_bool(name, raw)
        elif f.name == "redirect_port":
            values[f.name] = _parse_number(name, raw, int)
        elif f.name in ("callback_timeout", "http_timeout"):
            values[f.name] = _parse_number(name, raw, float)
        elif f.name in ("custom_domain", "base_url"):
            values[f.name] = raw or None
        else:
            values[f.name] = raw
    return values


def load_settings(env_path: Path | None = None, **overrides: Any) -> Settings:
    """Load settings from a .env file, the environment and explicit overrides.

    Later sources win: .env file, then process environment, then
    overrides whose value is not None.

    Args:
        env_path: Explicit path to .env file (optional)
        **overrides: Settings field values, e.g. from CLI options

    Returns:
        Validated Settings

    Raises:
        ConfigurationError: If a value is invalid or the client id is missing
    """
    env_file = find_env_file(env_path)
    if env_file:
        # Existing environment variables take precedence over the file
        load_dotenv(env_file, override=False)

    known = {f.name for f in fields(Settings)}
    unknown = set(overrides) - known
    if unknown:
        raise ConfigurationError(f"Unknown settings: {', '.join(sorted(unknown))}")

    values = _settings_from_env()
    values.update({k: v for k, v in overrides.items() if v is not None})

    return Settings(**values).validate()
