"""Per-attempt flow state and authorization URL composition."""

import logging
from dataclasses import dataclass, field
from urllib.parse import urlencode, urlparse

from .errors import ConfigurationError
from .pkce import CHALLENGE_METHOD, generate_csrf_token, generate_pkce_pair

logger = logging.getLogger(__name__)

AUTHORIZE_PATH = "/services/oauth2/authorize"
TOKEN_PATH = "/services/oauth2/token"
CALLBACK_PATH = "/oauth/callback"


def validate_base_url(base_url: str) -> str:
    """Check that ``base_url`` is an absolute http(s) URL and normalize it.

    Returns:
        The URL without a trailing slash

    Raises:
        ConfigurationError: If the URL is empty, relative or not http(s)
    """
    if not base_url or not base_url.strip():
        raise ConfigurationError("Provider base URL is empty")

    parsed = urlparse(base_url.strip())
    if parsed.scheme not in ("http", "https"):
        raise ConfigurationError(
            f"Provider base URL must use http or https, got {base_url!r}"
        )
    if not parsed.netloc or not parsed.hostname:
        raise ConfigurationError(f"Provider base URL has no host: {base_url!r}")
    if parsed.query or parsed.fragment:
        raise ConfigurationError(
            f"Provider base URL must not carry a query or fragment: {base_url!r}"
        )

    return base_url.strip().rstrip("/")


def validate_port(redirect_port: int | str) -> int:
    """Coerce a port to int and check its range."""
    try:
        port = int(redirect_port)
    except (TypeError, ValueError):
        raise ConfigurationError(f"Invalid redirect port: {redirect_port!r}") from None
    if not 1 <= port <= 65535:
        raise ConfigurationError(f"Redirect port out of range: {port}")
    return port


@dataclass(frozen=True)
class FlowState:
    """Everything one authorization attempt needs.

    Created once per attempt by the controller and discarded when the
    attempt ends. Never persisted. The verifier and CSRF token are kept
    out of ``repr`` so they cannot leak into logs.

    Attributes:
        client_id: Provider-issued public client identifier
        authorize_endpoint: Provider authorization endpoint URL
        token_endpoint: Provider token endpoint URL
        redirect_uri: Loopback callback URL registered with the provider
        redirect_port: Port the callback listener binds
        csrf_token: Random value echoed back as ``state``
        pkce_verifier: PKCE code verifier
        pkce_challenge: S256 challenge derived from the verifier
    """

    client_id: str
    authorize_endpoint: str
    token_endpoint: str
    redirect_uri: str
    redirect_port: int
    csrf_token: str = field(repr=False)
    pkce_verifier: str = field(repr=False)
    pkce_challenge: str

    @property
    def base_url(self) -> str:
        """The provider URL the endpoints were derived from."""
        return self.authorize_endpoint[: -len(AUTHORIZE_PATH)]


def create_flow_state(
    base_url: str,
    client_id: str,
    redirect_port: int | str,
) -> FlowState:
    """Build the state for a fresh authorization attempt.

    Args:
        base_url: Provider base URL, e.g. ``https://login.salesforce.com``
        client_id: Provider-issued client id
        redirect_port: Fixed loopback port for the callback listener

    Returns:
        A new FlowState with fresh CSRF token and PKCE pair

    Raises:
        ConfigurationError: If the base URL, client id or port is invalid
    """
    base = validate_base_url(base_url)
    if not client_id or not client_id.strip():
        raise ConfigurationError("Client id is empty")
    port = validate_port(redirect_port)

    pkce = generate_pkce_pair()

    state = FlowState(
        client_id=client_id.strip(),
        authorize_endpoint=f"{base}{AUTHORIZE_PATH}",
        token_endpoint=f"{base}{TOKEN_PATH}",
        redirect_uri=f"http://localhost:{port}{CALLBACK_PATH}",
        redirect_port=port,
        csrf_token=generate_csrf_token(),
        pkce_verifier=pkce.verifier,
        pkce_challenge=pkce.challenge,
    )
    logger.debug(f"Created flow state for {base} (redirect {state.redirect_uri})")
    return state


def build_authorization_url(flow: FlowState) -> str:
    """Compose the browser-openable authorization URL for ``flow``."""
    params = {
        "response_type": "code",
        "client_id": flow.client_id,
        "redirect_uri": flow.redirect_uri,
        "state": flow.csrf_token,
        "code_challenge": flow.pkce_challenge,
        "code_challenge_method": CHALLENGE_METHOD,
    }
    return f"{flow.authorize_endpoint}?{urlencode(params)}"
