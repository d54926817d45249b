"""OAuth 2.0 authorization code flow with PKCE over a loopback redirect.

Main Components:
    FlowLifecycleController: Start/stop state machine for one attempt
    CallbackListener: Ephemeral localhost endpoint receiving the redirect
    TokenExchangeClient: Code for token exchange
    FlowState: Per-attempt CSRF token, PKCE pair and endpoints

Quick Start:
    from loopback_oauth.oauth import FlowLifecycleController

    controller = FlowLifecycleController(
        client_id=client_id,
        consume_tokens=lambda access, refresh: ...,
    )
    tokens = await controller.run("https://login.salesforce.com")
"""

from .callback import (
    CallbackListener,
    CallbackRequest,
    CallbackResponse,
    ListenerHandle,
    ListenerState,
    ShutdownSignal,
    parse_callback_request,
)
from .controller import (
    DEFAULT_CALLBACK_TIMEOUT,
    DEFAULT_REDIRECT_PORT,
    FlowLifecycleController,
    FlowStatus,
    open_system_browser,
)
from .errors import (
    AuthorizationDenied,
    BrowserLaunchFailed,
    ConfigurationError,
    CsrfMismatch,
    ExchangeError,
    ExchangeNetworkError,
    ExchangeRejectedError,
    FlowAlreadyInProgress,
    FlowCancelled,
    FlowNotStarted,
    FlowTimeoutError,
    ListenerBindFailed,
    MalformedResponseError,
    MissingRefreshTokenError,
    OAuthFlowError,
    PortUnavailable,
    TokenHandoffError,
)
from .exchange import TokenExchangeClient
from .handler import CallbackRequestHandler
from .pkce import PKCEPair, generate_code_challenge, generate_code_verifier, generate_csrf_token, generate_pkce_pair
from .state import FlowState, build_authorization_url, create_flow_state
from .tokens import TokenResult

__all__ = [
    # Controller (main entry point)
    "FlowLifecycleController",
    "FlowStatus",
    "DEFAULT_REDIRECT_PORT",
    "DEFAULT_CALLBACK_TIMEOUT",
    "open_system_browser",
    # Flow state
    "FlowState",
    "create_flow_state",
    "build_authorization_url",
    # Listener
    "CallbackListener",
    "CallbackRequest",
    "CallbackResponse",
    "CallbackRequestHandler",
    "ListenerHandle",
    "ListenerState",
    "ShutdownSignal",
    "parse_callback_request",
    # Exchange
    "TokenExchangeClient",
    "TokenResult",
    # PKCE
    "PKCEPair",
    "generate_pkce_pair",
    "generate_code_verifier",
    "generate_code_challenge",
    "generate_csrf_token",
    # Errors
    "OAuthFlowError",
    "ConfigurationError",
    "FlowAlreadyInProgress",
    "FlowNotStarted",
    "ListenerBindFailed",
    "PortUnavailable",
    "CsrfMismatch",
    "AuthorizationDenied",
    "ExchangeError",
    "ExchangeNetworkError",
    "ExchangeRejectedError",
    "MalformedResponseError",
    "MissingRefreshTokenError",
    "BrowserLaunchFailed",
    "FlowCancelled",
    "FlowTimeoutError",
    "TokenHandoffError",
]
