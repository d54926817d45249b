"""Error types raised by the loopback authorization flow."""


class OAuthFlowError(Exception):
    """Base error for the authorization flow."""

    pass


class ConfigurationError(OAuthFlowError):
    """Invalid provider URL, client id or port."""

    pass


class FlowAlreadyInProgress(OAuthFlowError):
    """An attempt is already running; cancel or await it first."""

    pass


class FlowNotStarted(OAuthFlowError):
    """No attempt has been started."""

    pass


class ListenerBindFailed(OAuthFlowError):
    """The callback listener could not be bound."""

    pass


class PortUnavailable(ListenerBindFailed):
    """The callback port is already occupied."""

    def __init__(self, host: str, port: int):
        super().__init__(
            f"Callback port {port} on {host} is already in use. "
            f"A previous sign-in may still be running."
        )
        self.host = host
        self.port = port


class CsrfMismatch(OAuthFlowError):
    """The callback state did not match the attempt's CSRF token."""

    pass


class AuthorizationDenied(OAuthFlowError):
    """The provider redirected back with an error instead of a code."""

    def __init__(self, error: str, description: str | None = None):
        message = f"Authorization denied: {error}"
        if description:
            message += f" - {description}"
        super().__init__(message)
        self.error = error
        self.description = description


class ExchangeError(OAuthFlowError):
    """Error during authorization code exchange."""

    pass


class ExchangeNetworkError(ExchangeError):
    """Transport failure talking to the token endpoint."""

    pass


class ExchangeRejectedError(ExchangeError):
    """The token endpoint answered with a non-success status."""

    def __init__(
        self,
        status_code: int,
        error: str | None = None,
        error_description: str | None = None,
    ):
        detail = ""
        if error or error_description:
            detail = f": {error or ''} - {error_description or ''}"
        super().__init__(f"Token exchange failed (HTTP {status_code}){detail}")
        self.status_code = status_code
        self.error = error
        self.error_description = error_description


class MalformedResponseError(ExchangeError):
    """The token endpoint body could not be understood."""

    pass


class MissingRefreshTokenError(ExchangeError):
    """No refresh token was issued but one is required."""

    pass


class BrowserLaunchFailed(OAuthFlowError):
    """The system browser could not be opened."""

    pass


class FlowCancelled(OAuthFlowError):
    """The attempt was cancelled before completing."""

    pass


class FlowTimeoutError(FlowCancelled):
    """No callback arrived within the attempt timeout."""

    pass


class TokenHandoffError(OAuthFlowError):
    """The token consumer raised while receiving the tokens."""

    pass
