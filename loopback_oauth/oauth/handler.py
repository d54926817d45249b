"""Per-attempt processing of redirect callbacks.

The handler validates the echoed CSRF token, redeems the code, hands the
tokens to the consumer at most once, and records the attempt's outcome.
"""

import asyncio
import hmac
import inspect
import logging
from typing import Awaitable, Callable

from .callback import CallbackRequest, CallbackResponse
from .errors import (
    AuthorizationDenied,
    CsrfMismatch,
    ExchangeError,
    MissingRefreshTokenError,
    OAuthFlowError,
    TokenHandoffError,
)
from .exchange import TokenExchangeClient
from .state import FlowState
from .tokens import TokenResult

logger = logging.getLogger(__name__)

TokenConsumer = Callable[[str, str | None], Awaitable[None] | None]

# Non-terminal answers leave the attempt waiting for a valid retry
_RETRY = CallbackResponse(authorized=False, terminal=False)
_REJECT = CallbackResponse(authorized=False, terminal=True)
_ACCEPT = CallbackResponse(authorized=True, terminal=True)


def state_matches(received: str, expected: str) -> bool:
    """Exact, constant-time comparison of the echoed state."""
    return hmac.compare_digest(received.encode("utf-8"), expected.encode("utf-8"))


class CallbackRequestHandler:
    """Decides the fate of each callback for one attempt.

    The outcome future resolves exactly once: with a TokenResult on
    success, or with an OAuthFlowError on failure or cancellation.
    """

    def __init__(
        self,
        flow: FlowState,
        exchange_client: TokenExchangeClient,
        consume_tokens: TokenConsumer | None = None,
        require_refresh_token: bool = True,
        on_accepted: Callable[[], None] | None = None,
    ):
        """Initialize the handler.

        Args:
            flow: State of the attempt this handler serves
            exchange_client: Client used to redeem the code
            consume_tokens: Receives (access_token, refresh_token) once
            require_refresh_token: Treat a missing refresh token as failure
            on_accepted: Called when a callback passes CSRF validation
        """
        self.flow = flow
        self.exchange_client = exchange_client
        self.consume_tokens = consume_tokens
        self.require_refresh_token = require_refresh_token
        self.on_accepted = on_accepted

        self.outcome: asyncio.Future[TokenResult] = asyncio.get_running_loop().create_future()
        self._handed_off = False

    @property
    def finished(self) -> bool:
        return self.outcome.done()

    def fail(self, error: OAuthFlowError) -> bool:
        """Resolve the attempt with ``error`` unless it already resolved.

        Once the tokens are with the consumer the attempt can no longer be
        failed from outside; only a failing consumer decides the outcome.
        """
        if self._handed_off:
            return False
        return self._set_error(error)

    def _set_error(self, error: OAuthFlowError) -> bool:
        if self.outcome.done():
            return False
        self.outcome.set_exception(error)
        return True

    async def __call__(self, request: CallbackRequest) -> CallbackResponse:
        if self.finished:
            return _RETRY

        try:
            return await self._process(request)
        except Exception as e:
            logger.exception("Unexpected error while processing callback")
            self.fail(OAuthFlowError(f"Unexpected error while processing callback: {e}"))
            return _REJECT

    async def _process(self, request: CallbackRequest) -> CallbackResponse:
        # Incomplete callbacks never end the attempt, whatever their state
        if not request.state or not (request.code or request.error):
            logger.info("Callback missing code or state ignored; still waiting")
            return _RETRY

        if not state_matches(request.state, self.flow.csrf_token):
            logger.warning("Callback state does not match this attempt; aborting sign-in")
            self.fail(CsrfMismatch("State mismatch in callback - possible CSRF attack or stale request"))
            return _REJECT

        if request.error:
            logger.warning(f"Provider returned an authorization error: {request.error}")
            self.fail(AuthorizationDenied(request.error, request.error_description))
            return _REJECT

        if self.on_accepted:
            self.on_accepted()

        try:
            tokens = await self.exchange_client.exchange(
                self.flow.token_endpoint,
                self.flow.client_id,
                request.code,
                self.flow.pkce_verifier,
                self.flow.redirect_uri,
            )
        except ExchangeError as e:
            logger.warning(f"Token exchange failed: {e}")
            self.fail(e)
            return _REJECT

        if self.require_refresh_token and not tokens.has_refresh_token():
            self.fail(MissingRefreshTokenError("Provider did not issue a refresh token"))
            return _REJECT

        # Cancelled or timed out while the exchange was in flight
        if self.finished:
            logger.info("Attempt ended during token exchange; tokens discarded")
            return _REJECT

        try:
            await self._hand_off(tokens)
        except Exception as e:
            logger.warning(f"Token consumer failed: {e}")
            self._set_error(TokenHandoffError(f"Token consumer failed: {e}"))
            return _REJECT

        if not self.outcome.done():
            self.outcome.set_result(tokens)
        return _ACCEPT

    async def _hand_off(self, tokens: TokenResult) -> None:
        """Give the tokens to the consumer, at most once per attempt."""
        if self._handed_off:
            return
        self._handed_off = True

        if self.consume_tokens is None:
            return
        result = self.consume_tokens(tokens.access_token, tokens.refresh_token)
        if inspect.isawaitable(result):
            await result
