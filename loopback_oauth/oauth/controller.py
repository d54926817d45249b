"""Start/stop lifecycle of a single loopback authorization attempt.

State machine:

    IDLE -> STARTING -> ACTIVE -> COMPLETING -> IDLE
                          |                      ^
                          +--- abort/cancel -----+

At most one attempt runs per controller. Every terminal path stops the
callback listener before the outcome is reported, so no error is ever
surfaced while the port is still bound.
"""

import asyncio
import logging
import webbrowser
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable

from .callback import CallbackListener, ListenerHandle, ListenerState
from .errors import (
    BrowserLaunchFailed,
    FlowAlreadyInProgress,
    FlowCancelled,
    FlowNotStarted,
    FlowTimeoutError,
    ListenerBindFailed,
    OAuthFlowError,
)
from .exchange import TokenExchangeClient
from .handler import CallbackRequestHandler, TokenConsumer
from .state import FlowState, build_authorization_url, create_flow_state
from .tokens import TokenResult

if TYPE_CHECKING:
    from ..config import Settings

logger = logging.getLogger(__name__)

DEFAULT_REDIRECT_PORT = 7777
DEFAULT_CALLBACK_TIMEOUT = 120  # seconds


class FlowStatus(Enum):
    """Lifecycle state of the controller's current attempt."""

    IDLE = "idle"
    STARTING = "starting"
    ACTIVE = "active"
    COMPLETING = "completing"


def open_system_browser(url: str) -> None:
    """Open ``url`` in the user's default browser.

    Raises:
        BrowserLaunchFailed: If no browser could be launched
    """
    try:
        opened = webbrowser.open(url)
    except webbrowser.Error as e:
        raise BrowserLaunchFailed(f"Could not open browser: {e}") from e
    if not opened:
        raise BrowserLaunchFailed("No browser available to open the authorization URL")


class FlowLifecycleController:
    """Owns the attempt state machine and its callback listener.

    Usage:
        controller = FlowLifecycleController(
            client_id="3MVG9...",
            consume_tokens=session.set_tokens,
        )
        await controller.begin("https://login.salesforce.com")
        tokens = await controller.wait()

        # From a UI "close" action or elsewhere:
        await controller.cancel()
    """

    def __init__(
        self,
        client_id: str | None = None,
        redirect_port: int = DEFAULT_REDIRECT_PORT,
        consume_tokens: TokenConsumer | None = None,
        open_in_browser: Callable[[str], None] | None = None,
        exchange_client: TokenExchangeClient | None = None,
        listener: CallbackListener | None = None,
        callback_timeout: float | None = DEFAULT_CALLBACK_TIMEOUT,
        require_refresh_token: bool = True,
        on_status: Callable[[str], None] | None = None,
        on_error: Callable[[OAuthFlowError], None] | None = None,
    ):
        """Initialize the controller.

        Args:
            client_id: Default client id for begin()
            redirect_port: Fixed loopback port registered with the provider
            consume_tokens: Receives (access_token, refresh_token) on success
            open_in_browser: Capability that opens a URL; failures are non-fatal
            exchange_client: Client used for the code exchange
            listener: Callback listener to bind per attempt
            callback_timeout: Seconds to wait for the callback; None disables
            require_refresh_token: Fail attempts that yield no refresh token
            on_status: Callback for progress messages
            on_error: Callback receiving the error of each failed attempt
        """
        self.client_id = client_id
        self.redirect_port = redirect_port
        self.consume_tokens = consume_tokens
        self.open_in_browser = open_in_browser or open_system_browser
        self.exchange_client = exchange_client or TokenExchangeClient()
        self.listener = listener or CallbackListener()
        # 0 or a negative value disables the timeout
        self.callback_timeout = callback_timeout if callback_timeout and callback_timeout > 0 else None
        self.require_refresh_token = require_refresh_token
        self.on_status = on_status or (lambda msg: None)
        self.on_error = on_error

        self.browser_error: BrowserLaunchFailed | None = None
        self.authorization_url: str | None = None

        self._status = FlowStatus.IDLE
        self._lock = asyncio.Lock()
        self._flow: FlowState | None = None
        self._handler: CallbackRequestHandler | None = None
        self._handle: ListenerHandle | None = None
        self._supervisor: asyncio.Task[TokenResult] | None = None

    @classmethod
    def from_settings(cls, settings: "Settings", **kwargs: Any) -> "FlowLifecycleController":
        """Build a controller from loaded Settings; kwargs pass through."""
        return cls(
            client_id=settings.client_id,
            redirect_port=settings.redirect_port,
            exchange_client=kwargs.pop(
                "exchange_client", TokenExchangeClient(timeout=settings.http_timeout)
            ),
            listener=kwargs.pop("listener", CallbackListener(host=settings.listen_host)),
            callback_timeout=settings.callback_timeout,
            require_refresh_token=settings.require_refresh_token,
            **kwargs,
        )

    @property
    def status(self) -> FlowStatus:
        return self._status

    @property
    def flow(self) -> FlowState | None:
        """State of the running attempt, if any."""
        return self._flow

    @property
    def listener_state(self) -> ListenerState:
        return self.listener.state

    def _emit_status(self, message: str) -> None:
        """Emit a status message."""
        logger.info(message)
        self.on_status(message)

    async def begin(self, base_url: str, client_id: str | None = None) -> FlowState:
        """Start an attempt: bind the listener and open the browser.

        Args:
            base_url: Provider base URL
            client_id: Client id, defaulting to the controller's

        Returns:
            FlowState of the new attempt

        Raises:
            FlowAlreadyInProgress: If an attempt is already running
            ConfigurationError: If the URL, client id or port is invalid
            PortUnavailable: If the callback port is occupied
            ListenerBindFailed: If binding fails for another reason
        """
        if self._status is not FlowStatus.IDLE:
            raise FlowAlreadyInProgress(
                f"An authorization attempt is already {self._status.value}; "
                f"cancel it or wait for it to finish"
            )

        async with self._lock:
            if self._status is not FlowStatus.IDLE:
                raise FlowAlreadyInProgress(
                    f"An authorization attempt is already {self._status.value}"
                )

            flow = create_flow_state(base_url, client_id or self.client_id or "", self.redirect_port)

            self._status = FlowStatus.STARTING
            handler = CallbackRequestHandler(
                flow,
                self.exchange_client,
                consume_tokens=self.consume_tokens,
                require_refresh_token=self.require_refresh_token,
                on_accepted=self._mark_completing,
            )

            try:
                handle = await self.listener.bind_and_serve(flow.redirect_port, handler)
            except ListenerBindFailed as e:
                self._status = FlowStatus.IDLE
                logger.warning(f"Callback listener failed to bind: {e}")
                self._report_error(e)
                raise

            self._flow = flow
            self._handler = handler
            self._handle = handle
            self._status = FlowStatus.ACTIVE
            self._supervisor = asyncio.create_task(self._supervise(handler, handle))
            self._supervisor.add_done_callback(self._on_attempt_done)

            self.authorization_url = build_authorization_url(flow)

        # webbrowser.open blocks the loop; never call it under the lock
        self._launch_browser(self.authorization_url)
        self._emit_status(f"Waiting for callback on {flow.redirect_uri}")
        return flow

    async def wait(self) -> TokenResult:
        """Wait for the current (or last) attempt to finish.

        Returns:
            TokenResult already handed to the token consumer

        Raises:
            FlowNotStarted: If begin() was never called
            OAuthFlowError: Whatever ended the attempt
        """
        if self._supervisor is None:
            raise FlowNotStarted("No authorization attempt has been started")
        return await asyncio.shield(self._supervisor)

    async def run(self, base_url: str, client_id: str | None = None) -> TokenResult:
        """Begin an attempt and wait for its outcome."""
        await self.begin(base_url, client_id)
        return await self.wait()

    async def cancel(self, reason: str = "Authorization cancelled") -> bool:
        """Abort the running attempt through the normal shutdown path.

        A cancel that races an in-progress begin() waits for the listener
        to be bound first, then shuts it down.

        Returns:
            True if an attempt was cancelled, False if none was running
            or its tokens were already handed to the consumer
        """
        async with self._lock:
            handler = self._handler
            handle = self._handle
            if self._status not in (FlowStatus.ACTIVE, FlowStatus.COMPLETING) or handler is None:
                logger.debug("No active authorization attempt to cancel")
                return False
            cancelled = handler.fail(FlowCancelled(reason))

        if handle is not None:
            await handle.stop()
        return cancelled

    def _mark_completing(self) -> None:
        if self._status is FlowStatus.ACTIVE:
            self._status = FlowStatus.COMPLETING
            self._emit_status("Exchanging code for tokens...")

    def _launch_browser(self, url: str) -> None:
        self.browser_error = None
        self._emit_status("Opening browser for authorization...")
        try:
            self.open_in_browser(url)
        except Exception as e:
            error = e if isinstance(e, BrowserLaunchFailed) else BrowserLaunchFailed(str(e))
            self.browser_error = error
            logger.warning(f"Browser launch failed: {error}")
            self._emit_status(f"Could not open browser. Please open this URL manually:\n{url}")

    async def _supervise(
        self,
        handler: CallbackRequestHandler,
        handle: ListenerHandle,
    ) -> TokenResult:
        """Await the attempt's outcome, then tear the attempt down."""
        try:
            await asyncio.wait_for(asyncio.shield(handler.outcome), timeout=self.callback_timeout)
        except TimeoutError:
            timed_out = FlowTimeoutError(
                f"Timeout waiting for OAuth callback after {self.callback_timeout} seconds"
            )
            if not handler.fail(timed_out):
                # Tokens already went to the consumer; its outcome stands
                await asyncio.wait([handler.outcome])
        except OAuthFlowError:
            pass  # re-raised from the outcome below
        finally:
            await handle.stop()
            await handle.wait_closed()
            async with self._lock:
                self._status = FlowStatus.IDLE
                self._flow = None
                self._handler = None
                self._handle = None

        return handler.outcome.result()

    def _on_attempt_done(self, task: "asyncio.Task[TokenResult]") -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is None:
            self._emit_status("Successfully authenticated!")
        elif isinstance(error, OAuthFlowError):
            self._emit_status(f"Authorization failed: {error}")
            self._report_error(error)
        else:
            logger.error(f"Authorization attempt crashed: {error!r}")

    def _report_error(self, error: OAuthFlowError) -> None:
        if self.on_error:
            self.on_error(error)
