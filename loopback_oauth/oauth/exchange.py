"""Authorization code for token exchange against the provider."""

import logging
from typing import Any

import httpx

from .errors import (
    ExchangeNetworkError,
    ExchangeRejectedError,
    MalformedResponseError,
)
from .tokens import TokenResult

logger = logging.getLogger(__name__)

DEFAULT_HTTP_TIMEOUT = 30.0


class TokenExchangeClient:
    """Performs the single POST that redeems an authorization code.

    Usage:
        client = TokenExchangeClient()
        tokens = await client.exchange(
            flow.token_endpoint, flow.client_id, code,
            flow.pkce_verifier, flow.redirect_uri,
        )
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = DEFAULT_HTTP_TIMEOUT,
    ):
        """Initialize the exchange client.

        Args:
            http_client: Optional shared HTTP client; a short-lived one is
                created per exchange when omitted
            timeout: Request timeout in seconds for the owned client
        """
        self._http_client = http_client
        self.timeout = timeout

    async def exchange(
        self,
        token_endpoint: str,
        client_id: str,
        code: str,
        pkce_verifier: str,
        redirect_uri: str,
    ) -> TokenResult:
        """Exchange ``code`` for tokens.

        Returns:
            TokenResult parsed from the provider's response. A missing
            refresh token is not an error here.

        Raises:
            ExchangeNetworkError: On transport failure
            ExchangeRejectedError: On a non-success HTTP status
            MalformedResponseError: On an unparsable body
        """
        http = self._http_client or httpx.AsyncClient(timeout=self.timeout)
        should_close = self._http_client is None

        form: dict[str, str] = {
            "grant_type": "authorization_code",
            "code": code,
            "client_id": client_id,
            "redirect_uri": redirect_uri,
            "code_verifier": pkce_verifier,
        }

        try:
            response = await http.post(
                token_endpoint,
                data=form,
                headers={
                    "Content-Type": "application/x-www-form-urlencoded",
                    "Accept": "application/json",
                },
            )
        except httpx.RequestError as e:
            raise ExchangeNetworkError(f"Network error during token exchange: {e}") from e
        finally:
            if should_close:
                await http.aclose()

        if not 200 <= response.status_code < 300:
            error, description = _safe_error_fields(response)
            logger.warning(f"Token endpoint rejected the code (HTTP {response.status_code})")
            raise ExchangeRejectedError(response.status_code, error, description)

        try:
            body: Any = response.json()
        except ValueError as e:
            # Never echo the body: it may hold tokens
            raise MalformedResponseError("Token response is not valid JSON") from e

        return TokenResult.from_token_response(body)


def _safe_error_fields(response: httpx.Response) -> tuple[str | None, str | None]:
    """Pull only the standard OAuth error fields out of an error body."""
    try:
        data = response.json()
    except ValueError:
        return None, None
    if not isinstance(data, dict):
        return None, None

    error = data.get("error")
    description = data.get("error_description")
    return (
        error if isinstance(error, str) else None,
        description if isinstance(description, str) else None,
    )
