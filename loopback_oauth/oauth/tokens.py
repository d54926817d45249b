"""Token data returned by a successful code exchange."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from .errors import MalformedResponseError


def _mask(secret: str | None, visible: int = 4) -> str | None:
    """Show only the last few characters of a secret."""
    if secret is None:
        return None
    if len(secret) <= visible * 2:
        return "*" * len(secret)
    return "*" * 8 + secret[-visible:]


@dataclass
class TokenResult:
    """Tokens issued by the provider for one attempt.

    Ownership passes to the token consumer as soon as the exchange
    succeeds; the flow does not keep a reference afterwards.

    Attributes:
        access_token: The access token (never empty)
        refresh_token: Refresh token, if the provider issued one
        token_type: Token type, typically "Bearer"
        instance_url: Instance URL the API calls should go to, if reported
        scope: Space-separated granted scopes
        id_url: Identity URL for the authenticated user, if reported
        issued_at: When the exchange completed (UTC)
    """

    access_token: str = field(repr=False)
    refresh_token: str | None = field(default=None, repr=False)
    token_type: str = "Bearer"
    instance_url: str | None = None
    scope: str | None = None
    id_url: str | None = None
    issued_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def has_refresh_token(self) -> bool:
        """Check if a non-empty refresh token was issued."""
        return self.refresh_token is not None and len(self.refresh_token) > 0

    def masked(self) -> dict[str, Any]:
        """Display-safe summary with the secrets masked."""
        return {
            "access_token": _mask(self.access_token),
            "refresh_token": _mask(self.refresh_token),
            "token_type": self.token_type,
            "instance_url": self.instance_url,
            "scope": self.scope,
            "issued_at": self.issued_at.isoformat(),
        }

    @classmethod
    def from_token_response(cls, response: Any) -> "TokenResult":
        """Create a TokenResult from the token endpoint's JSON body.

        Args:
            response: Decoded JSON from the token endpoint

        Raises:
            MalformedResponseError: If the body is not an object or has no
                usable access_token
        """
        if not isinstance(response, dict):
            raise MalformedResponseError("Token response is not a JSON object")

        access_token = response.get("access_token")
        if not isinstance(access_token, str) or not access_token:
            raise MalformedResponseError("Token response missing access_token")

        refresh_token = response.get("refresh_token")
        if refresh_token is not None and not isinstance(refresh_token, str):
            raise MalformedResponseError("Token response has a non-string refresh_token")

        return cls(
            access_token=access_token,
            refresh_token=refresh_token or None,
            token_type=response.get("token_type") or "Bearer",
            instance_url=response.get("instance_url"),
            scope=response.get("scope"),
            id_url=response.get("id"),
        )
