"""
Caller Identity

The pipeline does not own authentication. It consumes a bearer token,
asks the identity provider who the caller is, and scopes every operation
to that user id.
"""

from dataclasses import dataclass
from typing import Optional

import httpx

from wardrobe_imagery.core.config import Settings, settings
from wardrobe_imagery.core.exceptions import AuthenticationError
from wardrobe_imagery.core.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class CallerIdentity:
    """Authenticated caller."""
    id: str
    email: Optional[str] = None


def extract_bearer_token(authorization: Optional[str]) -> str:
    """Pull the token out of an Authorization header."""
    if not authorization:
        raise AuthenticationError("Authorization header required")
    token = authorization.replace("Bearer ", "", 1).strip()
    if not token:
        raise AuthenticationError("Authorization header required")
    return token


class AuthProvider:
    """Resolves bearer tokens through Supabase Auth (`GET /auth/v1/user`)."""

    def __init__(
        self,
        url: Optional[str],
        api_key: Optional[str],
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.url = url.rstrip("/") if url else None
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport

    @classmethod
    def from_settings(cls, s: Optional[Settings] = None) -> "AuthProvider":
        s = s or settings
        return cls(url=s.SUPABASE_URL, api_key=s.SUPABASE_SERVICE_ROLE_KEY)

    async def get_user(self, token: str) -> CallerIdentity:
        if not self.url or not self.api_key:
            logger.error("auth_provider_not_configured")
            raise AuthenticationError("Invalid authentication")

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.get(
                    f"{self.url}/auth/v1/user",
                    headers={"Authorization": f"Bearer {token}", "apikey": self.api_key},
                )
        except httpx.HTTPError as e:
            logger.warning("auth_lookup_failed", error=str(e))
            raise AuthenticationError("Invalid authentication")

        if not response.is_success:
            raise AuthenticationError("Invalid authentication")

        payload = response.json()
        user_id = payload.get("id") if isinstance(payload, dict) else None
        if not user_id:
            raise AuthenticationError("Invalid authentication")

        return CallerIdentity(id=user_id, email=payload.get("email"))
