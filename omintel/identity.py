# omintel/identity.py
"""
Identity resolution against a GoTrue-compatible auth server.

The server owns sessions and token refresh; we only ask it who a bearer
token belongs to.
"""
import logging
import uuid
from dataclasses import dataclass
from typing import Optional

import httpx

logger = logging.getLogger(__name__)

ANONYMOUS_PREFIX = "anon-"


@dataclass(frozen=True)
class Identity:
    id: str
    email: Optional[str] = None
    anonymous: bool = False

    @classmethod
    def anonymous_user(cls) -> "Identity":
        return cls(id=f"{ANONYMOUS_PREFIX}{uuid.uuid4()}", anonymous=True)


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization or not authorization.startswith("Bearer "):
        return None
    token = authorization[len("Bearer "):].strip()
    return token or None


class IdentityProvider:
    def __init__(self, base_url: str, api_key: str = "", client: Optional[httpx.AsyncClient] = None,
                 timeout: float = 10.0):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.client = client or httpx.AsyncClient(timeout=timeout)

    async def get_user(self, token: Optional[str]) -> Optional[Identity]:
        """Return the identity behind ``token``; None when absent, invalid or unverifiable."""
        if not token:
            return None
        headers = {"Authorization": f"Bearer {token}"}
        if self.api_key:
            headers["apikey"] = self.api_key
        try:
            resp = await self.client.get(f"{self.base_url}/auth/v1/user", headers=headers)
        except httpx.HTTPError as e:
            logger.error("Auth check failed: %s", e)
            return None
        if resp.status_code != 200:
            logger.info("Bearer token rejected by identity provider (status=%d)", resp.status_code)
            return None
        try:
            data = resp.json()
        except ValueError:
            logger.error("Identity provider returned non-JSON body")
            return None
        user_id = data.get("id")
        if not user_id:
            return None
        return Identity(id=str(user_id), email=data.get("email"), anonymous=bool(data.get("is_anonymous")))

    async def close(self) -> None:
        await self.client.aclose()
