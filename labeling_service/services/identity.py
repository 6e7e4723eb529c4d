"""
Identity Provider Client
"""

from dataclasses import dataclass
from typing import Optional, Protocol
import logging
import httpx

from ..config import Settings
from ..errors import TokenExpired, TransientInfrastructureError, Unauthorized

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Principal:
    subject_id: str


class IdentityProvider(Protocol):
    async def verify(self, token: str) -> Principal:
        ...


class HttpIdentityProvider:
    """Resolves bearer tokens to subjects through the provider's userinfo endpoint."""

    def __init__(self, settings: Settings, http: Optional[httpx.AsyncClient] = None):
        self.userinfo_endpoint = settings.identity_userinfo_endpoint
        self._http = http or httpx.AsyncClient(timeout=settings.identity_timeout_seconds)

    async def verify(self, token: str) -> Principal:
        """Return the principal for a bearer token."""
        if not token:
            raise Unauthorized()

        try:
            response = await self._http.get(
                self.userinfo_endpoint,
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.TransportError as e:
            raise TransientInfrastructureError(f"Identity provider unreachable: {str(e)}") from e

        if response.status_code in (401, 403):
            if self._is_expired(response):
                raise TokenExpired()
            raise Unauthorized("Invalid token")
        if response.status_code != 200:
            raise TransientInfrastructureError(f"Identity provider error: {response.status_code}")

        try:
            data = response.json()
        except ValueError as e:
            raise TransientInfrastructureError(f"Malformed identity provider response: {str(e)}") from e
        if not isinstance(data, dict):
            raise TransientInfrastructureError("Malformed identity provider response: expected an object")

        subject_id = data.get("sub") or data.get("subject_id")
        if not subject_id:
            raise Unauthorized("Token carries no subject")
        return Principal(subject_id=subject_id)

    def _is_expired(self, response: httpx.Response) -> bool:
        challenge = response.headers.get("WWW-Authenticate", "").lower()
        if "expired" in challenge:
            return True
        try:
            body = response.json()
        except ValueError:
            return False
        if not isinstance(body, dict):
            return False
        error = f"{body.get('error', '')} {body.get('error_description', '')}".lower()
        return "expired" in error

    async def close(self) -> None:
        await self._http.aclose()
