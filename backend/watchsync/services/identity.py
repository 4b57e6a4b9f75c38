import logging
from typing import Iterable, Optional

import httpx

from watchsync.config import Settings
from watchsync.errors import AuthenticationError, AuthorizationError, SyncError
from watchsync.models.session import Role

logger = logging.getLogger(__name__)


class StaticRoleLookup:
    """Roles from configuration: listed viewer ids are elevated."""

    def __init__(self, elevated_ids: Iterable[str] = (), default_role: Role = Role.STANDARD):
        self.elevated_ids = set(elevated_ids)
        self.default_role = default_role

    async def role_for(self, session_id: str, viewer_id: Optional[str]) -> Role:
        if not viewer_id:
            raise AuthenticationError("Viewer identity is required")
        if viewer_id in self.elevated_ids:
            return Role.ELEVATED
        return self.default_role


class HttpRoleLookup:
    """Asks the external identity service for the viewer's membership role.

    ``GET {base_url}/sessions/{session_id}/members/{viewer_id}`` answering
    ``{"role": "ADMIN" | "MODERATOR" | "GUEST" | ...}``.
    """

    def __init__(self, base_url: str, client: Optional[httpx.AsyncClient] = None, timeout: float = 5.0):
        self.base_url = base_url.rstrip("/")
        self.client = client
        self.timeout = timeout

    async def role_for(self, session_id: str, viewer_id: Optional[str]) -> Role:
        if not viewer_id:
            raise AuthenticationError("Viewer identity is required")

        url = f"{self.base_url}/sessions/{session_id}/members/{viewer_id}"
        try:
            if self.client is not None:
                response = await self.client.get(url, timeout=self.timeout)
            else:
                async with httpx.AsyncClient() as client:
                    response = await client.get(url, timeout=self.timeout)
        except httpx.HTTPError as e:
            logger.error(f"Identity lookup failed for {viewer_id}: {e}")
            raise SyncError("Identity service unavailable")

        if response.status_code == 401:
            raise AuthenticationError("Unknown viewer")
        if response.status_code in (403, 404):
            raise AuthorizationError("Viewer is not a member of this session")
        if response.status_code != 200:
            logger.error(f"Identity lookup returned {response.status_code} for {viewer_id}")
            raise SyncError("Identity service error")

        return Role.from_external(response.json().get("role"))


def build_role_lookup(settings: Settings):
    if settings.identity_url:
        return HttpRoleLookup(settings.identity_url)
    return StaticRoleLookup(settings.elevated_viewers, Role.from_external(settings.default_role))
