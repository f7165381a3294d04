from __future__ import annotations

import logging
from typing import Any, Protocol

import httpx

from app.settings import settings

logger = logging.getLogger(__name__)


class IdentityDirectory(Protocol):
    async def resolve_parent_id(self, email: str) -> str | None: ...


class HttpIdentityDirectory:
    """Looks parents up in the Identity Service by email.

    Used only by payment events, which identify the payer by email.
    """

    def __init__(
        self,
        base_url: str | None,
        *,
        timeout_seconds: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/") if base_url else None
        self.timeout_seconds = timeout_seconds
        self.transport = transport

    async def resolve_parent_id(self, email: str) -> str | None:
        if not self.base_url or not email:
            logger.warning("identity_directory_unconfigured")
            return None
        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self.transport) as client:
                response = await client.get(f"{self.base_url}/v1/users/lookup", params={"email": email})
            if response.status_code == 404:
                return None
            response.raise_for_status()
            payload: dict[str, Any] = response.json()
        except httpx.HTTPError as exc:
            logger.warning("identity_lookup_failed", extra={"extra": {"reason": type(exc).__name__}})
            return None

        if payload.get("role") != "PARENT":
            logger.info("identity_lookup_not_parent", extra={"extra": {"role": payload.get("role")}})
            return None
        user_id = payload.get("id")
        return str(user_id) if user_id else None


def resolve_identity_directory(app_state: Any) -> IdentityDirectory:
    state = getattr(app_state, "state", app_state)
    directory = getattr(state, "identity_directory", None)
    if directory is None:
        services = getattr(state, "services", None)
        directory = getattr(services, "identity_directory", None) if services is not None else None
    if directory is None:
        directory = HttpIdentityDirectory(
            settings.identity_service_url,
            timeout_seconds=settings.identity_service_timeout_seconds,
        )
        state.identity_directory = directory
    return directory
