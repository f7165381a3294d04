"""Caller identity forwarded by the authenticating gateway."""

import logging
import secrets
from dataclasses import dataclass

from fastapi import Depends, HTTPException, Request, status

from app.domain.errors import Forbidden
from app.infra.logging import update_log_context
from app.settings import settings

logger = logging.getLogger(__name__)

USER_ID_HEADER = "X-User-Id"
USER_ROLE_HEADER = "X-User-Role"
USER_APPROVAL_HEADER = "X-User-Approval"
USER_EMAIL_HEADER = "X-User-Email"
PROXY_SECRET_HEADER = "X-Identity-Proxy-Secret"


class Role:
    PARENT = "PARENT"
    CAREGIVER = "CAREGIVER"
    ADMIN = "ADMIN"


ROLES = {Role.PARENT, Role.CAREGIVER, Role.ADMIN}
APPROVED = "APPROVED"


@dataclass(frozen=True)
class CurrentUser:
    id: str
    role: str
    approval_status: str
    email: str | None = None

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN


def _unauthenticated(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)


def _check_proxy_secret(request: Request) -> None:
    app_settings = getattr(request.app.state, "app_settings", None) or settings
    expected = app_settings.identity_proxy_secret
    if not expected:
        return
    provided = request.headers.get(PROXY_SECRET_HEADER)
    if not provided or not secrets.compare_digest(provided, expected):
        logger.warning("identity_proxy_secret_rejected", extra={"extra": {"path": request.url.path}})
        raise _unauthenticated("Untrusted identity headers")


async def get_current_user(request: Request) -> CurrentUser:
    _check_proxy_secret(request)
    user_id = (request.headers.get(USER_ID_HEADER) or "").strip()
    role = (request.headers.get(USER_ROLE_HEADER) or "").strip().upper()
    if not user_id or not role:
        raise _unauthenticated("Authentication required")
    if role not in ROLES:
        raise _unauthenticated("Unknown role")
    user = CurrentUser(
        id=user_id,
        role=role,
        approval_status=(request.headers.get(USER_APPROVAL_HEADER) or APPROVED).strip().upper(),
        email=request.headers.get(USER_EMAIL_HEADER),
    )
    request.state.current_user_id = user.id
    update_log_context(user_id=user.id, role=user.role)
    return user


def _require_approved(user: CurrentUser) -> CurrentUser:
    if settings.require_approved_accounts and user.approval_status != APPROVED:
        raise Forbidden(detail="Account is pending approval")
    return user


def _require_role(user: CurrentUser, role: str) -> CurrentUser:
    if user.role != role:
        raise Forbidden(detail=f"{role.title()} account required")
    return _require_approved(user)


async def require_approved_user(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    return _require_approved(user)


async def require_parent(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    return _require_role(user, Role.PARENT)


async def require_caregiver(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    return _require_role(user, Role.CAREGIVER)


async def require_admin(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    return _require_role(user, Role.ADMIN)


async def require_parent_or_admin(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    if user.is_admin:
        return user
    return _require_role(user, Role.PARENT)
