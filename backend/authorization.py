"""
Request authorization.

``get_current_user`` authenticates the bearer token; the factories below
build FastAPI dependencies that add role, permission, hierarchy, ownership,
restaurant-scope and step-up checks on top of it:

    @app.delete("/orders/{order_id}")
    def delete_order(order_id: int, user=Depends(authorize("admin", "manager"))):
        ...

``authorize_token`` runs the same checks outside a request and returns an
``AccessDecision`` instead of raising.
"""
import logging
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence

from fastapi import Depends, Header, Query, Request
from sqlalchemy.orm import Session

import auth
import models
import step_up
from database import get_db
from errors import (
    ApiError,
    InsufficientPermissionsError,
    InsufficientRoleLevelError,
    InvalidTokenError,
    NoTokenError,
    ResourceAccessDeniedError,
    UserInactiveError,
    UserNotFoundError,
)
from permissions import ADMIN, PRIVILEGED_ROLES, has_permission, meets_role_level, missing_permissions
from redis_client import redis_client

logger = logging.getLogger(__name__)


def bearer_token(authorization: Optional[str]) -> str:
    if not authorization or not authorization.startswith("Bearer "):
        raise NoTokenError()
    token = authorization[len("Bearer "):].strip()
    if not token:
        raise NoTokenError()
    return token


def authenticate_token(db: Session, token: str) -> models.User:
    payload = auth.verify_token(token)
    if not payload or redis_client.is_token_revoked(payload.get("jti")):
        raise InvalidTokenError()

    user_id = payload.get("id")
    if not isinstance(user_id, int):
        raise InvalidTokenError()

    user = db.get(models.User, user_id)
    if not user:
        raise UserNotFoundError()
    if not user.is_active:
        raise UserInactiveError()
    return user


def get_current_user(authorization: Optional[str] = Header(None), db: Session = Depends(get_db)) -> models.User:
    return authenticate_token(db, bearer_token(authorization))


# ========== checks ==========

def check_roles(user: models.User, roles: Iterable[str]) -> None:
    if user.role not in roles:
        raise InsufficientPermissionsError(f"User role {user.role} is not authorized to access this route")


def check_permissions(user: models.User, permissions: Sequence[str]) -> None:
    missing = missing_permissions(user.role, permissions, user.permissions)
    if missing:
        raise InsufficientPermissionsError(f"Missing required permissions: {', '.join(missing)}",
                                           details={"missing": missing})


def check_any_permission(user: models.User, permissions: Sequence[str]) -> None:
    if not any(has_permission(user.role, p, user.permissions) for p in permissions):
        raise InsufficientPermissionsError(
            f"One of the following permissions required: {', '.join(permissions)}"
        )


def check_role_level(user: models.User, minimum_role: str) -> None:
    if not meets_role_level(user.role, minimum_role):
        raise InsufficientRoleLevelError(f"Role '{minimum_role}' or higher required to access this resource")


def check_ownership(user: models.User, resource_id) -> None:
    if user.role in PRIVILEGED_ROLES:
        return
    if str(resource_id) != str(user.id):
        raise ResourceAccessDeniedError()


def scoped_restaurant_id(user: models.User, requested: Optional[str] = None) -> Optional[str]:
    """Admins may pick any restaurant (or none); everyone else is pinned to their own."""
    if user.role == ADMIN:
        return requested
    return user.restaurant_id


# ========== dependencies ==========

def authorize(*roles: str):
    def dependency(user: models.User = Depends(get_current_user)) -> models.User:
        check_roles(user, roles)
        return user
    return dependency


def require_permission(permission: str):
    def dependency(user: models.User = Depends(get_current_user)) -> models.User:
        if not has_permission(user.role, permission, user.permissions):
            raise InsufficientPermissionsError(f"Permission '{permission}' required to access this resource")
        return user
    return dependency


def require_all_permissions(*permissions: str):
    def dependency(user: models.User = Depends(get_current_user)) -> models.User:
        check_permissions(user, permissions)
        return user
    return dependency


def require_any_permission(*permissions: str):
    def dependency(user: models.User = Depends(get_current_user)) -> models.User:
        check_any_permission(user, permissions)
        return user
    return dependency


def require_role_level(minimum_role: str):
    def dependency(user: models.User = Depends(get_current_user)) -> models.User:
        check_role_level(user, minimum_role)
        return user
    return dependency


def require_ownership(resource_id_param: str = "user_id"):
    def dependency(request: Request, user: models.User = Depends(get_current_user)) -> models.User:
        check_ownership(user, request.path_params.get(resource_id_param))
        return user
    return dependency


def restaurant_scope(restaurant_id: Optional[str] = Query(None),
                     user: models.User = Depends(get_current_user)) -> Optional[str]:
    return scoped_restaurant_id(user, restaurant_id)


def require_step_up(operation: str):
    def dependency(x_additional_auth: Optional[str] = Header(None),
                   user: models.User = Depends(get_current_user)) -> models.User:
        step_up.verify_step_up_token(x_additional_auth, user.id, operation)
        return user
    return dependency


# ========== non-request form ==========

@dataclass
class AccessDecision:
    allowed: bool
    code: Optional[str] = None
    reason: Optional[str] = None
    user: Optional[models.User] = None


def authorize_token(db: Session, token: Optional[str], roles: Optional[Iterable[str]] = None,
                    permissions: Optional[Sequence[str]] = None,
                    any_permissions: Optional[Sequence[str]] = None,
                    minimum_role: Optional[str] = None) -> AccessDecision:
    user = None
    try:
        if not token:
            raise NoTokenError()
        user = authenticate_token(db, token)
        if roles:
            check_roles(user, roles)
        if permissions:
            check_permissions(user, permissions)
        if any_permissions:
            check_any_permission(user, any_permissions)
        if minimum_role:
            check_role_level(user, minimum_role)
    except ApiError as e:
        logger.debug("Access denied: %s", e.code)
        return AccessDecision(allowed=False, code=e.code, reason=e.message, user=user)
    return AccessDecision(allowed=True, user=user)
