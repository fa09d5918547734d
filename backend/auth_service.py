"""
Account use cases: login, registration, token refresh and logout, password
changes, activation and step-up token minting.
"""
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

import auth
import models
import step_up
from errors import (
    InsufficientRoleLevelError,
    InvalidAdditionalAuthError,
    InvalidCredentialsError,
    InvalidTokenError,
    ResourceAccessDeniedError,
    TargetUserNotFoundError,
    UserExistsError,
    UserInactiveError,
    ValidationError,
)
from permissions import ADMIN, meets_role_level, role_level
from redis_client import redis_client
from schemas import RegisterRequest, UserResponse

logger = logging.getLogger(__name__)


def user_payload(user: models.User) -> Dict[str, Any]:
    return UserResponse.model_validate(user).model_dump()


def _token_response(user: models.User) -> Dict[str, Any]:
    return {
        "access_token": auth.create_access_token(user),
        "refresh_token": auth.create_refresh_token(user),
        "token_type": "bearer",
        "expires_in": auth.ACCESS_TOKEN_EXPIRE_MINUTES * 60,
        "user": user_payload(user),
    }


def authenticate_user(db: Session, email: str, password: str) -> Optional[models.User]:
    user = db.scalar(select(models.User).where(models.User.email == email.lower()))
    if not user or not user.is_active or not auth.verify_password(password, user.password):
        return None
    return user


def login(db: Session, email: str, password: str) -> Dict[str, Any]:
    user = authenticate_user(db, email, password)
    if not user:
        logger.info("Failed login for %s", email)
        raise InvalidCredentialsError()

    user.last_login = datetime.now()
    db.commit()
    db.refresh(user)

    logger.info("User %s logged in", user.email)
    return _token_response(user)


def register(db: Session, data: RegisterRequest, actor: Optional[models.User] = None) -> Dict[str, Any]:
    restaurant_id = data.restaurant_id
    if actor is not None and actor.role != ADMIN:
        # non-admins register staff for their own restaurant only
        restaurant_id = actor.restaurant_id
        if role_level(data.role) > role_level(actor.role):
            raise InsufficientRoleLevelError(f"Role '{actor.role}' cannot create '{data.role}' accounts")

    if data.role != ADMIN and not restaurant_id:
        raise ValidationError(
            "Restaurant ID is required for non-admin users",
            details=[{"field": "restaurant_id", "message": "required for role " + data.role}],
        )

    existing = db.scalar(
        select(models.User).where(
            or_(models.User.email == data.email, models.User.username == data.username)
        )
    )
    if existing:
        raise UserExistsError()

    user = models.User(
        username=data.username,
        email=data.email,
        password=auth.get_password_hash(data.password),
        role=data.role,
        first_name=data.profile.first_name,
        last_name=data.profile.last_name,
        phone=data.profile.phone,
        restaurant_id=restaurant_id,
        permissions=list(dict.fromkeys(data.permissions)),
        is_active=True,
    )
    db.add(user)
    db.commit()
    db.refresh(user)

    logger.info("New user registered: %s (%s)", user.email, user.role)
    return _token_response(user)


def refresh(db: Session, refresh_token: str) -> Dict[str, Any]:
    payload = auth.verify_token(refresh_token, auth.REFRESH)
    if not payload or not isinstance(payload.get("id"), int):
        raise InvalidTokenError("Invalid refresh token")

    user = db.get(models.User, payload["id"])
    if not user or not user.is_active:
        raise InvalidTokenError("User not found or inactive")

    logger.info("Token refreshed for user %s", user.email)
    return _token_response(user)


def logout(token: str) -> None:
    payload = auth.verify_token(token)
    if not payload:
        raise InvalidTokenError()
    if not redis_client.revoke_token(payload.get("jti"), auth.seconds_until_expiry(payload)):
        logger.warning("Token for %s not revoked, Redis unavailable", payload.get("email"))
    logger.info("User %s logged out", payload.get("email"))


def change_password(db: Session, user: models.User, current_password: str, new_password: str) -> None:
    if not auth.verify_password(current_password, user.password):
        raise ValidationError("Current password is incorrect",
                              details=[{"field": "current_password", "message": "incorrect"}])
    user.password = auth.get_password_hash(new_password)
    db.commit()
    logger.info("Password changed for user %s", user.email)


def get_user(db: Session, user_id: int, actor: Optional[models.User] = None) -> models.User:
    user = db.get(models.User, user_id)
    if not user:
        raise TargetUserNotFoundError()
    if actor is not None and actor.role != ADMIN and user.restaurant_id != actor.restaurant_id:
        raise ResourceAccessDeniedError("User belongs to another restaurant")
    return user


def set_active(db: Session, user_id: int, active: bool, actor: models.User) -> models.User:
    user = get_user(db, user_id, actor)
    if user.id == actor.id and not active:
        raise ValidationError("Cannot deactivate your own account")
    user.is_active = active
    db.commit()
    db.refresh(user)
    logger.info("User %s %s by %s", user.email, "activated" if active else "deactivated", actor.email)
    return user


def validate_role(token: str, required_role: str) -> bool:
    payload = auth.verify_token(token)
    if not payload:
        return False
    return meets_role_level(payload.get("role"), required_role)


def require_additional_auth(db: Session, user_id: int, action: str) -> bool:
    def load_role() -> str:
        user = db.get(models.User, user_id)
        if not user:
            raise LookupError(f"User {user_id} not found")
        return user.role

    return step_up.requires_additional_auth(load_role, action)


def issue_step_up(user: models.User, password: str, operation: str) -> Dict[str, Any]:
    if not step_up.is_sensitive_operation(operation):
        raise ValidationError(
            f"'{operation}' does not require additional authentication",
            details=[{"field": "operation", "message": "not a sensitive operation", "value": operation}],
        )
    if not user.is_active:
        raise UserInactiveError()
    if not auth.verify_password(password, user.password):
        raise InvalidAdditionalAuthError()

    logger.info("Step-up token issued to %s for %s", user.email, operation)
    return {
        "token": step_up.issue_step_up_token(user.id, operation),
        "operation": operation,
        "expires_in": step_up.STEP_UP_TOKEN_MAX_AGE,
    }
