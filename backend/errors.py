"""
Error taxonomy and the uniform response envelope.

Every failure the API reports is an ApiError with a stable code. The
exception handlers in main.py turn them into

    {"success": false, "error": {"code", "message", "details", "timestamp", "requestId"}}
"""
import math
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional


class ApiError(Exception):
    status_code = 500
    code = "INTERNAL_ERROR"
    message = "Internal server error"

    def __init__(self, message: Optional[str] = None, details: Any = None):
        self.message = message or self.message
        self.details = details
        super().__init__(self.message)


# 401 - identity / token
class NoTokenError(ApiError):
    status_code = 401
    code = "NO_TOKEN"
    message = "Not authorized to access this route"


class InvalidTokenError(ApiError):
    status_code = 401
    code = "INVALID_TOKEN"
    message = "Not authorized to access this route"


class UserNotFoundError(ApiError):
    status_code = 401
    code = "USER_NOT_FOUND"
    message = "User not found"


class UserInactiveError(ApiError):
    status_code = 401
    code = "USER_INACTIVE"
    message = "User account is inactive"


class InvalidCredentialsError(ApiError):
    status_code = 401
    code = "INVALID_CREDENTIALS"
    message = "Invalid credentials"


# 403 - permission / ownership / step-up
class InsufficientPermissionsError(ApiError):
    status_code = 403
    code = "INSUFFICIENT_PERMISSIONS"
    message = "Insufficient permissions"


class InsufficientRoleLevelError(ApiError):
    status_code = 403
    code = "INSUFFICIENT_ROLE_LEVEL"
    message = "Insufficient role level"


class ResourceAccessDeniedError(ApiError):
    status_code = 403
    code = "RESOURCE_ACCESS_DENIED"
    message = "You can only access your own resources"


class AdditionalAuthRequiredError(ApiError):
    status_code = 403
    code = "ADDITIONAL_AUTH_REQUIRED"
    message = "This operation requires additional authentication"


class InvalidAdditionalAuthError(ApiError):
    status_code = 403
    code = "INVALID_ADDITIONAL_AUTH"
    message = "Invalid or expired additional authentication token"


# 400 - validation / state machine
class ValidationError(ApiError):
    status_code = 400
    code = "VALIDATION_ERROR"
    message = "Request validation failed"


class InvalidStatusTransitionError(ValidationError):
    code = "INVALID_STATUS_TRANSITION"

    def __init__(self, current: str, target: str):
        super().__init__(
            f"Cannot change status from {current} to {target}",
            details={"from": current, "to": target},
        )


class OrderImmutableStateError(ApiError):
    status_code = 400
    code = "ORDER_IMMUTABLE_STATE"
    message = "Order cannot be modified in its current state"


# 404 / 409 / 429
class OrderNotFoundError(ApiError):
    status_code = 404
    code = "ORDER_NOT_FOUND"
    message = "Order not found"


class TargetUserNotFoundError(ApiError):
    status_code = 404
    code = "USER_NOT_FOUND"
    message = "User not found"


class UserExistsError(ApiError):
    status_code = 409
    code = "USER_EXISTS"
    message = "User with this email or username already exists"


class RateLimitedError(ApiError):
    status_code = 429
    code = "RATE_LIMITED"
    message = "Too many requests"


def new_request_id() -> str:
    return uuid.uuid4().hex


def error_body(code: str, message: str, request_id: str, details: Any = None) -> Dict[str, Any]:
    error: Dict[str, Any] = {
        "code": code,
        "message": message,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "requestId": request_id,
    }
    if details is not None:
        error["details"] = details
    return {"success": False, "error": error}


def success_body(data: Any = None, pagination: Optional[Dict[str, int]] = None) -> Dict[str, Any]:
    body: Dict[str, Any] = {"success": True, "data": data}
    if pagination is not None:
        body["pagination"] = pagination
    return body


def pagination_meta(page: int, limit: int, total: int) -> Dict[str, int]:
    return {"page": page, "limit": limit, "total": total, "pages": math.ceil(total / limit) if limit else 0}
