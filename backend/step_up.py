"""
Step-up authentication for sensitive operations.

Two independent checks live here:

* ``verify_step_up_token`` - the per-request gate. A sensitive operation
  needs a permission token minted for the same user and the same
  operation within the last five minutes. Every failure is reported as
  the same INVALID_ADDITIONAL_AUTH error.
* ``requires_additional_auth`` - the coarse advisory check used by
  ``GET /auth/require-additional-auth/{action}``. It looks only at the
  caller's role and answers True when the lookup fails.
"""
import logging
import time
from typing import Callable, Optional

import auth
from errors import AdditionalAuthRequiredError, InvalidAdditionalAuthError
from permissions import PRIVILEGED_ROLES

logger = logging.getLogger(__name__)

STEP_UP_TOKEN_MAX_AGE = 300  # seconds

SENSITIVE_OPERATIONS = frozenset({
    "user:delete",
    "payment:refund",
    "inventory:delete",
    "settings:security",
    "data:export",
    "system:backup",
})

SENSITIVE_ACTIONS = frozenset({
    "delete_user",
    "modify_permissions",
    "access_financial_reports",
    "modify_system_settings",
    "export_customer_data",
})


def is_sensitive_operation(operation: str) -> bool:
    return operation in SENSITIVE_OPERATIONS


def issue_step_up_token(user_id: int, operation: str) -> str:
    return auth.create_step_up_token(user_id, operation)


def verify_step_up_token(token: Optional[str], user_id: int, operation: str,
                         clock: Callable[[], float] = time.time) -> None:
    """Raise unless ``token`` authorises ``user_id`` to run ``operation`` now."""
    if not is_sensitive_operation(operation):
        return

    if not token:
        raise AdditionalAuthRequiredError()

    payload = auth.verify_token(token, auth.STEP_UP)
    if payload is None:
        logger.info("Step-up token for %s rejected: bad signature", operation)
        raise InvalidAdditionalAuthError()

    if payload.get("user_id") != user_id or payload.get("operation") != operation:
        logger.info("Step-up token for %s rejected: bound to another user or operation", operation)
        raise InvalidAdditionalAuthError()

    issued_at = payload.get("iat")
    if not isinstance(issued_at, (int, float)) or clock() - issued_at > STEP_UP_TOKEN_MAX_AGE:
        logger.info("Step-up token for %s rejected: expired", operation)
        raise InvalidAdditionalAuthError()


def requires_additional_auth(load_role: Callable[[], str], action: str) -> bool:
    """True if ``action`` is sensitive and the caller is admin or manager.

    ``load_role`` resolves the caller's role; if it raises, the answer is
    True so the caller is asked for extra authentication.
    """
    try:
        role = load_role()
    except Exception:
        logger.exception("Additional auth check failed for action %s", action)
        return True
    return action in SENSITIVE_ACTIONS and role in PRIVILEGED_ROLES
