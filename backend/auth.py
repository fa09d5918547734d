from passlib.context import CryptContext
import jwt
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional
import logging
import secrets
import os
import uuid

logger = logging.getLogger(__name__)

BCRYPT_ROUNDS = int(os.getenv("BCRYPT_ROUNDS", "12"))

# Fall back to pbkdf2 when the bcrypt backend is unusable
try:
    pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=BCRYPT_ROUNDS)
    pwd_context.hash("test")
except Exception as e:
    logger.warning("bcrypt is not available (%s), using pbkdf2_sha256", e)
    pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


def get_secret_key(env_name="SECRET_KEY", key_file=".secret_key"):
    env_key = os.getenv(env_name)
    if env_key:
        return env_key

    if os.path.exists(key_file):
        try:
            with open(key_file, "r", encoding='utf-8') as f:
                return f.read().strip()
        except UnicodeDecodeError:
            logger.warning("Could not read %s, generating a new key", key_file)
            os.remove(key_file)

    new_key = secrets.token_urlsafe(32)
    with open(key_file, "w", encoding='utf-8') as f:
        f.write(new_key)
    if os.name != 'nt':
        os.chmod(key_file, 0o600)
    logger.info("Generated a new %s", env_name)
    return new_key


SECRET_KEY = get_secret_key()
REFRESH_SECRET_KEY = get_secret_key("REFRESH_SECRET_KEY", ".refresh_secret_key")
ALGORITHM = "HS256"
ISSUER = "restaurant-pos"
AUDIENCE = "restaurant-pos-users"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", str(24 * 60)))
REFRESH_TOKEN_EXPIRE_DAYS = int(os.getenv("REFRESH_TOKEN_EXPIRE_DAYS", "7"))

ACCESS = "access"
REFRESH = "refresh"
STEP_UP = "step_up"


def verify_password(plain_password, hashed_password):
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password):
    return pwd_context.hash(password)


def _encode(claims: Dict[str, Any], key: str, expires: Optional[timedelta], issued_at: Optional[datetime] = None) -> str:
    now = issued_at or datetime.now(timezone.utc)
    to_encode = claims.copy()
    to_encode.update({"iat": now, "iss": ISSUER, "aud": AUDIENCE})
    if expires is not None:
        to_encode["exp"] = now + expires
    return jwt.encode(to_encode, key, algorithm=ALGORITHM)


def create_access_token(user) -> str:
    claims = {
        "sub": str(user.id),
        "id": user.id,
        "email": user.email,
        "role": user.role,
        "restaurant_id": user.restaurant_id,
        "type": ACCESS,
        "jti": uuid.uuid4().hex,
    }
    return _encode(claims, SECRET_KEY, timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))


def create_refresh_token(user) -> str:
    claims = {"sub": str(user.id), "id": user.id, "type": REFRESH, "jti": uuid.uuid4().hex}
    return _encode(claims, REFRESH_SECRET_KEY, timedelta(days=REFRESH_TOKEN_EXPIRE_DAYS))


def create_step_up_token(user_id: int, operation: str, issued_at: Optional[datetime] = None) -> str:
    """Permission token bound to one identity and one operation.

    It carries no ``exp``; its five minute window is enforced from ``iat``
    by the step-up gate.
    """
    claims = {"sub": str(user_id), "user_id": user_id, "operation": operation, "type": STEP_UP}
    return _encode(claims, SECRET_KEY, None, issued_at=issued_at)


def verify_token(token: str, token_type: str = ACCESS) -> Optional[Dict[str, Any]]:
    """Decode a token of the given type; returns None when it is not valid."""
    key = REFRESH_SECRET_KEY if token_type == REFRESH else SECRET_KEY
    try:
        payload = jwt.decode(
            token,
            key,
            algorithms=[ALGORITHM],
            audience=AUDIENCE,
            issuer=ISSUER,
            options={"verify_iat": False},
        )
    except jwt.ExpiredSignatureError:
        return None
    except jwt.InvalidTokenError:
        return None

    if payload.get("type") != token_type:
        return None
    return payload


def seconds_until_expiry(payload: Dict[str, Any]) -> int:
    exp = payload.get("exp")
    if not exp:
        return 0
    return max(0, int(exp - datetime.now(timezone.utc).timestamp()))
