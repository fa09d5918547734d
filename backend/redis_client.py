"""
Redis access: order number sequences, revoked tokens and rate limiting.

Every method degrades gracefully when Redis is unreachable so the API keeps
serving; callers decide what the fallback is.
"""
import logging
import os
from datetime import date
from typing import Callable, Optional, Tuple

import redis
from fastapi import Request

from errors import RateLimitedError

logger = logging.getLogger(__name__)

SEQUENCE_TTL = 2 * 24 * 3600  # a day bucket only has to outlive its own day


class RedisClient:
    """Thin wrapper around redis.Redis"""

    def __init__(self, client: Optional[redis.Redis] = None):
        if client is not None:
            self.client = client
            return

        if os.getenv("REDIS_ENABLED", "true").lower() in ("0", "false", "no"):
            self.client = None
            return

        self.redis_host = os.getenv("REDIS_HOST", "redis")
        redis_port_env = os.getenv("REDIS_SERVICE_PORT") or os.getenv("REDIS_PORT") or "6379"
        self.redis_port = int(str(redis_port_env).split(":")[-1])

        try:
            self.client = redis.Redis(
                host=self.redis_host,
                port=self.redis_port,
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5
            )
            self.client.ping()
        except redis.RedisError as e:
            logger.warning("Could not connect to Redis: %s", e)
            self.client = None

    def is_available(self) -> bool:
        if not self.client:
            return False
        try:
            self.client.ping()
            return True
        except redis.RedisError:
            return False

    # ========== Order number sequence ==========

    @staticmethod
    def sequence_key(restaurant_id: str, day: date) -> str:
        return f"order_seq:{restaurant_id}:{day:%y%m%d}"

    def next_order_sequence(self, restaurant_id: str, day: date, seed: Callable[[], int]) -> Optional[int]:
        """
        Atomically allocate the next order sequence for (restaurant, day).

        A missing key is seeded once with ``seed()`` (orders already persisted
        that day) using SET NX, so concurrent seeders cannot reset it.
        Returns None when Redis is unavailable.
        """
        if not self.is_available():
            return None
        key = self.sequence_key(restaurant_id, day)
        try:
            if not self.client.exists(key):
                self.client.set(key, seed(), nx=True, ex=SEQUENCE_TTL)
            return int(self.client.incr(key))
        except redis.RedisError as e:
            logger.error("Order sequence allocation failed for %s: %s", key, e)
            return None

    # ========== Revoked tokens ==========

    def revoke_token(self, jti: str, ttl: int) -> bool:
        if not self.is_available() or ttl <= 0:
            return False
        try:
            self.client.setex(f"revoked:{jti}", ttl, "1")
            return True
        except redis.RedisError as e:
            logger.error("Could not revoke token %s: %s", jti, e)
            return False

    def is_token_revoked(self, jti: Optional[str]) -> bool:
        if not jti or not self.is_available():
            return False
        try:
            return bool(self.client.exists(f"revoked:{jti}"))
        except redis.RedisError as e:
            logger.error("Could not check token revocation: %s", e)
            return False

    # ========== Rate Limiting ==========

    def check_rate_limit(self, key: str, max_requests: int = 10, window: int = 60) -> Tuple[bool, int]:
        """
        Count one hit for ``key``.
        Returns (allowed, remaining requests in the window).
        """
        if not self.is_available():
            return True, max_requests

        try:
            current = self.client.incr(key)
            if current == 1:
                self.client.expire(key, window)

            remaining = max(0, max_requests - current)
            allowed = current <= max_requests

            return allowed, remaining
        except redis.RedisError as e:
            logger.error("Rate limit check failed: %s", e)
            return True, max_requests


redis_client = RedisClient()


def rate_limit(max_requests: int = 10, window: int = 60, key_prefix: str = "rate_limit"):
    """
    FastAPI dependency limiting requests per client host.
    max_requests: requests allowed per window
    window: window length in seconds
    """
    def dependency(request: Request):
        client_host = request.client.host if request.client else "unknown"
        rate_key = f"{key_prefix}:{request.url.path}:{client_host}"

        allowed, remaining = redis_client.check_rate_limit(rate_key, max_requests, window)
        if not allowed:
            raise RateLimitedError(
                f"Rate limit exceeded. Try again in {window} seconds.",
                details={"limit": max_requests, "window": window},
            )
        return remaining

    return dependency
