"""
Access token caches for the M-Pesa client.

Refreshing a Daraja token is idempotent, so neither cache takes a lock:
two initiations racing on an expired token both fetch, both store, and the
last write wins. Each fetched token is valid on its own.
"""
import time
from abc import ABC, abstractmethod
from typing import Optional

import redis.asyncio as aioredis
import structlog

logger = structlog.get_logger(__name__)


class TokenCache(ABC):
    """Storage for the provider bearer token."""

    @abstractmethod
    async def get(self) -> Optional[str]:
        """Return the cached token, or None if missing or expired."""

    @abstractmethod
    async def set(self, token: str, ttl_seconds: int) -> None:
        """Store a token for ``ttl_seconds``."""

    @abstractmethod
    async def invalidate(self) -> None:
        """Drop the cached token."""

    async def close(self) -> None:
        return None


class InMemoryTokenCache(TokenCache):
    """Per-process token cache."""

    def __init__(self) -> None:
        self._token: Optional[str] = None
        self._expires_at: float = 0.0

    async def get(self) -> Optional[str]:
        if self._token and time.monotonic() < self._expires_at:
            return self._token
        return None

    async def set(self, token: str, ttl_seconds: int) -> None:
        # Assign the pair together so readers never see a token with a stale expiry
        self._token, self._expires_at = token, time.monotonic() + max(ttl_seconds, 0)

    async def invalidate(self) -> None:
        self._token, self._expires_at = None, 0.0


class RedisTokenCache(TokenCache):
    """
    Token cache shared by all API workers through Redis.

    The key expires on its own (SETEX), so an expired token is simply absent.
    Redis errors degrade to a cache miss: the client then fetches a fresh
    token from the provider.
    """

    def __init__(
        self,
        redis_url: Optional[str] = None,
        redis_client: Optional[aioredis.Redis] = None,
        key: str = "mpesa:access_token",
    ):
        """
        Initialize Redis token cache.

        Args:
            redis_url: Redis URL, used when no client is given
            redis_client: Optional pre-built Redis client
            key: Redis key holding the token
        """
        self.redis_url = redis_url
        self.redis_client = redis_client
        self.key = key

    async def _ensure_redis(self) -> aioredis.Redis:
        """Ensure Redis client is initialized."""
        if self.redis_client is None:
            self.redis_client = aioredis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self.redis_client

    async def get(self) -> Optional[str]:
        try:
            redis = await self._ensure_redis()
            token = await redis.get(self.key)
            return token or None
        except Exception as e:
            logger.warning("token_cache_read_error", error=str(e))
            return None

    async def set(self, token: str, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            return
        try:
            redis = await self._ensure_redis()
            await redis.setex(self.key, ttl_seconds, token)
        except Exception as e:
            logger.warning("token_cache_write_error", error=str(e))

    async def invalidate(self) -> None:
        try:
            redis = await self._ensure_redis()
            await redis.delete(self.key)
        except Exception as e:
            logger.warning("token_cache_invalidate_error", error=str(e))

    async def close(self) -> None:
        """Close Redis connection."""
        if self.redis_client is not None:
            await self.redis_client.aclose()
