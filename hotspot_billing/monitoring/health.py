"""
Health checks for liveness/readiness probes.

Checks:
- Database connectivity
- M-Pesa access token retrieval
- Redis connectivity (only when a shared token cache is configured)
"""
from typing import TYPE_CHECKING, Any, Dict, Optional

import redis.asyncio as aioredis
import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

if TYPE_CHECKING:
    from hotspot_billing.integrations.mpesa_client import MpesaClient

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """Raised when health check fails."""

    pass


class HealthCheck:
    """
    Health check service for monitoring system dependencies.

    Provides:
    - Database connectivity check
    - M-Pesa credential check
    - Redis connectivity check
    - Overall system health status
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        mpesa_client: "MpesaClient",
        redis_url: Optional[str] = None,
    ) -> None:
        self.session_factory = session_factory
        self.mpesa_client = mpesa_client
        self.redis_url = redis_url

    async def check_database(self) -> Dict[str, Any]:
        """
        Check database connectivity.

        Raises:
            HealthCheckError: If database check fails
        """
        try:
            async with self.session_factory() as db:
                result = await db.execute(text("SELECT 1"))
                result.scalar()
        except Exception as e:
            logger.error("database_health_check_failed", error=str(e))
            raise HealthCheckError(f"Database health check failed: {str(e)}")

        return {
            "status": "healthy",
            "service": "database",
            "message": "Database connection successful",
        }

    async def check_mpesa(self) -> Dict[str, Any]:
        """
        Check that an M-Pesa access token can be obtained.

        Served from the token cache when possible, so this does not hit the
        provider on every probe.

        Raises:
            HealthCheckError: If no token can be obtained
        """
        try:
            await self.mpesa_client.get_access_token()
        except Exception as e:
            logger.error("mpesa_health_check_failed", error=str(e))
            raise HealthCheckError(f"M-Pesa health check failed: {str(e)}")

        return {
            "status": "healthy",
            "service": "mpesa",
            "message": "M-Pesa credentials accepted",
            "environment": self.mpesa_client.settings.mpesa_environment,
        }

    async def check_redis(self) -> Dict[str, Any]:
        """
        Check Redis connectivity.

        Raises:
            HealthCheckError: If Redis check fails
        """
        redis_client: Optional[aioredis.Redis] = None
        try:
            redis_client = aioredis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
            await redis_client.ping()
        except Exception as e:
            logger.error("redis_health_check_failed", error=str(e))
            raise HealthCheckError(f"Redis health check failed: {str(e)}")
        finally:
            if redis_client is not None:
                await redis_client.aclose()

        return {
            "status": "healthy",
            "service": "redis",
            "message": "Redis connection successful",
        }

    async def check_all(self) -> Dict[str, Any]:
        """
        Run all health checks.

        Returns:
            Dict[str, Any]: Overall health status
        """
        probes = {"database": self.check_database, "mpesa": self.check_mpesa}
        if self.redis_url:
            probes["redis"] = self.check_redis

        checks: Dict[str, Any] = {}
        all_healthy = True
        for name, probe in probes.items():
            try:
                checks[name] = await probe()
            except HealthCheckError as e:
                checks[name] = {
                    "status": "unhealthy",
                    "service": name,
                    "error": str(e),
                }
                all_healthy = False

        return {
            "status": "healthy" if all_healthy else "unhealthy",
            "checks": checks,
        }

    async def liveness(self) -> Dict[str, Any]:
        """
        Liveness probe.

        Does not check external dependencies.
        """
        return {
            "status": "alive",
            "message": "Application is running",
        }

    async def readiness(self) -> Dict[str, Any]:
        """Readiness probe: all dependencies must be available."""
        return await self.check_all()
