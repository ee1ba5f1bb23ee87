"""
Health checks for readiness/liveness probes.

Checks:
- Database connectivity
- Redis connectivity
- Midtrans API reachability
"""
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
import redis.asyncio as aioredis
import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payment_reconciliation.config import get_settings
from payment_reconciliation.database.connection import get_session_factory

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """Raised when health check fails."""

    pass


class HealthCheck:
    """
    Health check service for monitoring system dependencies.

    Dependencies can be injected so the checks run against test doubles.
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        redis_client: Optional[aioredis.Redis] = None,
        gateway_transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = get_settings()
        self._session_factory = session_factory
        self._redis_client = redis_client
        self._gateway_transport = gateway_transport

    async def check_database(self) -> Dict[str, Any]:
        """
        Check database connectivity.

        Raises:
            HealthCheckError: If database check fails
        """
        try:
            session_factory = self._session_factory or get_session_factory()
            async with session_factory() as db:
                result = await db.execute(text("SELECT 1"))
                result.scalar()
            return {
                "status": "healthy",
                "service": "database",
                "message": "Database connection successful",
            }
        except Exception as e:
            logger.error("database_health_check_failed", error=str(e))
            raise HealthCheckError(f"Database health check failed: {str(e)}")

    async def check_redis(self) -> Dict[str, Any]:
        """
        Check Redis connectivity.

        Raises:
            HealthCheckError: If Redis check fails
        """
        redis_client = self._redis_client
        owned = redis_client is None
        try:
            if redis_client is None:
                redis_client = aioredis.from_url(
                    self.settings.redis_url,
                    encoding="utf-8",
                    decode_responses=True,
                )
            await redis_client.ping()
            return {
                "status": "healthy",
                "service": "redis",
                "message": "Redis connection successful",
            }
        except Exception as e:
            logger.error("redis_health_check_failed", error=str(e))
            raise HealthCheckError(f"Redis health check failed: {str(e)}")
        finally:
            if owned and redis_client is not None:
                await redis_client.aclose()

    async def check_gateway(self) -> Dict[str, Any]:
        """
        Check that the Midtrans API answers at all.

        Any HTTP response counts as reachable; only transport errors fail.

        Raises:
            HealthCheckError: If the gateway cannot be reached
        """
        try:
            async with httpx.AsyncClient(
                base_url=self.settings.midtrans_base_url,
                timeout=self.settings.gateway_timeout_seconds,
                transport=self._gateway_transport,
            ) as client:
                response = await client.get("/")
            return {
                "status": "healthy",
                "service": "midtrans",
                "message": f"Midtrans API reachable (HTTP {response.status_code})",
                "sandbox": self.settings.is_sandbox,
            }
        except httpx.HTTPError as e:
            logger.error("gateway_health_check_failed", error=str(e))
            raise HealthCheckError(f"Midtrans health check failed: {str(e)}")

    async def check_all(self) -> Dict[str, Any]:
        """Run all health checks."""
        checks: Dict[str, Any] = {}
        all_healthy = True

        named_checks: Dict[str, Callable[[], Awaitable[Dict[str, Any]]]] = {
            "database": self.check_database,
            "redis": self.check_redis,
            "midtrans": self.check_gateway,
        }
        for name, check in named_checks.items():
            try:
                checks[name] = await check()
            except HealthCheckError as e:
                checks[name] = {"status": "unhealthy", "service": name, "error": str(e)}
                all_healthy = False

        return {
            "status": "healthy" if all_healthy else "unhealthy",
            "checks": checks,
        }

    async def liveness(self) -> Dict[str, Any]:
        """Liveness probe: the process is up; dependencies are not checked."""
        return {
            "status": "alive",
            "message": "Application is running",
        }

    async def readiness(self) -> Dict[str, Any]:
        """Readiness probe: all dependencies must be available."""
        return await self.check_all()
