"""
Health check endpoints for Kubernetes readiness/liveness probes.

Checks:
- Database connectivity
- Redis connectivity (only when Redis locking is configured)
- Paystack API reachability
"""
from typing import Any, Dict, Optional

import redis.asyncio as aioredis
import structlog
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from tutorpay.config import Settings
from tutorpay.core.exceptions import PaymentError
from tutorpay.database import Database
from tutorpay.integrations.paystack_client import PaystackClient

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """Raised when health check fails."""

    pass


class HealthCheck:
    """
    Health check service for monitoring system dependencies.

    Provides:
    - Database connectivity check
    - Redis connectivity check
    - Paystack API reachability check
    - Overall system health status
    """

    def __init__(
        self,
        settings: Settings,
        database: Database,
        gateway: PaystackClient,
        redis_client: Optional[aioredis.Redis] = None,
    ) -> None:
        """Initialize health check service."""
        self.settings = settings
        self.database = database
        self.gateway = gateway
        self.redis_client = redis_client

    async def check_database(self) -> Dict[str, Any]:
        """
        Check database connectivity.

        Raises:
            HealthCheckError: If database check fails
        """
        try:
            async with self.database.session_factory() as session:
                result = await session.execute(text("SELECT 1"))
                result.scalar()
        except (SQLAlchemyError, OSError) as e:
            logger.error("database_health_check_failed", error=str(e))
            raise HealthCheckError(f"Database health check failed: {str(e)}") from e

        return {
            "status": "healthy",
            "service": "database",
            "message": "Database connection successful",
        }

    async def check_redis(self) -> Dict[str, Any]:
        """
        Check Redis connectivity.

        Raises:
            HealthCheckError: If Redis check fails
        """
        if self.redis_client is None:
            return {
                "status": "skipped",
                "service": "redis",
                "message": "Redis not configured, using process-local locks",
            }

        try:
            await self.redis_client.ping()
        except (RedisError, OSError) as e:
            logger.error("redis_health_check_failed", error=str(e))
            raise HealthCheckError(f"Redis health check failed: {str(e)}") from e

        return {
            "status": "healthy",
            "service": "redis",
            "message": "Redis connection successful",
        }

    async def check_paystack(self) -> Dict[str, Any]:
        """
        Check Paystack API reachability.

        Raises:
            HealthCheckError: If Paystack check fails
        """
        try:
            await self.gateway.ping()
        except PaymentError as e:
            logger.error("paystack_health_check_failed", error=e.message)
            raise HealthCheckError(f"Paystack health check failed: {e.message}") from e

        return {
            "status": "healthy",
            "service": "paystack",
            "message": "Paystack API connection successful",
            "test_mode": self.settings.is_test_mode,
        }

    async def check_all(self) -> Dict[str, Any]:
        """Run all health checks."""
        checks: Dict[str, Any] = {}
        all_healthy = True

        for name, check in (
            ("database", self.check_database),
            ("redis", self.check_redis),
            ("paystack", self.check_paystack),
        ):
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
        """
        Liveness probe endpoint.

        Does not check external dependencies.
        """
        return {
            "status": "alive",
            "message": "Application is running",
        }

    async def readiness(self) -> Dict[str, Any]:
        """
        Readiness probe endpoint.

        Only the stores gate readiness; Paystack being down does not stop
        us from accepting webhooks and serving status queries.
        """
        checks: Dict[str, Any] = {}
        ready = True
        for name, check in (("database", self.check_database), ("redis", self.check_redis)):
            try:
                checks[name] = await check()
            except HealthCheckError as e:
                checks[name] = {"status": "unhealthy", "service": name, "error": str(e)}
                ready = False
        return {"status": "ready" if ready else "not_ready", "checks": checks}
