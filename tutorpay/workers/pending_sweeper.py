"""
Pending payment sweeper.

Re-verifies payments that are still ``pending`` some time after they were
created, so a missed or lost webhook still converges to the gateway's
outcome.
"""
import asyncio
import signal
from typing import Any, Dict

import redis.asyncio as aioredis
import structlog

from tutorpay.config import Settings, get_settings
from tutorpay.core.background import BackgroundRunner
from tutorpay.core.exceptions import PaymentError
from tutorpay.core.locking import ReferenceLocker
from tutorpay.core.payment_service import PaymentService
from tutorpay.database import Database
from tutorpay.integrations.paystack_client import PaystackClient
from tutorpay.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


async def sweep_pending_once(service: PaymentService, settings: Settings) -> Dict[str, Any]:
    """
    Verify one batch of stale pending payments.

    A failure on one reference is logged and the sweep moves on.

    Returns:
        Dict[str, Any]: Counts of checked, resolved and errored references
    """
    references = await service.stale_pending_references(
        settings.pending_sweep_min_age_seconds, settings.pending_sweep_batch_size
    )
    summary = {"checked": 0, "resolved": 0, "still_pending": 0, "errors": 0}

    for reference in references:
        summary["checked"] += 1
        try:
            result = await service.verify_payment(reference)
        except PaymentError as e:
            summary["errors"] += 1
            logger.warning(
                "pending_sweep_verify_failed",
                reference=reference,
                error_type=type(e).__name__,
                error=e.message,
            )
            continue

        if result["status"] == "pending":
            summary["still_pending"] += 1
        else:
            summary["resolved"] += 1

    logger.info("pending_sweep_completed", **summary)
    return summary


async def start_pending_sweeper(settings: Settings | None = None) -> None:
    """
    Start the pending sweeper.

    Runs every ``pending_sweep_interval_seconds`` until SIGINT/SIGTERM.
    """
    settings = settings or get_settings()
    setup_logging(settings, component="sweeper")

    logger.info(
        "pending_sweeper_starting",
        interval_seconds=settings.pending_sweep_interval_seconds,
        min_age_seconds=settings.pending_sweep_min_age_seconds,
    )

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    database = Database(settings)
    redis = (
        aioredis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
        if settings.redis_url
        else None
    )
    gateway = PaystackClient(settings)
    runner = BackgroundRunner()
    service = PaymentService(
        settings=settings,
        database=database,
        gateway=gateway,
        locker=ReferenceLocker(settings, redis),
        runner=runner,
    )

    try:
        while not stop.is_set():
            try:
                await sweep_pending_once(service, settings)
            except Exception as e:
                # Keep sweeping on the next tick even if this one failed
                logger.error("pending_sweep_error", error=str(e), exc_info=True)

            try:
                await asyncio.wait_for(stop.wait(), timeout=settings.pending_sweep_interval_seconds)
            except asyncio.TimeoutError:
                pass
    finally:
        await runner.drain(timeout=10)
        await gateway.close()
        if redis is not None:
            await redis.aclose()
        await database.dispose()
        logger.info("pending_sweeper_stopped")


def main() -> None:
    """Console entry point."""
    asyncio.run(start_pending_sweeper())


if __name__ == "__main__":
    main()
