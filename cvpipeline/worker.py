"""
Background worker: drains the delivery queue and runs periodic checks.

Run as a standalone process:
    python -m cvpipeline.worker

Loops:
  - delivery: process due report emails every WORKER_INTERVAL_MINUTES
  - reanalysis: analyze stored submissions whose analysis failed at upload
  - alerts: upload, delivery, storage and database health checks
"""
import asyncio
from typing import Optional

from cvpipeline.config import get_settings
from cvpipeline.database import AsyncSessionLocal
from cvpipeline.services import delivery_queue, redis_client, submission_pipeline
from cvpipeline.services.alerting import AlertingService, AlertSeverity, AlertType
from cvpipeline.services.mail_transport import MailTransport, get_transport
from cvpipeline.utils import metrics
from cvpipeline.utils.file_handler import FileHandler
from cvpipeline.utils.logger import logger

DELIVERY_LEASE = "delivery-queue"


async def run_delivery_once(transport: MailTransport, alerting: AlertingService) -> Optional[dict]:
    """One pass over the queue under the run lease. Returns None when another worker holds it."""
    settings = get_settings()
    lease_ttl = settings.email_claim_lease_minutes * 60
    token = await redis_client.acquire_run_lease(DELIVERY_LEASE, lease_ttl)
    if token is None:
        logger.info("worker.lease_held_elsewhere")
        return None

    try:
        async with AsyncSessionLocal() as db:
            return await delivery_queue.process_due(db, transport, alerting=alerting)
    finally:
        await redis_client.release_run_lease(DELIVERY_LEASE, token)


async def delivery_loop(transport: MailTransport, alerting: AlertingService) -> None:
    interval = get_settings().worker_interval_minutes * 60
    logger.info("worker.delivery_started", extra={"interval_seconds": interval})

    while True:
        try:
            result = await run_delivery_once(transport, alerting)
            if result and (result["sent"] or result["failed"]):
                logger.info("worker.delivery", extra=result)
        except Exception as exc:
            logger.error("worker.delivery_error", extra={"error": str(exc)[:500]})

        await asyncio.sleep(interval)


async def reanalysis_loop(storage: FileHandler) -> None:
    interval_minutes = get_settings().reanalysis_interval_minutes
    while True:
        try:
            async with AsyncSessionLocal() as db:
                await submission_pipeline.reanalyze_pending(db, storage=storage)
        except Exception as exc:
            logger.error("worker.reanalysis_error", extra={"error": str(exc)[:500]})

        await asyncio.sleep(interval_minutes * 60)


async def alert_loop(alerting: AlertingService, storage: FileHandler, interval_minutes: int = 5) -> None:
    while True:
        await asyncio.sleep(interval_minutes * 60)
        try:
            async with AsyncSessionLocal() as db:
                await alerting.check_and_alert(db, storage)
            logger.info("worker.metrics", extra=metrics.get_snapshot())
        except Exception as exc:
            logger.error("worker.alert_error", extra={"error": str(exc)[:500]})


# ---------------------------------------------------------------------------
# Standalone entry point
# ---------------------------------------------------------------------------

async def main() -> None:
    """Run worker as standalone process."""
    from cvpipeline.database import init_db
    await init_db()
    await redis_client.init_redis()

    storage = FileHandler()
    try:
        transport = get_transport()
    except ValueError as exc:
        await AlertingService().raise_alert(
            AlertType.EMAIL_SERVICE_DOWN, AlertSeverity.HIGH,
            "Email service is misconfigured", {"error": str(exc)},
        )
        raise

    alerting = AlertingService(transport=transport)
    try:
        await asyncio.gather(
            delivery_loop(transport, alerting),
            reanalysis_loop(storage),
            alert_loop(alerting, storage),
        )
    finally:
        await redis_client.close_redis()


if __name__ == "__main__":
    asyncio.run(main())
