"""
Operational alerting with a per-type cooldown.

Cooldown state lives on the `AlertingService` instance (`last_alert_times`),
so tests and workers can hold their own service and reset it freely.
"""
import asyncio
import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from html import escape
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from cvpipeline.config import get_settings
from cvpipeline.errors import CVPipelineError
from cvpipeline.services import submission_store
from cvpipeline.utils import metrics
from cvpipeline.utils.logger import log_alert, logger


class AlertType(str, Enum):
    HIGH_UPLOAD_FAILURE_RATE = "HIGH_UPLOAD_FAILURE_RATE"
    LOW_EMAIL_DELIVERY_RATE = "LOW_EMAIL_DELIVERY_RATE"
    HIGH_STORAGE_USAGE = "HIGH_STORAGE_USAGE"
    DATABASE_CONNECTION_FAILED = "DATABASE_CONNECTION_FAILED"
    STORAGE_INACCESSIBLE = "STORAGE_INACCESSIBLE"
    EMAIL_SERVICE_DOWN = "EMAIL_SERVICE_DOWN"
    EMAIL_DELIVERY_EXHAUSTED = "EMAIL_DELIVERY_EXHAUSTED"
    SYSTEM_UNHEALTHY = "SYSTEM_UNHEALTHY"


class AlertSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass
class Alert:
    type: AlertType
    severity: AlertSeverity
    message: str
    details: Dict[str, Any] = field(default_factory=dict)
    timestamp: Optional[datetime] = None


class AlertingService:
    def __init__(
        self,
        transport=None,
        recipients: Optional[List[str]] = None,
        cooldown_minutes: Optional[int] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        settings = get_settings()
        self.transport = transport
        self.recipients = list(recipients if recipients is not None else settings.alert_recipient_list)
        self.cooldown = timedelta(
            minutes=cooldown_minutes if cooldown_minutes is not None else settings.alert_cooldown_minutes
        )
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.upload_failure_rate_threshold = settings.upload_failure_rate_threshold
        self.email_delivery_rate_threshold = settings.email_delivery_rate_threshold
        self.storage_usage_threshold = settings.storage_usage_threshold
        self.storage_quota_bytes = settings.storage_quota_bytes
        self.send_timeout = settings.email_send_timeout_seconds
        self.last_alert_times: Dict[AlertType, datetime] = {}

    # ------------------------------------------------------------------
    # Cooldown
    # ------------------------------------------------------------------

    def in_cooldown(self, alert_type: AlertType) -> bool:
        last = self.last_alert_times.get(alert_type)
        return last is not None and self.clock() - last < self.cooldown

    def clear_cooldown(self, alert_type: Optional[AlertType] = None) -> None:
        """Forget one alert type, or every type when none is given."""
        if alert_type is None:
            self.last_alert_times.clear()
        else:
            self.last_alert_times.pop(alert_type, None)

    # ------------------------------------------------------------------
    # Raising
    # ------------------------------------------------------------------

    async def raise_alert(
        self,
        alert_type: AlertType,
        severity: AlertSeverity,
        message: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Log and notify unless the type is cooling down. Returns whether it fired."""
        if self.in_cooldown(alert_type):
            logger.debug(f"Alert {alert_type.value} is in cooldown period, skipping")
            return False

        alert = Alert(alert_type, severity, message, details or {}, self.clock())
        log_alert(alert_type.value, severity.value, message, alert.details)

        if self.transport is not None and self.recipients:
            await self._send_alert_email(alert)

        self.last_alert_times[alert_type] = alert.timestamp
        return True

    async def notify_delivery_exhausted(self, submission_id: int, email: str, error: str) -> bool:
        return await self.raise_alert(
            AlertType.EMAIL_DELIVERY_EXHAUSTED,
            AlertSeverity.HIGH,
            f"Report email for submission {submission_id} failed permanently",
            {"submission_id": submission_id, "email": email, "error": error},
        )

    async def _send_alert_email(self, alert: Alert) -> None:
        subject = f"[{alert.severity.value.upper()}] CV Pipeline Alert: {alert.type.value}"
        details = json.dumps(alert.details, indent=2, default=str)
        text = (
            f"{alert.message}\n\n"
            f"Alert Type: {alert.type.value}\n"
            f"Severity: {alert.severity.value}\n"
            f"Timestamp: {alert.timestamp.isoformat()}\n\n"
            f"Details:\n{details}"
        )
        html = (
            f"<h2>{escape(alert.message)}</h2>"
            f"<p><strong>Alert Type:</strong> {alert.type.value}<br>"
            f"<strong>Severity:</strong> {alert.severity.value}<br>"
            f"<strong>Timestamp:</strong> {alert.timestamp.isoformat()}</p>"
            f"<pre>{escape(details)}</pre>"
        )

        for recipient in self.recipients:
            try:
                await asyncio.wait_for(
                    self.transport.send(recipient, subject, html, text), timeout=self.send_timeout
                )
            except (CVPipelineError, asyncio.TimeoutError) as e:
                # An alert that cannot be mailed is still logged above
                logger.error(
                    "alert.email_failed",
                    extra={"alert_type": alert.type.value, "email": recipient, "error": str(e)},
                )
            except Exception as e:
                logger.exception(
                    "alert.email_failed",
                    extra={"alert_type": alert.type.value, "email": recipient, "error": str(e) or type(e).__name__},
                )

    # ------------------------------------------------------------------
    # Periodic checks
    # ------------------------------------------------------------------

    async def check_and_alert(self, db: AsyncSession, storage) -> List[AlertType]:
        """Evaluate upload, delivery, storage and database health. Returns the alerts that fired."""
        candidates: List[Alert] = []

        uploads = metrics.success_rate("upload")
        failure_rate = 100 - uploads["success_rate"]
        if uploads["total"] and failure_rate > self.upload_failure_rate_threshold:
            candidates.append(Alert(
                AlertType.HIGH_UPLOAD_FAILURE_RATE,
                AlertSeverity.CRITICAL if failure_rate > 20 else AlertSeverity.HIGH,
                f"Upload failure rate is {failure_rate:.1f}%",
                {"failure_rate": failure_rate, "threshold": self.upload_failure_rate_threshold,
                 "total_uploads": uploads["total"], "failed_uploads": uploads["failed"]},
            ))

        database_ok = True
        try:
            counts = await submission_store.count_by_email_status(db)
        except SQLAlchemyError as e:
            database_ok = False
            candidates.append(Alert(
                AlertType.DATABASE_CONNECTION_FAILED, AlertSeverity.CRITICAL,
                "Database connection failed", {"error": str(e)},
            ))
        else:
            sent = counts.get("sent", 0)
            failed = counts.get("failed", 0)
            delivery_rate = sent / (sent + failed) * 100 if sent + failed else 100.0
            # Only alert once there is meaningful volume
            if sent > 10 and delivery_rate < self.email_delivery_rate_threshold:
                candidates.append(Alert(
                    AlertType.LOW_EMAIL_DELIVERY_RATE,
                    AlertSeverity.CRITICAL if delivery_rate < 80 else AlertSeverity.HIGH,
                    f"Email delivery rate is {delivery_rate:.1f}%",
                    {"delivery_rate": delivery_rate, "threshold": self.email_delivery_rate_threshold,
                     "sent": sent, "failed": failed, "retrying": counts.get("retrying", 0)},
                ))

        storage_ok = True
        try:
            usage = storage.usage()
        except OSError as e:
            storage_ok = False
            candidates.append(Alert(
                AlertType.STORAGE_INACCESSIBLE, AlertSeverity.CRITICAL,
                "Storage directory is inaccessible", {"error": str(e)},
            ))
        else:
            usage_pct = usage["total_size"] / self.storage_quota_bytes * 100 if self.storage_quota_bytes else 0.0
            if usage_pct > self.storage_usage_threshold:
                candidates.append(Alert(
                    AlertType.HIGH_STORAGE_USAGE,
                    AlertSeverity.CRITICAL if usage_pct > 95 else AlertSeverity.MEDIUM,
                    f"Storage usage is {usage_pct:.1f}%",
                    {"usage_percentage": usage_pct, "threshold": self.storage_usage_threshold,
                     "total_size": usage["total_size"], "total_files": usage["total_files"]},
                ))

        if not (database_ok and storage_ok):
            candidates.append(Alert(
                AlertType.SYSTEM_UNHEALTHY, AlertSeverity.CRITICAL, "System health check failed",
                {"database": database_ok, "storage": storage_ok},
            ))

        fired = []
        for alert in candidates:
            if await self.raise_alert(alert.type, alert.severity, alert.message, alert.details):
                fired.append(alert.type)
        return fired
