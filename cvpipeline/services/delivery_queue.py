"""
Delayed delivery queue for report emails, backed by the cv_submissions table.

State machine per submission:
    not_queued → queued → retrying → sent | failed

Usage:
    await delivery_queue.schedule(db, submission_id)                      # after analysis
    await delivery_queue.process_due(db, transport, alerting)             # from the worker
    await delivery_queue.retry_now(db, submission_id, transport, alerting)  # admin override

Every send is preceded by a compare-and-set claim on the row. The claim stamps
a lease (`email_locked_until`) and a token; other pollers skip the row until
the lease runs out, and the outcome is only written while the token still
matches, so a worker that outlived its lease cannot overwrite newer state.
"""
import asyncio
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from cvpipeline.config import Settings, get_settings
from cvpipeline.errors import CVPipelineError, DeliveryExhausted, NotFound, SubmissionNotAnalyzed
from cvpipeline.models.submission import EmailStatus, Submission
from cvpipeline.services import submission_store
from cvpipeline.services.alerting import AlertingService
from cvpipeline.services.email_templates import render_report_email
from cvpipeline.services.mail_transport import MailTransport
from cvpipeline.utils import metrics
from cvpipeline.utils.logger import log_email_delivery, logger

SENT = "sent"
FAILED = "failed"

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _unlocked(at: datetime):
    return or_(Submission.email_locked_until.is_(None), Submission.email_locked_until <= at)


async def schedule(
    db: AsyncSession,
    submission_id: int,
    delay_hours: Optional[float] = None,
    now: Optional[datetime] = None,
    settings: Optional[Settings] = None,
) -> bool:
    """
    Queue the report email for `now + delay_hours`.

    Only a `not_queued` submission can be scheduled. Any other state is left
    untouched and False is returned.

    Raises:
        NotFound: no such submission
        SubmissionNotAnalyzed: the submission has no analysis to send
    """
    settings = settings or get_settings()
    now = now or _utcnow()
    delay_hours = settings.email_delay_hours if delay_hours is None else delay_hours
    if delay_hours < 0:
        raise ValueError("delay_hours must not be negative")

    submission = await submission_store.get_submission(db, submission_id)
    if submission is None:
        raise NotFound(f"Submission not found: {submission_id}")
    if not submission.has_analysis:
        raise SubmissionNotAnalyzed(
            "Submission has no analysis to deliver", details={"submission_id": submission_id}
        )

    if submission.email_status != EmailStatus.NOT_QUEUED:
        logger.info(
            "email.schedule_skipped",
            extra={"submission_id": submission_id, "status": submission.email_status},
        )
        return False

    scheduled_at = now + timedelta(hours=delay_hours)
    result = await db.execute(
        update(Submission)
        .where(and_(Submission.id == submission_id, Submission.email_status == EmailStatus.NOT_QUEUED))
        .values(
            email_status=EmailStatus.QUEUED,
            email_scheduled_at=scheduled_at,
            email_attempts=0,
            email_error=None,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    await db.commit()

    if result.rowcount != 1:
        # Another caller queued it between our read and write
        return False

    logger.info(
        "email.queued",
        extra={"submission_id": submission_id, "scheduled_at": scheduled_at.isoformat()},
    )
    return True


async def process_due(
    db: AsyncSession,
    transport: MailTransport,
    alerting: AlertingService,
    now: Optional[datetime] = None,
    settings: Optional[Settings] = None,
    clock: Optional[Clock] = None,
) -> Dict[str, int]:
    """
    Send every due email, oldest schedule first.

    `now` only sets the due cutoff. Claims, leases and the recorded timestamps
    read `clock` once per row, so a long batch never hands out a lease that has
    already run out.

    Returns:
        {"sent": n, "failed": m} where failed counts failed attempts
    """
    settings = settings or get_settings()
    clock = clock or _utcnow
    started_at = clock()
    cutoff = now or started_at

    await finalize_abandoned(db, started_at, settings)

    result = await db.execute(
        select(Submission)
        .where(
            and_(
                Submission.email_status.in_(EmailStatus.PENDING),
                Submission.email_scheduled_at <= cutoff,
                Submission.email_attempts < settings.email_max_retries,
                _unlocked(started_at),
            )
        )
        .order_by(Submission.email_scheduled_at.asc(), Submission.id.asc())
        .limit(settings.email_batch_size)
        .execution_options(populate_existing=True)
    )
    due = list(result.scalars().all())

    sent = 0
    failed = 0
    for submission in due:
        outcome = await _attempt_delivery(db, submission, transport, alerting, settings, clock, cutoff)
        if outcome == SENT:
            sent += 1
        elif outcome == FAILED:
            failed += 1

    if due:
        logger.info(
            "email.batch_processed",
            extra={"total": len(due), "sent": sent, "failed": failed},
        )
    return {"sent": sent, "failed": failed}


async def retry_now(
    db: AsyncSession,
    submission_id: int,
    transport: MailTransport,
    alerting: AlertingService,
    settings: Optional[Settings] = None,
    clock: Optional[Clock] = None,
) -> bool:
    """
    Admin override: reset the attempt count and send immediately.

    Applies to queued, retrying and failed submissions that have an analysis
    and are not held by a worker mid-send. Returns True only when the email
    was sent.
    """
    settings = settings or get_settings()
    clock = clock or _utcnow
    now = clock()

    submission = await submission_store.get_submission(db, submission_id)
    if submission is None:
        raise NotFound(f"Submission not found: {submission_id}")

    retryable = (EmailStatus.QUEUED, EmailStatus.RETRYING, EmailStatus.FAILED)
    if submission.email_status not in retryable or not submission.has_analysis:
        logger.info(
            "email.retry_rejected",
            extra={"submission_id": submission_id, "status": submission.email_status},
        )
        return False

    result = await db.execute(
        update(Submission)
        .where(
            and_(
                Submission.id == submission_id,
                Submission.email_status == submission.email_status,
                Submission.email_attempts == submission.email_attempts,
                _unlocked(now),
            )
        )
        .values(
            email_status=EmailStatus.QUEUED,
            email_attempts=0,
            email_scheduled_at=now,
            email_error=None,
            email_locked_until=None,
            email_claim_token=None,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    if result.rowcount != 1:
        # A worker holds the row, or it changed since we read it
        logger.info(
            "email.retry_rejected_in_flight",
            extra={"submission_id": submission_id, "status": submission.email_status},
        )
        return False

    logger.info("email.retry_requested", extra={"submission_id": submission_id})
    submission = await submission_store.get_submission(db, submission_id)
    outcome = await _attempt_delivery(db, submission, transport, alerting, settings, clock, now)
    return outcome == SENT


async def get_queue_stats(db: AsyncSession) -> Dict[str, int]:
    """Number of submissions in each delivery state, plus the total"""
    counts = await submission_store.count_by_email_status(db)
    stats = {status: counts.get(status, 0) for status in EmailStatus.ALL}
    stats["total"] = sum(stats.values())
    return stats


async def get_failed_deliveries(db: AsyncSession, limit: int = 50) -> List[Dict[str, Any]]:
    """Permanently failed deliveries, most recent attempt first"""
    result = await db.execute(
        select(Submission)
        .where(Submission.email_status == EmailStatus.FAILED)
        .order_by(Submission.email_last_attempt_at.desc(), Submission.id.desc())
        .limit(limit)
        .execution_options(populate_existing=True)
    )
    return [
        {
            "id": s.id,
            "uuid": s.uuid,
            "email": s.email,
            "first_name": s.first_name,
            "last_name": s.last_name,
            "email_attempts": s.email_attempts,
            "email_error": s.email_error,
            "email_last_attempt_at": s.email_last_attempt_at.isoformat() if s.email_last_attempt_at else None,
        }
        for s in result.scalars().all()
    ]


async def finalize_abandoned(
    db: AsyncSession,
    now: Optional[datetime] = None,
    settings: Optional[Settings] = None,
) -> int:
    """
    Fail rows stuck in `retrying` at the attempt limit whose claim lease expired.

    That only happens when a worker died between claiming its last attempt and
    recording the outcome. Returns the number of rows finalized.
    """
    settings = settings or get_settings()
    now = now or _utcnow()
    result = await db.execute(
        update(Submission)
        .where(
            and_(
                Submission.email_status == EmailStatus.RETRYING,
                Submission.email_attempts >= settings.email_max_retries,
                _unlocked(now),
            )
        )
        .values(
            email_status=EmailStatus.FAILED,
            email_error=func.coalesce(Submission.email_error, "Delivery abandoned after final attempt"),
            email_locked_until=None,
            email_claim_token=None,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    count = result.rowcount or 0
    if count > 0:
        logger.warning("email.abandoned_finalized", extra={"count": count})
    return count


async def claim(
    db: AsyncSession,
    submission_id: int,
    seen_attempts: int,
    now: datetime,
    settings: Optional[Settings] = None,
    due_by: Optional[datetime] = None,
) -> Optional[str]:
    """
    Atomically take the next attempt on a due row.

    The UPDATE only matches while the row still has the attempt count we read,
    is due by `due_by` (default `now`) and is not leased, so exactly one
    concurrent caller wins. The winner leases the row until `now` plus the
    claim lease. Returns the claim token, or None when the claim was lost.
    """
    settings = settings or get_settings()
    token = uuid4().hex
    result = await db.execute(
        update(Submission)
        .where(
            and_(
                Submission.id == submission_id,
                Submission.email_attempts == seen_attempts,
                Submission.email_status.in_(EmailStatus.PENDING),
                Submission.email_scheduled_at <= (due_by or now),
                _unlocked(now),
            )
        )
        .values(
            email_attempts=Submission.email_attempts + 1,
            email_last_attempt_at=now,
            email_status=EmailStatus.RETRYING,
            email_locked_until=now + timedelta(minutes=settings.email_claim_lease_minutes),
            email_claim_token=token,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return token if result.rowcount == 1 else None


async def _attempt_delivery(
    db: AsyncSession,
    submission: Submission,
    transport: MailTransport,
    alerting: AlertingService,
    settings: Settings,
    clock: Clock,
    due_by: datetime,
) -> Optional[str]:
    """Claim, send and record one attempt. Returns SENT, FAILED or None when the claim was lost."""
    submission_id = submission.id
    token = await claim(db, submission_id, submission.email_attempts, clock(), settings, due_by=due_by)
    if token is None:
        logger.info("email.claim_lost", extra={"submission_id": submission_id})
        return None
    attempt = submission.email_attempts + 1

    error: Optional[str] = None
    try:
        analysis = submission_store.load_analysis(submission)
        if analysis is None:
            raise SubmissionNotAnalyzed("Submission has no analysis to deliver")
        content = render_report_email(
            to=submission.email,
            first_name=submission.first_name,
            analysis=analysis,
            sender_name=settings.email_from_name,
            sender_address=settings.email_from_address,
        )
        started = time.monotonic()
        await asyncio.wait_for(
            transport.send(content.to, content.subject, content.html, content.text),
            timeout=settings.email_send_timeout_seconds,
        )
        metrics.observe("email.send_duration_ms", (time.monotonic() - started) * 1000)
    except CVPipelineError as e:
        error = e.message
    except asyncio.TimeoutError:
        error = f"Send timed out after {settings.email_send_timeout_seconds}s"
    except Exception as e:
        # Transports should raise DeliveryFailed; anything else is still a failed attempt
        logger.exception("email.transport_error", extra={"submission_id": submission_id})
        error = str(e) or type(e).__name__

    finished_at = clock()
    if error is None:
        recorded = await _mark_sent(db, submission_id, token, finished_at)
        metrics.inc("email.success")
        log_email_delivery(str(submission_id), submission.email, True, attempt)
        if not recorded:
            _log_superseded(submission_id, attempt)
        return SENT

    metrics.inc("email.error")
    log_email_delivery(str(submission_id), submission.email, False, attempt, error=error)

    if attempt >= settings.email_max_retries:
        if not await _mark_failed(db, submission_id, token, error, finished_at):
            _log_superseded(submission_id, attempt)
            return FAILED
        exhausted = DeliveryExhausted(
            f"Email delivery failed after {attempt} attempts",
            details={"submission_id": submission_id, "error": error},
        )
        logger.error(
            "email.exhausted",
            extra={"submission_id": submission_id, "email": submission.email,
                   "error": exhausted.message, "error_code": exhausted.code,
                   "max_retries": settings.email_max_retries},
        )
        await alerting.notify_delivery_exhausted(submission_id, submission.email, error)
    else:
        next_retry = finished_at + timedelta(minutes=settings.email_retry_delay_minutes)
        if not await _mark_retrying(db, submission_id, token, error, next_retry, finished_at):
            _log_superseded(submission_id, attempt)
            return FAILED
        logger.info(
            "email.retry_scheduled",
            extra={"submission_id": submission_id, "attempt": attempt,
                   "next_retry": next_retry.isoformat()},
        )
    return FAILED


def _log_superseded(submission_id: int, attempt: int) -> None:
    logger.warning("email.outcome_superseded", extra={"submission_id": submission_id, "attempt": attempt})


async def _record_outcome(db: AsyncSession, submission_id: int, token: str, **values) -> bool:
    """Write the outcome of a claimed attempt and release the lease, only while the claim is ours"""
    result = await db.execute(
        update(Submission)
        .where(
            and_(
                Submission.id == submission_id,
                Submission.email_status == EmailStatus.RETRYING,
                Submission.email_claim_token == token,
            )
        )
        .values(email_locked_until=None, email_claim_token=None, **values)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return result.rowcount == 1


async def _mark_sent(db: AsyncSession, submission_id: int, token: str, now: datetime) -> bool:
    return await _record_outcome(
        db, submission_id, token,
        email_status=EmailStatus.SENT, email_sent_at=now, email_error=None, updated_at=now,
    )


async def _mark_failed(db: AsyncSession, submission_id: int, token: str, error: str, now: datetime) -> bool:
    return await _record_outcome(
        db, submission_id, token,
        email_status=EmailStatus.FAILED, email_error=error, updated_at=now,
    )


async def _mark_retrying(
    db: AsyncSession, submission_id: int, token: str, error: str, next_retry: datetime, now: datetime
) -> bool:
    return await _record_outcome(
        db, submission_id, token,
        email_status=EmailStatus.RETRYING, email_error=error, email_scheduled_at=next_retry, updated_at=now,
    )
