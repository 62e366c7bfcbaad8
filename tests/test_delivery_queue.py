from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import update

from conftest import Clock, FakeTransport
from cvpipeline.config import Settings
from cvpipeline.errors import DeliveryFailed, NotFound, SubmissionNotAnalyzed
from cvpipeline.models.submission import EmailStatus, Submission
from cvpipeline.services import delivery_queue, submission_store
from cvpipeline.services.alerting import AlertingService, AlertType
from cvpipeline.utils import metrics

T0 = datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)
DUE = T0 + timedelta(hours=24)


def naive(dt):
    """SQLite hands datetimes back without tzinfo."""
    return dt.replace(tzinfo=None)


@pytest.fixture
def alerting():
    return AlertingService(recipients=[], clock=lambda: DUE)


async def queued_submission(db, make_submission):
    submission_id = await make_submission()
    assert await delivery_queue.schedule(db, submission_id, now=T0)
    return submission_id


async def test_schedule_queues_with_delay(db, make_submission):
    submission_id = await make_submission()

    assert await delivery_queue.schedule(db, submission_id, now=T0) is True

    submission = await submission_store.get_submission(db, submission_id)
    assert submission.email_status == EmailStatus.QUEUED
    assert naive(submission.email_scheduled_at) == naive(DUE)
    assert submission.email_attempts == 0


async def test_schedule_custom_delay(db, make_submission):
    submission_id = await make_submission()
    await delivery_queue.schedule(db, submission_id, delay_hours=48, now=T0)

    submission = await submission_store.get_submission(db, submission_id)
    assert naive(submission.email_scheduled_at) == naive(T0 + timedelta(hours=48))


async def test_schedule_twice_is_a_no_op(db, make_submission):
    submission_id = await make_submission()
    await delivery_queue.schedule(db, submission_id, now=T0)

    assert await delivery_queue.schedule(db, submission_id, delay_hours=1, now=T0 + timedelta(hours=2)) is False

    submission = await submission_store.get_submission(db, submission_id)
    assert naive(submission.email_scheduled_at) == naive(DUE)
    assert submission.email_attempts == 0


async def test_schedule_after_failure_does_not_reset_attempts(db, make_submission, alerting):
    submission_id = await queued_submission(db, make_submission)
    transport = FakeTransport(fail_times=-1)
    for i in range(3):
        await delivery_queue.process_due(db, transport, clock=Clock(DUE + timedelta(minutes=30 * i)), alerting=alerting)

    assert await delivery_queue.schedule(db, submission_id, now=DUE) is False
    submission = await submission_store.get_submission(db, submission_id)
    assert submission.email_status == EmailStatus.FAILED
    assert submission.email_attempts == 3


async def test_schedule_missing_submission(db):
    with pytest.raises(NotFound):
        await delivery_queue.schedule(db, 9999, now=T0)


async def test_schedule_requires_analysis(db, make_submission):
    submission_id = await make_submission(analyzed=False)
    with pytest.raises(SubmissionNotAnalyzed):
        await delivery_queue.schedule(db, submission_id, now=T0)


async def test_nothing_is_sent_before_it_is_due(db, make_submission, alerting):
    await queued_submission(db, make_submission)
    transport = FakeTransport()

    result = await delivery_queue.process_due(db, transport, clock=Clock(DUE - timedelta(seconds=1)), alerting=alerting)

    assert result == {"sent": 0, "failed": 0}
    assert transport.calls == 0


async def test_due_email_is_sent(db, make_submission, alerting):
    submission_id = await queued_submission(db, make_submission)
    transport = FakeTransport()

    result = await delivery_queue.process_due(db, transport, clock=Clock(DUE), alerting=alerting)

    assert result == {"sent": 1, "failed": 0}
    submission = await submission_store.get_submission(db, submission_id)
    assert submission.email_status == EmailStatus.SENT
    assert submission.email_attempts == 1
    assert submission.email_error is None
    assert naive(submission.email_sent_at) == naive(DUE)

    message = transport.sent[0]
    assert message["to"] == "jane.smith@example.com"
    assert message["subject"] == f"Your CV Analysis Results - {submission.analysis_score}/100"
    assert "Dear Jane" in message["text"]
    assert metrics.get_counter("email.success") == 1

    # Sent rows are never picked up again
    assert await delivery_queue.process_due(db, transport, clock=Clock(DUE + timedelta(days=3)), alerting=alerting) == {
        "sent": 0, "failed": 0,
    }


async def test_transient_failure_is_retried_after_delay(db, make_submission, alerting):
    submission_id = await queued_submission(db, make_submission)
    transport = FakeTransport(fail_times=1)

    assert await delivery_queue.process_due(db, transport, clock=Clock(DUE), alerting=alerting) == {"sent": 0, "failed": 1}

    submission = await submission_store.get_submission(db, submission_id)
    assert submission.email_status == EmailStatus.RETRYING
    assert submission.email_attempts == 1
    assert submission.email_error == "SMTP connection refused"
    assert naive(submission.email_scheduled_at) == naive(DUE + timedelta(minutes=30))

    # Not yet due again
    assert await delivery_queue.process_due(db, transport, clock=Clock(DUE + timedelta(minutes=29)), alerting=alerting) == {
        "sent": 0, "failed": 0,
    }

    assert await delivery_queue.process_due(db, transport, clock=Clock(DUE + timedelta(minutes=30)), alerting=alerting) == {
        "sent": 1, "failed": 0,
    }
    submission = await submission_store.get_submission(db, submission_id)
    assert submission.email_status == EmailStatus.SENT
    assert submission.email_attempts == 2
    assert submission.email_error is None


async def test_exhaustion_after_exactly_three_attempts(db, make_submission, alerting):
    submission_id = await queued_submission(db, make_submission)
    transport = FakeTransport(fail_times=-1)

    for attempt in range(1, 4):
        now = DUE + timedelta(minutes=30 * (attempt - 1))
        assert await delivery_queue.process_due(db, transport, clock=Clock(now), alerting=alerting) == {"sent": 0, "failed": 1}
        submission = await submission_store.get_submission(db, submission_id)
        assert submission.email_attempts == attempt

    assert submission.email_status == EmailStatus.FAILED
    assert submission.email_error == "SMTP connection refused"
    assert AlertType.EMAIL_DELIVERY_EXHAUSTED in alerting.last_alert_times

    # Terminal: no fourth attempt, whatever the clock says
    assert await delivery_queue.process_due(db, transport, clock=Clock(DUE + timedelta(days=7)), alerting=alerting) == {
        "sent": 0, "failed": 0,
    }
    assert transport.calls == 3


async def test_send_timeout_counts_as_failed_attempt(db, make_submission, alerting):
    submission_id = await queued_submission(db, make_submission)
    settings = Settings(email_send_timeout_seconds=0.05)

    result = await delivery_queue.process_due(
        db, FakeTransport(delay=1.0), alerting=alerting, settings=settings, clock=Clock(DUE)
    )

    assert result == {"sent": 0, "failed": 1}
    submission = await submission_store.get_submission(db, submission_id)
    assert submission.email_status == EmailStatus.RETRYING
    assert "timed out" in submission.email_error


async def test_batch_is_processed_oldest_first(db, make_submission, alerting):
    late = await make_submission(email="late@example.com")
    early = await make_submission(email="early@example.com")
    await delivery_queue.schedule(db, late, delay_hours=2, now=T0)
    await delivery_queue.schedule(db, early, delay_hours=1, now=T0)
    transport = FakeTransport()

    await delivery_queue.process_due(db, transport, clock=Clock(T0 + timedelta(hours=3)), alerting=alerting)

    assert [m["to"] for m in transport.sent] == ["early@example.com", "late@example.com"]
    first = await submission_store.get_submission(db, early)
    second = await submission_store.get_submission(db, late)
    assert first.email_status == second.email_status == EmailStatus.SENT


async def test_batch_size_limits_one_pass(db, make_submission, alerting):
    for _ in range(3):
        await queued_submission(db, make_submission)
    settings = Settings(email_batch_size=2)

    result = await delivery_queue.process_due(db, FakeTransport(), clock=Clock(DUE), alerting=alerting, settings=settings)
    assert result == {"sent": 2, "failed": 0}


async def test_only_one_claim_wins(db, session_factory, make_submission):
    submission_id = await queued_submission(db, make_submission)

    async with session_factory() as other:
        assert await delivery_queue.claim(db, submission_id, 0, DUE) is not None
        assert await delivery_queue.claim(other, submission_id, 0, DUE) is None
        # Even with a fresh attempt count the lease keeps others out
        assert await delivery_queue.claim(other, submission_id, 1, DUE + timedelta(minutes=14)) is None

        # The claimed row is leased away from other pollers
        transport = FakeTransport()
        result = await delivery_queue.process_due(
            other, transport, AlertingService(recipients=[]), clock=Clock(DUE + timedelta(minutes=14))
        )
        assert result == {"sent": 0, "failed": 0}
        assert transport.calls == 0

    submission = await submission_store.get_submission(db, submission_id)
    assert submission.email_attempts == 1
    assert submission.email_status == EmailStatus.RETRYING
    assert naive(submission.email_locked_until) == naive(DUE + timedelta(minutes=15))


async def test_expired_lease_can_be_reclaimed(db, make_submission):
    submission_id = await queued_submission(db, make_submission)
    assert await delivery_queue.claim(db, submission_id, 0, DUE) is not None

    # The worker holding it died; once the lease runs out the next attempt may start
    assert await delivery_queue.claim(db, submission_id, 1, DUE + timedelta(minutes=15)) is not None
    submission = await submission_store.get_submission(db, submission_id)
    assert submission.email_attempts == 2


async def test_lease_starts_when_the_row_is_claimed(db, session_factory, make_submission, alerting):
    first = await make_submission(email="first@example.com")
    second = await make_submission(email="second@example.com")
    for submission_id in (first, second):
        await delivery_queue.schedule(db, submission_id, now=T0)

    clock = Clock(DUE)
    other_worker = FakeTransport()

    class SlowTransport(FakeTransport):
        async def send(self, to, subject, html_body, text_body):
            if to == "first@example.com":
                # The first send takes longer than a whole lease
                clock.now += timedelta(minutes=16)
            else:
                async with session_factory() as other:
                    await delivery_queue.process_due(
                        other, other_worker, alerting, clock=Clock(clock.now + timedelta(minutes=1))
                    )
            await super().send(to, subject, html_body, text_body)

    transport = SlowTransport()
    assert await delivery_queue.process_due(db, transport, alerting, clock=clock) == {"sent": 2, "failed": 0}

    assert [m["to"] for m in transport.sent] == ["first@example.com", "second@example.com"]
    assert other_worker.calls == 0
    submission = await submission_store.get_submission(db, second)
    assert submission.email_attempts == 1
    assert naive(submission.email_last_attempt_at) == naive(DUE + timedelta(minutes=16))
    assert naive(submission.email_sent_at) == naive(DUE + timedelta(minutes=16))
    assert submission.email_locked_until is None



async def test_abandoned_final_attempt_is_finalized(db, make_submission, alerting):
    submission_id = await queued_submission(db, make_submission)
    # A worker claimed the last attempt and died before recording the outcome
    await db.execute(
        update(Submission)
        .where(Submission.id == submission_id)
        .values(email_status=EmailStatus.RETRYING, email_attempts=3, email_scheduled_at=DUE)
        .execution_options(synchronize_session=False)
    )
    await db.commit()

    assert await delivery_queue.process_due(db, FakeTransport(), clock=Clock(DUE), alerting=alerting) == {"sent": 0, "failed": 0}

    submission = await submission_store.get_submission(db, submission_id)
    assert submission.email_status == EmailStatus.FAILED
    assert submission.email_attempts == 3
    assert submission.email_error

async def test_leased_final_attempt_is_not_finalized(db, make_submission):
    submission_id = await queued_submission(db, make_submission)
    await db.execute(
        update(Submission)
        .where(Submission.id == submission_id)
        .values(email_status=EmailStatus.RETRYING, email_attempts=2, email_scheduled_at=DUE)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    assert await delivery_queue.claim(db, submission_id, 2, DUE) is not None

    # Still sending its last attempt
    assert await delivery_queue.finalize_abandoned(db, DUE + timedelta(minutes=10)) == 0
    assert await delivery_queue.finalize_abandoned(db, DUE + timedelta(minutes=15)) == 1
    submission = await submission_store.get_submission(db, submission_id)
    assert submission.email_status == EmailStatus.FAILED
    assert submission.email_error == "Delivery abandoned after final attempt"



async def test_retry_now_resends_failed_delivery(db, make_submission, alerting):
    submission_id = await queued_submission(db, make_submission)
    for i in range(3):
        await delivery_queue.process_due(db, FakeTransport(fail_times=-1), clock=Clock(DUE + timedelta(minutes=30 * i)), alerting=alerting)

    transport = FakeTransport()
    assert await delivery_queue.retry_now(db, submission_id, transport, clock=Clock(DUE + timedelta(hours=5)), alerting=alerting)

    submission = await submission_store.get_submission(db, submission_id)
    assert submission.email_status == EmailStatus.SENT
    assert submission.email_attempts == 1
    assert submission.email_error is None
    assert transport.calls == 1


async def test_retry_now_sends_queued_email_early(db, make_submission, alerting):
    submission_id = await queued_submission(db, make_submission)
    assert await delivery_queue.retry_now(db, submission_id, FakeTransport(), clock=Clock(T0 + timedelta(hours=1)), alerting=alerting)


async def test_retry_now_failure_keeps_retrying(db, make_submission, alerting):
    submission_id = await queued_submission(db, make_submission)
    assert not await delivery_queue.retry_now(db, submission_id, FakeTransport(fail_times=-1), clock=Clock(T0), alerting=alerting)

    submission = await submission_store.get_submission(db, submission_id)
    assert submission.email_status == EmailStatus.RETRYING
    assert submission.email_attempts == 1


async def test_retry_now_rejections(db, make_submission, alerting):
    not_queued = await make_submission()
    assert await delivery_queue.retry_now(db, not_queued, FakeTransport(), clock=Clock(T0), alerting=alerting) is False

    sent = await queued_submission(db, make_submission)
    await delivery_queue.process_due(db, FakeTransport(), clock=Clock(DUE), alerting=alerting)
    transport = FakeTransport()
    assert await delivery_queue.retry_now(db, sent, transport, clock=Clock(DUE), alerting=alerting) is False
    assert transport.calls == 0

    with pytest.raises(NotFound):
        await delivery_queue.retry_now(db, 9999, FakeTransport(), clock=Clock(T0), alerting=alerting)

async def test_retry_now_leaves_an_in_flight_send_alone(db, session_factory, make_submission, alerting):
    submission_id = await queued_submission(db, make_submission)
    admin_transport = FakeTransport()
    admin_results = []

    class AdminRetriesMidSend(FakeTransport):
        async def send(self, to, subject, html_body, text_body):
            async with session_factory() as admin_db:
                admin_results.append(await delivery_queue.retry_now(
                    admin_db, submission_id, admin_transport, alerting, clock=Clock(DUE + timedelta(minutes=1))
                ))
            await super().send(to, subject, html_body, text_body)

    result = await delivery_queue.process_due(db, AdminRetriesMidSend(), alerting, clock=Clock(DUE))

    assert result == {"sent": 1, "failed": 0}
    assert admin_results == [False]
    assert admin_transport.calls == 0
    submission = await submission_store.get_submission(db, submission_id)
    assert submission.email_status == EmailStatus.SENT
    assert submission.email_attempts == 1


async def test_worker_past_its_lease_cannot_overwrite_newer_state(db, session_factory, make_submission, alerting):
    submission_id = await queued_submission(db, make_submission)
    admin_done_at = DUE + timedelta(minutes=20)

    class StalledTransport(FakeTransport):
        async def send(self, to, subject, html_body, text_body):
            # Stalled past the lease; an admin resends in the meantime
            async with session_factory() as admin_db:
                assert await delivery_queue.retry_now(
                    admin_db, submission_id, FakeTransport(), alerting, clock=Clock(admin_done_at)
                )
            raise DeliveryFailed("SMTP connection reset")

    assert await delivery_queue.process_due(db, StalledTransport(), alerting, clock=Clock(DUE)) == {
        "sent": 0, "failed": 1,
    }

    # The admin's successful send stands
    submission = await submission_store.get_submission(db, submission_id)
    assert submission.email_status == EmailStatus.SENT
    assert submission.email_attempts == 1
    assert submission.email_error is None
    assert naive(submission.email_sent_at) == naive(admin_done_at)
    assert submission.email_claim_token is None



async def test_queue_stats_and_failed_list(db, make_submission, alerting):
    await make_submission()
    failing = await queued_submission(db, make_submission)
    for i in range(3):
        await delivery_queue.process_due(db, FakeTransport(fail_times=-1), clock=Clock(DUE + timedelta(minutes=30 * i)), alerting=alerting)
    await queued_submission(db, make_submission)

    stats = await delivery_queue.get_queue_stats(db)
    assert stats == {"not_queued": 1, "queued": 1, "retrying": 0, "sent": 0, "failed": 1, "total": 3}

    failed = await delivery_queue.get_failed_deliveries(db)
    assert [row["id"] for row in failed] == [failing]
    assert failed[0]["email_attempts"] == 3
    assert failed[0]["email_error"] == "SMTP connection refused"


async def test_alerting_service_must_be_passed_in(db):
    with pytest.raises(TypeError):
        await delivery_queue.process_due(db, FakeTransport())
    with pytest.raises(TypeError):
        await delivery_queue.retry_now(db, 1, FakeTransport())
