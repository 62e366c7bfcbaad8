"""
Async persistence helpers for CV submissions.

Usage:
    submission = await submission_store.create_submission(db, applicant, stored)
    await submission_store.record_analysis(db, submission.id, result)
    submission = await submission_store.get_by_uuid(db, submission_uuid)
"""
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update, func
from datetime import datetime, timezone
from typing import Dict, List, Optional

from cvpipeline.models.submission import Submission
from cvpipeline.schemas.analysis import AnalysisResult
from cvpipeline.schemas.submission import ApplicantData
from cvpipeline.utils.logger import logger


async def create_submission(
    db: AsyncSession,
    applicant: ApplicantData,
    cv_filename: str,
    cv_file_path: str,
    cv_file_size: int,
    cv_mime_type: str,
) -> Submission:
    """Insert a submission without analysis and return it"""
    submission = Submission(
        first_name=applicant.first_name,
        last_name=applicant.last_name,
        email=applicant.email,
        phone=applicant.phone,
        cv_filename=cv_filename,
        cv_file_path=cv_file_path,
        cv_file_size=cv_file_size,
        cv_mime_type=cv_mime_type,
        ip_address=applicant.ip_address,
        user_agent=applicant.user_agent,
    )
    db.add(submission)
    await db.commit()
    await db.refresh(submission)
    logger.info("submission.created", extra={"submission_id": submission.id, "file_name": cv_filename})
    return submission


async def get_submission(db: AsyncSession, submission_id: int) -> Optional[Submission]:
    result = await db.execute(
        select(Submission)
        .where(Submission.id == submission_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_by_uuid(db: AsyncSession, submission_uuid: str) -> Optional[Submission]:
    """Look up a submission by its external identifier"""
    result = await db.execute(
        select(Submission)
        .where(Submission.uuid == submission_uuid)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def record_analysis(db: AsyncSession, submission_id: int, analysis: AnalysisResult) -> None:
    """Write all four analysis columns in one statement"""
    await db.execute(
        update(Submission)
        .where(Submission.id == submission_id)
        .values(
            analysis_score=analysis.overall_score,
            ats_score=analysis.ats_compatibility,
            analysis_results=analysis.report(),
            analyzed_at=analysis.analyzed_at,
            analysis_error=None,
            updated_at=datetime.now(timezone.utc),
        )
        .execution_options(synchronize_session=False)
    )
    await db.commit()


async def clear_analysis(db: AsyncSession, submission_id: int) -> None:
    """Drop the analysis so the submission is picked up by re-analysis"""
    await db.execute(
        update(Submission)
        .where(Submission.id == submission_id)
        .values(
            analysis_score=None,
            ats_score=None,
            analysis_results=None,
            analyzed_at=None,
            analysis_attempts=0,
            analysis_error=None,
            updated_at=datetime.now(timezone.utc),
        )
        .execution_options(synchronize_session=False)
    )
    await db.commit()


def load_analysis(submission: Submission) -> Optional[AnalysisResult]:
    """Rebuild the stored analysis of a submission, or None when it has none"""
    if not submission.has_analysis:
        return None
    return AnalysisResult.from_stored(
        score=submission.analysis_score,
        ats_score=submission.ats_score,
        report=submission.analysis_results,
        analyzed_at=submission.analyzed_at,
    )


async def record_analysis_failure(db: AsyncSession, submission_id: int, error: str) -> None:
    """Count a failed analysis attempt so re-analysis backs off and eventually gives up"""
    now = datetime.now(timezone.utc)
    await db.execute(
        update(Submission)
        .where(Submission.id == submission_id)
        .values(
            analysis_attempts=Submission.analysis_attempts + 1,
            analysis_last_tried_at=now,
            analysis_error=error,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    await db.commit()


async def list_unanalyzed(db: AsyncSession, limit: int = 100, max_attempts: int = 3) -> List[Submission]:
    """Submissions still missing analysis, least recently tried first"""
    result = await db.execute(
        select(Submission)
        .where(
            Submission.analysis_score.is_(None),
            Submission.analysis_attempts < max_attempts,
        )
        .order_by(Submission.analysis_last_tried_at.asc().nulls_first(), Submission.id.asc())
        .limit(limit)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def count_by_email_status(db: AsyncSession) -> Dict[str, int]:
    result = await db.execute(
        select(Submission.email_status, func.count(Submission.id)).group_by(Submission.email_status)
    )
    return {status: count for status, count in result.all()}
