"""
Upload pipeline: store → extract → analyze → persist → queue the report email.

The submission row is written as soon as the file is stored. When extraction
or analysis fails afterwards the row keeps no analysis, the failed attempt is
counted, the error is re-raised with the submission identifiers attached, and
`reanalyze_pending` fills the analysis in later.
"""
import asyncio
import time
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from cvpipeline.config import get_settings
from cvpipeline.errors import CVPipelineError
from cvpipeline.schemas.submission import ApplicantData, CVMetadata
from cvpipeline.services import delivery_queue, submission_store
from cvpipeline.services.cv_analysis import CVAnalysisEngine, cv_analysis_engine
from cvpipeline.services.text_extractor import TextExtractor, text_extractor
from cvpipeline.utils import metrics
from cvpipeline.utils.file_handler import FileHandler
from cvpipeline.utils.logger import log_cv_analysis, logger


async def store_and_analyze(
    db: AsyncSession,
    content: bytes,
    metadata: CVMetadata,
    applicant: ApplicantData,
    storage: Optional[FileHandler] = None,
    extractor: Optional[TextExtractor] = None,
    engine: Optional[CVAnalysisEngine] = None,
) -> Dict[str, Any]:
    """
    Accept an uploaded CV, analyze it and queue the report email.

    Returns:
        {"submission_id", "submission_uuid", "analysis_result"}

    Raises:
        InvalidFileType / FileTooLarge / FileUploadFailed: nothing was stored
        TextExtractionFailed / AnalysisFailed: stored and recorded, not analyzed
    """
    storage = storage or FileHandler()

    try:
        relative_path = storage.store(content, metadata)
    except CVPipelineError:
        metrics.inc("upload.error")
        raise
    metrics.inc("upload.success")

    submission = await submission_store.create_submission(
        db,
        applicant,
        cv_filename=metadata.original_filename,
        cv_file_path=relative_path,
        cv_file_size=len(content),
        cv_mime_type=metadata.mime_type,
    )

    try:
        analysis = await _analyze_content(
            content, metadata.mime_type, str(submission.id), extractor, engine
        )
    except CVPipelineError as e:
        await submission_store.record_analysis_failure(db, submission.id, e.message)
        e.details.update({"submission_id": submission.id, "submission_uuid": submission.uuid})
        raise

    await submission_store.record_analysis(db, submission.id, analysis)
    await delivery_queue.schedule(db, submission.id)

    return {
        "submission_id": submission.id,
        "submission_uuid": submission.uuid,
        "analysis_result": analysis,
    }


def download(relative_path: str, storage: Optional[FileHandler] = None) -> bytes:
    """Bytes of a stored CV. Raises NotFound or InvalidFilePath."""
    storage = storage or FileHandler()
    return storage.retrieve(relative_path)


async def reanalyze_pending(
    db: AsyncSession,
    storage: Optional[FileHandler] = None,
    extractor: Optional[TextExtractor] = None,
    engine: Optional[CVAnalysisEngine] = None,
    limit: int = 100,
    max_attempts: Optional[int] = None,
) -> Dict[str, int]:
    """
    Analyze stored submissions that have no analysis yet and queue their emails.

    Least recently tried rows go first. A row is given up on after
    `max_attempts` failed analyses (REANALYSIS_MAX_ATTEMPTS), counting the
    attempt made at upload.
    """
    storage = storage or FileHandler()
    if max_attempts is None:
        max_attempts = get_settings().reanalysis_max_attempts
    analyzed = 0
    failed = 0

    pending = await submission_store.list_unanalyzed(db, limit=limit, max_attempts=max_attempts)
    for submission in pending:
        try:
            content = storage.retrieve(submission.cv_file_path)
            analysis = await _analyze_content(
                content, submission.cv_mime_type, str(submission.id), extractor, engine
            )
        except CVPipelineError as e:
            failed += 1
            await submission_store.record_analysis_failure(db, submission.id, e.message)
            logger.warning(
                "cv.reanalysis_failed",
                extra={"submission_id": submission.id, "error": e.message, "error_code": e.code,
                       "attempt": submission.analysis_attempts + 1, "max_retries": max_attempts},
            )
            continue

        await submission_store.record_analysis(db, submission.id, analysis)
        await delivery_queue.schedule(db, submission.id)
        analyzed += 1

    if analyzed or failed:
        logger.info("cv.reanalysis", extra={"total": analyzed + failed, "failed": failed})
    return {"analyzed": analyzed, "failed": failed}


async def _analyze_content(
    content: bytes,
    mime_type: str,
    submission_id: str,
    extractor: Optional[TextExtractor],
    engine: Optional[CVAnalysisEngine],
):
    extractor = extractor or text_extractor
    engine = engine or cv_analysis_engine

    start = time.monotonic()
    try:
        # PDF parsing is CPU-bound, keep it off the event loop
        text = await asyncio.to_thread(extractor.extract_text, content, mime_type)
        analysis = engine.analyze(text)
    except CVPipelineError as e:
        duration_ms = (time.monotonic() - start) * 1000
        metrics.inc("analysis.error")
        log_cv_analysis(submission_id, 0, duration_ms, success=False, error=e.message)
        raise

    duration_ms = (time.monotonic() - start) * 1000
    metrics.inc("analysis.success")
    metrics.observe("analysis.duration_ms", duration_ms)
    log_cv_analysis(submission_id, analysis.overall_score, duration_ms, success=True)
    return analysis
