"""
SQLAlchemy model for the cv_submissions table.

One row per uploaded CV: applicant fields, a pointer to the stored file, the
analysis (all four columns present or all absent) and the email delivery state.
"""
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Integer,
    JSON,
    String,
    Text,
    func,
)
from cvpipeline.database import Base


class EmailStatus:
    NOT_QUEUED = "not_queued"
    QUEUED = "queued"
    RETRYING = "retrying"
    SENT = "sent"
    FAILED = "failed"

    ALL = (NOT_QUEUED, QUEUED, RETRYING, SENT, FAILED)
    PENDING = (QUEUED, RETRYING)


class ReviewStatus:
    NEW = "new"
    REVIEWED = "reviewed"
    CONTACTED = "contacted"
    HIRED = "hired"
    REJECTED = "rejected"


class Submission(Base):
    __tablename__ = "cv_submissions"
    __table_args__ = (
        CheckConstraint(
            "(analysis_score IS NULL AND ats_score IS NULL AND analysis_results IS NULL AND analyzed_at IS NULL)"
            " OR (analysis_score IS NOT NULL AND ats_score IS NOT NULL"
            " AND analysis_results IS NOT NULL AND analyzed_at IS NOT NULL)",
            name="ck_cv_submissions_analysis_complete",
        ),
        CheckConstraint("email_attempts >= 0", name="ck_cv_submissions_attempts"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    uuid = Column(String(36), unique=True, nullable=False, index=True, default=lambda: str(uuid4()))

    # Applicant (immutable after creation)
    first_name = Column(String(100), nullable=False)
    last_name = Column(String(100), nullable=False)
    email = Column(String(255), nullable=False, index=True)
    phone = Column(String(50), nullable=False, default="")

    # Stored document
    cv_filename = Column(String(255), nullable=False)
    cv_file_path = Column(String(500), nullable=False)
    cv_file_size = Column(Integer, nullable=False)
    cv_mime_type = Column(String(100), nullable=False)

    # Analysis
    analysis_score = Column(Integer, nullable=True)
    ats_score = Column(Integer, nullable=True)
    analysis_results = Column(JSON(none_as_null=True), nullable=True)
    analyzed_at = Column(DateTime(timezone=True), nullable=True)
    analysis_attempts = Column(Integer, nullable=False, default=0)
    analysis_last_tried_at = Column(DateTime(timezone=True), nullable=True, index=True)
    analysis_error = Column(Text, nullable=True)

    # Review: new → reviewed → contacted → hired | rejected
    status = Column(String(20), nullable=False, default=ReviewStatus.NEW, index=True)
    admin_notes = Column(Text, nullable=True)
    reviewed_by = Column(String(255), nullable=True)
    reviewed_at = Column(DateTime(timezone=True), nullable=True)
    converted_to_premium = Column(Boolean, nullable=False, default=False)
    conversion_date = Column(DateTime(timezone=True), nullable=True)

    # Delivery: not_queued → queued → retrying → sent | failed
    email_status = Column(String(20), nullable=False, default=EmailStatus.NOT_QUEUED, index=True)
    email_scheduled_at = Column(DateTime(timezone=True), nullable=True, index=True)
    email_attempts = Column(Integer, nullable=False, default=0)
    email_last_attempt_at = Column(DateTime(timezone=True), nullable=True)
    email_sent_at = Column(DateTime(timezone=True), nullable=True)
    email_error = Column(Text, nullable=True)
    # Set while a worker holds the row for a send
    email_locked_until = Column(DateTime(timezone=True), nullable=True)
    email_claim_token = Column(String(32), nullable=True)

    # Request context
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(String(500), nullable=True)

    # Timestamps
    submitted_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    @property
    def has_analysis(self) -> bool:
        return self.analysis_score is not None

    def to_dict(self):
        return {
            "id": self.id,
            "uuid": self.uuid,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "email": self.email,
            "phone": self.phone,
            "cv_filename": self.cv_filename,
            "cv_file_path": self.cv_file_path,
            "cv_file_size": self.cv_file_size,
            "cv_mime_type": self.cv_mime_type,
            "analysis_score": self.analysis_score,
            "ats_score": self.ats_score,
            "analysis_results": self.analysis_results,
            "analyzed_at": self.analyzed_at.isoformat() if self.analyzed_at else None,
            "analysis_attempts": self.analysis_attempts,
            "status": self.status,
            "email_status": self.email_status,
            "email_scheduled_at": self.email_scheduled_at.isoformat() if self.email_scheduled_at else None,
            "email_attempts": self.email_attempts,
            "email_sent_at": self.email_sent_at.isoformat() if self.email_sent_at else None,
            "email_error": self.email_error,
            "submitted_at": self.submitted_at.isoformat() if self.submitted_at else None,
        }
