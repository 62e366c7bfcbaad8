# Database models package
from cvpipeline.models.submission import Submission, EmailStatus, ReviewStatus

__all__ = [
    "Submission",
    "EmailStatus",
    "ReviewStatus",
]
