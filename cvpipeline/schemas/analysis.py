"""
Pydantic schemas for CV analysis results
"""
from datetime import datetime
from enum import Enum
from typing import List, Optional
from pydantic import BaseModel, Field


class Priority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


PRIORITY_ORDER = {Priority.HIGH: 0, Priority.MEDIUM: 1, Priority.LOW: 2}


class Improvement(BaseModel):
    """A single actionable suggestion"""
    category: str
    priority: Priority
    issue: str
    suggestion: str
    example: Optional[str] = None


class SectionCompleteness(BaseModel):
    contact_info: bool
    summary: bool
    experience: bool
    education: bool
    skills: bool


class AnalysisResult(BaseModel):
    """Score, report and timestamp produced by the analysis engine"""
    overall_score: int = Field(..., ge=0, le=100)
    ats_compatibility: int = Field(..., ge=0, le=100)
    strengths: List[str]
    improvements: List[Improvement]
    section_completeness: SectionCompleteness
    detailed_feedback: str
    analyzed_at: datetime

    def report(self) -> dict:
        """JSON-safe report stored alongside the scores"""
        return self.model_dump(
            mode="json",
            include={"strengths", "improvements", "section_completeness", "detailed_feedback"},
        )

    @classmethod
    def from_stored(cls, score: int, ats_score: int, report: dict, analyzed_at: datetime) -> "AnalysisResult":
        """Rebuild a result from the columns of a persisted submission"""
        return cls(
            overall_score=score,
            ats_compatibility=ats_score,
            analyzed_at=analyzed_at,
            **report,
        )
