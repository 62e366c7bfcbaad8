"""
Rule-based CV analysis engine.

Turns extracted CV text into an overall score, an ATS-compatibility score,
strengths, prioritized improvements and a narrative summary. The rules
themselves live in `analysis_rules`; this module only evaluates them.
"""
import re
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Pattern, Sequence

from cvpipeline.errors import AnalysisFailed
from cvpipeline.schemas.analysis import (
    PRIORITY_ORDER,
    AnalysisResult,
    Improvement,
    SectionCompleteness,
)
from cvpipeline.services import analysis_rules as rules
from cvpipeline.services.analysis_rules import CVSignals, ImprovementRule, StrengthRule

_HORIZONTAL_WS = re.compile(r"[^\S\n]+")
_BLANK_RUNS = re.compile(r"\n{3,}")


def normalize_text(text: str) -> str:
    """Unify line endings and collapse whitespace while keeping line structure."""
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = _HORIZONTAL_WS.sub(" ", text)
    text = "\n".join(line.strip() for line in text.split("\n"))
    return _BLANK_RUNS.sub("\n\n", text).strip()


class CVAnalysisEngine:
    """Deterministic scorer. Apart from `analyzed_at`, equal text gives an equal result."""

    def __init__(
        self,
        improvement_rules: Sequence[ImprovementRule] = rules.IMPROVEMENT_RULES,
        strength_rules: Sequence[StrengthRule] = rules.STRENGTH_RULES,
        section_patterns: Optional[Dict[str, Pattern]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.improvement_rules = list(improvement_rules)
        self.strength_rules = list(strength_rules)
        self.section_patterns = section_patterns or rules.SECTION_PATTERNS
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def analyze(self, text: str) -> AnalysisResult:
        """
        Analyze CV text.

        Raises:
            AnalysisFailed: text is empty or whitespace-only
        """
        if text is None or not text.strip():
            raise AnalysisFailed("CV text is empty or invalid")

        signals = self.extract_signals(normalize_text(text))
        strengths = self.identify_strengths(signals)
        improvements = self.generate_improvements(signals)
        overall_score = self.calculate_overall_score(signals)

        return AnalysisResult(
            overall_score=overall_score,
            ats_compatibility=self.calculate_ats_score(signals),
            strengths=strengths,
            improvements=improvements,
            section_completeness=SectionCompleteness(
                contact_info=signals.has_contact_info,
                summary=signals.has_summary,
                experience=signals.has_experience,
                education=signals.has_education,
                skills=signals.has_skills,
            ),
            detailed_feedback=self.generate_feedback(overall_score, strengths, improvements),
            analyzed_at=self.clock(),
        )

    # ------------------------------------------------------------------
    # Signals
    # ------------------------------------------------------------------

    def extract_signals(self, text: str) -> CVSignals:
        """Run every detector over normalized text."""
        sections = {name: bool(p.search(text)) for name, p in self.section_patterns.items()}
        word_count = len(text.split())
        keyword_hits = len(rules.KEYWORD_PATTERN.findall(text))
        keyword_density = (keyword_hits / word_count * 100) if word_count else 0.0

        formatted_lines = sum(
            1 for line in text.split("\n")
            if rules.BULLET_LINE.match(line) or rules.NUMBERED_LINE.match(line)
        )

        return CVSignals(
            has_contact_info=any(p.search(text) for p in rules.CONTACT_PATTERNS),
            has_summary=sections.get("summary", False),
            has_experience=sections.get("experience", False),
            has_education=sections.get("education", False),
            has_skills=sections.get("skills", False),
            word_count=word_count,
            action_verbs=len(rules.ACTION_VERB_PATTERN.findall(text)),
            quantifiable_achievements=sum(len(p.findall(text)) for p in rules.QUANTIFIABLE_PATTERNS),
            keyword_density=keyword_density,
            has_standard_sections=all(sections.get(name, False) for name in rules.STANDARD_SECTIONS),
            has_keywords=keyword_density >= rules.MIN_KEYWORD_DENSITY,
            consistent_formatting=formatted_lines >= rules.MIN_FORMATTED_LINES,
            appropriate_length=rules.MIN_WORDS <= word_count <= rules.MAX_WORDS,
            proper_date_formats=any(p.search(text) for p in rules.DATE_PATTERNS),
        )

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------

    @staticmethod
    def calculate_overall_score(s: CVSignals) -> int:
        score = 0

        # Contact information (10)
        if s.has_contact_info:
            score += 10

        # Professional summary (15)
        if s.has_summary:
            score += 15

        # Work experience (25)
        if s.has_experience:
            score += 15
        if s.action_verbs >= rules.MIN_ACTION_VERBS:
            score += 5
        if s.quantifiable_achievements >= rules.MIN_ACHIEVEMENTS:
            score += 5

        # Education (10)
        if s.has_education:
            score += 10

        # Skills (15)
        if s.has_skills:
            score += 10
        if s.has_keywords:
            score += 5

        # ATS compatibility (15)
        if s.has_standard_sections:
            score += 5
        if s.avoids_tables and s.avoids_images:
            score += 5
        if s.has_keywords:
            score += 5

        # Formatting (10)
        if s.appropriate_length:
            score += 4
        if s.consistent_formatting:
            score += 3
        if s.proper_date_formats:
            score += 3

        return max(0, min(100, score))

    @staticmethod
    def calculate_ats_score(s: CVSignals) -> int:
        score = 0
        if s.has_standard_sections:
            score += 25
        if s.uses_standard_fonts:
            score += 15
        if s.avoids_tables:
            score += 15
        if s.avoids_images:
            score += 15
        if s.has_keywords:
            score += 20
        if s.proper_date_formats:
            score += 10
        return min(100, score)

    # ------------------------------------------------------------------
    # Report
    # ------------------------------------------------------------------

    def identify_strengths(self, s: CVSignals) -> List[str]:
        strengths = [message(s) for applies, message in self.strength_rules if applies(s)]
        if not strengths:
            return [rules.PLACEHOLDER_STRENGTH]
        return strengths[:rules.MAX_STRENGTHS]

    def generate_improvements(self, s: CVSignals) -> List[Improvement]:
        improvements = [
            Improvement(
                category=rule.category,
                priority=rule.priority,
                issue=rule.issue,
                suggestion=rule.suggestion,
                example=rule.example,
            )
            for rule in self.improvement_rules
            if rule.applies(s)
        ]
        # sorted() is stable, so rule order is kept within a tier
        improvements = sorted(improvements, key=lambda imp: PRIORITY_ORDER[imp.priority])
        return improvements[:rules.MAX_IMPROVEMENTS]

    @staticmethod
    def generate_feedback(score: int, strengths: List[str], improvements: List[Improvement]) -> str:
        opening = next(text for floor, text in rules.FEEDBACK_BANDS if score >= floor)
        return (
            f"{opening} You have {len(strengths)} key strengths "
            f"and {len(improvements)} areas for improvement."
        )


# Shared default instance
cv_analysis_engine = CVAnalysisEngine()
