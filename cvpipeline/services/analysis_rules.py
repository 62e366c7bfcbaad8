"""
Declarative rule tables for CV analysis.

Detection patterns, vocabularies, thresholds, strength rules and improvement
rules live here as data. The engine in `cv_analysis.py` only evaluates them,
so the rule set can be tested and swapped without touching the scoring code.
"""
import re
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Pattern, Tuple

from cvpipeline.schemas.analysis import Priority


# ---------------------------------------------------------------------------
# Vocabularies
# ---------------------------------------------------------------------------

ACTION_VERBS: Tuple[str, ...] = (
    "achieved", "accomplished", "administered", "analyzed", "built", "created",
    "delivered", "designed", "developed", "directed", "established", "executed",
    "generated", "implemented", "improved", "increased", "initiated", "launched",
    "led", "managed", "optimized", "organized", "planned", "produced", "reduced",
    "resolved", "streamlined", "supervised", "trained", "transformed",
)

PROFESSIONAL_KEYWORDS: Tuple[str, ...] = (
    "project", "team", "management", "leadership", "strategy", "analysis",
    "development", "implementation", "optimization", "collaboration", "communication",
    "problem-solving", "innovation", "efficiency", "quality", "performance",
)


def _word_list(words: Tuple[str, ...]) -> Pattern:
    return re.compile(r"\b(?:" + "|".join(re.escape(w) for w in words) + r")\b", re.IGNORECASE)


ACTION_VERB_PATTERN = _word_list(ACTION_VERBS)
KEYWORD_PATTERN = _word_list(PROFESSIONAL_KEYWORDS)


# ---------------------------------------------------------------------------
# Detection patterns
# ---------------------------------------------------------------------------

CONTACT_PATTERNS: Tuple[Pattern, ...] = (
    re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"),
    re.compile(r"\b(?:\+?\d{1,3}[-.\s]?)?\(?\d{3}\)?[-.\s]?\d{3}[-.\s]?\d{4}\b"),
)

SECTION_PATTERNS: Dict[str, Pattern] = {
    "summary": re.compile(r"\b(?:summary|profile|objective|about|overview)\b", re.IGNORECASE),
    "experience": re.compile(
        r"\b(?:experience|employment|work history|career|professional background)\b", re.IGNORECASE
    ),
    "education": re.compile(
        r"\b(?:education|academic|qualification|degree|university|college)\b", re.IGNORECASE
    ),
    "skills": re.compile(
        r"\b(?:skills|competencies|expertise|technical skills|proficiencies)\b", re.IGNORECASE
    ),
}

# Sections an ATS expects to find under standard headers
STANDARD_SECTIONS: Tuple[str, ...] = ("experience", "education", "skills")

QUANTIFIABLE_PATTERNS: Tuple[Pattern, ...] = (
    re.compile(r"\b\d+%"),  # percentages
    re.compile(r"\$\d+[kmb]?", re.IGNORECASE),  # currency
    re.compile(r"\b\d+\+?\s*(?:years?|months?|weeks?)", re.IGNORECASE),  # time spans
    re.compile(r"\b(?:increased|decreased|improved|reduced|grew|saved)\s+\w+\s+by\s+\d+", re.IGNORECASE),
    re.compile(r"\b\d+\s*(?:users?|customers?|clients?|projects?|teams?|people|employees)", re.IGNORECASE),
)

DATE_PATTERNS: Tuple[Pattern, ...] = (
    re.compile(r"\b(?:jan|feb|mar|apr|may|jun|jul|aug|sep|oct|nov|dec)[a-z]*\s+\d{4}\b", re.IGNORECASE),
    re.compile(r"\b\d{1,2}/\d{4}\b"),
    re.compile(r"\b\d{4}\s*[-–]\s*\d{4}\b"),
    re.compile(r"\b\d{4}\s*to\s*\d{4}\b", re.IGNORECASE),
    re.compile(r"\b\d{4}\s*[-–]\s*(?:present|current)\b", re.IGNORECASE),
)

BULLET_LINE = re.compile(r"^\s*[-•*]\s")
NUMBERED_LINE = re.compile(r"^\s*\d+[.)]\s")


# ---------------------------------------------------------------------------
# Thresholds
# ---------------------------------------------------------------------------

MIN_ACTION_VERBS = 5
MIN_ACHIEVEMENTS = 3
MIN_KEYWORD_DENSITY = 1.0  # percent of words
MIN_FORMATTED_LINES = 3
MIN_WORDS = 300
MAX_WORDS = 1200

MAX_STRENGTHS = 5
MAX_IMPROVEMENTS = 8
PLACEHOLDER_STRENGTH = "CV submitted for professional review"


# ---------------------------------------------------------------------------
# Signals
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CVSignals:
    """Everything the scorer knows about a CV"""
    has_contact_info: bool
    has_summary: bool
    has_experience: bool
    has_education: bool
    has_skills: bool

    word_count: int
    action_verbs: int
    quantifiable_achievements: int
    keyword_density: float

    has_standard_sections: bool
    has_keywords: bool
    consistent_formatting: bool
    appropriate_length: bool
    proper_date_formats: bool

    # Text extraction strips layout, so these always hold
    uses_standard_fonts: bool = True
    avoids_tables: bool = True
    avoids_images: bool = True


# ---------------------------------------------------------------------------
# Strength rules: (applies, message)
# ---------------------------------------------------------------------------

StrengthRule = Tuple[Callable[[CVSignals], bool], Callable[[CVSignals], str]]

STRENGTH_RULES: List[StrengthRule] = [
    (lambda s: s.has_contact_info,
     lambda s: "Clear contact information provided"),
    (lambda s: s.has_summary,
     lambda s: "Includes professional summary highlighting key qualifications"),
    (lambda s: s.action_verbs >= MIN_ACTION_VERBS,
     lambda s: f"Strong use of action verbs ({s.action_verbs} found) to demonstrate achievements"),
    (lambda s: s.quantifiable_achievements >= MIN_ACHIEVEMENTS,
     lambda s: f"Quantifiable achievements included ({s.quantifiable_achievements} found) with specific metrics"),
    (lambda s: s.has_keywords,
     lambda s: "Contains relevant professional keywords for ATS optimization"),
    (lambda s: s.has_standard_sections,
     lambda s: "Well-organized with standard CV sections"),
    (lambda s: s.appropriate_length,
     lambda s: "Appropriate length for professional CV"),
    (lambda s: s.consistent_formatting,
     lambda s: "Consistent formatting throughout the document"),
]


# ---------------------------------------------------------------------------
# Improvement rules
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ImprovementRule:
    category: str
    priority: Priority
    issue: str
    suggestion: str
    applies: Callable[[CVSignals], bool]
    example: Optional[str] = None


IMPROVEMENT_RULES: List[ImprovementRule] = [
    # Missing sections
    ImprovementRule(
        category="Contact Information",
        priority=Priority.HIGH,
        issue="Missing or incomplete contact information",
        suggestion=("Add clear contact details at the top of your CV including full name, phone number, "
                    "professional email address, and LinkedIn profile URL"),
        example="John Smith | john.smith@email.com | +1 (555) 123-4567 | linkedin.com/in/johnsmith",
        applies=lambda s: not s.has_contact_info,
    ),
    ImprovementRule(
        category="Professional Summary",
        priority=Priority.HIGH,
        issue="Missing professional summary or objective statement",
        suggestion=("Add a compelling 3-4 sentence summary at the top highlighting your key skills, "
                    "experience, and career objectives"),
        example=("Results-driven software engineer with 5+ years of experience in full-stack development. "
                 "Proven track record of delivering scalable solutions and leading cross-functional teams."),
        applies=lambda s: not s.has_summary,
    ),
    ImprovementRule(
        category="Work Experience",
        priority=Priority.HIGH,
        issue="Missing work experience section",
        suggestion=("Add a detailed work experience section listing your roles in reverse chronological "
                    "order with company names, dates, and key achievements"),
        example=("Senior Developer | Tech Corp | Jan 2020 - Present\n"
                 "• Led development of microservices architecture serving 1M+ users"),
        applies=lambda s: not s.has_experience,
    ),
    ImprovementRule(
        category="Education",
        priority=Priority.HIGH,
        issue="Missing education section",
        suggestion=("Include your educational background with degree, institution, graduation year, "
                    "and relevant coursework or honors"),
        example="Bachelor of Science in Computer Science | University Name | 2018\nGPA: 3.8/4.0 | Dean's List",
        applies=lambda s: not s.has_education,
    ),
    ImprovementRule(
        category="Skills",
        priority=Priority.HIGH,
        issue="Missing skills section",
        suggestion=("Add a dedicated skills section listing your technical and professional competencies "
                    "relevant to your target role"),
        example=("Technical Skills: JavaScript, Python, React, Node.js, AWS, Docker\n"
                 "Soft Skills: Leadership, Communication, Problem-solving"),
        applies=lambda s: not s.has_skills,
    ),
    # Content quality
    ImprovementRule(
        category="Action Verbs",
        priority=Priority.MEDIUM,
        issue="Limited use of strong action verbs",
        suggestion="Start bullet points with powerful action verbs to demonstrate your impact and achievements",
        example=('Instead of "Responsible for managing team" use "Led cross-functional team of 8 developers '
                 'to deliver project 2 weeks ahead of schedule"'),
        applies=lambda s: s.action_verbs < MIN_ACTION_VERBS,
    ),
    ImprovementRule(
        category="Quantifiable Achievements",
        priority=Priority.MEDIUM,
        issue="Lack of quantifiable achievements and metrics",
        suggestion="Add specific numbers, percentages, and metrics to demonstrate the impact of your work",
        example=('Instead of "Improved system performance" use "Optimized database queries, reducing load '
                 'time by 45% and improving user satisfaction by 30%"'),
        applies=lambda s: s.quantifiable_achievements < MIN_ACHIEVEMENTS,
    ),
    ImprovementRule(
        category="ATS Optimization",
        priority=Priority.MEDIUM,
        issue="Insufficient relevant keywords for ATS systems",
        suggestion=("Incorporate industry-specific keywords and skills from job descriptions throughout "
                    "your CV to improve ATS compatibility"),
        example=('Review target job postings and naturally include relevant terms like "project management," '
                 '"agile methodology," "stakeholder engagement"'),
        applies=lambda s: not s.has_keywords,
    ),
    ImprovementRule(
        category="ATS Compatibility",
        priority=Priority.MEDIUM,
        issue="Non-standard section headers may confuse ATS systems",
        suggestion=('Use standard section headers like "Work Experience," "Education," "Skills" '
                    "instead of creative alternatives"),
        example='Use "Work Experience" instead of "My Journey" or "Professional Background"',
        applies=lambda s: not s.has_standard_sections,
    ),
    # Formatting
    ImprovementRule(
        category="CV Length",
        priority=Priority.LOW,
        issue="CV is too short and may lack sufficient detail",
        suggestion=("Expand your CV to 400-800 words by adding more details about your achievements, "
                    "responsibilities, and skills"),
        example=("Elaborate on your key projects, quantify your achievements, and provide context "
                 "for your accomplishments"),
        applies=lambda s: s.word_count < MIN_WORDS,
    ),
    ImprovementRule(
        category="CV Length",
        priority=Priority.LOW,
        issue="CV is too long and may lose reader attention",
        suggestion="Condense your CV to 1-2 pages by focusing on most relevant and recent experiences",
        example=("Remove outdated roles, consolidate similar responsibilities, and focus on achievements "
                 "rather than duties"),
        applies=lambda s: s.word_count > MAX_WORDS,
    ),
    ImprovementRule(
        category="Formatting",
        priority=Priority.LOW,
        issue="Inconsistent formatting throughout the document",
        suggestion=("Use consistent bullet points, spacing, and formatting style throughout your CV "
                    "for a professional appearance"),
        example=("Choose one bullet style (• or -) and use it consistently. "
                 "Maintain uniform spacing between sections."),
        applies=lambda s: not s.consistent_formatting,
    ),
    ImprovementRule(
        category="Date Formatting",
        priority=Priority.LOW,
        issue="Missing or inconsistent date formats",
        suggestion="Include clear date ranges for all positions and education using a consistent format",
        example='Use format like "Jan 2020 - Present" or "2020 - 2023" consistently throughout',
        applies=lambda s: not s.proper_date_formats,
    ),
]


# ---------------------------------------------------------------------------
# Narrative feedback by score band (lower bound, text)
# ---------------------------------------------------------------------------

FEEDBACK_BANDS: List[Tuple[int, str]] = [
    (85, "Excellent CV! Your CV demonstrates strong professional presentation with clear structure "
         "and compelling content."),
    (70, "Good CV with solid foundation. With a few improvements, your CV can be even more competitive."),
    (50, "Your CV has potential but needs improvement in several areas to stand out to employers "
         "and pass ATS systems."),
    (0, "Your CV requires significant improvements to effectively showcase your qualifications "
        "and pass ATS screening."),
]
