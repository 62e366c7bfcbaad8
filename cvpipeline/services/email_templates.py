"""
Report email rendering: subject, HTML body and plain-text body.
"""
from dataclasses import dataclass
from html import escape
from typing import List

from cvpipeline.schemas.analysis import AnalysisResult, Improvement

RULE = "━" * 60

NO_STRENGTHS = "We'll identify your strengths after a more detailed review."
NO_IMPROVEMENTS = "Great job! No major improvements needed at this time."


@dataclass(frozen=True)
class EmailContent:
    to: str
    subject: str
    html: str
    text: str


def score_interpretation(score: int) -> str:
    if score >= 85:
        return ("Excellent! Your CV is well-structured and professional. With a few minor tweaks, "
                "it will be ready to impress any hiring manager.")
    if score >= 70:
        return ("Good work! Your CV has a solid foundation. The improvements we've identified "
                "will help you stand out even more to recruiters.")
    if score >= 50:
        return ("Your CV shows potential, but there are several areas that need attention. "
                "Implementing our suggestions will significantly improve your chances of getting interviews.")
    return ("Your CV needs significant improvements to be competitive. Don't worry, we've identified "
            "specific areas to focus on that will make a big difference.")


def render_report_email(
    to: str,
    first_name: str,
    analysis: AnalysisResult,
    sender_name: str,
    sender_address: str,
) -> EmailContent:
    return EmailContent(
        to=to,
        subject=f"Your CV Analysis Results - {analysis.overall_score}/100",
        html=render_html(first_name, analysis, sender_name, sender_address),
        text=render_text(first_name, analysis, sender_name, sender_address),
    )


# ---------------------------------------------------------------------------
# HTML
# ---------------------------------------------------------------------------

def _strengths_html(strengths: List[str]) -> str:
    if not strengths:
        return f'<div class="strength-item">{escape(NO_STRENGTHS)}</div>'
    return "\n".join(f'<div class="strength-item">{escape(s)}</div>' for s in strengths)


def _improvement_html(imp: Improvement) -> str:
    example = ""
    if imp.example:
        example = f'<div class="improvement-example">Example: {escape(imp.example)}</div>'
    return (
        '<div class="improvement-item">'
        f'<div class="improvement-category">{escape(imp.category)} '
        f'<span class="priority priority-{imp.priority.value}">{imp.priority.value}</span></div>'
        f"<div><strong>{escape(imp.issue)}</strong></div>"
        f'<div class="improvement-suggestion">{escape(imp.suggestion)}</div>'
        f"{example}"
        "</div>"
    )


def _improvements_html(improvements: List[Improvement]) -> str:
    if not improvements:
        return f'<div class="improvement-item">{escape(NO_IMPROVEMENTS)}</div>'
    return "\n".join(_improvement_html(imp) for imp in improvements)


def render_html(first_name: str, analysis: AnalysisResult, sender_name: str, sender_address: str) -> str:
    return f"""<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="UTF-8">
  <meta name="viewport" content="width=device-width, initial-scale=1.0">
  <title>Your CV Analysis Results</title>
  <style>
    body {{ font-family: Arial, sans-serif; line-height: 1.6; color: #333; max-width: 600px; margin: 0 auto; padding: 20px; }}
    .score-section {{ background: #4F46E5; color: #fff; padding: 30px; border-radius: 8px; text-align: center; }}
    .score {{ font-size: 48px; font-weight: bold; }}
    .strength-item, .improvement-item {{ background: #f8f9fa; padding: 15px; margin: 10px 0; border-left: 4px solid #4F46E5; }}
    .improvement-item {{ border-left-color: #F59E0B; }}
    .priority {{ font-size: 11px; text-transform: uppercase; padding: 2px 8px; border-radius: 12px; }}
    .priority-high {{ background: #FEE2E2; color: #DC2626; }}
    .priority-medium {{ background: #FEF3C7; color: #D97706; }}
    .priority-low {{ background: #DBEAFE; color: #2563EB; }}
    .improvement-example {{ margin-top: 8px; font-style: italic; color: #6b7280; }}
    .footer {{ text-align: center; margin-top: 40px; color: #6b7280; font-size: 14px; }}
  </style>
</head>
<body>
  <p>Dear {escape(first_name)},</p>
  <p>Thank you for submitting your CV for analysis. We've completed a comprehensive review
  and are excited to share our findings with you.</p>

  <div class="score-section">
    <div>Your CV Score</div>
    <div class="score">{analysis.overall_score}/100</div>
    <div>ATS compatibility: {analysis.ats_compatibility}/100</div>
    <p>{escape(score_interpretation(analysis.overall_score))}</p>
  </div>

  <h2>What You're Doing Well</h2>
  {_strengths_html(analysis.strengths)}

  <h2>Key Improvements to Make</h2>
  {_improvements_html(analysis.improvements)}

  <p>{escape(analysis.detailed_feedback)}</p>

  <div class="footer">
    <strong>{escape(sender_name)}</strong><br>
    {escape(sender_address)}<br>
    You're receiving this email because you submitted your CV for analysis on our website.
  </div>
</body>
</html>"""


# ---------------------------------------------------------------------------
# Plain text
# ---------------------------------------------------------------------------

def _strengths_text(strengths: List[str]) -> str:
    if not strengths:
        return f"• {NO_STRENGTHS}"
    return "\n\n".join(f"{i}. {s}" for i, s in enumerate(strengths, 1))


def _improvements_text(improvements: List[Improvement]) -> str:
    if not improvements:
        return f"• {NO_IMPROVEMENTS}"

    blocks = []
    for i, imp in enumerate(improvements, 1):
        block = (
            f"{i}. {imp.category.upper()} [{imp.priority.value.upper()} PRIORITY]\n"
            f"   Issue: {imp.issue}\n"
            f"   Suggestion: {imp.suggestion}"
        )
        if imp.example:
            block += f"\n   Example: {imp.example}"
        blocks.append(block)
    return "\n\n".join(blocks)


def render_text(first_name: str, analysis: AnalysisResult, sender_name: str, sender_address: str) -> str:
    return f"""{sender_name.upper()} - Your CV Analysis Results

Dear {first_name},

Thank you for submitting your CV for analysis. We've completed a comprehensive review and are excited to share our findings with you.

{RULE}

YOUR CV SCORE: {analysis.overall_score}/100
ATS COMPATIBILITY: {analysis.ats_compatibility}/100

{score_interpretation(analysis.overall_score)}

{RULE}

WHAT YOU'RE DOING WELL

{_strengths_text(analysis.strengths)}

{RULE}

KEY IMPROVEMENTS TO MAKE

{_improvements_text(analysis.improvements)}

{RULE}

{analysis.detailed_feedback}

Best regards,
{sender_name}
{sender_address}

You're receiving this email because you submitted your CV for analysis on our website."""
