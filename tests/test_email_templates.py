from datetime import datetime, timezone

from conftest import STRONG_CV, WEAK_CV
from cvpipeline.services.cv_analysis import CVAnalysisEngine
from cvpipeline.services.email_templates import render_report_email, score_interpretation

FIXED = datetime(2026, 1, 1, tzinfo=timezone.utc)


def render(text, first_name="Jane"):
    analysis = CVAnalysisEngine(clock=lambda: FIXED).analyze(text)
    return analysis, render_report_email(
        "jane@example.com", first_name, analysis, "SkillTude Team", "noreply@skilltude.com"
    )


def test_subject_carries_score():
    analysis, email = render(STRONG_CV)
    assert email.to == "jane@example.com"
    assert email.subject == f"Your CV Analysis Results - {analysis.overall_score}/100"


def test_text_body_lists_improvements_with_priority():
    analysis, email = render(WEAK_CV)
    assert "Dear Jane," in email.text
    assert f"YOUR CV SCORE: {analysis.overall_score}/100" in email.text
    assert "1. CONTACT INFORMATION [HIGH PRIORITY]" in email.text
    assert "   Issue: Missing or incomplete contact information" in email.text
    assert analysis.detailed_feedback in email.text


def test_html_body_escapes_user_input():
    _, email = render(WEAK_CV, first_name="<script>alert(1)</script>")
    assert "<script>" not in email.html
    assert "&lt;script&gt;" in email.html
    assert 'priority-high' in email.html


def test_empty_improvements_fall_back_to_message():
    analysis = CVAnalysisEngine(clock=lambda: FIXED).analyze(STRONG_CV).model_copy(update={"improvements": []})
    email = render_report_email("jane@example.com", "Jane", analysis, "SkillTude Team", "noreply@skilltude.com")
    assert "No major improvements needed" in email.text
    assert "No major improvements needed" in email.html
    for strength in analysis.strengths:
        assert strength in email.text


def test_score_interpretation_bands():
    assert score_interpretation(85).startswith("Excellent!")
    assert score_interpretation(70).startswith("Good work!")
    assert score_interpretation(50).startswith("Your CV shows potential")
    assert score_interpretation(49).startswith("Your CV needs significant improvements")
