import asyncio
import os

# Keep test runs from writing logs/ into the working tree
os.environ.setdefault("LOG_TO_FILE", "0")

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from cvpipeline.database import init_db
from cvpipeline.errors import DeliveryFailed, TextExtractionFailed
from cvpipeline.schemas.submission import ApplicantData
from cvpipeline.services import submission_store
from cvpipeline.services.cv_analysis import CVAnalysisEngine
from cvpipeline.utils import file_signatures, metrics
from cvpipeline.utils.file_handler import FileHandler

STRONG_CV = """
Jane Smith
jane.smith@example.com | +1 (555) 123-4567 | London, UK

PROFESSIONAL SUMMARY
Results-driven software engineer with 8+ years of experience building reliable
backend platforms. Known for technical leadership, clear communication and a
strong focus on quality, performance and efficiency across every project.

WORK EXPERIENCE
Senior Backend Engineer | Acme Payments | Jan 2019 - Present
- Led a team of 6 engineers through the migration of the payment platform to event-driven services
- Reduced checkout latency by 35% by redesigning the caching strategy and database access paths
- Increased revenue by 12% after launching a fraud scoring service used by 40000 customers
- Designed the observability stack and managed the on-call rotation for 3 teams
- Implemented automated release pipelines that cut deployment time from 2 hours to 10 minutes

Software Engineer | Northwind Logistics | 2015 - 2019
- Developed route optimization services handling 2 million deliveries per month
- Built internal tooling that saved the operations team 20 hours per week
- Streamlined the project management process with a lightweight planning board
- Trained 5 junior developers and organized weekly knowledge sharing sessions
- Delivered a $2M warehouse integration project on time and within budget

EDUCATION
BSc Computer Science | University of Manchester | 2011 - 2015
First class honours, final year project on distributed systems analysis.

SKILLS
Technical Skills: Python, Go, PostgreSQL, Redis, Kafka, Docker, Kubernetes, AWS
Practices: system design, code review, testing strategy, performance optimization
Soft Skills: leadership, collaboration, mentoring, communication, problem-solving

ADDITIONAL INFORMATION
I enjoy working closely with product managers and designers to turn ambiguous
requirements into simple and maintainable systems. Over the past years I have
introduced service level objectives, written internal guides on incident
handling, and helped several teams adopt continuous delivery. Outside of work I
contribute to open source libraries for data validation and speak at local
meetups about building dependable software. I value clear written documentation,
careful measurement before optimization, and pragmatic decisions that keep
systems easy to operate. I am currently looking for a staff engineering role
where I can shape platform direction while staying hands-on with the code and
supporting the growth of the engineers around me.
"""

# No contact details, no section headers, no numbers
WEAK_CV = (
    "Lorem ipsum dolor sit amet consectetur adipiscing elit sed do eiusmod tempor "
    "incididunt ut labore et dolore magna aliqua. Ut enim ad minim veniam quis "
    "nostrud exercitation ullamco laboris nisi ut aliquip ex ea commodo."
)


class Clock:
    """A settable clock; call it for the current time, move it by assigning `now`."""

    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


class FakeTransport:
    """Records sends; fails the first `fail_times` calls, or every call when fail_times < 0."""

    def __init__(self, fail_times: int = 0, delay: float = 0.0):
        self.fail_times = fail_times
        self.delay = delay
        self.calls = 0
        self.sent = []

    async def send(self, to, subject, html_body, text_body):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_times < 0 or self.calls <= self.fail_times:
            raise DeliveryFailed("SMTP connection refused")
        self.sent.append({"to": to, "subject": subject, "html": html_body, "text": text_body})


class FakeExtractor:
    """Returns canned text, or raises when `text` is None."""

    def __init__(self, text=None):
        self.text = text
        self.calls = 0

    def extract_text(self, content, mime_type):
        self.calls += 1
        if self.text is None:
            raise TextExtractionFailed("Document appears to be empty or contains no extractable text")
        return self.text


def pdf_bytes(size: int = 200) -> bytes:
    """A buffer with a valid PDF signature padded to `size` bytes."""
    head = b"%PDF-1.4\n"
    return head + b"x" * (size - len(head))


@pytest.fixture(autouse=True)
def reset_metrics():
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def storage(tmp_path):
    return FileHandler(base_dir=str(tmp_path / "uploads"))


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await init_db(bind=engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def applicant():
    return ApplicantData(first_name="Jane", last_name="Smith", email="jane.smith@example.com")


@pytest.fixture
def make_submission(db, applicant):
    """Insert a submission, analyzed from STRONG_CV unless analyzed=False. Returns its id."""

    async def _make(analyzed: bool = True, text: str = STRONG_CV, email: str = None) -> int:
        submission = await submission_store.create_submission(
            db,
            applicant.model_copy(update={"email": email}) if email else applicant,
            cv_filename="cv.pdf",
            cv_file_path="2026/01/00000000-0000-0000-0000-000000000000-cv.pdf",
            cv_file_size=200,
            cv_mime_type=file_signatures.MIME_PDF,
        )
        if analyzed:
            await submission_store.record_analysis(db, submission.id, CVAnalysisEngine().analyze(text))
        return submission.id

    return _make
