"""
Shared fixtures: in-memory database, settings, storage and a fake queue.
"""

import io
from datetime import datetime, timedelta
from unittest.mock import MagicMock

import docx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import app.models  # noqa: F401  (register tables)
from app.config import Settings
from app.database import Base, session_scope
from app.models import Application, Candidate, JobPosting, StoredFileKind
from app.services.storage import FileStorage, create_stored_file

RESUME_TEXT = """Nguyen Van An
Email: an.nguyen@example.com
Phone: 0912345678
Address: Ho Chi Minh City

SUMMARY
Backend engineer building Python services.

EXPERIENCE
Senior Python Developer at Acme Corp
Jan 2020 - Present
Built FastAPI services on PostgreSQL and Docker.

Python Developer at Beta Ltd
Jun 2016 - Dec 2019
Django and REST APIs.

EDUCATION
Bachelor of Computer Science
Ho Chi Minh City University of Technology
2016

SKILLS
Python, FastAPI, Django, PostgreSQL, Docker, AWS, teamwork, communication
"""


def make_docx(text: str) -> bytes:
    """A .docx with one paragraph per line."""
    document = docx.Document()
    for line in text.split("\n"):
        document.add_paragraph(line)
    buffer = io.BytesIO()
    document.save(buffer)
    return buffer.getvalue()


DOCX_MIME = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url="sqlite://",
        embedding_provider="mock",
        openai_api_key="",
        brevo_api_key="",
        inbound_webhook_secret="",
        upload_dir=str(tmp_path / "uploads"),
        embedding_retry_base_delay=0.0,
        embedding_retry_max_delay=0.0,
    )


@pytest.fixture
def storage(settings):
    return FileStorage(settings.upload_dir)


@pytest.fixture
def fake_queue():
    queue = MagicMock()
    queue.enqueue.side_effect = lambda application_id, priority=0, attempt=0: (
        f"screening-{application_id}-{attempt}"
    )
    queue.cancel.return_value = True
    queue.get_queue_stats.return_value = {"available": False, "error": "no broker"}
    return queue


@pytest.fixture
def job_posting(session_factory):
    with session_scope(session_factory) as session:
        job = JobPosting(
            title="Senior Python Developer",
            description="Build FastAPI microservices. Experience with Docker and AWS required.",
            requirements="Bachelor degree in Computer Science",
            skills="Python, FastAPI, PostgreSQL, Kubernetes",
            min_experience_years=3,
            max_experience_years=8,
            education_level="bachelor",
            status="active",
            deadline=datetime.utcnow() + timedelta(days=30),
        )
        session.add(job)
        session.flush()
        return job


@pytest.fixture
def make_application(session_factory, storage, job_posting):
    """Create a candidate + application; the résumé defaults to RESUME_TEXT as .docx."""

    def _make(email="an.nguyen@example.com", with_resume=True, resume=None, filename="cv.docx", mime=DOCX_MIME):
        with session_scope(session_factory) as session:
            candidate = Candidate(email=email, full_name="Nguyen Van An", skills=[])
            session.add(candidate)
            session.flush()
            resume_id = None
            if with_resume:
                resume = resume if resume is not None else make_docx(RESUME_TEXT)
                stored = create_stored_file(
                    session, storage, resume, filename, mime, StoredFileKind.RESUME, reference_id=candidate.id
                )
                resume_id = stored.id
            application = Application(
                candidate_id=candidate.id,
                job_posting_id=job_posting.id,
                resume_file_id=resume_id,
            )
            session.add(application)
            session.flush()
            return application.id

    return _make
