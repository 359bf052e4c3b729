"""
Recruitment Registry - job posting / candidate / application access

The screening pipeline and ingestion read job postings (status, deadline,
requirements), create or update candidates from extracted résumé data, and
write screening status back onto applications. Everything goes through
RecruitmentRegistry so the pipeline never touches those tables directly.
"""

import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import Session

from app.exceptions import InputError, NotFoundError
from app.models import Application, Candidate, JobPosting
from app.services.cv_extractor import ProcessedCvData

logger = logging.getLogger(__name__)

ACTIVE_JOB_STATUSES = {"active", "open", "published"}


def name_from_email(email: str) -> str:
    """'nguyen.van.a@x.com' -> 'Nguyen Van A'"""
    local = (email or "").split("@")[0]
    words = [w for w in local.replace("_", ".").replace("-", ".").split(".") if w and not w.isdigit()]
    return " ".join(w.capitalize() for w in words) or "Unknown Candidate"


class RecruitmentRegistry:
    """Read/write surface over JobPosting, Candidate and Application."""

    def __init__(self, session: Session):
        self.session = session

    # ==================== Job postings ====================

    def get_job_posting(self, job_posting_id: int) -> Optional[JobPosting]:
        return self.session.get(JobPosting, job_posting_id)

    def require_open_job_posting(self, job_posting_id: int, now: Optional[datetime] = None) -> JobPosting:
        """
        Raises:
            NotFoundError: No such job posting
            InputError: Posting closed or past its deadline
        """
        job = self.get_job_posting(job_posting_id)
        if job is None:
            raise NotFoundError(f"Job posting {job_posting_id} not found")
        if (job.status or "").lower() not in ACTIVE_JOB_STATUSES:
            raise InputError(f"Job posting {job_posting_id} is not accepting applications ({job.status})")
        now = now or datetime.utcnow()
        if job.deadline is not None and job.deadline < now:
            raise InputError(f"Job posting {job_posting_id} closed on {job.deadline:%Y-%m-%d}")
        return job

    # ==================== Candidates ====================

    def find_candidate_by_email(self, email: str) -> Optional[Candidate]:
        return self.session.query(Candidate).filter(Candidate.email == email.lower()).first()

    def upsert_candidate(
        self,
        email: str,
        cv: Optional[ProcessedCvData] = None,
        fallback_name: Optional[str] = None,
    ) -> Candidate:
        """
        Create or update a candidate from extracted résumé data.

        Extracted values only overwrite stored ones when present. The name
        falls back to fallback_name, then to the email's local part.
        """
        email = email.strip().lower()
        candidate = self.find_candidate_by_email(email)
        if candidate is None:
            candidate = Candidate(email=email, full_name="", skills=[])
            self.session.add(candidate)

        info = cv.personal_info if cv else None
        name = (info.name if info else None) or candidate.full_name or fallback_name or name_from_email(email)
        candidate.full_name = name

        if cv:
            if info.phone:
                candidate.phone = info.phone
            if info.location:
                candidate.address = info.location
            if cv.total_experience_years:
                candidate.years_of_experience = cv.total_experience_years
            if cv.current_title:
                candidate.current_title = cv.current_title
            if cv.current_company:
                candidate.current_company = cv.current_company
            highest = cv.highest_education
            if highest:
                candidate.education_level = highest.level or candidate.education_level
                candidate.institution = highest.institution or candidate.institution
                candidate.graduation_year = highest.graduation_year or candidate.graduation_year
            skills = cv.skills.technical + cv.skills.soft
            if skills:
                candidate.skills = sorted(set((candidate.skills or []) + skills))

        self.session.flush()
        return candidate

    # ==================== Applications ====================

    def get_application(self, application_id: int) -> Optional[Application]:
        return self.session.get(Application, application_id)

    def require_application(self, application_id: int) -> Application:
        application = self.get_application(application_id)
        if application is None:
            raise NotFoundError(f"Application {application_id} not found")
        return application

    def create_application(
        self,
        candidate_id: int,
        job_posting_id: int,
        resume_file_id: Optional[str] = None,
        source: str = "upload",
    ) -> Application:
        """One application per (candidate, job posting); a re-application updates the résumé."""
        application = (
            self.session.query(Application)
            .filter(Application.candidate_id == candidate_id, Application.job_posting_id == job_posting_id)
            .first()
        )
        if application is None:
            application = Application(candidate_id=candidate_id, job_posting_id=job_posting_id, source=source)
            self.session.add(application)
        if resume_file_id:
            application.resume_file_id = resume_file_id
        self.session.flush()
        return application

    def application_ids_for_job(self, job_posting_id: int) -> List[int]:
        rows = (
            self.session.query(Application.id)
            .filter(Application.job_posting_id == job_posting_id)
            .order_by(Application.id)
            .all()
        )
        return [row[0] for row in rows]

    def set_screening_status(self, application_id: int, status: str, score: Optional[float] = None) -> None:
        application = self.get_application(application_id)
        if application is None:
            logger.warning(f"Cannot write screening status, application {application_id} missing")
            return
        application.screening_status = status
        if score is not None:
            application.screening_score = score
        self.session.flush()
