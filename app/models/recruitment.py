"""
Recruitment registry models - job postings, candidates, applications

Thin persistence for the records the document pipeline reads and writes
back (job posting validation, candidate create-or-update, application
screening status). The full CRUD surface for these lives elsewhere.
"""

from sqlalchemy import Column, String, Integer, Float, Text, DateTime, JSON, ForeignKey
from sqlalchemy.sql import func
from app.database import Base


class JobPosting(Base):
    __tablename__ = "job_postings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(String(500), nullable=False)
    description = Column(Text, nullable=False, default="")
    requirements = Column(Text, nullable=True)
    skills = Column(Text, nullable=True)  # comma separated
    experience_level = Column(String(100), nullable=True)
    min_experience_years = Column(Float, nullable=True)
    max_experience_years = Column(Float, nullable=True)
    education_level = Column(String(100), nullable=True)
    status = Column(String(20), nullable=False, default="active", index=True)
    deadline = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())


class Candidate(Base):
    __tablename__ = "candidates"

    id = Column(Integer, primary_key=True, autoincrement=True)
    full_name = Column(String(500), nullable=False)
    email = Column(String(500), nullable=False, unique=True, index=True)
    phone = Column(String(50), nullable=True)
    address = Column(String(1000), nullable=True)
    years_of_experience = Column(Float, nullable=True)
    current_title = Column(String(500), nullable=True)
    current_company = Column(String(500), nullable=True)
    education_level = Column(String(50), nullable=True)
    institution = Column(String(500), nullable=True)
    graduation_year = Column(Integer, nullable=True)
    skills = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())


class Application(Base):
    __tablename__ = "applications"

    id = Column(Integer, primary_key=True, autoincrement=True)
    candidate_id = Column(Integer, ForeignKey("candidates.id"), nullable=False, index=True)
    job_posting_id = Column(Integer, ForeignKey("job_postings.id"), nullable=False, index=True)
    resume_file_id = Column(String, ForeignKey("stored_files.id"), nullable=True)
    source = Column(String(50), nullable=False, default="upload")
    screening_status = Column(String(20), nullable=True)
    screening_score = Column(Float, nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())
