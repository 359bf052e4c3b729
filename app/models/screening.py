"""
ScreeningResult Model - one row per application

State machine:
    PENDING → PROCESSING → COMPLETED
                        ↘ FAILED --retry--> PENDING

Sub-scores are stored on a 0-100 scale except the similarities (0-1).
A sub-score that could not be computed stays NULL and its reason is kept
in stage_errors.
"""

import enum

from sqlalchemy import Column, String, Integer, Float, Text, DateTime, JSON
from sqlalchemy.sql import func
from app.database import Base


class ScreeningStatus(str, enum.Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class ScreeningResult(Base):
    __tablename__ = "screening_results"
    __mapper_args__ = {"eager_defaults": True}

    id = Column(Integer, primary_key=True, autoincrement=True)
    application_id = Column(Integer, nullable=False, unique=True, index=True)
    job_posting_id = Column(Integer, nullable=True, index=True)
    status = Column(String(20), nullable=False, default=ScreeningStatus.PENDING.value, index=True)
    priority = Column(Integer, nullable=False, default=0)
    task_id = Column(String(200), nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)

    overall_score = Column(Float, nullable=True)
    skills_score = Column(Float, nullable=True)
    experience_score = Column(Float, nullable=True)
    education_score = Column(Float, nullable=True)
    vector_similarity = Column(Float, nullable=True)
    chunk_similarity = Column(Float, nullable=True)
    fit_tier = Column(String(20), nullable=True)

    extracted_skills = Column(JSON, nullable=True)
    extracted_experience = Column(JSON, nullable=True)
    extracted_education = Column(JSON, nullable=True)
    ai_summary = Column(Text, nullable=True)
    key_highlights = Column(JSON, nullable=False, default=list)
    concerns = Column(JSON, nullable=False, default=list)
    stage_errors = Column(JSON, nullable=False, default=dict)
    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    processing_time_ms = Column(Integer, nullable=True)
