"""
Embedding Models - résumé and job-description vectors

CvEmbedding holds one full-text vector per (embedding_type, application_id,
job_posting_id). NULL owners never collide under a plain unique constraint,
so the single-owner rows get partial unique indexes of their own. CvEmbeddingChunk holds the ordered, non-overlapping window
vectors of the same source text.
"""

import enum

from sqlalchemy import (
    Column, String, Integer, Text, DateTime, JSON, ForeignKey, Index, UniqueConstraint, text,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from app.database import Base


class EmbeddingType(str, enum.Enum):
    CV_FULL_TEXT = "cv_full_text"
    CV_SKILLS = "cv_skills"
    CV_EXPERIENCE = "cv_experience"
    JOB_DESCRIPTION = "job_description"
    JOB_REQUIREMENTS = "job_requirements"


class CvEmbedding(Base):
    __tablename__ = "cv_embeddings"
    __table_args__ = (
        UniqueConstraint("embedding_type", "application_id", "job_posting_id", name="uq_embedding_owner"),
        Index(
            "uq_embedding_job_owner", "embedding_type", "job_posting_id", unique=True,
            sqlite_where=text("application_id IS NULL"),
            postgresql_where=text("application_id IS NULL"),
        ),
        Index(
            "uq_embedding_application_owner", "embedding_type", "application_id", unique=True,
            sqlite_where=text("job_posting_id IS NULL"),
            postgresql_where=text("job_posting_id IS NULL"),
        ),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    application_id = Column(Integer, nullable=True, index=True)
    job_posting_id = Column(Integer, nullable=True, index=True)
    embedding_type = Column(String(30), nullable=False)
    original_text = Column(Text, nullable=False)
    embedding = Column(JSON, nullable=False)  # Store as JSON array
    model = Column(String(200), nullable=False)
    dimensions = Column(Integer, nullable=False)
    embedding_metadata = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    chunks = relationship(
        "CvEmbeddingChunk",
        back_populates="parent",
        order_by="CvEmbeddingChunk.chunk_index",
        cascade="all, delete-orphan",
    )


class CvEmbeddingChunk(Base):
    __tablename__ = "cv_embedding_chunks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    embedding_id = Column(Integer, ForeignKey("cv_embeddings.id", ondelete="CASCADE"), nullable=False, index=True)
    chunk_index = Column(Integer, nullable=False)
    start_offset = Column(Integer, nullable=False)
    text = Column(Text, nullable=False)
    embedding = Column(JSON, nullable=False)

    parent = relationship("CvEmbedding", back_populates="chunks")
