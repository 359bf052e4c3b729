"""
StoredFile Model - persisted résumé/certificate files

Created once an attachment has been classified and written under its
type-specific storage folder. Deletion is a soft status transition; the
retention job hard-deletes rows (and files) afterwards.

Status Flow:
    active → archived → deleted → (purged by retention)
"""

import enum
import uuid

from sqlalchemy import Column, String, Integer, DateTime, JSON
from sqlalchemy.sql import func
from app.database import Base


class StoredFileKind(str, enum.Enum):
    RESUME = "resume"
    CERTIFICATE = "certificate"
    GENERAL = "general"


class StoredFileStatus(str, enum.Enum):
    ACTIVE = "active"
    ARCHIVED = "archived"
    DELETED = "deleted"


# Storage sub-directory per kind
KIND_FOLDERS = {
    StoredFileKind.RESUME.value: "resume",
    StoredFileKind.CERTIFICATE.value: "certificates",
    StoredFileKind.GENERAL.value: "documents",
}


class StoredFile(Base):
    """
    Persisted file record.

    Attributes:
        id: UUID primary key
        original_name: Filename as received
        file_url: Storage path (under resume/, certificates/, documents/)
        mime_type: Declared MIME type
        size: Size in bytes
        kind: resume | certificate | general
        status: active | archived | deleted
        reference_id: Candidate id (nullable until resolved)
        analysis_metadata: Tagged analysis payload (see app.schemas.analysis)
    """

    __tablename__ = "stored_files"
    __mapper_args__ = {"eager_defaults": True}

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    original_name = Column(String(500), nullable=False)
    file_url = Column(String(2000), nullable=False)
    mime_type = Column(String(200), nullable=False)
    size = Column(Integer, nullable=False, default=0)
    kind = Column(String(20), nullable=False, default=StoredFileKind.GENERAL.value, index=True)
    status = Column(String(20), nullable=False, default=StoredFileStatus.ACTIVE.value, index=True)
    reference_id = Column(Integer, nullable=True, index=True)
    analysis_metadata = Column(JSON, nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())
