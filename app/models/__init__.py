from app.models.recruitment import JobPosting, Candidate, Application
from app.models.stored_file import StoredFile, StoredFileKind, StoredFileStatus
from app.models.screening import ScreeningResult, ScreeningStatus
from app.models.embedding import CvEmbedding, CvEmbeddingChunk, EmbeddingType
from app.models.inbound import InboundMessage

__all__ = [
    "JobPosting",
    "Candidate",
    "Application",
    "StoredFile",
    "StoredFileKind",
    "StoredFileStatus",
    "ScreeningResult",
    "ScreeningStatus",
    "CvEmbedding",
    "CvEmbeddingChunk",
    "EmbeddingType",
    "InboundMessage",
]
