from pydantic import BaseModel
from datetime import datetime
from typing import Optional

from app.schemas.analysis import AnalysisMetadata


class StoredFileResponse(BaseModel):
    id: str
    original_name: str
    file_url: str
    mime_type: str
    size: int
    kind: str
    status: str
    reference_id: Optional[int] = None
    analysis_metadata: Optional[AnalysisMetadata] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True
