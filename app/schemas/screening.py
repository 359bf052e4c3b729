from pydantic import BaseModel, Field
from datetime import datetime
from typing import Any, Dict, List, Optional


class TriggerScreeningRequest(BaseModel):
    application_id: int = Field(..., gt=0)
    priority: int = Field(0, ge=0, le=10)


class BulkScreeningRequest(BaseModel):
    application_ids: List[int] = Field(..., min_length=1)
    priority: int = Field(0, ge=0, le=10)


class RetryScreeningRequest(BaseModel):
    force: bool = False


class CancelScreeningRequest(BaseModel):
    reason: Optional[str] = None


class ScreeningResultResponse(BaseModel):
    id: int
    application_id: int
    job_posting_id: Optional[int] = None
    status: str
    priority: int
    retry_count: int
    overall_score: Optional[float] = None
    skills_score: Optional[float] = None
    experience_score: Optional[float] = None
    education_score: Optional[float] = None
    vector_similarity: Optional[float] = None
    chunk_similarity: Optional[float] = None
    fit_tier: Optional[str] = None
    extracted_skills: Optional[Dict[str, Any]] = None
    extracted_experience: Optional[Dict[str, Any]] = None
    extracted_education: Optional[List[Dict[str, Any]]] = None
    ai_summary: Optional[str] = None
    key_highlights: List[str] = []
    concerns: List[str] = []
    stage_errors: Dict[str, str] = {}
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    processing_time_ms: Optional[int] = None

    class Config:
        from_attributes = True


class BulkItemResult(BaseModel):
    application_id: int
    success: bool
    status: Optional[str] = None
    error: Optional[str] = None


class BulkScreeningResponse(BaseModel):
    triggered: int
    failed: int
    skipped: int = 0
    results: List[BulkItemResult]


class ScreeningStatsResponse(BaseModel):
    total: int
    by_status: Dict[str, int]
    average_score: Optional[float] = None
    average_processing_time_ms: Optional[int] = None
    queue: Optional[Dict[str, Any]] = None


class SimilarApplication(BaseModel):
    application_id: int
    similarity: float
