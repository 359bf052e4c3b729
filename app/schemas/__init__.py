from app.schemas.screening import (
    TriggerScreeningRequest,
    BulkScreeningRequest,
    RetryScreeningRequest,
    CancelScreeningRequest,
    ScreeningResultResponse,
    BulkScreeningResponse,
    ScreeningStatsResponse,
    SimilarApplication,
)
from app.schemas.files import StoredFileResponse
from app.schemas.inbound import InboundWebhookPayload, InboundEmailItem, InboundAttachment

__all__ = [
    "TriggerScreeningRequest",
    "BulkScreeningRequest",
    "RetryScreeningRequest",
    "CancelScreeningRequest",
    "ScreeningResultResponse",
    "BulkScreeningResponse",
    "ScreeningStatsResponse",
    "SimilarApplication",
    "StoredFileResponse",
    "InboundWebhookPayload",
    "InboundEmailItem",
    "InboundAttachment",
]
