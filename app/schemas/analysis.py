"""
Analysis metadata stored on StoredFile.analysis_metadata.

Each producer writes exactly one variant, discriminated by analysis_type:
    - image_certificate_ocr: image certificate read by OCR
    - image_certificate_basic: filename-only fallback when OCR failed outright
    - pdf_certificate: native PDF certificate
    - document_certificate: Word certificate
    - resume: classified résumé
"""

from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, Field

ConfidenceBucket = Literal["high", "medium", "low"]


class ExtractedCertificateFields(BaseModel):
    certificate_type: Optional[str] = None
    detected_keywords: List[str] = []
    score: Optional[str] = None
    issue_date: Optional[str] = None
    expiry_date: Optional[str] = None
    candidate_name: Optional[str] = None


class CertificateAnalysisBase(ExtractedCertificateFields):
    file_size_mb: float
    format: str
    filename_keywords: List[str] = []
    confidence: ConfidenceBucket
    confidence_points: int
    summary: str
    recommendations: List[str] = []


class ImageCertificateOcrAnalysis(CertificateAnalysisBase):
    analysis_type: Literal["image_certificate_ocr"] = "image_certificate_ocr"
    ocr_success: bool
    ocr_confidence: float
    ocr_pass: Optional[str] = None
    ocr_elapsed_ms: int
    extracted_text: str = ""


class ImageCertificateBasicAnalysis(BaseModel):
    analysis_type: Literal["image_certificate_basic"] = "image_certificate_basic"
    file_size_mb: float
    format: str
    detected_keywords: List[str] = []
    ocr_success: bool = False
    ocr_error: Optional[str] = None
    confidence: ConfidenceBucket
    summary: str
    recommendations: List[str] = []


class PdfCertificateAnalysis(CertificateAnalysisBase):
    analysis_type: Literal["pdf_certificate"] = "pdf_certificate"
    text_length: int
    extracted_text: str = ""


class DocumentCertificateAnalysis(CertificateAnalysisBase):
    analysis_type: Literal["document_certificate"] = "document_certificate"
    text_length: int
    extracted_text: str = ""


class ResumeAnalysis(BaseModel):
    analysis_type: Literal["resume"] = "resume"
    classification_signal: str
    classification_confidence: float
    text_length: int = 0
    extraction_method: Optional[str] = None
    source: str = "upload"
    message_id: Optional[str] = None


AnalysisMetadata = Annotated[
    Union[
        ImageCertificateOcrAnalysis,
        ImageCertificateBasicAnalysis,
        PdfCertificateAnalysis,
        DocumentCertificateAnalysis,
        ResumeAnalysis,
    ],
    Field(discriminator="analysis_type"),
]

CertificateAnalysis = Union[
    ImageCertificateOcrAnalysis,
    ImageCertificateBasicAnalysis,
    PdfCertificateAnalysis,
    DocumentCertificateAnalysis,
]
