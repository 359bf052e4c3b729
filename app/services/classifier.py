"""
Attachment Classifier - résumé vs. certificate without reliable metadata

Decision order for a single attachment (first decisive signal wins):
    1. Filename keywords (English + Vietnamese). Exactly one keyword set
       matching decides.
    2. PDF content: résumé indicators (+ length bonus) vs. certificate
       indicators. Résumé needs score > certificate score and > 2,
       certificate needs score > résumé score and > 1.
    3. Images are certificates unless the filename carries a résumé keyword.
    4. File size: 500KB-5MB documents lean résumé.
    5. Otherwise undecided ("unknown").

classify_batch() is the two-pass batch algorithm:
    pass 1 classifies every file independently,
    pass 2 enforces exactly one résumé per batch: if none was found the first
    undecided file (or the first file) becomes the résumé, further résumés
    become unknown, and remaining undecided files default to certificate.

Classification is a pure function of (filename, MIME type, content).
"""

import logging
import unicodedata
from dataclasses import dataclass, replace
from enum import Enum
from typing import List, Optional, Sequence

from app.exceptions import InputError
from app.services.text_extraction import detect_document_type, extract_pdf_text

logger = logging.getLogger(__name__)


class DocumentKind(str, Enum):
    RESUME = "resume"
    CERTIFICATE = "certificate"
    UNKNOWN = "unknown"


RESUME_FILENAME_KEYWORDS = [
    "cv", "resume", "curriculum", "vitae",
    "hồ sơ", "lý lịch", "tiểu sử",
    "profile", "bio", "background",
]

CERTIFICATE_FILENAME_KEYWORDS = [
    "certificate", "cert", "diploma", "degree", "award", "license",
    "chứng chỉ", "bằng", "giấy chứng nhận", "certification",
    "aws", "google", "microsoft", "cisco", "oracle", "coursera",
    "ielts", "toefl", "toeic", "bachelor", "master", "phd",
]

RESUME_CONTENT_INDICATORS = [
    "experience", "education", "skills", "work history", "employment",
    "kinh nghiệm", "học vấn", "kỹ năng", "làm việc", "công việc",
    "objective", "summary", "profile", "responsibilities", "achievements",
    "mục tiêu", "tóm tắt", "trách nhiệm", "thành tích",
    "phone", "email", "address", "contact", "liên hệ", "điện thoại",
]

CERTIFICATE_CONTENT_INDICATORS = [
    "hereby certify", "certificate of", "successfully completed",
    "chứng nhận", "hoàn thành", "đạt được",
    "issued by", "authority", "valid until", "expiry date",
    "cấp bởi", "có hiệu lực", "hết hạn",
    "grade", "score", "gpa", "điểm", "xếp loại",
]

RESUME_MIN_CONTENT_SCORE = 2
CERTIFICATE_MIN_CONTENT_SCORE = 1
RESUME_SIZE_RANGE_KB = (500, 5000)

FILENAME_CONFIDENCE = 0.9
IMAGE_CONFIDENCE = 0.7
FILE_SIZE_CONFIDENCE = 0.6
BATCH_DEFAULT_CONFIDENCE = 0.3


@dataclass
class Attachment:
    """An inbound file, owned by the ingestion request that received it."""
    content: bytes
    filename: str
    content_type: str

    @property
    def size(self) -> int:
        return len(self.content)


@dataclass(frozen=True)
class Classification:
    """
    Attributes:
        kind: resume | certificate | unknown
        confidence: 0-1
        signal: Which rule decided (filename, pdf_content, image, file_size,
                batch_default, none)
    """
    kind: DocumentKind
    confidence: float
    signal: str

    @property
    def is_decisive(self) -> bool:
        return self.kind != DocumentKind.UNKNOWN


def _normalize(value: str) -> str:
    # Vietnamese filenames may arrive decomposed (NFD) from macOS mail clients
    return unicodedata.normalize("NFC", value or "").lower()


def count_keywords(text: str, keywords: Sequence[str]) -> int:
    normalized = _normalize(text)
    return sum(1 for keyword in keywords if keyword in normalized)


def score_pdf_content(text: str) -> Classification:
    """
    Weigh résumé vs. certificate indicators in extracted PDF text.

    Longer documents lean résumé: >2000 chars adds 2, >500 adds 1.
    """
    resume_score = count_keywords(text, RESUME_CONTENT_INDICATORS)
    certificate_score = count_keywords(text, CERTIFICATE_CONTENT_INDICATORS)

    length = len(text)
    resume_score += 2 if length > 2000 else 1 if length > 500 else 0

    confidence = round(
        max(resume_score, certificate_score) / (resume_score + certificate_score + 1), 3
    )

    if resume_score > certificate_score and resume_score > RESUME_MIN_CONTENT_SCORE:
        return Classification(DocumentKind.RESUME, confidence, "pdf_content")
    if certificate_score > resume_score and certificate_score > CERTIFICATE_MIN_CONTENT_SCORE:
        return Classification(DocumentKind.CERTIFICATE, confidence, "pdf_content")
    return Classification(DocumentKind.UNKNOWN, confidence, "none")


def classify(attachment: Attachment, text: Optional[str] = None) -> Classification:
    """
    Classify one attachment on its own.

    Args:
        attachment: File to classify
        text: Already-extracted PDF text (extracted here when omitted)

    Returns:
        Classification; kind UNKNOWN when no signal was decisive
    """
    has_resume_keyword = count_keywords(attachment.filename, RESUME_FILENAME_KEYWORDS) > 0
    has_certificate_keyword = count_keywords(attachment.filename, CERTIFICATE_FILENAME_KEYWORDS) > 0

    # 1. Filename
    if has_resume_keyword and not has_certificate_keyword:
        return Classification(DocumentKind.RESUME, FILENAME_CONFIDENCE, "filename")
    if has_certificate_keyword and not has_resume_keyword:
        return Classification(DocumentKind.CERTIFICATE, FILENAME_CONFIDENCE, "filename")

    doc_type = detect_document_type(attachment.filename, attachment.content_type)

    # 2. PDF content
    if doc_type == "pdf":
        if text is None:
            try:
                text = extract_pdf_text(attachment.content)
            except InputError as e:
                logger.warning(f"PDF content analysis failed for {attachment.filename}: {e}")
                text = ""
        if text:
            content_result = score_pdf_content(text)
            if content_result.is_decisive:
                return content_result

    # 3. Images
    if doc_type == "image":
        if has_resume_keyword:
            return Classification(DocumentKind.RESUME, IMAGE_CONFIDENCE, "image")
        return Classification(DocumentKind.CERTIFICATE, IMAGE_CONFIDENCE, "image")

    # 4. File size
    if doc_type in ("pdf", "word"):
        size_kb = attachment.size / 1024
        low, high = RESUME_SIZE_RANGE_KB
        if low < size_kb < high:
            return Classification(DocumentKind.RESUME, FILE_SIZE_CONFIDENCE, "file_size")

    return Classification(DocumentKind.UNKNOWN, 0.0, "none")


def classify_batch(
    attachments: Sequence[Attachment],
    texts: Optional[Sequence[Optional[str]]] = None,
) -> List[Classification]:
    """
    Classify a batch so that exactly one attachment is the résumé.

    Args:
        attachments: Files in arrival order
        texts: Optional pre-extracted text per attachment

    Returns:
        Classifications in the same order as attachments
    """
    if not attachments:
        return []

    # Pass 1: independent decisions
    results = [
        classify(att, texts[i] if texts else None)
        for i, att in enumerate(attachments)
    ]

    # Pass 2: batch-level defaults
    resume_indices = [i for i, r in enumerate(results) if r.kind == DocumentKind.RESUME]

    if not resume_indices:
        undecided = [i for i, r in enumerate(results) if not r.is_decisive]
        chosen = undecided[0] if undecided else 0
        logger.info(
            f"No résumé detected in batch, treating {attachments[chosen].filename} "
            f"as résumé (low confidence)"
        )
        results[chosen] = Classification(DocumentKind.RESUME, BATCH_DEFAULT_CONFIDENCE, "batch_default")
    else:
        for extra in resume_indices[1:]:
            logger.info(f"Additional résumé {attachments[extra].filename} kept as general document")
            results[extra] = replace(results[extra], kind=DocumentKind.UNKNOWN)

    return [
        Classification(DocumentKind.CERTIFICATE, BATCH_DEFAULT_CONFIDENCE, "batch_default")
        if r.signal == "none" else r
        for r in results
    ]
