"""
Certificate Analyzer - type, score, dates and holder name from certificate text

One analysis module for every certificate source (image via OCR, native
PDF, Word). The OCR adapter is injected so tests can replace tesseract.

Text Analysis:
    - Type: ordered keyword table, first matching category wins (uppercased)
    - Score: TOEIC-specific section parsing, general patterns otherwise
    - Dates: numeric (either order) and month-name formats, in text order;
      first = issue date, second = expiry date
    - Name: label proximity first, then generic capitalized sequences

Confidence (0-100 points → bucket):
    filename keywords   ≤ 20  (10 per keyword)
    OCR tier            ≤ 30  (30 if confidence > 70, 15 if > 40)
    certificate type      25
    score found           15
    issue date found      10
    high ≥ 70, medium ≥ 40, low otherwise

Image analysis never raises: an OCR failure degrades to a filename-only
"image_certificate_basic" result.
"""

import asyncio
import logging
import re
from pathlib import Path
from typing import List, Optional, Tuple

from app.services.classifier import Attachment
from app.services.ocr import OcrResult
from app.services.text_extraction import (
    detect_document_type,
    extract_docx_text,
    extract_pdf_text,
)
from app.schemas.analysis import (
    CertificateAnalysis,
    DocumentCertificateAnalysis,
    ExtractedCertificateFields,
    ImageCertificateBasicAnalysis,
    ImageCertificateOcrAnalysis,
    PdfCertificateAnalysis,
)

logger = logging.getLogger(__name__)

# Ordered: first match wins
CERTIFICATE_TYPES: List[Tuple[str, List[str]]] = [
    ("toeic", ["toeic", "test of english for international communication", "international communication"]),
    ("ielts", ["ielts", "international english", "language testing"]),
    ("toefl", ["toefl", "test of english as a foreign language"]),
    ("aws", ["aws", "amazon web services", "aws certified"]),
    ("google", ["google", "google cloud", "google certified"]),
    ("microsoft", ["microsoft", "azure", "microsoft certified"]),
    ("cisco", ["cisco", "ccna", "ccnp", "ccie"]),
    ("oracle", ["oracle", "java", "oracle certified"]),
    ("university", ["university", "bachelor", "master", "phd", "degree"]),
    ("coursera", ["coursera", "course certificate", "completion"]),
]

FILENAME_KEYWORDS = [
    "certificate", "cert", "diploma", "degree", "award", "license",
    "aws", "google", "microsoft", "cisco", "oracle", "coursera",
    "university", "graduation", "completion", "training",
    "toeic", "ielts", "toefl", "bachelor", "master", "phd",
    "chứng chỉ", "bằng", "giấy chứng nhận", "tốt nghiệp",
]

DATE_PATTERNS = [
    re.compile(r"\d{1,2}[-/]\d{1,2}[-/]\d{2,4}"),
    re.compile(r"\d{2,4}[-/]\d{1,2}[-/]\d{1,2}"),
    re.compile(
        r"(?:january|february|march|april|may|june|july|august|september|october|november|december)"
        r"\s+\d{1,2},?\s+\d{2,4}",
        re.IGNORECASE,
    ),
]

TOEIC_SECTION_RANGE = (5, 495)
TOEIC_TOTAL_RANGE = (300, 990)
TOEIC_FALSE_POSITIVES = {203, 776}

GENERAL_SCORE_PATTERNS = [
    re.compile(r"score[:\s]*(\d{2,4})", re.IGNORECASE),
    re.compile(r"(\d{2,4})\s*/\s*990", re.IGNORECASE),
    re.compile(r"overall[:\s]*(\d+\.?\d*)", re.IGNORECASE),
    re.compile(r"band[:\s]*(\d+\.?\d*)", re.IGNORECASE),
    re.compile(r"grade[:\s]*([A-F]\b|\d+)", re.IGNORECASE),
    re.compile(r"result[:\s]*(\d+)", re.IGNORECASE),
]

_CAPITALIZED_SEQUENCE = re.compile(r"\b([A-Z][a-z]+(?:[ \t]+[A-Z][a-z]+)*)\b")
NAME_PATTERNS = [
    re.compile(r"(?i:name)[:\s]*([A-Z][a-z]+(?:[ \t]+[A-Z][a-z]+)*)"),
    re.compile(r"\b([A-Z][a-z]+[ \t]+[A-Z][a-z]+[ \t]+[A-Z][a-z]+)\b"),
    re.compile(r"([A-Z][a-z]+(?:[ \t]+[A-Z][a-z]+)*)[ \t]+\d{10,}"),
]
NAME_EXCLUDED_WORDS = [
    "TOEIC", "IELTS", "TEST", "SCORE", "CERTIFICATE", "OFFICIAL",
    "READING", "LISTENING", "TOTAL", "DATE", "VALID", "YOUR",
]


# ==================== Text Analysis ====================

def detect_certificate_type(text: str) -> Tuple[Optional[str], List[str]]:
    """Return (TYPE, [matched keyword]) for the first matching category."""
    lower = text.lower()
    for cert_type, keywords in CERTIFICATE_TYPES:
        for keyword in keywords:
            if keyword in lower:
                return cert_type.upper(), [keyword]
    return None, []


def extract_dates(text: str) -> List[str]:
    """All date strings in reading order; overlapping matches keep the earliest, longest."""
    spans = []
    for pattern in DATE_PATTERNS:
        for match in pattern.finditer(text):
            spans.append((match.start(), -(match.end() - match.start()), match.group(0)))
    spans.sort()

    dates = []
    last_end = -1
    for start, neg_length, value in spans:
        if start < last_end:
            continue
        dates.append(value)
        last_end = start - neg_length
    return dates


def _in_range(value: int, bounds: Tuple[int, int]) -> bool:
    return bounds[0] <= value <= bounds[1]


def extract_toeic_score(text: str) -> Optional[str]:
    """
    Find the Listening and Reading section scores of a TOEIC report.

    Methods, in order:
        1. "score" lines inside a LISTENING/READING context (current line or
           the two before), scanning that line and the next two
        2. First three-digit number after each section label
        3. Lowest two in-range three-digit numbers (known ID fragments excluded)

    Returns:
        "L:<n> R:<n> Total:<sum>", a partial string, a total-only string,
        or None
    """
    listening: Optional[int] = None
    reading: Optional[int] = None
    lines = [line.strip() for line in text.split("\n")]

    # Method 1
    for i, line in enumerate(lines):
        window = [l.upper() for l in lines[max(0, i - 2):i + 1]]
        in_listening = any("LISTENING" in l for l in window)
        in_reading = any("READING" in l for l in window)
        if "score" not in line.lower():
            continue
        for score_line in lines[i:i + 3]:
            for number in re.findall(r"\b(\d{3})\b", score_line):
                value = int(number)
                if not _in_range(value, TOEIC_SECTION_RANGE):
                    continue
                if in_listening and listening is None:
                    listening = value
                elif in_reading and reading is None:
                    reading = value

    # Method 2
    if listening is None or reading is None:
        match = re.search(r"LISTENING[\s\S]*?(\d{3})\b", text, re.IGNORECASE)
        if match and _in_range(int(match.group(1)), TOEIC_SECTION_RANGE):
            listening = int(match.group(1))
        match = re.search(r"READING[\s\S]*?(\d{3})\b", text, re.IGNORECASE)
        if match and _in_range(int(match.group(1)), TOEIC_SECTION_RANGE):
            reading = int(match.group(1))

    # Method 3
    if listening is None or reading is None:
        candidates = sorted(
            value for value in (int(n) for n in re.findall(r"\b\d{3}\b", text))
            if _in_range(value, TOEIC_SECTION_RANGE) and value not in TOEIC_FALSE_POSITIVES
        )
        if len(candidates) >= 2:
            listening, reading = candidates[0], candidates[1]

    if listening is not None and reading is not None:
        return f"L:{listening} R:{reading} Total:{listening + reading}"
    if listening is not None:
        return f"L:{listening} (Reading score not detected)"
    if reading is not None:
        return f"R:{reading} (Listening score not detected)"

    match = re.search(r"(?:total|overall)[\s\S]*?(\d{3,4})", text, re.IGNORECASE)
    if match and _in_range(int(match.group(1)), TOEIC_TOTAL_RANGE):
        return f"Total:{int(match.group(1))} (Section breakdown not detected)"
    return None


def extract_general_score(text: str) -> Optional[str]:
    for pattern in GENERAL_SCORE_PATTERNS:
        match = pattern.search(text)
        if match:
            return match.group(1)
    return None


def is_valid_name(name: str) -> bool:
    upper = name.upper()
    return (
        4 <= len(name) <= 50
        and all(part.isalpha() and part.isascii() for part in name.split())
        and not any(word in upper for word in NAME_EXCLUDED_WORDS)
    )


def extract_candidate_name(text: str) -> Optional[str]:
    """Holder name: near a "Name" label first, then generic patterns."""
    lines = [line.strip() for line in text.split("\n")]

    for i, line in enumerate(lines):
        if "name" not in line.lower():
            continue
        for candidate_line in lines[max(0, i - 1):i + 3]:
            if (
                "name" in candidate_line.lower()
                or "TOEIC" in candidate_line
                or "SCORE" in candidate_line
                or re.match(r"^\d", candidate_line)
            ):
                continue
            match = _CAPITALIZED_SEQUENCE.search(candidate_line)
            if match and is_valid_name(match.group(1).strip()):
                return match.group(1).strip()

    for pattern in NAME_PATTERNS:
        match = pattern.search(text)
        if match and is_valid_name(match.group(1).strip()):
            return match.group(1).strip()

    return None


def analyze_certificate_text(text: str) -> ExtractedCertificateFields:
    """Run every text extractor over certificate text."""
    cert_type, keywords = detect_certificate_type(text)
    dates = extract_dates(text)
    score = extract_toeic_score(text) if cert_type == "TOEIC" else extract_general_score(text)

    return ExtractedCertificateFields(
        certificate_type=cert_type,
        detected_keywords=keywords,
        score=score,
        issue_date=dates[0] if dates else None,
        expiry_date=dates[1] if len(dates) > 1 else None,
        candidate_name=extract_candidate_name(text),
    )


# ==================== Confidence & Reporting ====================

def filename_keywords(filename: str) -> List[str]:
    lower = (filename or "").lower()
    return [keyword for keyword in FILENAME_KEYWORDS if keyword in lower]


def confidence_points(
    keyword_count: int,
    fields: ExtractedCertificateFields,
    ocr_success: bool = True,
    ocr_confidence: Optional[float] = 100.0,
) -> int:
    """
    Fuse filename, OCR and content evidence into 0-100 points.

    Native PDF/Word text counts as a fully confident read.
    """
    points = min(keyword_count * 10, 20)
    if ocr_success and ocr_confidence is not None:
        if ocr_confidence > 70:
            points += 30
        elif ocr_confidence > 40:
            points += 15
    if fields.certificate_type:
        points += 25
    if fields.score:
        points += 15
    if fields.issue_date:
        points += 10
    return points


def confidence_bucket(points: int) -> str:
    if points >= 70:
        return "high"
    if points >= 40:
        return "medium"
    return "low"


def build_summary(filename: str, fields: ExtractedCertificateFields, ocr: Optional[OcrResult] = None) -> str:
    if ocr is not None and not ocr.success:
        return f"Image certificate (OCR failed) - {filename}"

    parts = []
    if fields.certificate_type:
        parts.append(fields.certificate_type)
    if fields.score:
        if fields.certificate_type == "TOEIC" and "L:" in fields.score:
            parts.append(fields.score)
        else:
            parts.append(f"Score: {fields.score}")
    if fields.candidate_name:
        parts.append(f"Candidate: {fields.candidate_name}")
    if fields.issue_date:
        parts.append(f"Issued: {fields.issue_date}")

    base = " | ".join(parts) if parts else "Certificate detected"
    if ocr is not None:
        return f"{base} ({ocr.confidence:.0f}% OCR confidence)"
    return base


def build_recommendations(fields: ExtractedCertificateFields, ocr: Optional[OcrResult] = None) -> List[str]:
    if ocr is not None and not ocr.success:
        return [
            "OCR processing failed - manual review required",
            "Consider using higher quality image for better OCR results",
        ]

    recommendations = []
    if ocr is not None and ocr.confidence < 50:
        recommendations.append("Low OCR confidence - manual verification recommended")

    cert_type = fields.certificate_type
    if cert_type == "TOEIC":
        total_match = re.search(r"Total:(\d+)", fields.score or "")
        if total_match:
            total = int(total_match.group(1))
            if total >= 850:
                recommendations.append("TOEIC certificate detected - excellent English proficiency (850+ score)")
            elif total >= 700:
                recommendations.append("TOEIC certificate detected - good English proficiency (700+ score)")
            elif total >= 500:
                recommendations.append("TOEIC certificate detected - intermediate English proficiency")
            else:
                recommendations.append("TOEIC certificate detected - basic English proficiency")
        else:
            recommendations.append("TOEIC certificate detected - high value credential")
    elif cert_type:
        recommendations.append(f"{cert_type} certificate detected - high value credential")

    if not fields.score and cert_type == "TOEIC":
        recommendations.append(
            "TOEIC scores not detected - manual verification needed (should show Listening + Reading scores)"
        )
    elif not fields.score and cert_type == "IELTS":
        recommendations.append("Score not detected - manual score verification needed for language certificate")

    if not fields.issue_date:
        recommendations.append("Issue date not detected - verify certificate validity")

    return recommendations


def _file_format(attachment: Attachment) -> str:
    if "/" in (attachment.content_type or ""):
        return attachment.content_type.split("/")[1]
    return Path(attachment.filename).suffix.lstrip(".").lower() or "unknown"


def _size_mb(attachment: Attachment) -> float:
    return round(attachment.size / (1024 * 1024), 2)


# ==================== Analyzer ====================

class CertificateAnalyzer:
    """
    Analyze certificate attachments of any supported format.

    Attributes:
        ocr_service: OcrService (or compatible) used for image certificates
    """

    def __init__(self, ocr_service=None) -> None:
        self.ocr_service = ocr_service

    async def analyze(self, attachment: Attachment, text: Optional[str] = None) -> CertificateAnalysis:
        """
        Analyze a certificate, dispatching on document type.

        Args:
            attachment: Certificate file
            text: Pre-extracted text for PDF/Word input

        Returns:
            One of the certificate analysis variants
        """
        doc_type = detect_document_type(attachment.filename, attachment.content_type)

        if doc_type == "image":
            return await self.analyze_image(attachment)

        if doc_type in ("pdf", "word"):
            try:
                if text is None:
                    parse = extract_pdf_text if doc_type == "pdf" else extract_docx_text
                    text = await asyncio.get_running_loop().run_in_executor(None, parse, attachment.content)
            except Exception as e:
                logger.warning(f"Could not read certificate {attachment.filename}: {e}")
                return self.analyze_basic(attachment, error=str(e))
            return self.analyze_document(attachment, text, doc_type)

        return self.analyze_basic(attachment)

    async def analyze_image(self, attachment: Attachment) -> CertificateAnalysis:
        """OCR an image certificate; degrades to a basic analysis, never raises."""
        try:
            if self.ocr_service is None:
                raise RuntimeError("No OCR service configured")
            ocr = await self.ocr_service.recognize_safely(attachment.content)
            if not ocr.success:
                return self.analyze_basic(attachment, error=ocr.error)

            fields = analyze_certificate_text(ocr.text)
            keywords = filename_keywords(attachment.filename)
            points = confidence_points(len(keywords), fields, ocr.success, ocr.confidence)

            if ocr.confidence < 60:
                logger.warning(f"Low OCR confidence: {ocr.confidence:.1f}% for {attachment.filename}")
            logger.info(
                f"Certificate OCR analysis for {attachment.filename}: "
                f"type={fields.certificate_type} score={fields.score} confidence={confidence_bucket(points)}"
            )

            return ImageCertificateOcrAnalysis(
                **fields.model_dump(),
                file_size_mb=_size_mb(attachment),
                format=_file_format(attachment),
                filename_keywords=keywords,
                confidence=confidence_bucket(points),
                confidence_points=points,
                summary=build_summary(attachment.filename, fields, ocr),
                recommendations=build_recommendations(fields, ocr),
                ocr_success=ocr.success,
                ocr_confidence=ocr.confidence,
                ocr_pass=ocr.pass_name,
                ocr_elapsed_ms=ocr.elapsed_ms,
                extracted_text=ocr.text,
            )
        except Exception as e:
            logger.error(f"OCR certificate analysis failed for {attachment.filename}: {e}")
            return self.analyze_basic(attachment, error=str(e))

    def analyze_document(self, attachment: Attachment, text: str, doc_type: str) -> CertificateAnalysis:
        fields = analyze_certificate_text(text)
        keywords = filename_keywords(attachment.filename)
        points = confidence_points(len(keywords), fields)
        model = PdfCertificateAnalysis if doc_type == "pdf" else DocumentCertificateAnalysis

        return model(
            **fields.model_dump(),
            file_size_mb=_size_mb(attachment),
            format=_file_format(attachment),
            filename_keywords=keywords,
            confidence=confidence_bucket(points),
            confidence_points=points,
            summary=build_summary(attachment.filename, fields),
            recommendations=build_recommendations(fields),
            text_length=len(text),
            extracted_text=text,
        )

    def analyze_basic(self, attachment: Attachment, error: Optional[str] = None) -> ImageCertificateBasicAnalysis:
        """Filename-only analysis."""
        keywords = filename_keywords(attachment.filename)
        return ImageCertificateBasicAnalysis(
            file_size_mb=_size_mb(attachment),
            format=_file_format(attachment),
            detected_keywords=keywords,
            ocr_success=False,
            ocr_error=error,
            confidence="medium" if keywords else "low",
            summary=f"Basic analysis - {', '.join(keywords) or 'unknown certificate'}",
            recommendations=build_recommendations(ExtractedCertificateFields(), OcrResult(False, "", 0.0, 0)),
        )
