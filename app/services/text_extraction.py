"""
Text Extraction Service - raw text from PDFs, Word documents and images

Native PDFs are read with pdfplumber (layout-aware) and fall back to pypdf
when pdfplumber yields nothing. Word documents go through python-docx.
Images are delegated to the OCR service.

Key Functions:
    - detect_document_type(): filename/MIME → "pdf" | "image" | "word" | "unknown"
    - extract_pdf_text(): bytes → text (raises InputError on unreadable PDFs)
    - extract_docx_text(): bytes → text
    - clean_text(): strip control characters, collapse whitespace, keep lines
    - extract_text(): async dispatcher returning ExtractedText
"""

import asyncio
import io
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import docx
import pdfplumber
from pypdf import PdfReader

from app.exceptions import InputError

logger = logging.getLogger(__name__)

PDF_MIME_TYPES = {"application/pdf", "application/x-pdf"}
WORD_MIME_TYPES = {
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
}
IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png", ".gif", ".bmp", ".tiff", ".tif", ".webp"}
WORD_EXTENSIONS = {".doc", ".docx"}

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_HORIZONTAL_WS = re.compile(r"[ \t\u00a0]+")
_MANY_NEWLINES = re.compile(r"\n{3,}")


@dataclass
class ExtractedText:
    text: str
    method: str  # pdf | docx | ocr | none
    confidence: Optional[float] = None
    ocr_success: Optional[bool] = None


def detect_document_type(filename: str, mime_type: str) -> str:
    """Coarse document family from MIME type, falling back to the extension."""
    mime = (mime_type or "").lower()
    ext = Path(filename or "").suffix.lower()

    if mime in PDF_MIME_TYPES or ext == ".pdf":
        return "pdf"
    if mime.startswith("image/") or ext in IMAGE_EXTENSIONS:
        return "image"
    if mime in WORD_MIME_TYPES or ext in WORD_EXTENSIONS:
        return "word"
    return "unknown"


def is_pdf(data: bytes) -> bool:
    """PDF signature check (%PDF)."""
    return data[:4] == b"%PDF"


def clean_text(text: str) -> str:
    """
    Normalize extracted text.

    Removes control characters, collapses runs of spaces/tabs, trims each
    line and limits blank lines to one, keeping line structure for the
    line-oriented parsers downstream.
    """
    if not text:
        return ""
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = _CONTROL_CHARS.sub("", text)
    lines = [_HORIZONTAL_WS.sub(" ", line).strip() for line in text.split("\n")]
    text = "\n".join(lines)
    return _MANY_NEWLINES.sub("\n\n", text).strip()


def extract_pdf_text(data: bytes) -> str:
    """
    Extract text from a native PDF.

    Args:
        data: PDF file content

    Returns:
        Cleaned text ("" for image-only PDFs)

    Raises:
        InputError: If the bytes are not a readable PDF
    """
    if not is_pdf(data):
        raise InputError("Not a PDF file (missing %PDF signature)")

    pages = []
    try:
        with pdfplumber.open(io.BytesIO(data)) as pdf:
            for page in pdf.pages:
                pages.append(page.extract_text() or "")
        if any(p.strip() for p in pages):
            return clean_text("\n".join(pages))
    except Exception as e:
        logger.warning(f"pdfplumber could not read PDF, falling back to pypdf: {e}")

    try:
        reader = PdfReader(io.BytesIO(data))
        pages = [page.extract_text() or "" for page in reader.pages]
    except Exception as e:
        raise InputError(f"Unreadable PDF: {e}") from e

    return clean_text("\n".join(pages))


def extract_docx_text(data: bytes) -> str:
    """Paragraph and table text from a .docx file."""
    try:
        document = docx.Document(io.BytesIO(data))
    except Exception as e:
        raise InputError(f"Unreadable Word document: {e}") from e

    parts = [paragraph.text for paragraph in document.paragraphs]
    for table in document.tables:
        for row in table.rows:
            parts.append(" | ".join(cell.text for cell in row.cells))
    return clean_text("\n".join(parts))


async def extract_text(
    data: bytes,
    filename: str,
    mime_type: str,
    ocr_service=None,
) -> ExtractedText:
    """
    Extract text from any supported attachment.

    Args:
        data: File content
        filename: Original filename (extension fallback)
        mime_type: Declared MIME type
        ocr_service: OcrService for images (required for image input)

    Returns:
        ExtractedText with the method used

    Raises:
        InputError: Empty, unreadable or unsupported files
    """
    if not data:
        raise InputError(f"Empty file: {filename}")

    doc_type = detect_document_type(filename, mime_type)
    loop = asyncio.get_running_loop()

    # parsers run on the executor
    if doc_type == "pdf":
        text = await loop.run_in_executor(None, extract_pdf_text, data)
        return ExtractedText(text=text, method="pdf")

    if doc_type == "word":
        if Path(filename).suffix.lower() == ".doc":
            raise InputError("Legacy .doc files are not supported, please upload .docx or PDF")
        text = await loop.run_in_executor(None, extract_docx_text, data)
        return ExtractedText(text=text, method="docx")

    if doc_type == "image":
        if ocr_service is None:
            raise InputError("Image text extraction requires an OCR service")
        result = await ocr_service.recognize_safely(data)
        return ExtractedText(
            text=clean_text(result.text),
            method="ocr",
            confidence=result.confidence,
            ocr_success=result.success,
        )

    raise InputError(f"Unsupported file type: {mime_type or filename}")
