"""
OCR Service - multi-pass text recognition for certificate images

Wraps Tesseract (via pytesseract) behind an OcrEngine protocol so the
analyzer and tests can swap engines.

Recognition Strategy:
    1. Preprocess the image (app.services.preprocessing) in the worker pool
    2. Run two passes concurrently:
        - "standard": combined languages (eng+vie, handles diacritics)
        - "english-focused": Latin-only (eng)
    3. Score each pass: confidence × min(len(text) / 100, 2.0)
    4. Highest score wins among passes with more than 10 characters
    5. No viable pass → RecognitionError

recognize_safely() adds the single-pass fallback (combined languages,
confidence × 0.8) and never raises: total failure comes back as
OcrResult(success=False, text="").

Concurrency:
    Preprocessing and tesseract calls are blocking; both run in a bounded
    ThreadPoolExecutor so they never stall the event loop serving ingestion.
"""

import asyncio
import io
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, asdict
from typing import Dict, List, Optional, Protocol, Tuple

import pytesseract
from PIL import Image
from prometheus_client import Histogram, Counter

from app.exceptions import RecognitionError
from app.services.preprocessing import preprocess_image

logger = logging.getLogger(__name__)

MIN_TEXT_LENGTH = 10
FALLBACK_CONFIDENCE_FACTOR = 0.8

OCR_PASS_DURATION = Histogram(
    "ocr_pass_duration_seconds",
    "Time spent in a single OCR pass",
    ["pass_name"],
    buckets=[0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0]
)

OCR_FAILURES = Counter(
    "ocr_failures_total",
    "OCR runs that produced no usable text"
)


@dataclass
class OcrResult:
    """
    Outcome of recognizing one image.

    Attributes:
        success: False only when every pass (fallback included) failed
        text: Recognized text ("" on failure)
        confidence: Engine confidence 0-100
        elapsed_ms: Wall time including preprocessing
        pass_name: Winning pass ("standard", "english-focused", "fallback")
        error: Failure reason when success is False
    """
    success: bool
    text: str
    confidence: float
    elapsed_ms: int
    pass_name: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


class OcrEngine(Protocol):
    """A recognition backend: image bytes + language string → (text, confidence 0-100)."""

    def recognize(self, image_bytes: bytes, languages: str) -> Tuple[str, float]:
        ...


class TesseractEngine:
    """
    Tesseract via pytesseract.

    Text is rebuilt line by line from image_to_data so one tesseract
    invocation yields both the text and the word confidences.
    """

    def __init__(self, tesseract_cmd: str = "", timeout: int = 60) -> None:
        if tesseract_cmd:
            pytesseract.pytesseract.tesseract_cmd = tesseract_cmd
        self.timeout = timeout

    def recognize(self, image_bytes: bytes, languages: str) -> Tuple[str, float]:
        with Image.open(io.BytesIO(image_bytes)) as img:
            data = pytesseract.image_to_data(
                img,
                lang=languages,
                output_type=pytesseract.Output.DICT,
                timeout=self.timeout,
            )

        lines: Dict[tuple, List[str]] = {}
        confidences: List[float] = []
        for i, word in enumerate(data["text"]):
            if not word or not word.strip():
                continue
            key = (data["block_num"][i], data["par_num"][i], data["line_num"][i])
            lines.setdefault(key, []).append(word.strip())
            conf = float(data["conf"][i])
            if conf >= 0:
                confidences.append(conf)

        text = "\n".join(" ".join(words) for words in lines.values())
        confidence = sum(confidences) / len(confidences) if confidences else 0.0
        return text, confidence


def quality_score(confidence: float, text_length: int) -> float:
    """Length-aware quality proxy; short outputs are penalized even at high confidence."""
    return confidence * min(text_length / 100, 2.0)


class OcrService:
    """
    Multi-pass OCR adapter.

    Attributes:
        engine: Recognition backend (TesseractEngine by default)
        passes: Ordered (name, languages) pairs run on every image
        fallback_languages: Languages for the single-pass retry
    """

    def __init__(
        self,
        engine: Optional[OcrEngine] = None,
        languages: str = "eng+vie",
        fallback_language: str = "eng",
        max_workers: int = 2,
        preprocess: bool = True,
    ) -> None:
        self.engine = engine or TesseractEngine()
        self.passes: List[Tuple[str, str]] = [
            ("standard", languages),
            ("english-focused", fallback_language),
        ]
        self.fallback_languages = languages
        self.preprocess = preprocess
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="ocr")

    async def _prepare(self, image_bytes: bytes) -> bytes:
        if not self.preprocess:
            return image_bytes
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, preprocess_image, image_bytes)

    async def _run_pass(self, image_bytes: bytes, name: str, languages: str) -> Tuple[str, float]:
        loop = asyncio.get_running_loop()
        with OCR_PASS_DURATION.labels(pass_name=name).time():
            text, confidence = await loop.run_in_executor(
                self._executor, self.engine.recognize, image_bytes, languages
            )
        return (text or "").strip(), confidence

    async def _best_pass(self, prepared: bytes) -> Tuple[str, float, str]:
        outcomes = await asyncio.gather(
            *(self._run_pass(prepared, name, langs) for name, langs in self.passes),
            return_exceptions=True,
        )

        best: Optional[Tuple[str, float, str]] = None
        best_score = -1.0
        for (name, _), outcome in zip(self.passes, outcomes):
            if isinstance(outcome, Exception):
                logger.warning(f"OCR pass '{name}' failed: {outcome}")
                continue
            text, confidence = outcome
            if len(text) <= MIN_TEXT_LENGTH:
                logger.debug(f"OCR pass '{name}' too short ({len(text)} chars)")
                continue
            score = quality_score(confidence, len(text))
            logger.debug(f"OCR pass '{name}': conf={confidence:.1f} len={len(text)} score={score:.1f}")
            if score > best_score:
                best, best_score = (text, confidence, name), score

        if best is None:
            raise RecognitionError("No OCR pass produced usable text")
        return best

    async def recognize(self, image_bytes: bytes) -> OcrResult:
        """
        Recognize text using the best of the configured passes.

        Raises:
            RecognitionError: If no pass produced more than 10 characters
        """
        start = time.perf_counter()
        prepared = await self._prepare(image_bytes)
        text, confidence, name = await self._best_pass(prepared)
        return OcrResult(
            success=True,
            text=text,
            confidence=round(confidence, 2),
            elapsed_ms=int((time.perf_counter() - start) * 1000),
            pass_name=name,
        )

    async def recognize_safely(self, image_bytes: bytes) -> OcrResult:
        """
        Recognize text, falling back to a single reduced pass, never raising.

        Returns:
            OcrResult; success=False with empty text on total failure
        """
        start = time.perf_counter()

        def elapsed() -> int:
            return int((time.perf_counter() - start) * 1000)

        prepared = await self._prepare(image_bytes)
        try:
            text, confidence, name = await self._best_pass(prepared)
            return OcrResult(True, text, round(confidence, 2), elapsed(), name)
        except Exception as e:
            logger.warning(f"Multi-pass OCR failed, trying fallback pass: {e}")

        try:
            text, confidence = await self._run_pass(prepared, "fallback", self.fallback_languages)
            if not text:
                raise RecognitionError("Fallback OCR pass produced no text")
            return OcrResult(
                True, text, round(confidence * FALLBACK_CONFIDENCE_FACTOR, 2), elapsed(), "fallback"
            )
        except Exception as e:
            OCR_FAILURES.inc()
            logger.error(f"OCR failed completely: {e}")
            return OcrResult(False, "", 0.0, elapsed(), error=str(e))

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False)


# ==============================================================================
# Singleton Pattern for Dependency Injection
# ==============================================================================

_ocr_service: Optional[OcrService] = None


def get_ocr_service() -> OcrService:
    """Shared OcrService so every caller draws from one bounded worker pool."""
    global _ocr_service
    if _ocr_service is None:
        from app.config import get_settings

        settings = get_settings()
        _ocr_service = OcrService(
            engine=TesseractEngine(settings.tesseract_cmd, settings.ocr_timeout_seconds),
            languages=settings.ocr_languages,
            fallback_language=settings.ocr_fallback_language,
            max_workers=settings.ocr_max_workers,
        )
        logger.info(f"Created OcrService with {settings.ocr_max_workers} workers")
    return _ocr_service


def shutdown_ocr_service() -> None:
    """Stop the shared worker pool; the next get_ocr_service() builds a new one."""
    global _ocr_service
    if _ocr_service is not None:
        _ocr_service.shutdown()
        _ocr_service = None
