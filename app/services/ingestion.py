"""
Document Ingestion - direct uploads and inbound-email applications

Upload:
    bytes + filename + MIME type (+ optional declared kind / reference id)
    → validate → classify (unless declared) → analyze certificates → StoredFile

Inbound email (one webhook delivery can carry several messages):
    1. MessageId recorded first; a repeated delivery is skipped
    2. Job posting id parsed from a job<ID>@ recipient; the posting must be
       active and before its deadline
    3. Attachments validated (name, ≤10MB, no executables) and downloaded
       into a per-message temporary directory, removed on every exit path;
       a download that keeps failing drops only that attachment
    4. Batch classification (exactly one résumé), résumé first:
       text → CV facts → candidate create-or-update → application → StoredFile
    5. Certificates analyzed and stored with the candidate as reference id
    6. Thank-you email (best effort), screening auto-triggered when enabled
"""

import asyncio
import logging
import re
import tempfile
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import httpx
from sqlalchemy.exc import IntegrityError
from tenacity import AsyncRetrying, before_sleep_log, retry_if_exception, stop_after_attempt

from app.config import Settings, get_settings
from app.database import SessionFactory, SyncSessionLocal, session_scope
from app.exceptions import InputError, NotFoundError, PipelineError, TransientError
from app.models import InboundMessage, StoredFile, StoredFileKind
from app.schemas.analysis import ResumeAnalysis
from app.schemas.inbound import InboundAttachment, InboundEmailItem, InboundWebhookPayload
from app.services.certificate_analyzer import CertificateAnalyzer
from app.services.classifier import Attachment, Classification, DocumentKind, classify, classify_batch
from app.services.cv_extractor import ProcessedCvData, extract_cv_data
from app.services.embeddings import backoff_wait
from app.services.notifications import NotificationService
from app.services.registry import RecruitmentRegistry
from app.services.storage import FileStorage, create_stored_file, discard_on_error, safe_filename
from app.services.text_extraction import detect_document_type, extract_pdf_text, extract_text

logger = logging.getLogger(__name__)

BLOCKED_EXTENSIONS = {".exe", ".bat", ".cmd", ".scr", ".vbs", ".js"}
JOB_ADDRESS_PATTERN = re.compile(r"\bjob(\d+)@", re.IGNORECASE)

RETRYABLE_STATUS_CODES = {408, 429, 500, 502, 503, 504}


def parse_job_posting_id(addresses: Sequence[str]) -> Optional[int]:
    """First job<ID>@domain recipient wins."""
    for address in addresses:
        match = JOB_ADDRESS_PATTERN.search(address or "")
        if match:
            return int(match.group(1))
    return None


def validate_attachment(name: Optional[str], size: int, max_bytes: int) -> Optional[str]:
    """Reason the attachment is rejected, or None when it is acceptable."""
    if not name or not name.strip():
        return "Attachment has no name"
    if size > max_bytes:
        return f"Attachment {name} exceeds {max_bytes // (1024 * 1024)}MB"
    if Path(name).suffix.lower() in BLOCKED_EXTENSIONS:
        return f"Attachment type not allowed: {name}"
    return None


async def run_blocking(func, *args):
    """Run parsing or database work on the default executor, off the event loop."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, func, *args)


def is_retryable_download_error(exc: BaseException) -> bool:
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code in RETRYABLE_STATUS_CODES
    return isinstance(exc, httpx.TransportError)


def kind_for(classification: Classification) -> StoredFileKind:
    if classification.kind == DocumentKind.RESUME:
        return StoredFileKind.RESUME
    if classification.kind == DocumentKind.CERTIFICATE:
        return StoredFileKind.CERTIFICATE
    return StoredFileKind.GENERAL


class AttachmentDownloader:
    """Streams inbound-email attachments by download token, with bounded retries."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        client: Optional[httpx.AsyncClient] = None,
        sleep=asyncio.sleep,
    ):
        self.settings = settings or get_settings()
        self._client = client
        self._sleep = sleep

    @asynccontextmanager
    async def _client_context(self):
        if self._client is not None:
            yield self._client
            return
        async with httpx.AsyncClient(timeout=self.settings.attachment_download_timeout_seconds) as client:
            yield client

    async def _stream(self, url: str, destination: Path, max_bytes: int) -> int:
        size = 0
        async with self._client_context() as client:
            async with client.stream("GET", url, headers={"api-key": self.settings.brevo_api_key}) as response:
                response.raise_for_status()
                with open(destination, "wb") as fh:
                    async for chunk in response.aiter_bytes():
                        size += len(chunk)
                        if size > max_bytes:
                            raise InputError(f"Attachment exceeds {max_bytes} bytes")
                        fh.write(chunk)
        return size

    async def download(self, token: str, destination: Path, max_bytes: int) -> int:
        """
        Download one attachment to destination.

        Returns:
            Bytes written

        Raises:
            InputError: Too large, or rejected by the provider (4xx)
            TransientError: Still failing after the retries
        """
        url = self.settings.brevo_attachment_url.format(token=token)
        attempts = self.settings.attachment_download_max_retries + 1
        retrying = AsyncRetrying(
            stop=stop_after_attempt(attempts),
            wait=backoff_wait(),
            retry=retry_if_exception(is_retryable_download_error),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            sleep=self._sleep,
            reraise=True,
        )
        try:
            return await retrying(self._stream, url, destination, max_bytes)
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            if status not in RETRYABLE_STATUS_CODES:
                raise InputError(f"Attachment download rejected with HTTP {status}") from e
            raise TransientError(f"Attachment download failed after {attempts} attempts: HTTP {status}") from e
        except httpx.TransportError as e:
            raise TransientError(f"Attachment download failed after {attempts} attempts: {e}") from e


@dataclass
class ReceivedFile:
    attachment: Attachment
    path: Optional[Path] = None


class IngestionService:
    """
    Args:
        session_factory: Zero-arg callable returning a Session
        storage: Where stored files are written
        ocr_service: OcrService for image résumés and certificates
        screening_service: Used to auto-trigger screening (optional)
        notifier: Thank-you email sender (optional)
        downloader: Inbound attachment downloader
    """

    def __init__(
        self,
        session_factory: SessionFactory = SyncSessionLocal,
        storage: Optional[FileStorage] = None,
        ocr_service=None,
        screening_service=None,
        notifier: Optional[NotificationService] = None,
        downloader: Optional[AttachmentDownloader] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.session_factory = session_factory
        self.storage = storage or FileStorage(self.settings.upload_dir)
        self.ocr_service = ocr_service
        self.analyzer = CertificateAnalyzer(ocr_service)
        self.screening_service = screening_service
        self.notifier = notifier
        self.downloader = downloader or AttachmentDownloader(self.settings)

    @property
    def max_bytes(self) -> int:
        return self.settings.max_attachment_size_mb * 1024 * 1024

    # ==================== Shared steps ====================

    async def _resume_text(self, attachment: Attachment, allow_ocr: bool) -> Tuple[str, Optional[str]]:
        """(text, method); empty text when nothing could be read."""
        doc_type = detect_document_type(attachment.filename, attachment.content_type)
        if doc_type == "image" and not allow_ocr:
            return "", None
        try:
            extracted = await extract_text(
                attachment.content, attachment.filename, attachment.content_type, self.ocr_service
            )
            return extracted.text, extracted.method
        except InputError as e:
            logger.warning(f"Could not read résumé {attachment.filename}: {e}")
            return "", None

    @staticmethod
    def _pdf_text(attachment: Attachment) -> Optional[str]:
        if detect_document_type(attachment.filename, attachment.content_type) != "pdf":
            return None
        try:
            return extract_pdf_text(attachment.content)
        except InputError:
            return ""

    def _pdf_texts(self, attachments: List[Attachment]) -> List[Optional[str]]:
        return [self._pdf_text(a) for a in attachments]

    def _store_file(
        self,
        attachment: Attachment,
        file_kind: StoredFileKind,
        reference_id: Optional[int],
        metadata: Optional[Dict[str, Any]],
        source_path: Optional[Path],
    ) -> StoredFile:
        with discard_on_error(self.storage) as written, session_scope(self.session_factory) as session:
            stored = create_stored_file(
                session, self.storage, attachment.content, attachment.filename,
                attachment.content_type, file_kind, reference_id=reference_id,
                analysis_metadata=metadata, source_path=source_path,
            )
            written.append(stored.file_url)
        return stored

    def _store_resume(
        self,
        received: ReceivedFile,
        file_kind: StoredFileKind,
        sender_email: str,
        sender_name: Optional[str],
        cv: Optional[ProcessedCvData],
        job_posting_id: int,
        metadata: Dict[str, Any],
    ) -> Tuple[int, int, str, Optional[str]]:
        """Candidate, résumé file and application in one transaction."""
        attachment = received.attachment
        with discard_on_error(self.storage) as written, session_scope(self.session_factory) as session:
            registry = RecruitmentRegistry(session)
            candidate = registry.upsert_candidate(sender_email, cv, fallback_name=sender_name)
            stored = create_stored_file(
                session, self.storage, attachment.content, attachment.filename,
                attachment.content_type, file_kind, reference_id=candidate.id,
                analysis_metadata=metadata, source_path=received.path,
            )
            written.append(stored.file_url)
            application = registry.create_application(
                candidate.id, job_posting_id, resume_file_id=stored.id, source="email"
            )
            return candidate.id, application.id, candidate.email, candidate.full_name

    def _resume_metadata(
        self,
        classification: Classification,
        text: str,
        method: Optional[str],
        source: str,
        message_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        return ResumeAnalysis(
            classification_signal=classification.signal,
            classification_confidence=classification.confidence,
            text_length=len(text),
            extraction_method=method,
            source=source,
            message_id=message_id,
        ).model_dump()

    # ==================== Upload ====================

    async def ingest_upload(
        self,
        content: bytes,
        filename: str,
        mime_type: str,
        kind: Optional[str] = None,
        reference_id: Optional[int] = None,
    ) -> StoredFile:
        """
        Store one uploaded file.

        Args:
            kind: Declared kind (resume / certificate / general); classified when omitted

        Raises:
            InputError: Empty, oversized, blocked or unknown declared kind
        """
        if not content:
            raise InputError(f"Empty file: {filename}")
        error = validate_attachment(filename, len(content), self.max_bytes)
        if error:
            raise InputError(error)

        attachment = Attachment(content=content, filename=filename, content_type=mime_type or "")
        if kind:
            try:
                file_kind = StoredFileKind(kind.lower())
            except ValueError:
                raise InputError(f"Unknown file kind: {kind}")
            classification = Classification(DocumentKind.UNKNOWN, 1.0, "declared")
        else:
            classification = await run_blocking(classify, attachment)
            file_kind = kind_for(classification)

        metadata = None
        if file_kind == StoredFileKind.CERTIFICATE:
            metadata = (await self.analyzer.analyze(attachment)).model_dump()
        elif file_kind == StoredFileKind.RESUME:
            text, method = await self._resume_text(attachment, allow_ocr=False)
            metadata = self._resume_metadata(classification, text, method, source="upload")

        stored = await run_blocking(
            self._store_file, attachment, file_kind, reference_id, metadata, None
        )
        logger.info(f"Upload {filename} stored as {file_kind.value} ({classification.signal})")
        return stored

    # ==================== Inbound email ====================

    async def process_inbound_email(self, payload: Union[dict, InboundWebhookPayload]) -> Dict[str, int]:
        """
        Process every message of a webhook delivery independently.

        Returns:
            Counts: received, processed, duplicates, rejected, failed
        """
        if isinstance(payload, dict):
            payload = InboundWebhookPayload.model_validate(payload)

        stats = {"received": len(payload.items), "processed": 0, "duplicates": 0, "rejected": 0, "failed": 0}
        for item in payload.items:
            try:
                outcome = await self.process_message(item)
            except Exception as e:
                logger.error(f"Inbound message {item.message_id} failed: {e}")
                outcome = "failed"
            stats[outcome] += 1

        logger.info(f"Inbound email batch processed: {stats}")
        return stats

    def _record_message(self, item: InboundEmailItem) -> bool:
        """Insert the InboundMessage row; False when this MessageId was seen before."""
        try:
            with session_scope(self.session_factory) as session:
                exists = session.query(InboundMessage).filter(InboundMessage.message_id == item.message_id).first()
                if exists is not None:
                    return False
                session.add(InboundMessage(
                    message_id=item.message_id,
                    sender=item.sender.address if item.sender else None,
                    status="received",
                ))
        except IntegrityError:
            return False
        return True

    def _finish_message(
        self,
        message_id: str,
        status: str,
        error: Optional[str] = None,
        attachments_count: int = 0,
        job_posting_id: Optional[int] = None,
    ) -> None:
        with session_scope(self.session_factory) as session:
            message = session.query(InboundMessage).filter(InboundMessage.message_id == message_id).first()
            if message is None:
                return
            message.status = status
            message.error = error
            message.attachments_count = attachments_count
            message.job_posting_id = job_posting_id

    def _reject(self, item: InboundEmailItem, reason: str, job_posting_id: Optional[int] = None) -> str:
        logger.warning(f"Inbound message {item.message_id} rejected: {reason}")
        self._finish_message(item.message_id, "rejected", error=reason, job_posting_id=job_posting_id)
        return "rejected"

    async def process_message(self, item: InboundEmailItem) -> str:
        """
        Returns:
            "processed", "duplicates" or "rejected"

        Raises:
            Unexpected errors, after marking the message failed
        """
        if not self._record_message(item):
            logger.info(f"Duplicate inbound message {item.message_id}, skipping")
            return "duplicates"

        try:
            return await self._process_recorded(item)
        except Exception as e:
            self._finish_message(item.message_id, "failed", error=str(e))
            raise

    async def _process_recorded(self, item: InboundEmailItem) -> str:
        sender_email = item.sender.address if item.sender else None
        if not sender_email:
            return self._reject(item, "Missing sender address")

        job_posting_id = parse_job_posting_id([r.address for r in item.recipients])
        if job_posting_id is None:
            return self._reject(item, "No job<ID>@ recipient address")

        try:
            with session_scope(self.session_factory) as session:
                job = RecruitmentRegistry(session).require_open_job_posting(job_posting_id)
                job_title = job.title
        except (NotFoundError, InputError) as e:
            return self._reject(item, str(e), job_posting_id)

        valid = []
        for attachment in item.attachments:
            error = validate_attachment(attachment.name, attachment.content_length or 0, self.max_bytes)
            if error:
                logger.warning(f"Message {item.message_id}: {error}")
                continue
            valid.append(attachment)
        if not valid:
            return self._reject(item, "No valid attachments", job_posting_id)

        with tempfile.TemporaryDirectory(prefix="inbound-") as tmp:
            received = await self._download_all(item.message_id, valid, Path(tmp))
            if not received:
                return self._reject(item, "No attachment could be downloaded", job_posting_id)

            application_id = await self._store_batch(
                received,
                sender_email=sender_email,
                sender_name=item.sender.name if item.sender else None,
                job_posting_id=job_posting_id,
                job_title=job_title,
                message_id=item.message_id,
            )

        self._finish_message(
            item.message_id, "processed", attachments_count=len(received), job_posting_id=job_posting_id
        )
        if application_id is not None:
            self._auto_trigger(application_id)
        return "processed"

    async def _download_all(
        self,
        message_id: str,
        attachments: List[InboundAttachment],
        directory: Path,
    ) -> List[ReceivedFile]:
        received = []
        for index, attachment in enumerate(attachments):
            destination = directory / f"{index}-{safe_filename(attachment.name)}"
            try:
                await self.downloader.download(attachment.download_token, destination, self.max_bytes)
                content = destination.read_bytes()
            except (PipelineError, OSError) as e:
                logger.warning(f"Message {message_id}: dropping attachment {attachment.name}: {e}")
                continue
            received.append(ReceivedFile(
                attachment=Attachment(content=content, filename=attachment.name, content_type=attachment.content_type),
                path=destination,
            ))
        return received

    async def _store_batch(
        self,
        received: List[ReceivedFile],
        sender_email: str,
        sender_name: Optional[str],
        job_posting_id: int,
        job_title: str,
        message_id: str,
    ) -> Optional[int]:
        """Classify and store a message's files, résumé first. Returns the application id."""
        attachments = [r.attachment for r in received]
        texts = await run_blocking(self._pdf_texts, attachments)
        classifications = await run_blocking(classify_batch, attachments, texts)

        order = sorted(range(len(attachments)), key=lambda i: classifications[i].kind != DocumentKind.RESUME)
        candidate_id = application_id = None

        for i in order:
            attachment, classification = attachments[i], classifications[i]
            file_kind = kind_for(classification)

            if file_kind == StoredFileKind.RESUME:
                text, method = await self._resume_text(attachment, allow_ocr=True)
                cv: Optional[ProcessedCvData] = await run_blocking(extract_cv_data, text) if text else None
                metadata = self._resume_metadata(classification, text, method, "email", message_id)

                candidate_id, application_id, candidate_email, candidate_name = await run_blocking(
                    self._store_resume, received[i], file_kind, sender_email, sender_name, cv,
                    job_posting_id, metadata,
                )

                await self._notify(candidate_email, candidate_name, job_title)
                continue

            metadata = None
            if file_kind == StoredFileKind.CERTIFICATE:
                metadata = (await self.analyzer.analyze(attachment, texts[i])).model_dump()
            await run_blocking(
                self._store_file, attachment, file_kind, candidate_id, metadata, received[i].path
            )

        return application_id

    async def _notify(self, email: str, name: Optional[str], job_title: str) -> None:
        if self.notifier is None:
            return
        try:
            await self.notifier.send_thank_you(email, name, job_title)
        except Exception as e:
            logger.error(f"Thank-you notification to {email} failed: {e}")

    def _auto_trigger(self, application_id: int) -> None:
        if not (self.settings.screening_enabled and self.settings.screening_auto_trigger):
            return
        if self.screening_service is None:
            return
        try:
            self.screening_service.trigger_screening(application_id, self.settings.screening_default_priority)
        except Exception as e:
            logger.warning(f"Auto-trigger of screening failed for application {application_id}: {e}")
