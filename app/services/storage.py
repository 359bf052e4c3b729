"""
File Storage - StoredFile rows plus their bytes on disk

Layout under Settings.upload_dir:
    resume/<timestamp>-<token>-<name>
    certificates/<timestamp>-<token>-<name>
    documents/<timestamp>-<token>-<name>

The millisecond timestamp orders files; the random token keeps same-named
files saved in the same millisecond apart. StoredFile.file_url is the path
relative to upload_dir.
"""

import logging
import os
import re
import shutil
import time
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Iterator, List, Optional

from sqlalchemy.orm import Session

from app.config import get_settings
from app.exceptions import InputError, NotFoundError
from app.models import StoredFile, StoredFileKind, StoredFileStatus
from app.models.stored_file import KIND_FOLDERS

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^\w.\-]+", re.UNICODE)


def safe_filename(name: str) -> str:
    base = os.path.basename((name or "").replace("\\", "/")).strip()
    cleaned = _UNSAFE_CHARS.sub("_", base).strip("._")
    return cleaned or "file"


class FileStorage:
    """Writes files under kind-specific folders of a root directory."""

    def __init__(self, root: Optional[str] = None):
        self.root = Path(root or get_settings().upload_dir)

    def _target(self, original_name: str, kind: StoredFileKind) -> Path:
        folder = self.root / KIND_FOLDERS[kind.value]
        folder.mkdir(parents=True, exist_ok=True)
        for _ in range(5):
            target = folder / f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}-{safe_filename(original_name)}"
            if not target.exists():
                return target
        raise OSError(f"Could not allocate a unique name for {original_name}")

    def relative(self, path: Path) -> str:
        return path.relative_to(self.root).as_posix()

    def absolute(self, file_url: str) -> Path:
        return self.root / file_url

    def save_bytes(self, content: bytes, original_name: str, kind: StoredFileKind) -> str:
        target = self._target(original_name, kind)
        with open(target, "xb") as fh:
            fh.write(content)
        return self.relative(target)

    def move_into(self, source: Path, original_name: str, kind: StoredFileKind) -> str:
        """Move a temporary file into storage."""
        target = self._target(original_name, kind)
        shutil.move(str(source), target)
        return self.relative(target)

    def read(self, file_url: str) -> bytes:
        path = self.absolute(file_url)
        if not path.is_file():
            raise InputError(f"Stored file missing on disk: {file_url}")
        return path.read_bytes()

    def remove(self, file_url: str) -> bool:
        path = self.absolute(file_url)
        try:
            path.unlink()
            return True
        except FileNotFoundError:
            return False


def create_stored_file(
    session: Session,
    storage: FileStorage,
    content: bytes,
    original_name: str,
    mime_type: str,
    kind: StoredFileKind,
    reference_id: Optional[int] = None,
    analysis_metadata: Optional[dict] = None,
    source_path: Optional[Path] = None,
) -> StoredFile:
    """
    Write the file and its StoredFile row.

    When source_path is given the file is moved from there (temporary
    download) instead of written from content.
    """
    if source_path is not None:
        file_url = storage.move_into(source_path, original_name, kind)
    else:
        file_url = storage.save_bytes(content, original_name, kind)

    stored = StoredFile(
        original_name=original_name,
        file_url=file_url,
        mime_type=mime_type or "application/octet-stream",
        size=len(content),
        kind=kind.value,
        status=StoredFileStatus.ACTIVE.value,
        reference_id=reference_id,
        analysis_metadata=analysis_metadata,
    )
    session.add(stored)
    try:
        session.flush()
    except Exception:
        storage.remove(file_url)
        raise
    logger.info(f"Stored {kind.value} file {original_name} as {file_url}")
    return stored


@contextmanager
def discard_on_error(storage: FileStorage) -> Iterator[List[str]]:
    """
    Collect file_urls written inside the block and remove them if it raises.

    Wrap it around session_scope so a failed commit leaves no orphan on disk:

        with discard_on_error(storage) as written, session_scope() as session:
            stored = create_stored_file(session, storage, ...)
            written.append(stored.file_url)
    """
    written: List[str] = []
    try:
        yield written
    except Exception:
        for file_url in written:
            if storage.remove(file_url):
                logger.warning(f"Removed {file_url} after its record was rolled back")
        raise


def soft_delete_file(session: Session, file_id: str) -> StoredFile:
    stored = session.get(StoredFile, file_id)
    if stored is None:
        raise NotFoundError(f"Stored file {file_id} not found")
    stored.status = StoredFileStatus.DELETED.value
    stored.updated_at = datetime.utcnow()
    session.flush()
    return stored


def purge_deleted_files(session: Session, storage: FileStorage, older_than_days: int) -> int:
    """Hard-delete soft-deleted rows older than the retention window, files included."""
    cutoff = datetime.utcnow() - timedelta(days=older_than_days)
    expired = (
        session.query(StoredFile)
        .filter(StoredFile.status == StoredFileStatus.DELETED.value, StoredFile.updated_at < cutoff)
        .all()
    )
    for stored in expired:
        storage.remove(stored.file_url)
        session.delete(stored)
    session.flush()
    if expired:
        logger.info(f"Purged {len(expired)} deleted files older than {older_than_days} days")
    return len(expired)
