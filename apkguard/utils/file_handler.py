import secrets
import shutil
import time
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from fastapi import UploadFile

from apkguard.errors import FileTooLargeError, InternalError, InvalidFileTypeError
from apkguard.utils.logger import get_logger

logger = get_logger("files")

APK_MIME_TYPE = "application/vnd.android.package-archive"
# Some document pickers send APKs as generic binaries
GENERIC_MIME_TYPES = {"application/octet-stream"}


@dataclass(frozen=True)
class StoredUpload:
    file_path: str
    original_filename: str
    size: int


def is_apk_upload(filename: Optional[str], content_type: Optional[str]) -> bool:
    if content_type == APK_MIME_TYPE:
        return True
    return content_type in GENERIC_MIME_TYPES and bool(filename) and filename.lower().endswith(".apk")


class FileHandler:
    """Handle APK uploads on disk and their cleanup"""

    def __init__(self, base_dir: str, max_size: int):
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self.max_size = max_size

    async def save_upload(self, file: UploadFile) -> StoredUpload:
        """
        Stream the upload to disk, enforcing type and size limits.

        The stored name is "<ms>-<random hex>-<basename>" so concurrent
        uploads of the same filename never collide.
        """
        if not is_apk_upload(file.filename, file.content_type):
            raise InvalidFileTypeError()

        # Reject early when the client declared the size
        if file.size is not None and file.size > self.max_size:
            raise FileTooLargeError(f"File exceeds maximum size of {self.max_size} bytes")

        original_name = Path(file.filename or "upload.apk").name
        safe_filename = f"{int(time.time() * 1000)}-{secrets.token_hex(6)}-{original_name}"
        file_path = self.base_dir / safe_filename

        bytes_written = 0
        try:
            with file_path.open("wb") as buffer:
                while chunk := await file.read(64 * 1024):
                    bytes_written += len(chunk)
                    if bytes_written > self.max_size:
                        raise FileTooLargeError(f"File exceeds maximum size of {self.max_size} bytes")
                    buffer.write(chunk)
        except FileTooLargeError:
            self.delete_file(str(file_path))
            raise
        except OSError as e:
            self.delete_file(str(file_path))
            logger.error(f"File save failed: {e}", exc_info=True)
            raise InternalError() from e

        return StoredUpload(file_path=str(file_path), original_filename=original_name, size=bytes_written)

    def delete_file(self, file_path: str) -> bool:
        """Delete file from disk; failures are logged, never raised"""
        try:
            Path(file_path).unlink(missing_ok=True)
            return True
        except OSError as e:
            logger.error("file.delete_failed", extra={"file_path": file_path, "error": str(e)})
            return False


def cleanup_old_entries(base_dir: str, days: int) -> List[str]:
    """Delete files and directories under base_dir older than N days"""
    base = Path(base_dir)
    if not base.is_dir():
        return []

    cutoff_time = time.time() - days * 24 * 60 * 60
    removed = []
    for entry in base.iterdir():
        try:
            if entry.stat().st_mtime >= cutoff_time:
                continue
            if entry.is_dir():
                shutil.rmtree(entry)
            else:
                entry.unlink()
            removed.append(str(entry))
        except OSError as e:
            logger.warning("file.cleanup_failed", extra={"file_path": str(entry), "error": str(e)})
    return removed
