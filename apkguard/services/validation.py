"""
Structural validation of uploaded APKs.

Only checks that the upload is a readable ZIP container with an
AndroidManifest.xml entry at its root. Content is not inspected.
"""
import os
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

from apkguard.utils.logger import get_logger

logger = get_logger("validation")

MANIFEST_ENTRY = "AndroidManifest.xml"

FILE_NOT_FOUND = "FILE_NOT_FOUND"
INVALID_ZIP_STRUCTURE = "INVALID_ZIP_STRUCTURE"
MISSING_MANIFEST = "MISSING_MANIFEST"


@dataclass(frozen=True)
class ValidationResult:
    is_valid: bool
    reason: Optional[str] = None

    @classmethod
    def ok(cls) -> "ValidationResult":
        return cls(True)

    @classmethod
    def invalid(cls, reason: str) -> "ValidationResult":
        return cls(False, reason)


def validate_apk_structure(file_path: Union[str, Path]) -> ValidationResult:
    path = Path(file_path)
    if not path.is_file() or not os.access(path, os.R_OK):
        return ValidationResult.invalid(FILE_NOT_FOUND)

    try:
        with zipfile.ZipFile(path) as archive:
            has_manifest = False
            for entry in archive.infolist():
                if entry.filename == MANIFEST_ENTRY:
                    has_manifest = True
    except (zipfile.BadZipFile, zipfile.LargeZipFile, EOFError, OSError) as exc:
        logger.warning("validation.invalid_zip", extra={"file_path": str(path), "error": str(exc)})
        return ValidationResult.invalid(INVALID_ZIP_STRUCTURE)

    if not has_manifest:
        return ValidationResult.invalid(MISSING_MANIFEST)
    return ValidationResult.ok()
