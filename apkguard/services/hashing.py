"""SHA-256 content digests used as the upload deduplication key."""
import hashlib
from pathlib import Path
from typing import Union

CHUNK_SIZE = 1024 * 1024


def hash_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def hash_file(file_path: Union[str, Path]) -> str:
    """Stream the file through SHA-256 so large APKs are never held in memory."""
    digest = hashlib.sha256()
    with open(file_path, "rb") as fh:
        while chunk := fh.read(CHUNK_SIZE):
            digest.update(chunk)
    return digest.hexdigest()
