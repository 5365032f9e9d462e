"""
Turns an uploaded APK into a directory tree the analyzer can read.

ApktoolDecompiler decodes the binary manifest and resources with apktool.
ArchiveDecompiler only unpacks the ZIP, which is enough for packages whose
manifest is plain XML (test fixtures, pre-decoded bundles).
"""
import asyncio
import shutil
import zipfile
from pathlib import Path

from apkguard.config import Settings
from apkguard.errors import DecompilationError
from apkguard.utils.logger import get_logger

logger = get_logger("decompiler")


def safe_join(base: Path, *parts: str) -> Path:
    """Join path parts under base ensuring the result stays within base (zip-slip guard)."""
    candidate = (base / Path(*parts)).resolve()
    base_resolved = base.resolve()
    if candidate != base_resolved and base_resolved not in candidate.parents:
        raise DecompilationError(f"unsafe path in archive: {'/'.join(parts)}")
    return candidate


def _reset_dir(output_dir: Path) -> None:
    # A retried attempt starts from a clean tree
    if output_dir.exists():
        shutil.rmtree(output_dir)
    output_dir.parent.mkdir(parents=True, exist_ok=True)


class ArchiveDecompiler:
    name = "archive"

    async def decompile(self, apk_path: str, output_dir: Path) -> Path:
        return await asyncio.to_thread(self._extract, Path(apk_path), Path(output_dir))

    def _extract(self, apk_path: Path, output_dir: Path) -> Path:
        _reset_dir(output_dir)
        output_dir.mkdir()
        try:
            with zipfile.ZipFile(apk_path) as archive:
                for entry in archive.infolist():
                    target = safe_join(output_dir, entry.filename)
                    if entry.is_dir():
                        target.mkdir(parents=True, exist_ok=True)
                        continue
                    target.parent.mkdir(parents=True, exist_ok=True)
                    with archive.open(entry) as src, target.open("wb") as dst:
                        shutil.copyfileobj(src, dst)
        except (zipfile.BadZipFile, OSError) as exc:
            raise DecompilationError(f"Failed to extract {apk_path.name}: {exc}") from exc
        return output_dir


class ApktoolDecompiler:
    name = "apktool"

    def __init__(self, executable: str = "apktool", timeout: float = 600):
        self.executable = executable
        self.timeout = timeout

    async def decompile(self, apk_path: str, output_dir: Path) -> Path:
        output_dir = Path(output_dir)
        _reset_dir(output_dir)
        try:
            proc = await asyncio.create_subprocess_exec(
                self.executable, "d", "-f", "-o", str(output_dir), str(apk_path),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise DecompilationError(f"Could not start {self.executable}: {exc}") from exc

        try:
            _, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError as exc:
            proc.kill()
            await proc.wait()
            raise DecompilationError(f"apktool timed out after {self.timeout}s") from exc

        if proc.returncode != 0:
            tail = stderr.decode("utf-8", errors="replace")[-500:]
            raise DecompilationError(f"apktool exited with {proc.returncode}: {tail}")
        return output_dir


def get_decompiler(settings: Settings):
    if settings.decompiler == "apktool":
        return ApktoolDecompiler(settings.apktool_path, settings.decompile_timeout_seconds)
    if settings.decompiler == "archive":
        return ArchiveDecompiler()
    raise ValueError(f"Unknown decompiler: {settings.decompiler}")
