"""Pytest fixtures: fakeredis-backed queue, temporary SQLite database, APK builders, test client."""
import asyncio
import os
import tempfile
import uuid
import zipfile
from pathlib import Path

import fakeredis
import pytest
import pytest_asyncio

# Must be set before apkguard is imported (settings are read at import time)
_TMP_ROOT = Path(tempfile.mkdtemp(prefix="apkguard-tests-"))
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_TMP_ROOT / 'test.db'}"
os.environ["UPLOAD_DIR"] = str(_TMP_ROOT / "uploads")
os.environ["OUTPUT_DIR"] = str(_TMP_ROOT / "output")
os.environ["DECOMPILER"] = "archive"
os.environ["JWT_SECRET"] = "test-secret-key"
os.environ.setdefault("LOG_LEVEL", "WARNING")

from fastapi.testclient import TestClient  # noqa: E402

from apkguard.database import AsyncSessionLocal, Base, engine  # noqa: E402
from apkguard.main import app  # noqa: E402
from apkguard.middleware.rate_limit import limiter  # noqa: E402
from apkguard.models import analysis, user  # noqa: E402,F401
from apkguard.services.job_queue import JobOptions, JobQueue  # noqa: E402
from apkguard.services.record_store import AnalysisRecordStore  # noqa: E402
from apkguard.utils import metrics  # noqa: E402

ANDROID_NS = "http://schemas.android.com/apk/res/android"


async def reset_database():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)


class FakeClock:
    """Deterministic time source for queue backoff and lock deadlines."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def build_manifest(package="com.example.app", permissions=(), components="", version_code="1", version_name="1.0"):
    uses = "".join(f'<uses-permission android:name="{perm}"/>' for perm in permissions)
    return (
        '<?xml version="1.0" encoding="utf-8"?>'
        f'<manifest xmlns:android="{ANDROID_NS}" package="{package}" '
        f'android:versionCode="{version_code}" android:versionName="{version_name}">'
        f"{uses}<application>{components}</application></manifest>"
    )


def write_apk(path: Path, manifest=None, include_manifest=True, resources=None, extra_entries=None) -> Path:
    """Write a minimal APK-shaped ZIP with a plain-text manifest."""
    resources = resources if resources is not None else {
        "drawable": ["icon.png"],
        "layout": ["activity_main.xml"],
    }
    with zipfile.ZipFile(path, "w") as archive:
        if include_manifest:
            archive.writestr("AndroidManifest.xml", manifest or build_manifest())
        archive.writestr("classes.dex", b"dex\n035\x00" + uuid.uuid4().bytes)
        for res_type, names in resources.items():
            for name in names:
                archive.writestr(f"res/{res_type}/{name}", b"\x00")
        for name, data in (extra_entries or {}).items():
            archive.writestr(name, data)
    return path


@pytest.fixture
def make_apk(tmp_path):
    def _make(name="app.apk", **kwargs) -> Path:
        return write_apk(tmp_path / name, **kwargs)
    return _make


@pytest.fixture
def clock():
    return FakeClock()


@pytest_asyncio.fixture
async def redis():
    client = fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)
    yield client
    await client.aclose()


@pytest_asyncio.fixture
async def queue(redis, clock):
    return JobQueue(
        redis,
        name="test-queue",
        default_options=JobOptions(attempts=3, backoff_delay_ms=5000),
        lock_ms=60_000,
        backoff_cap_ms=300_000,
        clock=clock,
    )


@pytest_asyncio.fixture
async def store():
    await reset_database()
    return AnalysisRecordStore(AsyncSessionLocal)


@pytest.fixture
def client():
    """TestClient with a fresh database, an isolated fakeredis and reset limits."""
    asyncio.run(reset_database())
    limiter.reset()
    metrics.reset()
    app.state.redis = fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)
    with TestClient(app) as c:
        yield c
    app.state.redis = None


def register_user(client: TestClient, email: str = None, password: str = "correct-horse-42") -> dict:
    email = email or f"user-{uuid.uuid4().hex[:8]}@example.com"
    r = client.post("/auth/register", json={"email": email, "password": password, "name": "Test User"})
    assert r.status_code == 200, r.text
    data = r.json()["data"]
    data["password"] = password
    return data


@pytest.fixture
def api_user(client):
    return register_user(client)


@pytest.fixture
def auth_headers(api_user):
    return {"X-API-Key": api_user["apiKey"]}


@pytest.fixture
def register(client):
    def _register(**kwargs) -> dict:
        return register_user(client, **kwargs)
    return _register
