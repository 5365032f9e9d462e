import asyncio
import shutil
import uuid
from pathlib import Path

import pytest

from apkguard.errors import DecompilationError
from apkguard.services.decompiler import ArchiveDecompiler, safe_join
from apkguard.services.hashing import hash_file
from apkguard.services.job_queue import JobOptions
from apkguard.services.upload_orchestrator import DECOMPILE_JOB
from apkguard.utils.file_handler import FileHandler
from apkguard.worker import AnalysisWorker

from conftest import build_manifest

EXPOSED_ACTIVITY = '<activity android:name=".MainActivity" android:exported="true"/>'


@pytest.fixture
def worker(queue, store, tmp_path):
    return AnalysisWorker(
        queue=queue,
        store=store,
        decompiler=ArchiveDecompiler(),
        file_handler=FileHandler(str(tmp_path / "uploads"), 10 * 1024 * 1024),
        output_dir=str(tmp_path / "output"),
    )


async def submit(store, queue, apk_path: Path, user_id: str = "1"):
    digest = hash_file(apk_path) if apk_path.exists() else uuid.uuid4().hex * 2
    record = await store.create(user_id, apk_path.name, digest)
    await queue.enqueue(DECOMPILE_JOB, {"analysisId": record.id, "filePath": str(apk_path)})
    return record


@pytest.mark.asyncio
async def test_successful_analysis(worker, store, queue, make_apk, tmp_path):
    apk = make_apk(manifest=build_manifest(
        permissions=["android.permission.CAMERA", "android.permission.READ_SMS"],
        components=EXPOSED_ACTIVITY,
    ))
    record = await submit(store, queue, apk)

    assert await worker.process_next() is not None

    record = await store.get(record.id)
    assert record.status == "Analyzed"
    assert record.stage == "completed"
    assert record.attempts == 1
    assert record.error_details is None
    assert record.output_path == str(tmp_path / "output" / record.id)
    assert Path(record.output_path, "AndroidManifest.xml").is_file()

    payload = record.ai_analysis
    assert payload["analysisComplete"] is True
    assert payload["progress"] == "completed"
    assert payload["riskAssessment"]["riskScore"] == 25
    assert payload["manifestData"]["packageInfo"]["packageName"] == "com.example.app"
    assert {group["type"] for group in payload["resourceData"]["assets"]} == {"drawable", "layout"}

    # Uploaded APK is removed once the analysis is stored
    assert not apk.exists()
    assert (await queue.counts())["active"] == 0


@pytest.mark.asyncio
async def test_empty_queue(worker):
    assert await worker.process_next() is None


@pytest.mark.asyncio
async def test_failure_is_retried_then_marks_record_failed(worker, store, queue, clock, make_apk):
    apk = make_apk(manifest="this is not xml <<<")
    record = await submit(store, queue, apk)

    await worker.process_next()
    current = await store.get(record.id)
    assert current.status == "Processing"
    assert current.ai_analysis is None
    assert apk.exists()

    clock.advance(5)
    await worker.process_next()
    assert (await store.get(record.id)).status == "Processing"

    clock.advance(10)
    await worker.process_next()

    current = await store.get(record.id)
    assert current.status == "Failed"
    assert current.attempts == 3
    assert "AndroidManifest.xml" in current.error_details
    assert current.ai_analysis is None
    assert not apk.exists()
    assert (await queue.counts())["failed"] == 1


@pytest.mark.asyncio
async def test_missing_upload_fails_the_record(worker, store, queue, clock, tmp_path):
    record = await submit(store, queue, tmp_path / "vanished.apk")
    for _ in range(3):
        await worker.process_next()
        clock.advance(60)

    current = await store.get(record.id)
    assert current.status == "Failed"
    assert current.error_details


@pytest.mark.asyncio
async def test_redelivered_job_for_finished_record_is_a_noop(worker, store, queue, make_apk):
    apk = make_apk()
    record = await submit(store, queue, apk)
    await worker.process_next()
    analyzed = await store.get(record.id)

    # Same job delivered again (e.g. after a crash before acknowledging)
    await queue.enqueue(DECOMPILE_JOB, {"analysisId": record.id, "filePath": str(apk)})
    await worker.process_next()

    again = await store.get(record.id)
    assert again.status == "Analyzed"
    assert again.version == analyzed.version
    assert (await queue.counts())["active"] == 0


@pytest.mark.asyncio
async def test_job_for_unknown_record_is_failed(worker, queue):
    await queue.enqueue(DECOMPILE_JOB, {"analysisId": "does-not-exist", "filePath": "/tmp/x.apk"})
    await worker.process_next()
    counts = await queue.counts()
    assert counts["active"] == 0
    assert counts["delayed"] == 1


@pytest.mark.asyncio
async def test_terminal_state_is_exclusive(worker, store, queue, clock, make_apk):
    good = await submit(store, queue, make_apk("good.apk"))
    bad = await submit(store, queue, make_apk("bad.apk", manifest="nope"), user_id="2")

    for _ in range(6):
        await worker.process_next()
        clock.advance(30)

    for record_id in (good.id, bad.id):
        record = await store.get(record_id)
        assert record.status in ("Analyzed", "Failed")
        assert (record.ai_analysis is not None) == (record.status == "Analyzed")
        assert (record.error_details is not None) == (record.status == "Failed")


@pytest.mark.asyncio
async def test_crash_on_final_attempt_fails_the_record(worker, store, queue, clock, make_apk):
    apk = make_apk()
    digest = hash_file(apk)
    record = await store.create("1", apk.name, digest)
    await queue.enqueue(DECOMPILE_JOB, {"analysisId": record.id, "filePath": str(apk)}, JobOptions(attempts=1))

    # Worker claims the job and dies before finishing it
    job = await queue.claim()
    await store.mark_processing(record.id)
    clock.advance(120)

    assert await worker.recover_stalled() == 1
    assert (await queue.get_job(job.id)).state == "failed"

    current = await store.get(record.id)
    assert current.status == "Failed"
    assert "stalled" in current.error_details
    assert current.dedup_key is None
    assert not apk.exists()
    assert await store.find_active("1", digest) is None
    assert await worker.process_next() is None


@pytest.mark.asyncio
async def test_stalled_job_for_finished_record_leaves_it_alone(worker, store, queue, clock, make_apk):
    apk = make_apk()
    record = await store.create("1", apk.name, hash_file(apk))
    await queue.enqueue(DECOMPILE_JOB, {"analysisId": record.id, "filePath": str(apk)}, JobOptions(attempts=1))

    # Record reached a terminal state but the job was never acknowledged
    await queue.claim()
    await store.mark_processing(record.id)
    finished = await store.mark_failed(record.id, "decoder crashed")
    clock.advance(120)

    assert await worker.recover_stalled() == 1
    current = await store.get(record.id)
    assert current.error_details == "decoder crashed"
    assert current.version == finished.version


@pytest.mark.asyncio
async def test_crash_inside_attempt_budget_is_redelivered(worker, store, queue, clock, make_apk):
    apk = make_apk()
    record = await submit(store, queue, apk)

    await queue.claim()
    await store.mark_processing(record.id)
    clock.advance(120)

    assert await worker.recover_stalled() == 1
    assert (await store.get(record.id)).status == "Processing"
    assert apk.exists()

    clock.advance(5)
    assert await worker.process_next() is not None
    current = await store.get(record.id)
    assert current.status == "Analyzed"
    assert current.attempts == 2


def test_safe_join_blocks_traversal(tmp_path):
    assert safe_join(tmp_path, "res", "a.xml") == (tmp_path / "res" / "a.xml").resolve()
    with pytest.raises(DecompilationError):
        safe_join(tmp_path, "../escape.txt")


@pytest.mark.asyncio
async def test_archive_decompiler_rejects_zip_slip(make_apk, tmp_path):
    apk = make_apk(extra_entries={"../../evil.sh": "#!/bin/sh"})
    with pytest.raises(DecompilationError):
        await ArchiveDecompiler().decompile(str(apk), tmp_path / "out")


@pytest.mark.asyncio
async def test_archive_decompiler_replaces_previous_output(make_apk, tmp_path):
    out = tmp_path / "out"
    out.mkdir()
    (out / "stale.txt").write_text("old attempt")
    await ArchiveDecompiler().decompile(str(make_apk()), out)
    assert not (out / "stale.txt").exists()
    assert (out / "AndroidManifest.xml").is_file()
    shutil.rmtree(out)


@pytest.mark.asyncio
async def test_run_loop_drains_queue_and_stops(worker, store, queue, make_apk):
    record = await submit(store, queue, make_apk())

    async def stop_when_done():
        while (await store.get(record.id)).status != "Analyzed":
            await asyncio.sleep(0.01)
        worker.stop()

    await asyncio.wait_for(
        asyncio.gather(worker.run(poll_interval=0.01, max_idle_interval=0.05), stop_when_done()),
        timeout=10,
    )
    assert worker.stopping.is_set()
