import pytest

from apkguard.errors import (
    DuplicateAnalysisError,
    InvalidTransitionError,
    RecordNotFoundError,
    StaleRecordError,
)
from apkguard.models.analysis import AnalysisStatus, can_transition
from apkguard.schemas.analysis import AnalysisPayload, ManifestData, PackageInfo, ResourceData, RiskAssessment

DIGEST = "a" * 64


def make_payload(score: int = 0) -> AnalysisPayload:
    return AnalysisPayload(
        manifest_data=ManifestData(package_info=PackageInfo(package_name="com.example.app")),
        resource_data=ResourceData(),
        risk_assessment=RiskAssessment(risk_score=score),
    )


def test_transition_table():
    assert can_transition("Queued", AnalysisStatus.PROCESSING)
    assert can_transition("Processing", AnalysisStatus.PROCESSING)
    assert can_transition("Processing", AnalysisStatus.ANALYZED)
    assert not can_transition("Queued", AnalysisStatus.ANALYZED)
    assert not can_transition("Analyzed", AnalysisStatus.FAILED)
    assert not can_transition("Failed", AnalysisStatus.PROCESSING)


@pytest.mark.asyncio
async def test_create_starts_queued(store):
    record = await store.create("1", "app.apk", DIGEST)
    assert record.status == "Queued"
    assert record.version == 1
    assert record.attempts == 0
    assert record.ai_analysis is None
    assert record.error_details is None
    assert record.dedup_key == f"1:{DIGEST}"


@pytest.mark.asyncio
async def test_happy_path_transitions(store):
    record = await store.create("1", "app.apk", DIGEST)

    record = await store.mark_processing(record.id)
    assert record.status == "Processing"
    assert record.stage == "claimed"
    assert record.attempts == 1
    assert record.version == 2

    record = await store.set_stage(record.id, "extracting", record.version)
    assert record.stage == "extracting"

    record = await store.mark_analyzed(record.id, make_payload(30), "/tmp/out/x", record.version)
    assert record.status == "Analyzed"
    assert record.stage == "completed"
    assert record.output_path == "/tmp/out/x"
    assert record.ai_analysis["analysisComplete"] is True
    assert record.ai_analysis["riskAssessment"]["riskScore"] == 30
    assert record.ai_analysis["manifestData"]["packageInfo"]["packageName"] == "com.example.app"


@pytest.mark.asyncio
async def test_queued_cannot_jump_to_analyzed(store):
    record = await store.create("1", "app.apk", DIGEST)
    with pytest.raises(InvalidTransitionError):
        await store.mark_analyzed(record.id, make_payload())
    assert (await store.get(record.id)).status == "Queued"


@pytest.mark.asyncio
async def test_terminal_records_do_not_move(store):
    record = await store.create("1", "app.apk", DIGEST)
    await store.mark_processing(record.id)
    await store.mark_analyzed(record.id, make_payload())

    with pytest.raises(InvalidTransitionError) as excinfo:
        await store.mark_failed(record.id, "late failure")
    assert excinfo.value.current == "Analyzed"

    with pytest.raises(InvalidTransitionError):
        await store.mark_processing(record.id)


@pytest.mark.asyncio
async def test_stale_version_is_rejected(store):
    record = await store.create("1", "app.apk", DIGEST)
    claimed = await store.mark_processing(record.id)
    # A second claim moves the version on
    await store.mark_processing(record.id)

    with pytest.raises(StaleRecordError):
        await store.set_stage(record.id, "extracting", claimed.version)


@pytest.mark.asyncio
async def test_unknown_record(store):
    assert await store.get("missing") is None
    with pytest.raises(RecordNotFoundError):
        await store.mark_processing("missing")


@pytest.mark.asyncio
async def test_failed_record_has_details_and_no_payload(store):
    record = await store.create("1", "app.apk", DIGEST)
    await store.mark_processing(record.id)
    record = await store.mark_failed(record.id, "Failed to parse AndroidManifest.xml")

    assert record.status == "Failed"
    assert record.error_details == "Failed to parse AndroidManifest.xml"
    assert record.ai_analysis is None
    assert record.dedup_key is None


@pytest.mark.asyncio
async def test_same_user_same_digest_is_duplicate(store):
    first = await store.create("1", "app.apk", DIGEST)
    with pytest.raises(DuplicateAnalysisError) as excinfo:
        await store.create("1", "renamed.apk", DIGEST)
    assert excinfo.value.existing_id == first.id
    assert (await store.find_active("1", DIGEST)).id == first.id


@pytest.mark.asyncio
async def test_other_user_gets_own_record(store):
    first = await store.create("1", "app.apk", DIGEST)
    second = await store.create("2", "app.apk", DIGEST)
    assert first.id != second.id
    assert await store.count_by_hash(DIGEST) == 2


@pytest.mark.asyncio
async def test_failure_releases_digest_for_resubmission(store):
    first = await store.create("1", "app.apk", DIGEST)
    await store.mark_failed(first.id, "enqueue failed")

    assert await store.find_active("1", DIGEST) is None
    retry = await store.create("1", "app.apk", DIGEST)
    assert retry.id != first.id


@pytest.mark.asyncio
async def test_records_are_scoped_to_their_owner(store):
    mine = await store.create("1", "app.apk", DIGEST)
    await store.create("2", "other.apk", "b" * 64)

    assert [r.id for r in await store.list_for_user("1")] == [mine.id]
    assert await store.get_for_user(mine.id, "2") is None
    assert (await store.get_for_user(mine.id, "1")).id == mine.id
