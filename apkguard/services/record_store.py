"""
Persistence for AnalysisRecord rows.

Every status change goes through a single conditional UPDATE:

    UPDATE apk_analyses SET ..., version = version + 1
    WHERE id = :id AND status IN (<allowed sources>) [AND version = :expected]

so a forbidden transition or a concurrent writer is detected from the
row count instead of being silently overwritten.
"""
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from apkguard.errors import (
    DuplicateAnalysisError,
    InvalidTransitionError,
    RecordNotFoundError,
    StaleRecordError,
)
from apkguard.models.analysis import (
    AnalysisRecord,
    AnalysisStatus,
    can_transition,
    make_dedup_key,
    sources_for,
)
from apkguard.schemas.analysis import AnalysisPayload
from apkguard.utils.logger import get_logger

logger = get_logger("records")


class AnalysisRecordStore:
    def __init__(self, session_factory):
        self._session_factory = session_factory

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, analysis_id: str) -> Optional[AnalysisRecord]:
        async with self._session_factory() as db:
            return await self._load(db, analysis_id)

    async def get_for_user(self, analysis_id: str, user_id: str) -> Optional[AnalysisRecord]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(AnalysisRecord)
                .where(AnalysisRecord.id == analysis_id)
                .where(AnalysisRecord.user_id == user_id)
            )
            return result.scalar_one_or_none()

    async def list_for_user(self, user_id: str, limit: int = 50) -> List[AnalysisRecord]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(AnalysisRecord)
                .where(AnalysisRecord.user_id == user_id)
                .order_by(AnalysisRecord.created_at.desc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def find_active(self, user_id: str, content_hash: str) -> Optional[AnalysisRecord]:
        """The non-Failed record for this user and digest, if any."""
        async with self._session_factory() as db:
            result = await db.execute(
                select(AnalysisRecord).where(AnalysisRecord.dedup_key == make_dedup_key(user_id, content_hash))
            )
            return result.scalar_one_or_none()

    async def count_by_hash(self, content_hash: str) -> int:
        async with self._session_factory() as db:
            result = await db.execute(
                select(AnalysisRecord.id).where(AnalysisRecord.content_hash == content_hash)
            )
            return len(result.all())

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def create(self, user_id: str, original_filename: str, content_hash: str) -> AnalysisRecord:
        """
        Insert a Queued record. Raises DuplicateAnalysisError carrying the
        existing id when the same user already has a non-Failed record for
        this digest (enforced by the unique dedup_key).
        """
        record = AnalysisRecord(
            id=str(uuid.uuid4()),
            user_id=user_id,
            original_filename=original_filename,
            content_hash=content_hash,
            dedup_key=make_dedup_key(user_id, content_hash),
            status=AnalysisStatus.QUEUED.value,
            attempts=0,
            version=1,
        )
        async with self._session_factory() as db:
            db.add(record)
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                existing = await self.find_active(user_id, content_hash)
                if existing is None:
                    raise
                raise DuplicateAnalysisError(existing.id)
            await db.refresh(record)

        logger.info("analysis.created", extra={
            "analysis_id": record.id, "user_id": user_id, "content_hash": content_hash,
        })
        return record

    async def mark_processing(self, analysis_id: str, expected_version: Optional[int] = None) -> AnalysisRecord:
        return await self._transition(
            analysis_id,
            AnalysisStatus.PROCESSING,
            {"stage": "claimed", "attempts": AnalysisRecord.attempts + 1},
            expected_version,
        )

    async def set_stage(self, analysis_id: str, stage: str, expected_version: Optional[int] = None) -> AnalysisRecord:
        """Progress note while Processing; the status itself does not move."""
        return await self._transition(analysis_id, AnalysisStatus.PROCESSING, {"stage": stage}, expected_version)

    async def mark_analyzed(
        self,
        analysis_id: str,
        payload: AnalysisPayload,
        output_path: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> AnalysisRecord:
        return await self._transition(
            analysis_id,
            AnalysisStatus.ANALYZED,
            {
                "stage": "completed",
                "ai_analysis": payload.to_json(),
                "output_path": output_path,
                "error_details": None,
            },
            expected_version,
        )

    async def mark_failed(
        self,
        analysis_id: str,
        error_details: str,
        expected_version: Optional[int] = None,
    ) -> AnalysisRecord:
        # Releasing dedup_key lets the user upload the same bytes again
        return await self._transition(
            analysis_id,
            AnalysisStatus.FAILED,
            {
                "stage": "failed",
                "error_details": error_details[:2000],
                "ai_analysis": None,
                "dedup_key": None,
            },
            expected_version,
        )

    async def _transition(
        self,
        analysis_id: str,
        target: AnalysisStatus,
        values: Dict[str, Any],
        expected_version: Optional[int],
    ) -> AnalysisRecord:
        stmt = (
            update(AnalysisRecord)
            .where(AnalysisRecord.id == analysis_id)
            .where(AnalysisRecord.status.in_(sources_for(target)))
        )
        if expected_version is not None:
            stmt = stmt.where(AnalysisRecord.version == expected_version)
        stmt = stmt.values(
            status=target.value,
            version=AnalysisRecord.version + 1,
            updated_at=datetime.now(timezone.utc),
            **values,
        ).execution_options(synchronize_session=False)

        async with self._session_factory() as db:
            result = await db.execute(stmt)
            if result.rowcount == 0:
                await db.rollback()
                current = await self._load(db, analysis_id)
                if current is None:
                    raise RecordNotFoundError(analysis_id)
                if not can_transition(current.status, target):
                    raise InvalidTransitionError(analysis_id, current.status, target.value)
                raise StaleRecordError(analysis_id, expected_version)
            await db.commit()
            record = await self._load(db, analysis_id)

        logger.info("analysis.status_changed", extra={
            "analysis_id": analysis_id, "status": target.value, "stage": record.stage,
        })
        return record

    @staticmethod
    async def _load(db, analysis_id: str) -> Optional[AnalysisRecord]:
        result = await db.execute(
            select(AnalysisRecord)
            .where(AnalysisRecord.id == analysis_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()
