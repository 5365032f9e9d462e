"""
SQLAlchemy model for apk_analyses: one row per accepted upload.
"""
import enum
import uuid

from sqlalchemy import Column, String, Integer, DateTime, Text, JSON, func
from apkguard.database import Base


class AnalysisStatus(str, enum.Enum):
    QUEUED = "Queued"
    PROCESSING = "Processing"
    ANALYZED = "Analyzed"
    FAILED = "Failed"


TERMINAL_STATUSES = frozenset({AnalysisStatus.ANALYZED.value, AnalysisStatus.FAILED.value})

# Forward-only; Processing -> Processing is a re-claim after a retried attempt
ALLOWED_TRANSITIONS = {
    AnalysisStatus.QUEUED: frozenset({AnalysisStatus.PROCESSING, AnalysisStatus.FAILED}),
    AnalysisStatus.PROCESSING: frozenset({AnalysisStatus.PROCESSING, AnalysisStatus.ANALYZED, AnalysisStatus.FAILED}),
    AnalysisStatus.ANALYZED: frozenset(),
    AnalysisStatus.FAILED: frozenset(),
}


def can_transition(current: AnalysisStatus, target: AnalysisStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[AnalysisStatus(current)]


def sources_for(target: AnalysisStatus) -> list:
    """Statuses a record may be in to move to `target`."""
    return [status.value for status, targets in ALLOWED_TRANSITIONS.items() if target in targets]


def make_dedup_key(user_id: str, content_hash: str) -> str:
    return f"{user_id}:{content_hash}"


class AnalysisRecord(Base):
    __tablename__ = "apk_analyses"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(255), nullable=False, index=True)
    original_filename = Column(String(500), nullable=False)
    content_hash = Column(String(64), nullable=False, index=True)

    # "{user_id}:{content_hash}" while not Failed, NULL afterwards
    dedup_key = Column(String(320), nullable=True, unique=True)

    # Status: Queued → Processing → Analyzed | Failed
    status = Column(String(20), nullable=False, default=AnalysisStatus.QUEUED.value, index=True)
    stage = Column(String(32), nullable=True)
    attempts = Column(Integer, nullable=False, default=0)

    output_path = Column(String(1000), nullable=True)
    error_details = Column(Text, nullable=True)
    ai_analysis = Column(JSON(none_as_null=True), nullable=True)

    # Optimistic concurrency: every write bumps it
    version = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    def to_dict(self) -> dict:
        return {
            "analysisId": self.id,
            "userId": self.user_id,
            "apkName": self.original_filename,
            "apkHash": self.content_hash,
            "status": self.status,
            "stage": self.stage,
            "attempts": self.attempts,
            "outputPath": self.output_path,
            "errorDetails": self.error_details,
            "aiAnalysis": self.ai_analysis,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
        }
