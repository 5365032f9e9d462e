# Database models package
from apkguard.models.analysis import AnalysisRecord, AnalysisStatus
from apkguard.models.user import User

__all__ = [
    "AnalysisRecord",
    "AnalysisStatus",
    "User",
]
