"""
Pydantic schemas for the analysis payload written by the worker.
The JSON form uses the camelCase keys the mobile client reads.
"""
from datetime import datetime, timezone
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


# ========== Manifest ==========
class PackageInfo(CamelModel):
    package_name: Optional[str] = Field(None, alias="packageName")
    version_code: Optional[str] = Field(None, alias="versionCode")
    version_name: Optional[str] = Field(None, alias="versionName")


class AppComponent(CamelModel):
    """Activity, service, receiver or provider declared in the manifest"""
    name: str = Field(..., min_length=1)
    exported: bool = False
    permission: Optional[str] = None

    @property
    def is_exposed(self) -> bool:
        return self.exported and not self.permission


class Components(CamelModel):
    activities: List[AppComponent] = Field(default_factory=list)
    services: List[AppComponent] = Field(default_factory=list)
    receivers: List[AppComponent] = Field(default_factory=list)
    providers: List[AppComponent] = Field(default_factory=list)

    def by_type(self):
        return {
            "activities": self.activities,
            "services": self.services,
            "receivers": self.receivers,
            "providers": self.providers,
        }


class ManifestData(CamelModel):
    package_info: PackageInfo = Field(default_factory=PackageInfo, alias="packageInfo")
    permissions: List[str] = Field(default_factory=list)
    components: Components = Field(default_factory=Components)


# ========== Resources ==========
class ResourceGroup(CamelModel):
    type: str
    count: int = Field(..., ge=0)
    items: List[str] = Field(default_factory=list, max_length=10)


class ResourceData(CamelModel):
    assets: List[ResourceGroup] = Field(default_factory=list)


# ========== Risk ==========
class RiskFactor(CamelModel):
    type: str
    details: Any


class RiskAssessment(CamelModel):
    risk_score: int = Field(..., ge=0, le=100, alias="riskScore")
    risk_factors: List[RiskFactor] = Field(default_factory=list, alias="riskFactors")

    def factor(self, factor_type: str) -> Optional[RiskFactor]:
        return next((f for f in self.risk_factors if f.type == factor_type), None)


# ========== Payload ==========
class AnalysisPayload(CamelModel):
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    progress: str = "completed"
    manifest_data: ManifestData = Field(..., alias="manifestData")
    resource_data: ResourceData = Field(..., alias="resourceData")
    risk_assessment: RiskAssessment = Field(..., alias="riskAssessment")
    analysis_complete: bool = Field(True, alias="analysisComplete")

    @field_validator("analysis_complete")
    @classmethod
    def must_be_complete(cls, value: bool) -> bool:
        if not value:
            raise ValueError("analysis payload is only written for completed analyses")
        return value

    def to_json(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)
