"""
Static analysis of a decompiled APK: manifest metadata, resource
inventory and a simple explainable risk score.
"""
import xml.etree.ElementTree as ET
from pathlib import Path
from typing import Dict, List

from pydantic import ValidationError

from apkguard.errors import AnalysisError
from apkguard.schemas.analysis import (
    AppComponent,
    Components,
    ManifestData,
    PackageInfo,
    ResourceData,
    ResourceGroup,
    RiskAssessment,
    RiskFactor,
)
from apkguard.utils.logger import get_logger

logger = get_logger("analysis")

ANDROID_NS = "{http://schemas.android.com/apk/res/android}"

DANGEROUS_PERMISSIONS = frozenset({
    "android.permission.READ_CONTACTS",
    "android.permission.WRITE_CONTACTS",
    "android.permission.ACCESS_FINE_LOCATION",
    "android.permission.RECORD_AUDIO",
    "android.permission.CAMERA",
    "android.permission.READ_SMS",
    "android.permission.SEND_SMS",
})

DANGEROUS_PERMISSION_WEIGHT = 10
EXPOSED_COMPONENT_WEIGHT = 5
MAX_RISK_SCORE = 100
RESOURCE_SAMPLE_SIZE = 10

COMPONENT_TAGS = {
    "activities": "activity",
    "services": "service",
    "receivers": "receiver",
    "providers": "provider",
}


def _android_attr(element: ET.Element, name: str):
    return element.get(f"{ANDROID_NS}{name}")


class ApkAnalysisService:
    def extract_manifest_data(self, decompiled_dir) -> ManifestData:
        manifest_path = Path(decompiled_dir) / "AndroidManifest.xml"
        try:
            root = ET.parse(manifest_path).getroot()
        except (ET.ParseError, OSError) as exc:
            logger.error("analysis.manifest_parse_failed", extra={"file_path": str(manifest_path), "error": str(exc)})
            raise AnalysisError("Failed to parse AndroidManifest.xml") from exc

        if root.tag != "manifest":
            raise AnalysisError("Invalid manifest structure after parsing.")

        try:
            return ManifestData(
                package_info=PackageInfo(
                    package_name=root.get("package"),
                    version_code=_android_attr(root, "versionCode"),
                    version_name=_android_attr(root, "versionName"),
                ),
                permissions=self._extract_permissions(root),
                components=Components(**{
                    group: self._extract_components(root, tag) for group, tag in COMPONENT_TAGS.items()
                }),
            )
        except ValidationError as exc:
            raise AnalysisError(f"Manifest data failed validation: {exc}") from exc

    @staticmethod
    def _extract_permissions(root: ET.Element) -> List[str]:
        names = [_android_attr(perm, "name") for perm in root.findall("uses-permission")]
        return [name for name in names if name]

    @staticmethod
    def _extract_components(root: ET.Element, tag: str) -> List[AppComponent]:
        application = root.find("application")
        if application is None:
            return []
        components = []
        for element in application.findall(tag):
            name = _android_attr(element, "name")
            if not name:
                continue
            components.append(AppComponent(
                name=name,
                exported=_android_attr(element, "exported") == "true",
                permission=_android_attr(element, "permission"),
            ))
        return components

    def analyze_resources(self, decompiled_dir) -> ResourceData:
        """Per resource type under res/: file count and a sample of names."""
        res_dir = Path(decompiled_dir) / "res"
        assets = []
        if res_dir.is_dir():
            for type_dir in sorted(res_dir.iterdir()):
                if not type_dir.is_dir():
                    continue
                files = sorted(entry.name for entry in type_dir.iterdir())
                assets.append(ResourceGroup(
                    type=type_dir.name,
                    count=len(files),
                    items=files[:RESOURCE_SAMPLE_SIZE],
                ))
        return ResourceData(assets=assets)

    def generate_risk_assessment(self, manifest: ManifestData, resources: ResourceData = None) -> RiskAssessment:
        risk_factors = []
        score = 0

        suspicious = [perm for perm in manifest.permissions if perm in DANGEROUS_PERMISSIONS]
        if suspicious:
            risk_factors.append(RiskFactor(type="dangerous_permissions", details=suspicious))
            score += len(suspicious) * DANGEROUS_PERMISSION_WEIGHT

        exposed: List[Dict[str, str]] = [
            {"type": group, "name": component.name}
            for group, components in manifest.components.by_type().items()
            for component in components
            if component.is_exposed
        ]
        if exposed:
            risk_factors.append(RiskFactor(type="exposed_components", details=exposed))
            score += len(exposed) * EXPOSED_COMPONENT_WEIGHT

        return RiskAssessment(risk_score=min(MAX_RISK_SCORE, score), risk_factors=risk_factors)
