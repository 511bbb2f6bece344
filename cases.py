import uuid
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime

from utils import UNKNOWN_PATIENT, encode_preview

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%I:%M %p"


@dataclass(frozen=True)
class PatientCase:
    patient_name: str
    timestamp: str
    findings: tuple
    risk_level: str
    image_base64: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=datetime.now, compare=False)

    def to_dict(self):
        """Response shape sent back to clients."""
        return {
            "id": self.id,
            "patientName": self.patient_name,
            "timestamp": self.timestamp,
            "riskLevel": self.risk_level,
            "findings": [finding.to_dict() for finding in self.findings],
            "imageBase64": self.image_base64,
        }


class CaseStore:
    """Append-only case collection shared by all request threads."""

    def __init__(self):
        self._lock = threading.Lock()
        self._cases = []

    def append(self, case):
        with self._lock:
            self._cases.append(case)

    def list_cases(self):
        """Snapshot of all cases, newest first."""
        with self._lock:
            snapshot = list(self._cases)
        # Stable sort on the reversed list puts the latest append first on ties
        return sorted(reversed(snapshot), key=lambda case: case.created_at, reverse=True)

    def __len__(self):
        with self._lock:
            return len(self._cases)


def assemble_case(metadata, preview, findings, risk_level, now=None):
    """Package one analysis into a PatientCase."""
    now = now or datetime.now()
    image_base64 = encode_preview(preview, image_format="JPEG")
    case = PatientCase(
        patient_name=metadata.get("patient_name") or UNKNOWN_PATIENT,
        timestamp=now.strftime(TIMESTAMP_FORMAT),
        findings=tuple(findings),
        risk_level=getattr(risk_level, "value", risk_level),
        image_base64=f"data:image/jpeg;base64,{image_base64}",
        created_at=now,
    )
    top = case.findings[0] if case.findings else None
    logger.info("Assembled case %s: risk %s, top finding %s (%.1f)", case.id, case.risk_level,
                top.label if top else "-", top.score if top else 0.0)
    return case
