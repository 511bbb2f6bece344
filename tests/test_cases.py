"""
Case assembly and case store tests
"""
import io
import base64
import threading
from datetime import datetime, timedelta

import numpy as np
from PIL import Image

from cases import CaseStore, PatientCase, assemble_case
from findings import Finding, RiskLevel

PREVIEW = np.full((512, 512, 4), 120, dtype=np.uint8)
FINDINGS = [Finding("Mass", 72.5), Finding("Nodule", 12.0)]


def make_case(created_at=None, name="Doe^Jane"):
    return PatientCase(
        patient_name=name,
        timestamp="09:05 AM",
        findings=tuple(FINDINGS),
        risk_level="HIGH",
        image_base64="data:image/jpeg;base64,",
        created_at=created_at or datetime.now(),
    )


class TestAssembleCase:

    def test_fields(self):
        now = datetime(2024, 1, 2, 9, 5, 30)
        case = assemble_case({"patient_name": "Doe^Jane"}, PREVIEW, FINDINGS, RiskLevel.HIGH, now=now)

        assert case.patient_name == "Doe^Jane"
        assert case.timestamp == "09:05 AM"
        assert case.risk_level == "HIGH"
        assert case.findings == tuple(FINDINGS)
        assert case.created_at == now

    def test_preview_is_jpeg_data_uri(self):
        case = assemble_case({}, PREVIEW, FINDINGS, RiskLevel.LOW)
        prefix = "data:image/jpeg;base64,"

        assert case.image_base64.startswith(prefix)
        image = Image.open(io.BytesIO(base64.b64decode(case.image_base64[len(prefix):])))
        assert image.format == "JPEG"
        assert image.size == (512, 512)

    def test_missing_name_defaults_to_unknown(self):
        case = assemble_case({}, PREVIEW, FINDINGS, RiskLevel.LOW)
        assert case.patient_name == "Unknown"

    def test_unique_ids(self):
        ids = {assemble_case({}, PREVIEW, FINDINGS, RiskLevel.LOW).id for _ in range(5)}
        assert len(ids) == 5

    def test_to_dict(self):
        case = assemble_case({"patient_name": "Roe^Richard"}, PREVIEW, FINDINGS, RiskLevel.HIGH)
        payload = case.to_dict()

        assert set(payload) == {"id", "patientName", "timestamp", "riskLevel", "findings", "imageBase64"}
        assert payload["patientName"] == "Roe^Richard"
        assert payload["riskLevel"] == "HIGH"
        assert payload["findings"] == [{"name": "Mass", "score": 72.5}, {"name": "Nodule", "score": 12.0}]


class TestCaseStore:
    """Shared case collection"""

    def test_newest_first(self):
        store = CaseStore()
        base = datetime(2024, 1, 2, 9, 0)
        older = make_case(created_at=base)
        newer = make_case(created_at=base + timedelta(minutes=5))
        store.append(newer)
        store.append(older)

        assert [c.id for c in store.list_cases()] == [newer.id, older.id]

    def test_same_time_latest_append_first(self):
        store = CaseStore()
        moment = datetime(2024, 1, 2, 9, 0)
        first, second = make_case(created_at=moment), make_case(created_at=moment)
        store.append(first)
        store.append(second)

        assert [c.id for c in store.list_cases()] == [second.id, first.id]

    def test_listing_is_a_snapshot(self):
        store = CaseStore()
        store.append(make_case())
        listing = store.list_cases()
        store.append(make_case())

        assert len(listing) == 1
        assert len(store) == 2

    def test_concurrent_append(self):
        store = CaseStore()
        per_thread, threads = 50, 8
        barrier = threading.Barrier(threads)

        def worker():
            barrier.wait()
            for _ in range(per_thread):
                store.append(make_case())
                store.list_cases()

        workers = [threading.Thread(target=worker) for _ in range(threads)]
        for t in workers:
            t.start()
        for t in workers:
            t.join()

        cases = store.list_cases()
        assert len(store) == per_thread * threads
        assert len({c.id for c in cases}) == per_thread * threads
