"""
test_dashboard.py
-----------------
MamaCare - Maternal Health Dashboard - Test Suite for dashboard.py
------------------------------------------------------------------
Full dashboard assembly against the fake OpenMRS upstream: every section
populated, per-section failures isolated, lookup failures raised, and the
shared tracker back to idle afterwards.

Run:
    pytest tests/test_dashboard.py -v --tb=short

Project: MamaCare - Maternal Health Dashboard
"""

import asyncio
import os
import sys
from datetime import date

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dashboard import PatientLookupError, build_dashboard
from mock_data.openmrs_payloads import PATIENT_EMAIL, PATIENT_UUID, FakeOpenMRS
from openmrs_client import OpenMRSClient
from request_tracker import LoadingStatus, RequestTracker

TODAY = date(2024, 6, 1)


@pytest.fixture(autouse=True)
def _no_llm_key(monkeypatch):
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)


def _build(fake, email=PATIENT_EMAIL, tracker=None):
    async def go():
        async with OpenMRSClient(
            tracker=tracker,
            use_proxy=True,
            proxy_url="http://proxy.test/api/openmrs",
            transport=fake.transport(),
        ) as client:
            return await build_dashboard(client, email, today=TODAY)

    return asyncio.run(go())


def test_full_dashboard():
    dashboard = _build(FakeOpenMRS())
    assert dashboard.patient.name == "Priya Sharma"
    assert dashboard.patient.uuid == PATIENT_UUID
    assert dashboard.pregnancy.gestational_age_weeks == 13
    assert len(dashboard.appointments) == 2
    assert [m.status for m in dashboard.medications] == ["Active", "Past"]
    assert len(dashboard.lab_reports) == 2
    assert len(dashboard.diagnoses) == 2
    assert dashboard.advisory.show is True
    assert dashboard.errors == {}


def test_section_failure_is_isolated():
    dashboard = _build(FakeOpenMRS(failures={"visit"}, failure_status=503))
    assert dashboard.appointments == []
    assert dashboard.errors == {"appointments": "Failed to fetch data from OpenMRS: 503 Service Unavailable"}
    assert len(dashboard.medications) == 2
    assert len(dashboard.diagnoses) == 2


def test_advisory_failure_is_isolated():
    dashboard = _build(FakeOpenMRS(failures={"Condition"}))
    assert dashboard.diagnoses == []
    assert dashboard.advisory.show is False
    assert set(dashboard.errors) == {"diagnoses", "advisory"}


def test_unregistered_email():
    with pytest.raises(PatientLookupError) as info:
        _build(FakeOpenMRS(routes={"patient": {"results": []}}), email="nobody@example.org")
    assert info.value.not_registered is True


def test_lookup_failure_is_not_not_registered():
    with pytest.raises(PatientLookupError) as info:
        _build(FakeOpenMRS(failures={"session"}))
    assert info.value.not_registered is False
    assert "500" in info.value.message


def test_tracker_idle_after_build():
    tracker = RequestTracker()
    status = LoadingStatus(tracker)
    loading = []
    tracker.subscribe(loading.append)
    _build(FakeOpenMRS(), tracker=tracker)
    assert status.is_loading is False
    assert tracker.in_flight == 0
    assert loading[0] is True
    assert loading[-1] is False
