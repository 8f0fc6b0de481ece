"""
openmrs_payloads.py
-------------------
MamaCare - Maternal Health Dashboard
Sample OpenMRS REST / FHIR payloads for one antenatal patient, shaped like
the reference server's responses, plus a fake upstream that serves them
through httpx.MockTransport.
"""

from typing import Dict, Optional, Set

import httpx

PATIENT_UUID = "a7e04421-525f-442f-8138-05b619d16def"
PATIENT_EMAIL = "priya.sharma@example.org"

SESSION = {
    "sessionId": "B1F3D2C4A5",
    "authenticated": True,
    "user": {"uuid": "45ce6c2e-dd5a-11e6-9d9c-0242ac150002", "display": "admin"},
}

PATIENT_SEARCH = {
    "results": [
        {
            "uuid": PATIENT_UUID,
            "display": "100J7W - Priya Sharma",
            "person": {"display": "Priya Sharma", "gender": "F", "age": 29},
        }
    ]
}

PATIENT_FULL = {
    "uuid": PATIENT_UUID,
    "display": "100J7W - Priya Sharma",
    "person": {
        "uuid": PATIENT_UUID,
        "display": "Priya Sharma",
        "gender": "F",
        "age": 29,
        "birthdate": "1994-07-15T00:00:00.000+0000",
        "names": [{"display": "Priya Sharma", "givenName": "Priya", "familyName": "Sharma"}],
        "attributes": [
            {
                "display": f"Email = {PATIENT_EMAIL}",
                "value": PATIENT_EMAIL,
                "attributeType": {"uuid": "58f43b5e-5311-4512-b0d4-24a2a7f3a4e2", "display": "Email"},
            }
        ],
    },
}

VISITS = {
    "results": [
        {
            "uuid": "c3a1e9b4-visit-0001",
            "visitType": {"display": "Antenatal Visit"},
            "location": {"display": "Maternity Ward"},
            "startDatetime": "2024-03-05T09:30:00.000+0000",
            "stopDatetime": None,
        },
        {
            "uuid": "c3a1e9b4-visit-0002",
            "display": "Facility Visit @ Outpatient Clinic - 12/02/2024 10:00",
            "startDatetime": "2024-02-12T10:00:00.000+0000",
        },
    ]
}

DRUG_ORDERS = {
    "results": [
        {
            "uuid": "d1e2f3a4-order-0001",
            "display": "Aspirin 81mg tablet",
            "dateActivated": "2024-03-05T09:45:00.000+0000",
            "dateStopped": None,
        },
        {
            "uuid": "d1e2f3a4-order-0002",
            "display": "Ferrous sulfate 325mg",
            "dateActivated": "2023-12-01T08:00:00.000+0000",
            "dateStopped": "2024-01-15T08:00:00.000+0000",
        },
    ]
}

ANTENATAL_OBS = [
    {
        "uuid": "obs-lmp",
        "display": "LMP: 2024-03-02",
        "formFieldPath": "rfe-forms-LMP",
        "value": "2024-03-02",
        "concept": {"display": "Last menstrual period"},
        "obsDatetime": "2024-03-05T09:35:00.000+0000",
    },
    {
        "uuid": "obs-edd",
        "display": "EDD: 07/12/2024",
        "formFieldPath": "rfe-forms-EDD",
        "value": "07/12/2024",
        "concept": {"display": "Estimated date of delivery"},
        "obsDatetime": "2024-03-05T09:35:00.000+0000",
    },
    {
        "uuid": "obs-htn",
        "display": "Hypertension: Yes",
        "formFieldPath": "rfe-forms-Hypertension",
        "value": {"display": "Yes"},
        "concept": {"display": "Hypertension"},
        "obsDatetime": "2024-03-05T09:36:00.000+0000",
    },
]

LAB_OBS = [
    {
        "uuid": "obs-hb",
        "display": "Haemoglobin: 10.8",
        "value": 10.8,
        "concept": {"display": "Haemoglobin", "units": "g/dL"},
        "order": {"uuid": "lab-order-1", "orderType": {"display": "Test Order"}},
    },
    {
        "uuid": "obs-bg",
        "value": {"name": {"display": "O positive"}},
        "concept": {"name": {"display": "Blood group"}},
        "order": {"uuid": "lab-order-2", "orderType": {"display": "Test Order"}},
    },
    {
        "uuid": "obs-weight",
        "display": "Weight (kg): 64",
        "value": 64,
        "concept": {"display": "Weight (kg)"},
    },
]

CONDITIONS_BUNDLE = {
    "resourceType": "Bundle",
    "type": "searchset",
    "entry": [
        {
            "resource": {
                "resourceType": "Condition",
                "id": "cond-pe",
                "code": {"coding": [{"code": "161000119", "display": "History of pre-eclampsia"}]},
                "clinicalStatus": {"coding": [{"code": "active"}]},
                "onsetDateTime": "2022-09-14T00:00:00+00:00",
            }
        },
        {
            "resource": {
                "resourceType": "Condition",
                "id": "cond-anaemia",
                "code": {"text": "Anaemia"},
                "clinicalStatus": {"coding": [{"code": "resolved"}]},
            }
        },
        {"resource": {"resourceType": "OperationOutcome", "issue": []}},
    ],
}


def _observations(request: httpx.Request) -> dict:
    if request.url.params.get("orderType"):
        return {"results": LAB_OBS}
    return {"results": ANTENATAL_OBS + LAB_OBS}


def _patient(request: httpx.Request) -> dict:
    if request.url.path.rstrip("/").endswith("/patient"):
        return PATIENT_SEARCH
    return PATIENT_FULL


# Resource name (path segment after ws/rest/v1/ or ws/fhir2/R4/) -> payload.
DEFAULT_ROUTES: Dict[str, object] = {
    "session": SESSION,
    "patient": _patient,
    "visit": VISITS,
    "order": DRUG_ORDERS,
    "obs": _observations,
    "Condition": CONDITIONS_BUNDLE,
}


class FakeOpenMRS:
    """
    Minimal OpenMRS stand-in for httpx.MockTransport.

    Args:
        routes:   Overrides for DEFAULT_ROUTES (payload or callable).
        failures: Resource names answered with ``failure_status``.
    """

    def __init__(
        self,
        routes: Optional[Dict[str, object]] = None,
        failures: Optional[Set[str]] = None,
        failure_status: int = 500,
    ) -> None:
        self.routes = dict(DEFAULT_ROUTES)
        self.routes.update(routes or {})
        self.failures = set(failures or ())
        self.failure_status = failure_status
        self.requests = []

    @staticmethod
    def resource_of(request: httpx.Request) -> str:
        path = request.url.path
        for marker in ("/ws/rest/v1/", "/ws/fhir2/R4/"):
            if marker in path:
                return path.split(marker, 1)[1].split("/", 1)[0]
        return ""

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        resource = self.resource_of(request)
        if resource in self.failures:
            return httpx.Response(self.failure_status, json={"error": {"message": "upstream failure"}})
        if resource not in self.routes:
            return httpx.Response(404, json={"error": {"message": f"Unknown resource {resource}"}})
        payload = self.routes[resource]
        if callable(payload):
            payload = payload(request)
        return httpx.Response(200, json=payload)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)
