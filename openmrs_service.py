"""
openmrs_service.py
------------------
MamaCare - Maternal Health Dashboard - OpenMRS data services
------------------------------------------------------------
Turns raw OpenMRS / FHIR payloads into the view-models the dashboard shows.

Patient lookup (search_patient_by_email):
  1. GET ws/rest/v1/session                    verify credentials
  2. GET ws/rest/v1/patient?q=<email>&limit=1  search
  3. GET ws/rest/v1/patient/<uuid>?v=full      full record (falls back to
                                               the search hit on failure)
  Empty search results -> "User not registered".

Section loaders (list_appointments, list_medications, list_lab_reports,
list_diagnoses) raise OpenMRSAPIError so the caller can show a per-section
error. fetch_pregnancy_dates() is optional data and never raises.

All display-text fallbacks come from emr_models; this module only decides
which records to show and how to label them.

Project: MamaCare - Maternal Health Dashboard
"""

from __future__ import annotations

import logging
import re
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from langsmith import traceable
from pydantic import BaseModel

from emr_models import (
    Condition,
    MedicationOrder,
    Observation,
    Patient,
    Visit,
    condition_display_name,
    condition_status_code,
    condition_status_label,
    first_text,
    format_onset,
    is_test_order,
    medication_display_name,
    medication_status,
    observation_test_name,
    observation_units,
    observation_value_text,
    parse_bundle,
    parse_results,
    patient_display_name,
    patient_email,
    visit_display_text,
    visit_secondary_text,
)
from openmrs_client import (
    DRUG_ORDER_TYPE_UUID,
    TEST_ORDER_TYPE_UUID,
    OpenMRSAPIError,
    OpenMRSClient,
)

logger = logging.getLogger(__name__)

USER_NOT_REGISTERED = "User not registered"

LMP_FORM_FIELD = "rfe-forms-LMP"
EDD_FORM_FIELD = "rfe-forms-EDD"

# Gestational age is only reported inside a plausible pregnancy window.
MAX_GESTATIONAL_WEEKS = 40

# Tried in order; the first pattern that matches wins.
_DATE_PATTERNS = (
    re.compile(r"\d{4}-\d{2}-\d{2}"),
    re.compile(r"\d{2}/\d{2}/\d{4}"),
    re.compile(r"\d{2}-\d{2}-\d{4}"),
)


# ---------------------------------------------------------------------------
# View-models
# ---------------------------------------------------------------------------

class PatientSummary(BaseModel):
    name: str
    gender: str
    age: str
    uuid: str
    email: str
    birthdate: Optional[str] = None


class PregnancyDates(BaseModel):
    lmp_date: Optional[str] = None
    edd_date: Optional[str] = None
    gestational_age_weeks: Optional[int] = None


class AppointmentItem(BaseModel):
    uuid: Optional[str] = None
    title: str
    when: Optional[str] = None


class MedicationItem(BaseModel):
    uuid: Optional[str] = None
    name: str
    status: str
    date_activated: Optional[str] = None
    date_stopped: Optional[str] = None


class LabReport(BaseModel):
    test_name: str
    test_result: str
    raw_value: str
    units: str = ""


class DiagnosisItem(BaseModel):
    id: Optional[str] = None
    name: str
    status: str
    status_code: Optional[str] = None
    onset: str


# ---------------------------------------------------------------------------
# Error messages
# ---------------------------------------------------------------------------

def friendly_error(client: OpenMRSClient, exc: OpenMRSAPIError) -> str:
    """Replace transport failures with an actionable message; keep HTTP errors verbatim."""
    if exc.status_code != 0:
        return exc.message
    if client.use_proxy:
        return (
            f"Network error: Unable to connect to proxy server at {client.proxy_url}. "
            "Please make sure the proxy server is running (uvicorn main:app --port 3001)."
        )
    return "Network error: Unable to connect to OpenMRS. Please check network connectivity or use the proxy server."


# ---------------------------------------------------------------------------
# Patient lookup
# ---------------------------------------------------------------------------

@traceable
async def login(client: OpenMRSClient) -> Dict[str, Any]:
    """
    Verify the OpenMRS credentials by reading the session resource.

    Returns:
        dict: {"success": True, "data": <session>} or {"success": False, "error": str}.
    """
    try:
        data = await client.get_session()
    except OpenMRSAPIError as exc:
        logger.error("openmrs_service.login: %s", exc.message)
        return {"success": False, "error": friendly_error(client, exc)}
    logger.info("openmrs_service.login: session authenticated=%s", data.get("authenticated") if isinstance(data, dict) else None)
    return {"success": True, "data": data}


async def get_patient_details(client: OpenMRSClient, patient_uuid: str) -> Optional[Dict[str, Any]]:
    """Full patient record, or None when the detail call fails."""
    try:
        return await client.get_patient(patient_uuid, view="full")
    except OpenMRSAPIError as exc:
        logger.warning("openmrs_service.get_patient_details(%s) failed: %s", patient_uuid, exc.message)
        return None


@traceable
async def search_patient_by_email(client: OpenMRSClient, email: str) -> Dict[str, Any]:
    """
    Find the patient registered with *email*.

    Args:
        client: Connected OpenMRSClient.
        email:  E-mail address used as the free-text search query.

    Returns:
        dict: {"success": bool, "patient": Patient | None, "error": str | None}.
              Never raises for OpenMRS failures.
    """
    if not email or not email.strip():
        return {"success": False, "patient": None, "error": "No e-mail address provided"}

    session = await login(client)
    if not session["success"]:
        return {"success": False, "patient": None, "error": session["error"]}

    try:
        data = await client.search_patients(email.strip(), limit=1, view="default")
    except OpenMRSAPIError as exc:
        logger.error("openmrs_service.search_patient_by_email: %s", exc.message)
        return {"success": False, "patient": None, "error": friendly_error(client, exc)}

    hits = parse_results(data, Patient)
    if not hits:
        return {"success": False, "patient": None, "error": USER_NOT_REGISTERED}

    hit = hits[0]
    details = await get_patient_details(client, hit.uuid) if hit.uuid else None
    patient = Patient.model_validate(details) if details else hit
    logger.info("openmrs_service.search_patient_by_email: found patient %s", patient.uuid)
    return {"success": True, "patient": patient, "error": None}


def calculate_age(birthdate: Optional[str], today: Optional[date] = None) -> Optional[int]:
    """Whole years between *birthdate* (YYYY-MM-DD prefix) and *today*."""
    if not birthdate:
        return None
    try:
        born = date.fromisoformat(birthdate[:10])
    except ValueError:
        return None
    today = today or date.today()
    return today.year - born.year - ((today.month, today.day) < (born.month, born.day))


def format_patient_data(patient: Patient, today: Optional[date] = None) -> PatientSummary:
    person = patient.person
    gender = (person.gender if person else None) or "Unknown"
    birthdate = person.birthdate if person else None
    age = calculate_age(birthdate, today)
    return PatientSummary(
        name=patient_display_name(patient),
        gender=gender[:1].upper() + gender[1:],
        age=f"{age} years" if age is not None else "Unknown",
        uuid=patient.uuid or "N/A",
        email=patient_email(patient) or "Not available",
        birthdate=birthdate,
    )


# ---------------------------------------------------------------------------
# Pregnancy dates
# ---------------------------------------------------------------------------

def extract_date_text(text: str) -> Optional[str]:
    """First YYYY-MM-DD, DD/MM/YYYY or DD-MM-YYYY substring of *text*."""
    for pattern in _DATE_PATTERNS:
        match = pattern.search(text)
        if match:
            return match.group(0)
    return None


def parse_date_text(value: str) -> Optional[date]:
    """Parse a string produced by extract_date_text()."""
    try:
        if "/" in value:
            return datetime.strptime(value, "%d/%m/%Y").date()
        if len(value.split("-")[0]) == 4:
            return datetime.strptime(value, "%Y-%m-%d").date()
        return datetime.strptime(value, "%d-%m-%Y").date()
    except ValueError:
        return None


def gestational_age_weeks(lmp: date, today: Optional[date] = None) -> Optional[int]:
    """Completed weeks since LMP; None outside 0..40 weeks."""
    today = today or date.today()
    weeks = (today - lmp).days // 7
    if 0 <= weeks <= MAX_GESTATIONAL_WEEKS:
        return weeks
    return None


def _find_form_obs(observations: List[Observation], exact: str, token: str) -> Optional[Observation]:
    for obs in observations:
        path = obs.formFieldPath or ""
        if path == exact or token in path:
            return obs
    return None


def _obs_text(obs: Observation) -> str:
    value = obs.value if isinstance(obs.value, str) else None
    return first_text(value, obs.display)


def pregnancy_dates_from_observations(observations: List[Observation], today: Optional[date] = None) -> PregnancyDates:
    """
    LMP / EDD from the antenatal form observations.

    When a field holds no recognisable date its text is kept as-is and no
    gestational age is computed.
    """
    dates = PregnancyDates()

    lmp_obs = _find_form_obs(observations, LMP_FORM_FIELD, "LMP")
    if lmp_obs is not None:
        text = _obs_text(lmp_obs)
        found = extract_date_text(text)
        if found:
            dates.lmp_date = found
            lmp = parse_date_text(found)
            if lmp is not None:
                dates.gestational_age_weeks = gestational_age_weeks(lmp, today)
        elif text:
            dates.lmp_date = text

    edd_obs = _find_form_obs(observations, EDD_FORM_FIELD, "EDD")
    if edd_obs is not None:
        text = _obs_text(edd_obs)
        dates.edd_date = extract_date_text(text) or text or None

    return dates


@traceable
async def fetch_pregnancy_dates(client: OpenMRSClient, patient_uuid: str, today: Optional[date] = None) -> PregnancyDates:
    """Optional section: failures are logged and yield empty dates."""
    try:
        data = await client.get_observations(patient_uuid)
    except OpenMRSAPIError as exc:
        logger.warning("openmrs_service.fetch_pregnancy_dates(%s) failed: %s", patient_uuid, exc.message)
        return PregnancyDates()
    return pregnancy_dates_from_observations(parse_results(data, Observation), today)


# ---------------------------------------------------------------------------
# Dashboard sections
# ---------------------------------------------------------------------------

def to_appointment(visit: Visit) -> AppointmentItem:
    return AppointmentItem(uuid=visit.uuid, title=visit_display_text(visit), when=visit_secondary_text(visit))


def to_medication(order: MedicationOrder) -> MedicationItem:
    return MedicationItem(
        uuid=order.uuid,
        name=medication_display_name(order),
        status=medication_status(order),
        date_activated=order.dateActivated,
        date_stopped=order.dateStopped,
    )


def to_lab_report(obs: Observation) -> LabReport:
    value = observation_value_text(obs)
    units = observation_units(obs)
    return LabReport(
        test_name=observation_test_name(obs),
        test_result=f"{value} {units}" if units else value,
        raw_value=value,
        units=units,
    )


def to_diagnosis(condition: Condition) -> DiagnosisItem:
    status_code = condition_status_code(condition)
    return DiagnosisItem(
        id=condition.id,
        name=condition_display_name(condition),
        status=condition_status_label(status_code),
        status_code=status_code,
        onset=format_onset(condition.onsetDateTime),
    )


@traceable
async def list_appointments(client: OpenMRSClient, patient_uuid: str) -> List[AppointmentItem]:
    data = await client.get_visits(patient_uuid)
    return [to_appointment(v) for v in parse_results(data, Visit)]


@traceable
async def list_medications(client: OpenMRSClient, patient_uuid: str) -> List[MedicationItem]:
    data = await client.get_orders(patient_uuid, order_type=DRUG_ORDER_TYPE_UUID)
    return [to_medication(o) for o in parse_results(data, MedicationOrder)]


@traceable
async def list_lab_reports(client: OpenMRSClient, patient_uuid: str) -> List[LabReport]:
    """Observations attached to a "Test Order"; other observations are ignored."""
    data = await client.get_observations(patient_uuid, order_type=TEST_ORDER_TYPE_UUID)
    return [to_lab_report(o) for o in parse_results(data, Observation) if is_test_order(o)]


@traceable
async def list_diagnoses(client: OpenMRSClient, patient_uuid: str) -> List[DiagnosisItem]:
    data = await client.get_conditions(patient_uuid)
    return [to_diagnosis(c) for c in parse_bundle(data, Condition)]
