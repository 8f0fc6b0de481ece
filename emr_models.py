"""
emr_models.py
-------------
MamaCare - Maternal Health Dashboard - OpenMRS / FHIR record types
------------------------------------------------------------------
Pydantic v2 models for the upstream resource shapes the dashboard reads,
and one prioritized-fallback display function per type.

OpenMRS returns loosely shaped JSON: the same human-readable text may live
in ``display``, ``name``, ``name.display`` or a FHIR ``code.coding[0]``.
Each record type is an explicit model with optional fields (unknown keys are
kept, never rejected), tagged with a literal ``resource_type``. All "pull the
display text from one of several fields" rules live here instead of being
repeated at every call site.

Validation policy
-----------------
parse_results() / parse_bundle() validate each entry independently. An entry
that fails validation is logged and dropped; the rest of the list survives.

Public API
----------
    Patient, Visit, MedicationOrder, Condition, Observation   record types
    parse_results()        OpenMRS REST ``{"results": [...]}`` -> models
    parse_bundle()         FHIR Bundle ``{"entry": [{"resource": ...}]}`` -> models
    patient_display_name(), patient_email()
    visit_display_text(), visit_secondary_text()
    medication_display_name(), medication_status()
    condition_display_name(), condition_status_code(), condition_status_label()
    observation_test_name(), observation_value_text(), observation_units()

Project: MamaCare - Maternal Health Dashboard
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError

logger = logging.getLogger(__name__)

# Person attribute type used for e-mail on the reference server.
EMAIL_ATTRIBUTE_TYPE_UUID = "58f43b5e-5311-4512-b0d4-24a2a7f3a4e2"

TEST_ORDER_TYPE_DISPLAY = "Test Order"

_CONDITION_STATUS_CODES = {"active", "resolved", "inactive"}


def first_text(*candidates: Any, default: str = "") -> str:
    """Return the first candidate that is a non-blank string (stripped)."""
    for candidate in candidates:
        if isinstance(candidate, str) and candidate.strip():
            return candidate.strip()
    return default


def parse_datetime(value: Optional[str]) -> Optional[datetime]:
    """
    Parse an OpenMRS / FHIR timestamp.

    Accepts ISO-8601 with ``Z``, ``+00:00`` or the OpenMRS ``+0000`` offset.
    Returns None for empty or unparseable input.
    """
    if not value or not isinstance(value, str):
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    elif len(text) > 5 and text[-5] in "+-" and text[-4:].isdigit() and "T" in text:
        text = f"{text[:-2]}:{text[-2:]}"
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        return None


# ---------------------------------------------------------------------------
# Shared building blocks
# ---------------------------------------------------------------------------

class _Record(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)


class OpenMRSRef(_Record):
    """Reference object (``{"uuid", "display", "name", ...}``)."""

    uuid: Optional[str] = None
    display: Optional[str] = None
    name: Any = None


class Coding(_Record):
    system: Optional[str] = None
    code: Optional[str] = None
    display: Optional[str] = None


class CodeableConcept(_Record):
    text: Optional[str] = None
    coding: List[Coding] = Field(default_factory=list)

    @property
    def first_coding(self) -> Optional[Coding]:
        return self.coding[0] if self.coding else None


def _name_text(name: Any) -> str:
    """``name`` may be a plain string or a ``{"display": ...}`` object."""
    if isinstance(name, dict):
        name = name.get("display")
    return first_text(name)


def _ref_text(ref: Optional[OpenMRSRef]) -> str:
    """Text of a reference: ``display``, then ``name``."""
    if ref is None:
        return ""
    return first_text(ref.display, _name_text(ref.name))


# ---------------------------------------------------------------------------
# Patient
# ---------------------------------------------------------------------------

class PersonName(_Record):
    display: Optional[str] = None
    givenName: Optional[str] = None
    familyName: Optional[str] = None


class PersonAttribute(_Record):
    attributeType: Optional[OpenMRSRef] = None
    value: Any = None


class Person(_Record):
    display: Optional[str] = None
    names: List[PersonName] = Field(default_factory=list)
    gender: Optional[str] = None
    birthdate: Optional[str] = None
    age: Optional[int] = None
    attributes: List[PersonAttribute] = Field(default_factory=list)


class Patient(_Record):
    resource_type: Literal["Patient"] = Field("Patient", alias="resourceType")
    uuid: Optional[str] = None
    display: Optional[str] = None
    person: Optional[Person] = None


def patient_display_name(patient: Patient) -> str:
    """
    Priority: first name entry ``display`` -> "given family" ->
    ``person.display`` -> ``patient.display`` -> "Unknown".
    """
    person = patient.person or Person()
    name = person.names[0] if person.names else PersonName()
    composed = " ".join(filter(None, [name.givenName, name.familyName]))
    return first_text(name.display, composed, person.display, patient.display, default="Unknown")


def patient_email(patient: Patient) -> Optional[str]:
    """E-mail from person attributes, matched by type display or known type uuid."""
    if patient.person is None:
        return None
    for attr in patient.person.attributes:
        attr_type = attr.attributeType
        if attr_type is None:
            continue
        display = (attr_type.display or "").strip()
        if (
            display == "Email"
            or attr_type.uuid == EMAIL_ATTRIBUTE_TYPE_UUID
            or "email" in display.lower()
        ):
            return str(attr.value) if attr.value is not None else None
    return None


# ---------------------------------------------------------------------------
# Visit
# ---------------------------------------------------------------------------

class Visit(_Record):
    resource_type: Literal["Visit"] = Field("Visit", alias="resourceType")
    uuid: Optional[str] = None
    display: Optional[str] = None
    visitType: Optional[OpenMRSRef] = None
    location: Optional[OpenMRSRef] = None
    startDatetime: Optional[str] = None
    stopDatetime: Optional[str] = None


def visit_display_text(visit: Visit) -> str:
    """``display``, else "<type> - <location> (<date>)" from the parts present."""
    if visit.display and visit.display.strip():
        return visit.display.strip()
    visit_type = first_text(_ref_text(visit.visitType), default="Visit")
    location = _ref_text(visit.location)
    started = parse_datetime(visit.startDatetime)
    text = visit_type
    if location:
        text += f" - {location}"
    if started:
        text += f" ({started.strftime('%d/%m/%Y')})"
    return text


def visit_secondary_text(visit: Visit) -> Optional[str]:
    """Start time as e.g. "Mar 5, 2024 at 09:30 AM", or None without a start."""
    started = parse_datetime(visit.startDatetime)
    if started is None:
        return None
    return f"{started.strftime('%b')} {started.day}, {started.year} at {started.strftime('%I:%M %p')}"


# ---------------------------------------------------------------------------
# Medication order
# ---------------------------------------------------------------------------

class MedicationOrder(_Record):
    resource_type: Literal["MedicationOrder"] = Field("MedicationOrder", alias="resourceType")
    uuid: Optional[str] = None
    display: Optional[str] = None
    dateActivated: Optional[str] = None
    dateStopped: Optional[str] = None


def medication_display_name(order: MedicationOrder) -> str:
    return first_text(order.display, default="Unknown Medication")


def medication_status(order: MedicationOrder) -> str:
    """
    "Active" only when the order explicitly carries ``dateStopped: null``.

    A missing ``dateStopped`` key counts as "Past".
    """
    if "dateStopped" in order.model_fields_set and order.dateStopped is None:
        return "Active"
    return "Past"


# ---------------------------------------------------------------------------
# FHIR Condition
# ---------------------------------------------------------------------------

class Condition(_Record):
    resource_type: Literal["Condition"] = Field("Condition", alias="resourceType")
    id: Optional[str] = None
    display: Optional[str] = None
    code: Optional[CodeableConcept] = None
    clinicalStatus: Optional[CodeableConcept] = None
    onsetDateTime: Optional[str] = None


def condition_display_name(condition: Condition) -> str:
    """Priority: ``code.text`` -> ``coding[0].display`` -> ``coding[0].code`` -> ``display``."""
    code = condition.code or CodeableConcept()
    coding = code.first_coding or Coding()
    return first_text(code.text, coding.display, coding.code, condition.display, default="Unknown Diagnosis")


def condition_status_code(condition: Condition) -> Optional[str]:
    """
    Lower-cased clinical status.

    Priority: ``clinicalStatus.coding[0].code`` -> ``clinicalStatus.text`` ->
    ``code.coding[0].code`` when it is itself a status word.
    """
    status = condition.clinicalStatus
    if status is not None:
        if status.first_coding is not None:
            return (status.first_coding.code or "").lower()
        if status.text:
            return status.text.lower()
    code = condition.code
    if code is not None and code.first_coding is not None:
        value = (code.first_coding.code or "").lower()
        if value in _CONDITION_STATUS_CODES:
            return value
    return None


def condition_status_label(status_code: Optional[str]) -> str:
    if not status_code:
        return "Unknown"
    if status_code == "active":
        return "Active"
    return "Past"


def format_onset(value: Optional[str]) -> str:
    """Onset as DD/MM/YYYY; "Not specified" when absent, "Invalid date" when unparseable."""
    if not value:
        return "Not specified"
    parsed = parse_datetime(value)
    if parsed is None:
        return "Invalid date"
    return parsed.strftime("%d/%m/%Y")


# ---------------------------------------------------------------------------
# Observation
# ---------------------------------------------------------------------------

class Concept(_Record):
    uuid: Optional[str] = None
    display: Optional[str] = None
    name: Any = None
    units: Optional[str] = None


class ObservationOrder(_Record):
    uuid: Optional[str] = None
    orderType: Optional[OpenMRSRef] = None


class Observation(_Record):
    resource_type: Literal["Observation"] = Field("Observation", alias="resourceType")
    uuid: Optional[str] = None
    display: Optional[str] = None
    concept: Optional[Concept] = None
    value: Any = None
    valueText: Optional[str] = None
    valueNumeric: Optional[float] = None
    obsDatetime: Optional[str] = None
    formFieldPath: Optional[str] = None
    order: Optional[ObservationOrder] = None
    units: Optional[str] = None


def is_test_order(obs: Observation) -> bool:
    order_type = obs.order.orderType if obs.order else None
    return bool(order_type and order_type.display == TEST_ORDER_TYPE_DISPLAY)


def observation_test_name(obs: Observation) -> str:
    """Priority: ``concept.display`` -> ``display`` -> ``concept.name.display``."""
    concept = obs.concept or Concept()
    return first_text(concept.display, obs.display, _name_text(concept.name), default="Unknown Test")


def observation_value_text(obs: Observation) -> str:
    """Result value; coded answers use their ``display`` or ``name``."""
    value = obs.value
    if value is None or value == "":
        return "N/A"
    if isinstance(value, dict):
        name = value.get("name")
        if isinstance(name, dict):
            name = name.get("display")
        return first_text(value.get("display"), name, default="N/A")
    return str(value)


def observation_units(obs: Observation) -> str:
    concept_units = obs.concept.units if obs.concept else None
    return first_text(concept_units, obs.units)


def observation_raw_value(obs: Observation) -> Any:
    """Value for prompt payloads: ``value`` -> ``valueText`` -> ``valueNumeric``."""
    for candidate in (obs.value, obs.valueText, obs.valueNumeric):
        if candidate not in (None, ""):
            return candidate
    return None


def observation_concept_text(obs: Observation) -> str:
    concept = obs.concept or Concept()
    return first_text(concept.display, _name_text(concept.name))


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

RecordT = TypeVar("RecordT", bound=_Record)


def parse_results(data: Optional[Dict[str, Any]], model: Type[RecordT]) -> List[RecordT]:
    """Validate every item of an OpenMRS ``{"results": [...]}`` payload."""
    if not isinstance(data, dict):
        return []
    records: List[RecordT] = []
    for raw in data.get("results") or []:
        try:
            records.append(model.model_validate(raw))
        except ValidationError as exc:
            logger.warning("emr_models: dropped invalid %s: %s", model.__name__, exc.errors()[0]["msg"])
    return records


def parse_bundle(data: Optional[Dict[str, Any]], model: Type[RecordT]) -> List[RecordT]:
    """
    Validate every entry resource of a FHIR Bundle whose ``resourceType``
    matches *model*; other resource types (e.g. OperationOutcome) are skipped.
    """
    if not isinstance(data, dict):
        return []
    expected = model.model_fields["resource_type"].default
    records: List[RecordT] = []
    for entry in data.get("entry") or []:
        resource = entry.get("resource") if isinstance(entry, dict) else None
        if not isinstance(resource, dict):
            continue
        if resource.get("resourceType", expected) != expected:
            continue
        try:
            records.append(model.model_validate(resource))
        except ValidationError as exc:
            logger.warning("emr_models: dropped invalid %s: %s", model.__name__, exc.errors()[0]["msg"])
    return records
