"""
test_emr_models.py
------------------
MamaCare - Maternal Health Dashboard - Test Suite for emr_models.py
-------------------------------------------------------------------
Record validation and the prioritized display-text fallbacks for each
OpenMRS / FHIR resource type.

Run:
    pytest tests/test_emr_models.py -v --tb=short

Project: MamaCare - Maternal Health Dashboard
"""

import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

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
    observation_raw_value,
    observation_test_name,
    observation_units,
    observation_value_text,
    parse_bundle,
    parse_datetime,
    parse_results,
    patient_display_name,
    patient_email,
    visit_display_text,
    visit_secondary_text,
)
from mock_data.openmrs_payloads import CONDITIONS_BUNDLE, PATIENT_EMAIL, PATIENT_FULL, VISITS


def test_first_text_skips_blank_and_non_strings():
    assert first_text(None, "  ", 42, " Jane ") == "Jane"
    assert first_text(None, default="Unknown") == "Unknown"


def test_parse_datetime_formats():
    assert parse_datetime("2024-03-05T09:30:00.000+0000").hour == 9
    assert parse_datetime("2024-03-05T09:30:00Z").minute == 30
    assert parse_datetime("2024-03-05").day == 5
    assert parse_datetime("not a date") is None
    assert parse_datetime(None) is None


# ── Patient ────────────────────────────────────────────────────────────────────

class TestPatient:

    def test_name_from_first_name_entry(self):
        assert patient_display_name(Patient.model_validate(PATIENT_FULL)) == "Priya Sharma"

    def test_name_composed_from_given_family(self):
        patient = Patient.model_validate({"person": {"names": [{"givenName": "Asha", "familyName": "Rao"}]}})
        assert patient_display_name(patient) == "Asha Rao"

    def test_name_falls_back_to_person_then_patient_display(self):
        assert patient_display_name(Patient.model_validate({"person": {"display": "Meera K"}})) == "Meera K"
        assert patient_display_name(Patient.model_validate({"display": "100ABC - Lata"})) == "100ABC - Lata"
        assert patient_display_name(Patient()) == "Unknown"

    def test_email_attribute(self):
        assert patient_email(Patient.model_validate(PATIENT_FULL)) == PATIENT_EMAIL

    def test_email_matched_by_display_substring(self):
        patient = Patient.model_validate({
            "person": {"attributes": [{"attributeType": {"display": "Contact e-mail / Email address"}, "value": "x@y.org"}]}
        })
        assert patient_email(patient) == "x@y.org"

    def test_no_email(self):
        assert patient_email(Patient.model_validate({"person": {"attributes": []}})) is None

    def test_unknown_keys_kept(self):
        patient = Patient.model_validate({"uuid": "p1", "voided": False})
        assert patient.model_extra["voided"] is False
        assert patient.resource_type == "Patient"


# ── Visit ──────────────────────────────────────────────────────────────────────

class TestVisit:

    def test_composed_display(self):
        visit = Visit.model_validate(VISITS["results"][0])
        assert visit_display_text(visit) == "Antenatal Visit - Maternity Ward (05/03/2024)"

    def test_display_wins(self):
        visit = Visit.model_validate(VISITS["results"][1])
        assert visit_display_text(visit).startswith("Facility Visit @ Outpatient Clinic")

    def test_type_defaults_to_visit(self):
        assert visit_display_text(Visit()) == "Visit"

    def test_location_name_object(self):
        visit = Visit.model_validate({"visitType": {"name": "OPD"}, "location": {"name": {"display": "Ward 3"}}})
        assert visit_display_text(visit) == "OPD - Ward 3"

    def test_secondary_text(self):
        visit = Visit.model_validate(VISITS["results"][0])
        assert visit_secondary_text(visit) == "Mar 5, 2024 at 09:30 AM"
        assert visit_secondary_text(Visit()) is None


# ── Medication ─────────────────────────────────────────────────────────────────

class TestMedication:

    def test_active_only_with_explicit_null_date_stopped(self):
        assert medication_status(MedicationOrder.model_validate({"display": "Aspirin", "dateStopped": None})) == "Active"
        assert medication_status(MedicationOrder.model_validate({"display": "Aspirin"})) == "Past"
        assert medication_status(MedicationOrder.model_validate({"dateStopped": "2024-01-01"})) == "Past"

    def test_display_name_fallback(self):
        assert medication_display_name(MedicationOrder()) == "Unknown Medication"
        assert medication_display_name(MedicationOrder(display=" Folic acid ")) == "Folic acid"


# ── Condition ──────────────────────────────────────────────────────────────────

class TestCondition:

    def test_display_name_priority(self):
        both = Condition.model_validate({"code": {"text": "Gestational diabetes", "coding": [{"display": "GDM"}]}})
        coding_only = Condition.model_validate({"code": {"coding": [{"display": "GDM"}]}})
        code_only = Condition.model_validate({"code": {"coding": [{"code": "O24.4"}]}})
        plain = Condition.model_validate({"display": "Anaemia"})
        assert condition_display_name(both) == "Gestational diabetes"
        assert condition_display_name(coding_only) == "GDM"
        assert condition_display_name(code_only) == "O24.4"
        assert condition_display_name(plain) == "Anaemia"
        assert condition_display_name(Condition()) == "Unknown Diagnosis"

    def test_status_from_clinical_status(self):
        condition = Condition.model_validate({"clinicalStatus": {"coding": [{"code": "Active"}]}})
        assert condition_status_code(condition) == "active"
        assert condition_status_label("active") == "Active"

    def test_status_from_text_and_code(self):
        assert condition_status_code(Condition.model_validate({"clinicalStatus": {"text": "Resolved"}})) == "resolved"
        assert condition_status_code(Condition.model_validate({"code": {"coding": [{"code": "inactive"}]}})) == "inactive"
        assert condition_status_code(Condition.model_validate({"code": {"coding": [{"code": "O24.4"}]}})) is None

    def test_status_labels(self):
        assert condition_status_label("resolved") == "Past"
        assert condition_status_label(None) == "Unknown"

    def test_format_onset(self):
        assert format_onset("2022-09-14T00:00:00+00:00") == "14/09/2022"
        assert format_onset(None) == "Not specified"
        assert format_onset("sometime") == "Invalid date"


# ── Observation ────────────────────────────────────────────────────────────────

class TestObservation:

    def test_test_order_detection(self):
        lab = Observation.model_validate({"order": {"orderType": {"display": "Test Order"}}})
        other = Observation.model_validate({"order": {"orderType": {"display": "Drug Order"}}})
        assert is_test_order(lab) is True
        assert is_test_order(other) is False
        assert is_test_order(Observation()) is False

    def test_test_name_priority(self):
        assert observation_test_name(Observation.model_validate({"concept": {"display": "Hb"}, "display": "x"})) == "Hb"
        assert observation_test_name(Observation.model_validate({"display": "Hb: 11"})) == "Hb: 11"
        assert observation_test_name(Observation.model_validate({"concept": {"name": {"display": "Glucose"}}})) == "Glucose"
        assert observation_test_name(Observation()) == "Unknown Test"

    def test_value_text(self):
        assert observation_value_text(Observation(value=10.8)) == "10.8"
        assert observation_value_text(Observation(value={"display": "Positive"})) == "Positive"
        assert observation_value_text(Observation(value={"name": {"display": "O positive"}})) == "O positive"
        assert observation_value_text(Observation()) == "N/A"

    def test_units(self):
        obs = Observation.model_validate({"concept": {"units": "g/dL"}, "units": "mg"})
        assert observation_units(obs) == "g/dL"
        assert observation_units(Observation(units="mmHg")) == "mmHg"

    def test_raw_value_priority(self):
        assert observation_raw_value(Observation(valueText="high")) == "high"
        assert observation_raw_value(Observation(valueNumeric=140.0)) == 140.0
        assert observation_raw_value(Observation()) is None


# ── Parsing ────────────────────────────────────────────────────────────────────

class TestParsing:

    def test_parse_results(self):
        visits = parse_results(VISITS, Visit)
        assert [v.uuid for v in visits] == ["c3a1e9b4-visit-0001", "c3a1e9b4-visit-0002"]

    def test_parse_results_drops_invalid_entries(self):
        data = {"results": [{"uuid": "ok"}, "not-an-object", {"uuid": "ok-2"}]}
        assert [v.uuid for v in parse_results(data, Visit)] == ["ok", "ok-2"]

    def test_parse_results_non_dict(self):
        assert parse_results(None, Visit) == []
        assert parse_results({"error": "x"}, Visit) == []

    def test_parse_bundle_skips_other_resource_types(self):
        conditions = parse_bundle(CONDITIONS_BUNDLE, Condition)
        assert [c.id for c in conditions] == ["cond-pe", "cond-anaemia"]

    def test_parse_bundle_empty(self):
        assert parse_bundle({"resourceType": "Bundle"}, Condition) == []
