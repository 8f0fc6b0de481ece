"""
dashboard.py
------------
MamaCare - Maternal Health Dashboard - dashboard assembly
---------------------------------------------------------
Looks the patient up by e-mail, then loads every dashboard section
concurrently. Sections are independent: one failing section records its
error message and returns its empty default while the others still render.
The shared RequestTracker sees every underlying call, so its loading flag
stays true until the last section finishes.

Project: MamaCare - Maternal Health Dashboard
"""

from __future__ import annotations

import asyncio
import logging
from datetime import date
from typing import Any, Awaitable, Dict, List, Optional, TypeVar

from pydantic import BaseModel, Field

from health_advisory import HealthAdvisory, check_and_generate_advisory
from openmrs_client import OpenMRSAPIError, OpenMRSClient
from openmrs_service import (
    USER_NOT_REGISTERED,
    AppointmentItem,
    DiagnosisItem,
    LabReport,
    MedicationItem,
    PatientSummary,
    PregnancyDates,
    fetch_pregnancy_dates,
    format_patient_data,
    friendly_error,
    list_appointments,
    list_diagnoses,
    list_lab_reports,
    list_medications,
    search_patient_by_email,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class PatientLookupError(Exception):
    """The patient could not be resolved; not_registered distinguishes 404 from upstream failure."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    @property
    def not_registered(self) -> bool:
        return self.message == USER_NOT_REGISTERED


class Dashboard(BaseModel):
    patient: PatientSummary
    pregnancy: PregnancyDates = Field(default_factory=PregnancyDates)
    appointments: List[AppointmentItem] = Field(default_factory=list)
    medications: List[MedicationItem] = Field(default_factory=list)
    lab_reports: List[LabReport] = Field(default_factory=list)
    diagnoses: List[DiagnosisItem] = Field(default_factory=list)
    advisory: HealthAdvisory = Field(default_factory=HealthAdvisory)
    errors: Dict[str, str] = Field(default_factory=dict)


async def _load_section(
    name: str,
    loader: Awaitable[T],
    default: T,
    errors: Dict[str, str],
    client: OpenMRSClient,
) -> T:
    try:
        return await loader
    except OpenMRSAPIError as exc:
        logger.warning("dashboard: section %s failed: %s", name, exc.message)
        errors[name] = friendly_error(client, exc)
        return default


async def build_dashboard(client: OpenMRSClient, email: str, today: Optional[date] = None) -> Dashboard:
    """
    Assemble the full dashboard for the patient registered with *email*.

    Raises:
        PatientLookupError: when the patient cannot be found or the lookup fails.
    """
    lookup = await search_patient_by_email(client, email)
    if not lookup["success"] or lookup["patient"] is None:
        raise PatientLookupError(lookup["error"] or USER_NOT_REGISTERED)

    patient = lookup["patient"]
    patient_uuid = patient.uuid or ""
    errors: Dict[str, str] = {}

    results: List[Any] = await asyncio.gather(
        fetch_pregnancy_dates(client, patient_uuid, today),
        _load_section("appointments", list_appointments(client, patient_uuid), [], errors, client),
        _load_section("medications", list_medications(client, patient_uuid), [], errors, client),
        _load_section("lab_reports", list_lab_reports(client, patient_uuid), [], errors, client),
        _load_section("diagnoses", list_diagnoses(client, patient_uuid), [], errors, client),
        _load_section(
            "advisory",
            check_and_generate_advisory(client, patient_uuid, patient),
            HealthAdvisory(),
            errors,
            client,
        ),
    )
    pregnancy, appointments, medications, lab_reports, diagnoses, advisory = results

    return Dashboard(
        patient=format_patient_data(patient, today),
        pregnancy=pregnancy,
        appointments=appointments,
        medications=medications,
        lab_reports=lab_reports,
        diagnoses=diagnoses,
        advisory=advisory,
        errors=errors,
    )
