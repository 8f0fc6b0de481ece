"""
health_advisory.py
------------------
MamaCare - Maternal Health Dashboard - LLM health advisory
----------------------------------------------------------
Generates a gentle, patient-facing advisory about low-dose aspirin and
pre-eclampsia risk. The advisory is only shown when the patient has an
active "History of pre-eclampsia" condition AND an active aspirin order.

Only minimal data is sent to the model: age and gender, the hypertension /
diabetes form observations, and the active aspirin orders. The prompt is
rebuilt on every call; nothing is cached.

When no ANTHROPIC_API_KEY is configured, or the model call fails, a fixed
fallback advisory is returned instead. The LLM call is registered with the
RequestTracker like any EMR call.

Key functions:
    - should_show_advisory: eligibility rule
    - build_advisory_prompt: minimal-data prompt
    - generate_health_advisory: LLM call with fallback
    - check_and_generate_advisory: fetch inputs, check rule, generate

Project: MamaCare - Maternal Health Dashboard
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from typing import Any, Dict, List, Optional

from langchain_anthropic import ChatAnthropic
from langchain_core.messages import HumanMessage, SystemMessage
from langsmith import traceable
from pydantic import BaseModel

from emr_models import (
    Condition,
    MedicationOrder,
    Observation,
    Patient,
    condition_display_name,
    condition_status_code,
    medication_status,
    observation_concept_text,
    observation_raw_value,
    parse_bundle,
    parse_results,
)
from openmrs_client import DRUG_ORDER_TYPE_UUID, OpenMRSClient
from request_tracker import RequestTracker

logger = logging.getLogger(__name__)

DEFAULT_LLM_MODEL = "claude-sonnet-4-20250514"

PRE_ECLAMPSIA_HISTORY = "history of pre-eclampsia"
ADVISORY_FORM_FIELDS = {"rfe-forms-Hypertension", "rfe-forms-Diabetes"}

ADVISOR_SYSTEM_PROMPT = (
    "You are a gentle, supportive Health Advisor who provides clear, "
    "empathetic health information to patients."
)

_PROMPT_TEMPLATE = """Now act as my health advisor, suggest in a gentle and empathetic way:

1. "💊 Why aspirin has been given" – describe using limited words (30–45), and mention which diagnosis (Hypertension or Diabetes) is relevant.

2. "🩺 Pre-eclampsia" – briefly explain what Pre-eclampsia is and why it matters during pregnancy, using limited words (20–45).

3. "⚠️ Importance of taking it" – provide a limited-word description explaining why it is important for the patient to take the medication.

4. "🌱 Life style" – provide 3–5 short, positive lifestyle suggestions tailored for the identified diagnosis to help reduce the risk of pre-eclampsia. Each suggestion must contain 30–50 words.

You are acting as a doctor. Analyze the following patient data to understand:
- Why aspirin has been given and which diagnosis causes the risk.
- Which diagnosis increases the patient's chance of developing pre-eclampsia.

Patient Information (age and gender only):
{patient}

Filtered Diagnosis Observations (Hypertension/Diabetes only):
{observations}

Aspirin Medication:
{aspirin}

Format the response with clear sections using ## for main headings with the icons (💊, 🩺, ⚠️, 🌱). Be warm, supportive, and easy to understand."""

FALLBACK_ADVISORY = """## 💊 Why aspirin has been given

Low-dose Aspirin is often prescribed during pregnancy for women at risk of pre-eclampsia, particularly those with conditions like Diabetes or Hypertension. Research has shown that taking a low dose of Aspirin (typically 81mg) daily can help reduce the risk of developing pre-eclampsia by improving blood flow to the placenta and reducing inflammation.

## 🩺 Pre-eclampsia

Pre-eclampsia is a pregnancy complication characterized by high blood pressure and signs of damage to another organ system, most often the liver and kidneys. It typically begins after 20 weeks of pregnancy and can affect both the mother and the developing baby.

## ⚠️ Importance of taking it

Taking Aspirin as prescribed is crucial for managing pre-eclampsia risk. It helps improve blood flow to the placenta, which is essential for your baby's growth and development. Consistent use can significantly reduce the risk of complications for both you and your baby.

## 🌱 Life style

1. **Regular Prenatal Care:** Attend all scheduled prenatal appointments to monitor your blood pressure and overall health. Regular check-ups allow your healthcare provider to detect any changes early and adjust your treatment plan as needed.

2. **Healthy Diet:** Focus on a balanced diet rich in fruits, vegetables, whole grains, and lean proteins. Limit processed foods and sodium intake. A nutritious diet supports healthy blood pressure and provides essential nutrients for your baby's development.

3. **Stay Hydrated:** Drink plenty of water throughout the day to support healthy blood circulation. Proper hydration helps maintain blood volume and can support healthy blood pressure levels.

4. **Rest and Sleep:** Ensure you get adequate rest and sleep, as fatigue can impact blood pressure. Aim for 7-9 hours of quality sleep each night and take breaks during the day when needed.

5. **Monitor Symptoms:** Be aware of warning signs such as severe headaches, vision changes, or sudden swelling, and contact your healthcare provider immediately if these occur."""


class HealthAdvisory(BaseModel):
    show: bool = False
    message: Optional[str] = None
    source: Optional[str] = None  # "llm" | "fallback"


# ── Eligibility ───────────────────────────────────────────────────────────────

def has_active_pre_eclampsia(conditions: List[Condition]) -> bool:
    for condition in conditions:
        if (
            condition_display_name(condition).lower() == PRE_ECLAMPSIA_HISTORY
            and condition_status_code(condition) == "active"
        ):
            return True
    return False


def is_aspirin(order: MedicationOrder) -> bool:
    return "aspirin" in (order.display or "").lower()


def has_active_aspirin(orders: List[MedicationOrder]) -> bool:
    return any(is_aspirin(o) and medication_status(o) == "Active" for o in orders)


def should_show_advisory(conditions: List[Condition], orders: List[MedicationOrder]) -> bool:
    return has_active_pre_eclampsia(conditions) and has_active_aspirin(orders)


# ── Minimal prompt payload ────────────────────────────────────────────────────

def extract_patient_summary(patient: Optional[Patient]) -> Optional[Dict[str, Any]]:
    if patient is None:
        return None
    person = patient.person
    return {
        "age": person.age if person else None,
        "gender": person.gender if person else None,
    }


def extract_filtered_observations(observations: List[Observation]) -> List[Dict[str, Any]]:
    return [
        {
            "formFieldPath": obs.formFieldPath or "",
            "display": obs.display or "",
            "value": observation_raw_value(obs),
            "concept": observation_concept_text(obs),
            "obsDatetime": obs.obsDatetime,
        }
        for obs in observations
        if (obs.formFieldPath or "") in ADVISORY_FORM_FIELDS
    ]


def extract_aspirin_medication(orders: List[MedicationOrder]) -> List[Dict[str, Any]]:
    return [
        {
            "displayName": order.display or "",
            "status": "Active",
            "dateActivated": order.dateActivated,
            "dateStopped": order.dateStopped,
        }
        for order in orders
        if is_aspirin(order) and medication_status(order) == "Active"
    ]


def build_advisory_prompt(
    patient: Optional[Patient],
    orders: List[MedicationOrder],
    observations: List[Observation],
) -> str:
    return _PROMPT_TEMPLATE.format(
        patient=json.dumps(extract_patient_summary(patient)),
        observations=json.dumps(extract_filtered_observations(observations), default=str),
        aspirin=json.dumps(extract_aspirin_medication(orders)),
    )


# ── Generation ────────────────────────────────────────────────────────────────

def _create_llm() -> ChatAnthropic:
    return ChatAnthropic(
        model=os.getenv("LLM_MODEL", DEFAULT_LLM_MODEL),
        anthropic_api_key=os.getenv("ANTHROPIC_API_KEY"),
        temperature=0.7,
        max_tokens=500,
    )


def _response_text(response: Any) -> str:
    content = response.content if hasattr(response, "content") else response
    if isinstance(content, list):
        content = "".join(
            block.get("text", "") if isinstance(block, dict) else str(block) for block in content
        )
    return (content or "").strip() if isinstance(content, str) else str(content).strip()


@traceable
async def generate_health_advisory(
    patient: Optional[Patient],
    orders: List[MedicationOrder],
    observations: List[Observation],
    tracker: Optional[RequestTracker] = None,
) -> HealthAdvisory:
    """
    Ask the LLM for the advisory text.

    Returns the fallback advisory when no API key is configured, when the
    call fails, or when the model returns no text. Never raises.
    """
    if not os.getenv("ANTHROPIC_API_KEY"):
        logger.warning("health_advisory: ANTHROPIC_API_KEY not configured, using fallback message")
        return HealthAdvisory(show=True, message=FALLBACK_ADVISORY, source="fallback")

    prompt = build_advisory_prompt(patient, orders, observations)
    tracker = tracker or RequestTracker(prefix="llm")
    try:
        async with tracker.track("llm advisory"):
            response = await _create_llm().ainvoke([
                SystemMessage(content=ADVISOR_SYSTEM_PROMPT),
                HumanMessage(content=prompt),
            ])
            message = _response_text(response)
            if not message:
                raise ValueError("No response from LLM")
    except Exception as exc:
        logger.exception("health_advisory: advisory generation failed, using fallback: %s", exc)
        return HealthAdvisory(show=True, message=FALLBACK_ADVISORY, source="fallback")

    logger.info("health_advisory: advisory generated (%d chars)", len(message))
    return HealthAdvisory(show=True, message=message, source="llm")


@traceable
async def check_and_generate_advisory(
    client: OpenMRSClient,
    patient_uuid: str,
    patient: Optional[Patient] = None,
) -> HealthAdvisory:
    """
    Fetch conditions, drug orders and observations concurrently, apply the
    eligibility rule, and generate the advisory when it applies.

    Raises:
        OpenMRSAPIError: if any of the three EMR calls fails.
    """
    results = await asyncio.gather(
        client.get_conditions(patient_uuid),
        client.get_orders(patient_uuid, order_type=DRUG_ORDER_TYPE_UUID),
        client.get_observations(patient_uuid),
        return_exceptions=True,
    )
    # All three calls have settled before the first failure is raised.
    for result in results:
        if isinstance(result, BaseException):
            raise result
    condition_data, order_data, obs_data = results
    conditions = parse_bundle(condition_data, Condition)
    orders = parse_results(order_data, MedicationOrder)

    if not should_show_advisory(conditions, orders):
        return HealthAdvisory(show=False)

    observations = parse_results(obs_data, Observation)
    return await generate_health_advisory(patient, orders, observations, tracker=client.tracker)
