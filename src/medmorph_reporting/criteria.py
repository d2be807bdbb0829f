"""Translate named trigger events into resource-query criteria strings.

Named events look like ``new-encounter``, ``modified-labresult`` or
``diagnosis-change``: a new/modified qualifier followed by the subject, or
the subject followed by change/start/close.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from medmorph_reporting.plan import Trigger

EVENT_CRITERIA: dict[str, str] = {
    "encounter": "Encounter",
    "diagnosis": "Condition",
    "medication": "Medication",
    "labresult": "Observation?category=laboratory",
    "order": "ServiceRequest",
    "procedure": "Procedure",
    "immunization": "Immunization",
    "demographic": "Patient",
}

CUSTOM_EVENT_CRITERIA: dict[str, str] = {
    "new-bundle": "Bundle",
}

# Medication events also fire on these resource types
MEDICATION_ADDITIONAL_CRITERIA: tuple[str, ...] = (
    "MedicationDispense",
    "MedicationStatement",
    "MedicationAdministration",
)

_LEADING_QUALIFIERS = frozenset({"new", "modified"})
_TRAILING_QUALIFIERS = frozenset({"change", "start", "close"})


@dataclass(frozen=True)
class TriggerCriteria:
    """Criteria for one trigger, plus implied criteria that must ride along."""

    criteria: str
    additional: tuple[str, ...] = field(default=())


def event_subject(code: str) -> str | None:
    """Subject part of a named-event code, or None if the shape is not recognised."""
    parts = code.split("-")
    if len(parts) < 2:
        return None
    if parts[0] in _LEADING_QUALIFIERS:
        return parts[1]
    if parts[1] in _TRAILING_QUALIFIERS:
        return parts[0]
    return None


def compile_named_event(code: str) -> str | None:
    """Map a standard named-event code to a criteria string."""
    subject = event_subject(code)
    if subject is None:
        return None
    return EVENT_CRITERIA.get(subject)


def trigger_criteria(trigger: Trigger) -> TriggerCriteria | None:
    """Criteria for a plan trigger.

    The standard vocabulary is consulted first; the custom vocabulary only
    when the standard one yields nothing.
    """
    criteria = None
    if trigger.named_event_code:
        criteria = compile_named_event(trigger.named_event_code)
    if criteria is None and trigger.custom_event_code:
        criteria = CUSTOM_EVENT_CRITERIA.get(trigger.custom_event_code)
    if criteria is None:
        return None

    if criteria == EVENT_CRITERIA["medication"]:
        return TriggerCriteria(criteria, MEDICATION_ADDITIONAL_CRITERIA)
    return TriggerCriteria(criteria)
