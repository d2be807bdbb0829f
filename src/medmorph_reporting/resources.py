"""Builders for the FHIR resources this service emits, plus meta.tag helpers."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import Any

from medmorph_reporting.fhir_spec import to_model

MEDMORPH_SD = "http://hl7.org/fhir/us/medmorph/StructureDefinition"
MESSAGE_HEADER_PROFILE = f"{MEDMORPH_SD}/us-ph-messageheader"
CONTENT_BUNDLE_PROFILE = f"{MEDMORPH_SD}/us-ph-content-bundle"
INITIATION_TYPE_EXTENSION = f"{MEDMORPH_SD}/us-ph-report-initiation-type"
INITIATION_TYPE_SYSTEM = (
    "http://hl7.org/fhir/us/medmorph/ValueSet/us-ph-report-initiation-type-valueset"
)
PATHOLOGY_REPORT_PROFILE = (
    "http://hl7.org/fhir/us/cancer-reporting/StructureDefinition/us-pathology-diagnostic-report"
)
BACKPORT_SUBSCRIPTION_PROFILE = (
    "http://hl7.org/fhir/uv/subscriptions-backport/StructureDefinition/backport-subscription"
)
ADDITIONAL_CRITERIA_EXTENSION = (
    "http://hl7.org/fhir/uv/subscriptions-backport/StructureDefinition/"
    "backport-additional-criteria"
)

MESSAGE_TYPE_SYSTEM = "http://example.org/fhir/message-types"
NAMED_EVENT_URL = "http://example.org/fhir/named-events"

PROJECT_TAG_SYSTEM = "http://example.org/fhir/tags"
SERVER_GENERATED = "server-generated"
BOT_GENERATED = "bot-generated"
RUN_TAG_SYSTEM = "http://example.org/fhir/tags/workflow-run"
SUBJECT_TAG_SYSTEM = "http://example.org/fhir/tags/report-subject"

DEFAULT_INITIATION_TYPE = "subscription-notification"
DEFAULT_EVENT_CODE = "cancer-report-message"


# ── meta.tag helpers ──────────────────────────────────────────────────────


def add_tag(resource: dict[str, Any], system: str, code: str) -> dict[str, Any]:
    """Append a tag to ``meta.tag`` (in place) unless already present."""
    tags = resource.setdefault("meta", {}).setdefault("tag", [])
    if not any(t.get("system") == system and t.get("code") == code for t in tags):
        tags.append({"system": system, "code": code})
    return resource


def has_tag(resource: dict[str, Any], system: str, code: str | None = None) -> bool:
    """True when the resource carries a tag from *system* (with *code*, if given)."""
    return any(
        tag.get("system") == system and (code is None or tag.get("code") == code)
        for tag in resource.get("meta", {}).get("tag", [])
    )


def is_server_generated(resource: dict[str, Any]) -> bool:
    return has_tag(resource, PROJECT_TAG_SYSTEM, SERVER_GENERATED)


def profiles(resource: dict[str, Any]) -> list[str]:
    return list(resource.get("meta", {}).get("profile", []))


def new_run_tag() -> str:
    """A fresh, globally unique run tag code."""
    return str(uuid.uuid4())


def _urn_uuid() -> str:
    return f"urn:uuid:{uuid.uuid4()}"


# ── Builders ──────────────────────────────────────────────────────────────


def build_content_bundle(resources: list[dict[str, Any]]) -> dict[str, Any]:
    """Wrap resources in a public-health content bundle (``collection``)."""
    return {
        "resourceType": "Bundle",
        "type": "collection",
        "meta": {"profile": [CONTENT_BUNDLE_PROFILE]},
        "entry": [{"resource": resource} for resource in resources],
    }


def build_message_header(
    initiation_type: str,
    event_code: str,
    reason_code: str,
    source_endpoint: str,
    destination_endpoint: str | None = None,
    sender: str | None = None,
) -> dict[str, Any]:
    """Build the MessageHeader that opens a report message.

    The header is checked against the R4B MessageHeader model before it is
    returned.

    Args:
        initiation_type: Report initiation type code
        event_code: Message event code
        reason_code: Named event the report answers (the creating action's code)
        source_endpoint: Endpoint of this system
        destination_endpoint: Endpoint of the receiver, if known
        sender: Reference to the sending organization

    Returns:
        MessageHeader resource dict
    """
    header: dict[str, Any] = {
        "resourceType": "MessageHeader",
        "id": str(uuid.uuid4()),
        "meta": {
            "profile": [MESSAGE_HEADER_PROFILE],
            "tag": [{"system": PROJECT_TAG_SYSTEM, "code": SERVER_GENERATED}],
        },
        "extension": [
            {
                "url": INITIATION_TYPE_EXTENSION,
                "valueCodeableConcept": {
                    "coding": [{"system": INITIATION_TYPE_SYSTEM, "code": initiation_type}]
                },
            }
        ],
        "eventCoding": {"system": MESSAGE_TYPE_SYSTEM, "code": event_code},
        "source": {"endpoint": source_endpoint},
        "reason": {"coding": [{"system": NAMED_EVENT_URL, "code": reason_code}]},
    }
    if destination_endpoint:
        header["destination"] = [{"endpoint": destination_endpoint}]
    if sender:
        header["sender"] = {"reference": sender}

    to_model(header)
    return header


def build_message_bundle(
    content_bundles: list[dict[str, Any]],
    reason_code: str,
    source_endpoint: str,
    destination_endpoint: str | None = None,
    initiation_type: str = DEFAULT_INITIATION_TYPE,
    event_code: str = DEFAULT_EVENT_CODE,
) -> dict[str, Any]:
    """Build a report message: MessageHeader first, then the content bundles."""
    header = build_message_header(
        initiation_type=initiation_type,
        event_code=event_code,
        reason_code=reason_code,
        source_endpoint=source_endpoint,
        destination_endpoint=destination_endpoint,
    )
    entries = [{"fullUrl": f"urn:uuid:{header['id']}", "resource": header}]
    entries.extend({"fullUrl": _urn_uuid(), "resource": bundle} for bundle in content_bundles)

    return {
        "resourceType": "Bundle",
        "type": "message",
        "timestamp": datetime.now(UTC).isoformat(),
        "meta": {"tag": [{"system": PROJECT_TAG_SYSTEM, "code": SERVER_GENERATED}]},
        "entry": entries,
    }


def build_pathology_report(
    subject: dict[str, Any],
    performer: dict[str, Any],
    results: list[dict[str, Any]],
) -> dict[str, Any]:
    """US public-health pathology DiagnosticReport referencing its observations."""
    return {
        "resourceType": "DiagnosticReport",
        "meta": {"profile": [PATHOLOGY_REPORT_PROFILE]},
        "status": "final",
        "category": [
            {
                "coding": [
                    {
                        "system": "http://terminology.hl7.org/CodeSystem/v2-0074",
                        "code": "PAT",
                        "display": "Pathology",
                    }
                ]
            }
        ],
        "code": {
            "coding": [
                {
                    "system": "http://loinc.org",
                    "code": "60568-3",
                    "display": "Pathology Synoptic report",
                }
            ]
        },
        "subject": subject,
        "performer": [performer],
        "result": results,
    }


def build_subscription(
    criteria: str,
    endpoint: str,
    headers: dict[str, str],
    additional_criteria: list[str] | None = None,
) -> dict[str, Any]:
    """Backport rest-hook Subscription delivering to *endpoint*."""
    subscription: dict[str, Any] = {
        "resourceType": "Subscription",
        "meta": {
            "profile": [BACKPORT_SUBSCRIPTION_PROFILE],
            "tag": [{"system": PROJECT_TAG_SYSTEM, "code": BOT_GENERATED}],
        },
        "status": "active",
        "reason": "MedMorph subscription",
        "criteria": criteria,
        "channel": {
            "type": "rest-hook",
            "endpoint": endpoint,
            "payload": "application/fhir+json",
            "header": [f"{key}: {value}" for key, value in headers.items()],
        },
    }
    if additional_criteria:
        subscription["_criteria"] = {
            "extension": [
                {"url": ADDITIONAL_CRITERIA_EXTENSION, "valueString": extra}
                for extra in additional_criteria
            ]
        }
    return subscription
