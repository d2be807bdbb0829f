"""Shared fixtures for reporting tests."""

from typing import Any

import pytest
import requests

from medmorph_reporting.context import RunContext
from medmorph_reporting.plan import NAMED_EVENT_EXTENSION, NAMED_EVENT_SYSTEM, Plan
from medmorph_reporting.resources import SUBJECT_TAG_SYSTEM
from medmorph_reporting.store import MemoryFHIRStore

ACTION_CODE_SYSTEM = "http://hl7.org/fhir/us/medmorph/CodeSystem/us-ph-plandefinition-actions"
PLAN_URL = "http://example.org/fhir/PlanDefinition/cancer-reporting"
REPORT_ENDPOINT = "https://receiver.example.org/fhir/$process-message"


def make_action(action_id: str, code: str | None, **fields: Any) -> dict[str, Any]:
    """PlanDefinition.action dict with the given semantic code."""
    action: dict[str, Any] = {"id": action_id, **fields}
    if code is not None:
        action["code"] = [{"coding": [{"system": ACTION_CODE_SYSTEM, "code": code}]}]
    return action


def make_trigger(code: str, system: str = NAMED_EVENT_SYSTEM) -> dict[str, Any]:
    return {
        "type": "named-event",
        "extension": [
            {
                "url": NAMED_EVENT_EXTENSION,
                "valueCodeableConcept": {"coding": [{"system": system, "code": code}]},
            }
        ],
    }


def related(action_id: str, relationship: str) -> dict[str, Any]:
    return {"actionId": action_id, "relationship": relationship}


def make_plan(*actions: dict[str, Any]) -> Plan:
    return Plan.from_fhir(
        {
            "resourceType": "PlanDefinition",
            "url": PLAN_URL,
            "name": "CancerReporting",
            "version": "1.0.0",
            "status": "active",
            "action": list(actions),
        }
    )


REPORT_INPUT = {
    "id": "report",
    "type": "Bundle",
    "extension": [
        {
            "url": "http://hl7.org/fhir/us/medmorph/StructureDefinition/ext-fhirquerypattern",
            "valueString": f"Bundle?_tag={SUBJECT_TAG_SYSTEM}|Patient/{{{{context.patientId}}}}",
        }
    ],
}


@pytest.fixture
def patient() -> dict[str, Any]:
    return {
        "resourceType": "Patient",
        "id": "p1",
        "identifier": [{"system": "urn:mrn", "value": "MRN-1"}],
        "name": [{"family": "Doe", "given": ["Jane"]}],
    }


@pytest.fixture
def observation() -> dict[str, Any]:
    return {
        "resourceType": "Observation",
        "id": "obs1",
        "status": "final",
        "category": [{"coding": [{"code": "laboratory"}]}],
        "code": {"coding": [{"system": "http://loinc.org", "code": "22637-3"}]},
        "subject": {"reference": "Patient/p1"},
    }


@pytest.fixture
def store(patient: dict[str, Any], observation: dict[str, Any]) -> MemoryFHIRStore:
    return MemoryFHIRStore([patient, observation])


@pytest.fixture
def context(patient: dict[str, Any], observation: dict[str, Any]) -> RunContext:
    return RunContext(
        patient=patient, notification=observation, report_endpoint=REPORT_ENDPOINT
    )


class RecordingSubmitter:
    """Stands in for ReportSubmitter and keeps what it was asked to send."""

    def __init__(self) -> None:
        self.submitted: list[tuple[dict[str, Any], str]] = []

    def submit(self, report: dict[str, Any], endpoint: str) -> None:
        self.submitted.append((report, endpoint))


@pytest.fixture
def submitter() -> RecordingSubmitter:
    return RecordingSubmitter()


class FakeResponse:
    """Minimal ``requests.Response`` stand-in; ``empty`` bodies fail to decode."""

    def __init__(self, payload: Any = None, status_code: int = 200, empty: bool = False) -> None:
        self.payload = {} if payload is None else payload
        self.status_code = status_code
        self.empty = empty

    def json(self) -> Any:
        if self.empty:
            raise requests.JSONDecodeError("Expecting value", "", 0)
        return self.payload

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error", response=self)


class FakeSession:
    """Replays canned responses keyed by (method, url) and records calls."""

    def __init__(self, responses: dict[tuple[str, str], Any]) -> None:
        self.responses = responses
        self.calls: list[tuple[str, str, dict[str, Any]]] = []
        self.headers: dict[str, str] = {}
        self.default = FakeResponse(status_code=404)

    def request(self, method: str, url: str, **kwargs: Any) -> Any:
        self.calls.append((method, url, kwargs))
        response = self.responses.get((method, url), self.default)
        if isinstance(response, Exception):
            raise response
        return response
