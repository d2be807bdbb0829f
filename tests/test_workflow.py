"""End-to-end tests for reporting runs."""

import pytest

from conftest import PLAN_URL, REPORT_ENDPOINT, REPORT_INPUT, make_action, make_plan, related
from medmorph_reporting.config import Settings
from medmorph_reporting.errors import PlanNotFound, ReportValidationFailed
from medmorph_reporting.resources import RUN_TAG_SYSTEM, has_tag
from medmorph_reporting.store import MemoryFHIRStore
from medmorph_reporting.workflow import load_plan, run_workflow

LABS = {
    "id": "labs",
    "type": "Observation",
    "codeFilter": [{"searchParam": "category=laboratory"}],
}


def _plan():
    return make_plan(
        make_action(
            "start",
            "initiate-reporting-workflow",
            relatedAction=[related("create", "before-start")],
        ),
        make_action(
            "create",
            "create-report",
            input=[LABS],
            output=[{"type": "Bundle"}],
            relatedAction=[related("validate", "before-start")],
        ),
        make_action(
            "validate",
            "validate-report",
            input=[REPORT_INPUT],
            relatedAction=[related("submit", "before-start")],
        ),
        make_action("submit", "submit-report", input=[REPORT_INPUT]),
    )


def _bundle_notification(patient, observation):
    return {
        "resourceType": "Bundle",
        "id": "incoming",
        "type": "collection",
        "entry": [
            {"fullUrl": "urn:uuid:pat", "resource": patient},
            {"fullUrl": "urn:uuid:obs", "resource": dict(observation, subject={"reference": "urn:uuid:pat"})},
        ],
    }


def test_load_plan_by_url():
    store = MemoryFHIRStore([dict(_plan().model_dump(by_alias=True, exclude_none=True), id="pd1")])

    assert load_plan(store, PLAN_URL).url == PLAN_URL


def test_load_plan_missing():
    with pytest.raises(PlanNotFound):
        load_plan(MemoryFHIRStore(), PLAN_URL)


def test_clinical_notification_run_submits_and_cleans_up(store, submitter):
    """The created report is submitted and then removed from the store."""
    run_workflow(store, _plan(), "start", "Observation", "obs1", REPORT_ENDPOINT, submitter=submitter)

    assert len(submitter.submitted) == 1
    report, endpoint = submitter.submitted[0]
    assert endpoint == REPORT_ENDPOINT
    content = report["entry"][1]["resource"]
    assert [e["resource"]["id"] for e in content["entry"]] == ["p1", "obs1"]

    assert store.all("Bundle") == []
    assert store.read("Observation", "obs1")["id"] == "obs1"


def test_bundle_notification_run_leaves_only_the_original(patient, observation, submitter):
    """Unpacked entries and the report are all deleted once the run ends."""
    store = MemoryFHIRStore([_bundle_notification(patient, observation)])

    run_workflow(store, _plan(), "start", "Bundle", "incoming", REPORT_ENDPOINT, submitter=submitter)

    report, _ = submitter.submitted[0]
    assert has_tag(report, RUN_TAG_SYSTEM)
    content = report["entry"][1]["resource"]
    resources = [e["resource"] for e in content["entry"]]
    assert [r["resourceType"] for r in resources] == ["Patient", "Observation"]
    assert resources[1]["subject"]["reference"] == f"Patient/{resources[0]['id']}"

    assert [r["id"] for r in store.all()] == ["incoming"]


def test_false_condition_ends_run_quietly(store, submitter):
    plan = make_plan(
        make_action(
            "start",
            "initiate-reporting-workflow",
            condition=[{"expression": {"language": "text/fhirpath", "expression": "false"}}],
            relatedAction=[related("create", "before-start")],
        ),
        make_action("create", "create-report", input=[LABS], output=[{"type": "Bundle"}]),
    )

    run_workflow(store, plan, "start", "Observation", "obs1", REPORT_ENDPOINT, submitter=submitter)

    assert submitter.submitted == []
    assert store.all("Bundle") == []


def test_failed_validation_still_cleans_up(store, submitter):
    store.validator = lambda resource: [{"severity": "error", "code": "structure"}]

    with pytest.raises(ReportValidationFailed):
        run_workflow(store, _plan(), "start", "Observation", "obs1", REPORT_ENDPOINT, submitter=submitter)

    assert submitter.submitted == []
    assert store.all("Bundle") == []
    assert len(store.deleted) == 1


def test_settings_page_size_applied(store, submitter):
    run_workflow(
        store,
        _plan(),
        "start",
        "Observation",
        "obs1",
        REPORT_ENDPOINT,
        settings=Settings(search_page_size=25),
        submitter=submitter,
    )

    assert "Observation?category=laboratory&_count=25" in store.queries
