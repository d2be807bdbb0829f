"""Tests for the notification endpoint."""

import pytest

from conftest import PLAN_URL, REPORT_ENDPOINT, make_action, make_plan, related
from medmorph_reporting.app import create_app
from medmorph_reporting.config import Settings
from medmorph_reporting.subscriptions import routing_headers


@pytest.fixture
def plan_resource():
    plan = make_plan(
        make_action(
            "start",
            "initiate-reporting-workflow",
            relatedAction=[related("create", "before-start")],
        ),
        make_action(
            "create",
            "create-report",
            input=[{"id": "labs", "type": "Observation", "codeFilter": [{"searchParam": "category=laboratory"}]}],
            output=[{"type": "Bundle"}],
        ),
        make_action("broken", "create-report"),
    )
    return dict(plan.model_dump(by_alias=True, exclude_none=True), id="pd1")


@pytest.fixture
def client(store, submitter, plan_resource):
    store.put(plan_resource)
    app = create_app(settings=Settings(), store=store, submitter=submitter)
    app.config["TESTING"] = True
    return app.test_client()


def _headers(action_id="start"):
    return routing_headers(PLAN_URL, action_id, REPORT_ENDPOINT)


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.get_json() == {"status": "ok"}


def test_missing_headers_rejected(client, observation):
    response = client.post("/notify", json=observation)

    assert response.status_code == 400
    assert "pd-to-process" in response.get_json()["error"]


def test_non_resource_body_rejected(client):
    response = client.post("/notify", json=["not", "a", "resource"], headers=_headers())

    assert response.status_code == 400


def test_notification_runs_plan(client, store, observation):
    response = client.post("/notify", json=observation, headers=_headers())

    assert response.status_code == 200
    assert response.get_json() == {"status": "OK"}
    assert store.all("Bundle") == []


def test_resource_without_id_is_run_and_removed(client, store, submitter, observation):
    """An id-less body is stored for the run only; the store ends as it began."""
    before = {(r["resourceType"], r["id"]) for r in store.all()}
    new_observation = {k: v for k, v in observation.items() if k != "id"}

    response = client.post("/notify", json=new_observation, headers=_headers())

    assert response.status_code == 200
    assert response.get_json() == {"status": "OK"}
    assert {(r["resourceType"], r["id"]) for r in store.all()} == before
    assert len(store.deleted) == 2


def test_resource_without_id_removed_when_run_fails(client, store, observation):
    before = {(r["resourceType"], r["id"]) for r in store.all()}
    new_observation = {k: v for k, v in observation.items() if k != "id"}

    response = client.post("/notify", json=new_observation, headers=_headers("broken"))

    assert response.status_code == 500
    assert {(r["resourceType"], r["id"]) for r in store.all()} == before


def test_bundle_without_id_removed_when_not_handled(client, store, observation):
    """A bundle with no Patient cannot start a run and leaves no copy behind."""
    bundle = {"resourceType": "Bundle", "type": "collection", "entry": [{"resource": observation}]}

    response = client.post("/notify", json=bundle, headers=_headers())

    assert response.get_json() == {"status": "Resource cannot be handled"}
    assert store.all("Bundle") == []


def test_unresolvable_resource_acknowledged(client, store):
    orphan = {"resourceType": "Condition", "id": "c1"}
    store.put(orphan)

    response = client.post("/notify", json=orphan, headers=_headers())

    assert response.status_code == 200
    assert response.get_json() == {"status": "Resource cannot be handled"}


def test_workflow_failure_reported(client, observation):
    response = client.post("/notify", json=observation, headers=_headers("broken"))

    assert response.status_code == 500
    assert response.get_json()["type"] == "MissingOutputSpec"


def test_unknown_plan_reported(client, observation):
    headers = routing_headers("http://example.org/fhir/PlanDefinition/none", "start", REPORT_ENDPOINT)

    response = client.post("/notify", json=observation, headers=headers)

    assert response.status_code == 500
    assert response.get_json()["type"] == "PlanNotFound"
