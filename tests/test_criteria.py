"""Tests for named-event criteria compilation."""

import pytest

from conftest import make_action, make_plan, make_trigger
from medmorph_reporting.criteria import (
    MEDICATION_ADDITIONAL_CRITERIA,
    compile_named_event,
    event_subject,
    trigger_criteria,
)
from medmorph_reporting.plan import CUSTOM_EVENT_SYSTEM


@pytest.mark.parametrize(
    "code,expected",
    [
        ("new-encounter", "Encounter"),
        ("encounter-change", "Encounter"),
        ("encounter-start", "Encounter"),
        ("encounter-close", "Encounter"),
        ("modified-diagnosis", "Condition"),
        ("new-labresult", "Observation?category=laboratory"),
        ("new-order", "ServiceRequest"),
        ("procedure-change", "Procedure"),
        ("new-immunization", "Immunization"),
        ("demographic-change", "Patient"),
    ],
)
def test_compile_named_event(code, expected):
    assert compile_named_event(code) == expected


@pytest.mark.parametrize("code", ["foo-bar", "encounter", "new-spaceship", ""])
def test_unrecognised_events_have_no_criteria(code):
    """Unknown shapes and unknown subjects both yield nothing."""
    assert compile_named_event(code) is None


def test_event_subject_shapes():
    assert event_subject("new-labresult") == "labresult"
    assert event_subject("diagnosis-change") == "diagnosis"
    assert event_subject("labresult") is None


def _trigger(code, system=None):
    kwargs = {"system": system} if system else {}
    plan = make_plan(make_action("a", "initiate-reporting-workflow", trigger=[make_trigger(code, **kwargs)]))
    return plan.action[0].trigger[0]


def test_medication_trigger_carries_additional_criteria():
    """Medication events also subscribe to dispense, statement and administration."""
    compiled = trigger_criteria(_trigger("new-medication"))

    assert compiled.criteria == "Medication"
    assert compiled.additional == MEDICATION_ADDITIONAL_CRITERIA


def test_plain_trigger_has_no_additional_criteria():
    compiled = trigger_criteria(_trigger("new-encounter"))

    assert compiled.criteria == "Encounter"
    assert compiled.additional == ()


def test_custom_event_trigger():
    """The project vocabulary maps new-bundle onto Bundle notifications."""
    compiled = trigger_criteria(_trigger("new-bundle", CUSTOM_EVENT_SYSTEM))

    assert compiled.criteria == "Bundle"


def test_trigger_without_known_event():
    assert trigger_criteria(_trigger("foo-bar")) is None
    assert trigger_criteria(_trigger("new-bundle")) is None
