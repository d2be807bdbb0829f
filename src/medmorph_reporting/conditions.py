"""Evaluate an action's FHIRPath conditions against its inputs."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

import fhirpathpy

from medmorph_reporting.inputs import PATIENT_INPUT, ActionInputs
from medmorph_reporting.plan import Action

logger = logging.getLogger(__name__)

ExpressionEvaluator = Callable[[str, dict[str, Any], dict[str, Any]], list[Any]]


def fhirpath_evaluator(
    expression: str, resource: dict[str, Any], variables: dict[str, Any]
) -> list[Any]:
    """Evaluate a FHIRPath expression; inputs are reachable as ``%<inputId>``."""
    return fhirpathpy.evaluate(resource, expression, variables)


def check_conditions(
    action: Action,
    inputs: ActionInputs,
    evaluator: ExpressionEvaluator = fhirpath_evaluator,
) -> bool:
    """Return False as soon as one FHIRPath condition evaluates to ``false``.

    Conditions in other languages are not evaluated. Results other than a
    literal false (empty, true, non-boolean) let the action proceed.
    """
    patients = inputs.get(PATIENT_INPUT) or [{}]
    for condition in action.condition:
        if not condition.is_fhirpath or not condition.expression.expression:
            continue
        result = evaluator(condition.expression.expression, patients[0], dict(inputs))
        if result is False or result == [False]:
            logger.info(
                "Action %s stopped: condition %r is false",
                action.id,
                condition.expression.expression,
            )
            return False
    return True
