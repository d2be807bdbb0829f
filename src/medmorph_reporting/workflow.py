"""Entry point for one reporting run: load the plan, build context, run, tear down."""

from __future__ import annotations

import logging
from urllib.parse import quote

from medmorph_reporting.conditions import ExpressionEvaluator, fhirpath_evaluator
from medmorph_reporting.config import Settings
from medmorph_reporting.context import workflow_context
from medmorph_reporting.errors import PlanNotFound
from medmorph_reporting.interpreter import ActionInterpreter
from medmorph_reporting.plan import Plan
from medmorph_reporting.reports import ReportSubmitter
from medmorph_reporting.store import FHIRStore

logger = logging.getLogger(__name__)


def load_plan(store: FHIRStore, plan_url: str) -> Plan:
    """Fetch the PlanDefinition with canonical *plan_url* from the store."""
    resource = store.search_one(f"PlanDefinition?url={quote(plan_url, safe='')}")
    if resource is None:
        raise PlanNotFound(f"No PlanDefinition with url {plan_url}")
    return Plan.from_fhir(resource)


def run_workflow(
    store: FHIRStore,
    plan: Plan,
    action_id: str,
    resource_type: str,
    resource_id: str,
    report_endpoint: str | None,
    settings: Settings | None = None,
    submitter: ReportSubmitter | None = None,
    evaluator: ExpressionEvaluator = fhirpath_evaluator,
) -> None:
    """Run *action_id* of *plan* for the notifying resource.

    Temporary resources are removed when the run ends, whether it succeeds,
    stops on a false condition, or raises.
    """
    settings = settings or Settings()
    interpreter = ActionInterpreter(
        plan,
        store,
        submitter=submitter or ReportSubmitter(token=settings.report_auth_token),
        evaluator=evaluator,
        page_size=settings.search_page_size,
        source_endpoint=settings.message_source_endpoint,
    )
    logger.info(
        "Running %s action %s for %s/%s", plan.url, action_id, resource_type, resource_id
    )
    with workflow_context(
        store,
        resource_type,
        resource_id,
        report_endpoint=report_endpoint,
        patient_identifier_system=settings.patient_identifier_system,
    ) as context:
        interpreter.perform_action(action_id, context)
