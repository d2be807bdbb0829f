"""Reporting plan interpreter.

Runs one action of a plan: materializes its inputs, checks its conditions,
runs ``after*`` related actions, dispatches on the action code, then runs
the remaining related actions. Related actions are looked up across the
whole plan; their timing offsets are not scheduled.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from enum import Enum

from medmorph_reporting.conditions import ExpressionEvaluator, check_conditions, fhirpath_evaluator
from medmorph_reporting.config import DEFAULT_PAGE_SIZE
from medmorph_reporting.context import RunContext
from medmorph_reporting.errors import (
    ActionNotFound,
    MissingActionCode,
    MissingOutputSpec,
    MissingReportEndpoint,
)
from medmorph_reporting.inputs import ActionInputs, build_action_inputs
from medmorph_reporting.plan import Action, Plan, RelatedAction
from medmorph_reporting.reports import (
    ReportSubmitter,
    check_validation_issues,
    find_report,
    strip_error_echo_profiles,
    subject_marker,
)
from medmorph_reporting.resources import (
    RUN_TAG_SYSTEM,
    SUBJECT_TAG_SYSTEM,
    add_tag,
    build_content_bundle,
    build_message_bundle,
)
from medmorph_reporting.store import FHIRStore

logger = logging.getLogger(__name__)

DEFAULT_SOURCE_ENDPOINT = "http://example.org/fhir/endpoint"


class ActionCode(str, Enum):
    """Semantic codes an action can carry."""

    INITIATE_REPORTING_WORKFLOW = "initiate-reporting-workflow"
    EXECUTE_REPORTING_WORKFLOW = "execute-reporting-workflow"
    CHECK_TRIGGER_CODES = "check-trigger-codes"
    EVALUATE_CONDITION = "evaluate-condition"
    EVALUATE_MEASURE = "evaluate-measure"
    CREATE_REPORT = "create-report"
    VALIDATE_REPORT = "validate-report"
    SUBMIT_REPORT = "submit-report"
    COMPLETE_REPORTING = "complete-reporting"
    CHECK_PARTICIPANT = "check-participant"
    CHECK_RESPONSE = "check-response"

    @classmethod
    def of(cls, action: Action) -> ActionCode:
        """Code of *action*.

        Raises:
            MissingActionCode: The action has no code or an unknown one.
        """
        code = action.semantic_code
        if code is None:
            raise MissingActionCode(action.id)
        try:
            return cls(code)
        except ValueError:
            raise MissingActionCode(action.id, code) from None


def find_action(actions: Sequence[Action], action_id: str) -> Action:
    """Depth-first, pre-order search for the first action with *action_id*.

    Raises:
        ActionNotFound: No action in the tree has the id.
    """
    found = _find(actions, action_id)
    if found is None:
        raise ActionNotFound(action_id)
    return found


def _find(actions: Sequence[Action], action_id: str) -> Action | None:
    for action in actions:
        if action.id == action_id:
            return action
        found = _find(action.action, action_id)
        if found is not None:
            return found
    return None


def split_related_actions(
    action: Action,
) -> tuple[list[RelatedAction], list[RelatedAction]]:
    """Split related actions into (run before dispatch, run after dispatch).

    ``after*`` relationships go first; before/concurrent ones follow the
    action's own work. Declaration order is kept within each group.
    """
    before_dispatch = [r for r in action.related_action if r.runs_before_dispatch]
    after_dispatch = [r for r in action.related_action if not r.runs_before_dispatch]
    return before_dispatch, after_dispatch


Handler = Callable[[Action, ActionInputs, RunContext], None]


class ActionInterpreter:
    """Executes a plan's actions against a resource store."""

    def __init__(
        self,
        plan: Plan,
        store: FHIRStore,
        submitter: ReportSubmitter | None = None,
        evaluator: ExpressionEvaluator = fhirpath_evaluator,
        page_size: int = DEFAULT_PAGE_SIZE,
        source_endpoint: str = DEFAULT_SOURCE_ENDPOINT,
    ) -> None:
        """Initialize the interpreter.

        Args:
            plan: Plan whose actions are run
            store: Resource store used for inputs and report persistence
            submitter: Delivers reports for submit-report actions
            evaluator: Evaluates FHIRPath conditions
            page_size: ``_count`` applied to every input query
            source_endpoint: MessageHeader source endpoint of created reports
        """
        self.plan = plan
        self.store = store
        self.submitter = submitter or ReportSubmitter()
        self.evaluator = evaluator
        self.page_size = page_size
        self.source_endpoint = source_endpoint

        self._handlers: dict[ActionCode, Handler] = {
            ActionCode.INITIATE_REPORTING_WORKFLOW: self._noop,
            ActionCode.CHECK_TRIGGER_CODES: self._noop,
            ActionCode.EVALUATE_CONDITION: self._noop,
            ActionCode.EXECUTE_REPORTING_WORKFLOW: self._execute_workflow,
            ActionCode.EVALUATE_MEASURE: self._noop,
            ActionCode.COMPLETE_REPORTING: self._noop,
            ActionCode.CHECK_PARTICIPANT: self._noop,
            ActionCode.CHECK_RESPONSE: self._noop,
            ActionCode.CREATE_REPORT: self._create_report,
            ActionCode.VALIDATE_REPORT: self._validate_report,
            ActionCode.SUBMIT_REPORT: self._submit_report,
        }

    def perform_action(self, action_id: str, context: RunContext) -> None:
        """Run the action with *action_id*, wherever it sits in the plan."""
        self._perform(find_action(self.plan.action, action_id), context)

    def _perform(self, action: Action, context: RunContext) -> None:
        code = ActionCode.of(action)
        logger.debug("Performing action %s (%s)", action.id, code.value)

        inputs = build_action_inputs(action, context, self.store, self.page_size)
        if not check_conditions(action, inputs, self.evaluator):
            return

        before_dispatch, after_dispatch = split_related_actions(action)
        for related in before_dispatch:
            self.perform_action(related.action_id, context)

        self._handlers[code](action, inputs, context)

        for related in after_dispatch:
            self.perform_action(related.action_id, context)

    # ── Dispatch handlers ────────────────────────────────────────────────

    def _noop(self, action: Action, inputs: ActionInputs, context: RunContext) -> None:
        logger.debug("Action %s needs no work", action.id)

    def _execute_workflow(self, action: Action, inputs: ActionInputs, context: RunContext) -> None:
        if action.action:
            self._perform(action.action[0], context)

    def _create_report(self, action: Action, inputs: ActionInputs, context: RunContext) -> None:
        if not any(output.type == "Bundle" for output in action.output):
            raise MissingOutputSpec(f"Action {action.id} declares no Bundle output")

        content = build_content_bundle(
            [resource for resources in inputs.values() for resource in resources]
        )
        report = build_message_bundle(
            [content],
            reason_code=action.semantic_code or ActionCode.CREATE_REPORT.value,
            source_endpoint=self.source_endpoint,
            destination_endpoint=context.report_endpoint,
        )
        add_tag(report, SUBJECT_TAG_SYSTEM, subject_marker(context))
        if context.run_tag:
            add_tag(report, RUN_TAG_SYSTEM, context.run_tag)

        stored = self.store.create(report)
        context.record_temporary(stored)
        logger.info("Created report Bundle/%s for %s", stored["id"], subject_marker(context))

    def _validate_report(self, action: Action, inputs: ActionInputs, context: RunContext) -> None:
        report = find_report(action, inputs, context)
        check_validation_issues(self.store.validate(report))
        logger.info("Report Bundle/%s passed validation", report.get("id"))

    def _submit_report(self, action: Action, inputs: ActionInputs, context: RunContext) -> None:
        if not context.report_endpoint:
            raise MissingReportEndpoint(f"Action {action.id} has no report endpoint to submit to")
        report = find_report(action, inputs, context)
        self.submitter.submit(
            strip_error_echo_profiles(report, context.report_endpoint),
            context.report_endpoint,
        )
