"""Materialize an action's declared inputs by querying the resource store."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any

from medmorph_reporting.config import DEFAULT_PAGE_SIZE
from medmorph_reporting.context import RunContext
from medmorph_reporting.plan import Action, CodeFilter, DataRequirement
from medmorph_reporting.resources import profiles
from medmorph_reporting.store import FHIRStore

logger = logging.getLogger(__name__)

PATIENT_ID_PLACEHOLDER = "{{context.patientId}}"
PATIENT_INPUT = "patient"

ActionInputs = dict[str, list[dict[str, Any]]]


def _token_list(codings: Iterable[dict[str, Any]]) -> str:
    tokens = []
    for coding in codings:
        code = coding.get("code")
        if not code:
            continue
        system = coding.get("system")
        tokens.append(f"{system}|{code}" if system else code)
    return ",".join(tokens)


def code_filter_clause(code_filter: CodeFilter, store: FHIRStore) -> str:
    """Search clause for one code filter.

    In order: a literal search parameter (``name=value``), the expansion of a
    referenced value set, the filter's own code list, or a presence check.
    """
    if code_filter.search_param and "=" in code_filter.search_param:
        return code_filter.search_param

    attribute = code_filter.attribute
    if code_filter.value_set:
        return f"{attribute}={_token_list(store.valueset_codes(code_filter.value_set))}"
    if code_filter.code:
        codings = [coding.model_dump(exclude_none=True) for coding in code_filter.code]
        return f"{attribute}={_token_list(codings)}"
    return f"{attribute}:missing=false"


def build_query(
    requirement: DataRequirement,
    context: RunContext,
    store: FHIRStore,
    page_size: int = DEFAULT_PAGE_SIZE,
) -> str:
    """Search query for a data requirement, always with a fixed page size."""
    if requirement.query_pattern:
        query = requirement.query_pattern.replace(PATIENT_ID_PLACEHOLDER, context.patient_id)
    else:
        clauses = [code_filter_clause(f, store) for f in requirement.code_filter]
        query = f"{requirement.type}?{'&'.join(clauses)}"

    if "_count=" in query:
        return query
    if "?" not in query:
        query += "?"
    elif not query.endswith(("?", "&")):
        query += "&"
    return f"{query}_count={page_size}"


def _matches_profile(resource: dict[str, Any], requirement: DataRequirement) -> bool:
    if not requirement.profile:
        return True
    return bool(set(profiles(resource)) & set(requirement.profile))


def build_action_inputs(
    action: Action,
    context: RunContext,
    store: FHIRStore,
    page_size: int = DEFAULT_PAGE_SIZE,
) -> ActionInputs:
    """Build the named input sets for one invocation of *action*.

    The synthetic ``patient`` input is always present. When the run has a
    run tag, every input built so far is re-filtered to tagged resources
    each time a new input is added.

    Raises:
        StoreOperationFailed: A query against the store failed.
    """
    inputs: ActionInputs = {PATIENT_INPUT: [context.patient]}

    for requirement in action.input:
        query = build_query(requirement, context, store, page_size)
        logger.debug("Action %s input %s: %s", action.id, requirement.id, query)

        results = [r for r in store.search(query) if _matches_profile(r, requirement)]
        inputs[requirement.id or requirement.type] = results

        if context.run_tag:
            for name, resources in inputs.items():
                inputs[name] = [r for r in resources if context.carries_run_tag(r)]

    return inputs
