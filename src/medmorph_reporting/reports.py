"""Locate, check and deliver report bundles."""

from __future__ import annotations

import copy
import json
import logging
from typing import Any
from urllib.parse import urlsplit

import requests

from medmorph_reporting.context import RunContext
from medmorph_reporting.errors import (
    ReportNotFound,
    ReportValidationFailed,
    StoreOperationFailed,
)
from medmorph_reporting.inputs import ActionInputs
from medmorph_reporting.plan import Action
from medmorph_reporting.resources import SUBJECT_TAG_SYSTEM, has_tag

logger = logging.getLogger(__name__)

# Any of these blocks submission
BLOCKING_SEVERITIES = frozenset({"fatal", "error", "warning"})


def subject_marker(context: RunContext) -> str:
    """Tag code linking a report to the run's subject."""
    return f"Patient/{context.patient_id}"


def find_report(action: Action, inputs: ActionInputs, context: RunContext) -> dict[str, Any]:
    """Pick the run's report among the action's Bundle-typed inputs.

    A candidate is a message bundle tagged for the current subject and,
    when the run has one, the run tag. The most recently updated wins.

    Raises:
        ReportNotFound: No candidate exists.
    """
    candidates: list[dict[str, Any]] = []
    for requirement in action.input:
        if requirement.type != "Bundle":
            continue
        for bundle in inputs.get(requirement.id or requirement.type, []):
            if (
                bundle.get("type") == "message"
                and has_tag(bundle, SUBJECT_TAG_SYSTEM, subject_marker(context))
                and context.carries_run_tag(bundle)
            ):
                candidates.append(bundle)

    if not candidates:
        raise ReportNotFound(f"No report for {subject_marker(context)} in inputs of {action.id}")

    latest = candidates[0]
    for bundle in candidates[1:]:
        if bundle.get("meta", {}).get("lastUpdated", "") >= latest.get("meta", {}).get(
            "lastUpdated", ""
        ):
            latest = bundle
    return latest


def check_validation_issues(issues: list[dict[str, Any]]) -> None:
    """Raise when any validation issue is a warning or worse."""
    blocking = [issue for issue in issues if issue.get("severity") in BLOCKING_SEVERITIES]
    if blocking:
        raise ReportValidationFailed(blocking)


def _origin(url: str) -> str:
    parts = urlsplit(url)
    return f"{parts.scheme}://{parts.netloc}"


def strip_error_echo_profiles(report: dict[str, Any], endpoint: str) -> dict[str, Any]:
    """Copy of *report* without profiles hosted by the receiving endpoint.

    Receivers echo errors back for profiles under their own origin, so those
    are removed before delivery. Everything else is left as is.
    """
    stripped = copy.deepcopy(report)
    meta = stripped.get("meta")
    if not meta or "profile" not in meta:
        return stripped

    origin = _origin(endpoint)
    kept = [p for p in meta["profile"] if not p.startswith(origin)]
    if kept:
        meta["profile"] = kept
    else:
        del meta["profile"]
    return stripped


class ReportSubmitter:
    """POST finished reports to a receiving endpoint with bearer authentication."""

    def __init__(self, token: str | None = None, session: requests.Session | None = None) -> None:
        self.token = token
        self.session = session or requests.Session()

    def submit(self, report: dict[str, Any], endpoint: str) -> requests.Response:
        """Deliver *report* to *endpoint*.

        Raises:
            StoreOperationFailed: The POST failed or was rejected.
        """
        headers = {"Content-Type": "application/fhir+json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"

        try:
            response = self.session.post(endpoint, data=json.dumps(report), headers=headers)
            response.raise_for_status()
        except requests.HTTPError as e:
            status = e.response.status_code if e.response is not None else None
            raise StoreOperationFailed(f"Report submission to {endpoint} failed: {e}", status) from e
        except requests.RequestException as e:
            raise StoreOperationFailed(f"Report submission to {endpoint} failed: {e}") from e

        logger.info("Submitted report %s to %s", report.get("id"), endpoint)
        return response
