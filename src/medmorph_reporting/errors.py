"""Exception hierarchy for the reporting workflow."""

from __future__ import annotations

from typing import Any


class ReportingError(Exception):
    """Base class for every failure raised while running a reporting plan."""


class PlanNotFound(ReportingError):
    """No PlanDefinition with the requested canonical URL is stored."""


class ActionNotFound(ReportingError):
    """No action in the plan's action tree has the requested id."""

    def __init__(self, action_id: str) -> None:
        super().__init__(f"Action '{action_id}' not found in plan")
        self.action_id = action_id


class MissingActionCode(ReportingError):
    """An action has no recognised semantic code."""

    def __init__(self, action_id: str | None, code: str | None = None) -> None:
        if code:
            message = f"Action '{action_id}' has unrecognised code '{code}'"
        else:
            message = f"Action '{action_id}' has no code"
        super().__init__(message)
        self.action_id = action_id
        self.code = code


class MissingOutputSpec(ReportingError):
    """A create-report action declares no Bundle output."""


class ReportNotFound(ReportingError):
    """The report bundle could not be located among the action inputs."""


class MissingReportEndpoint(ReportingError):
    """A submit-report action ran without a destination endpoint."""


class ReportValidationFailed(ReportingError):
    """The validator returned blocking issues for a report."""

    def __init__(self, issues: list[dict[str, Any]]) -> None:
        details = "; ".join(
            f"{issue.get('severity')}: {issue.get('diagnostics') or issue.get('code')}"
            for issue in issues
        )
        super().__init__(f"Report failed validation ({details})")
        self.issues = issues


class ContextBuildError(ReportingError):
    """The notifying resource cannot start a reporting run."""


class PatientNotFound(ContextBuildError):
    """The subject of the notifying resource could not be resolved."""


class SelfGeneratedBundleIgnored(ContextBuildError):
    """The notifying bundle was produced by this service."""


class StoreOperationFailed(ReportingError):
    """A call to the resource store or report endpoint failed."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
