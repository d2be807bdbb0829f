"""Flask application receiving subscription notifications."""

from __future__ import annotations

import logging
from urllib.parse import unquote

from flask import Blueprint, Flask, current_app, jsonify, request

from medmorph_reporting.config import Settings
from medmorph_reporting.errors import ContextBuildError, ReportingError, StoreOperationFailed
from medmorph_reporting.reports import ReportSubmitter
from medmorph_reporting.store import FHIRStore, get_store
from medmorph_reporting.subscriptions import ACTION_HEADER, ENDPOINT_HEADER, PLAN_HEADER
from medmorph_reporting.workflow import load_plan, run_workflow

logger = logging.getLogger(__name__)

notifications_bp = Blueprint("notifications", __name__)


@notifications_bp.route("/health", methods=["GET"])
def health():
    return jsonify({"status": "ok"})


@notifications_bp.route("/notify", methods=["POST"])
def notify():
    """Run the plan action named in the headers for the posted resource.

    Required headers (URL-encoded): ``pd-to-process``, ``action-to-process``,
    ``report-endpoint``. Resources that cannot start a run are acknowledged
    without error. A body without an id is stored for the run and deleted
    afterwards.
    """
    missing = [
        name for name in (PLAN_HEADER, ACTION_HEADER, ENDPOINT_HEADER)
        if not request.headers.get(name)
    ]
    if missing:
        return jsonify({"error": f"Missing required headers: {', '.join(missing)}"}), 400

    resource = request.get_json(silent=True, force=True)
    if not isinstance(resource, dict) or not resource.get("resourceType"):
        return jsonify({"error": "Body must be a FHIR resource"}), 400

    plan_url = unquote(request.headers[PLAN_HEADER])
    action_id = unquote(request.headers[ACTION_HEADER])
    report_endpoint = unquote(request.headers[ENDPOINT_HEADER])

    store: FHIRStore = current_app.fhir_store
    settings: Settings = current_app.settings

    created = None
    try:
        if not resource.get("id"):
            resource = created = store.create(resource)
        plan = load_plan(store, plan_url)
        run_workflow(
            store,
            plan,
            action_id,
            resource["resourceType"],
            resource["id"],
            report_endpoint,
            settings=settings,
            submitter=current_app.report_submitter,
        )
    except ContextBuildError as e:
        logger.info("Notification not handled: %s", e)
        return jsonify({"status": "Resource cannot be handled"})
    except ReportingError as e:
        logger.exception("Reporting run failed")
        return jsonify({"error": str(e), "type": type(e).__name__}), 500
    finally:
        if created is not None:
            _discard(store, created)

    return jsonify({"status": "OK"})


def _discard(store: FHIRStore, resource: dict) -> None:
    """Delete a resource stored only so a run could read it."""
    try:
        store.delete(resource["resourceType"], resource["id"])
    except StoreOperationFailed as e:
        logger.warning(
            "Failed to delete %s/%s: %s", resource["resourceType"], resource["id"], e
        )


def create_app(
    settings: Settings | None = None,
    store: FHIRStore | None = None,
    submitter: ReportSubmitter | None = None,
) -> Flask:
    """Create and configure the Flask application.

    Args:
        settings: Configuration; read from the environment when omitted
        store: Resource store; built from settings when omitted
        submitter: Report submitter; built from settings when omitted

    Returns:
        Configured Flask application
    """
    app = Flask(__name__)

    settings = settings or Settings.from_env()
    app.settings = settings
    app.fhir_store = store or get_store(settings)
    app.report_submitter = submitter or ReportSubmitter(token=settings.report_auth_token)

    app.register_blueprint(notifications_bp)
    return app
