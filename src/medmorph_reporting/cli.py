"""MedMorph Reporting CLI - run reporting plans and manage their subscriptions."""

import json
import logging
import sys
from pathlib import Path

import typer
from dotenv import load_dotenv

from medmorph_reporting.config import Settings

# Load environment variables from .env
load_dotenv()

app = typer.Typer(help="Plan-driven public health reporting for FHIR clinical events")


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Configure logging for every command."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@app.command()
def serve(
    host: str = typer.Option("127.0.0.1", "--host", help="Interface to bind"),
    port: int = typer.Option(5000, "--port", help="Port to listen on"),
) -> None:
    """Serve the notification endpoint that subscriptions deliver to."""
    from medmorph_reporting.app import create_app

    create_app().run(host=host, port=port)


@app.command()
def run(
    resource_type: str = typer.Argument(..., help="Type of the notifying resource"),
    resource_id: str = typer.Argument(..., help="Id of the notifying resource"),
    plan_url: str | None = typer.Option(None, "--plan-url", help="PlanDefinition canonical URL"),
    action: str | None = typer.Option(None, "--action", "-a", help="Action id to start from"),
    report_endpoint: str | None = typer.Option(
        None, "--report-endpoint", help="Where the finished report is submitted"
    ),
) -> None:
    """Run one reporting workflow for a resource already in the FHIR store.

    Options default to PLAN_URL, ACTION_ID and REPORT_ENDPOINT from the
    environment.

    Example:

      medmorph-reporting run DiagnosticReport 123 --action start-workflow
    """
    from medmorph_reporting.store import get_store
    from medmorph_reporting.workflow import load_plan, run_workflow

    settings = Settings.from_env()
    settings = settings.model_copy(
        update={
            key: value
            for key, value in {
                "plan_url": plan_url,
                "action_id": action,
                "report_endpoint": report_endpoint,
            }.items()
            if value
        }
    )
    missing = settings.missing_run_coordinates()
    if missing:
        typer.echo(f"Error: missing configuration: {', '.join(missing)}", err=True)
        sys.exit(2)

    try:
        store = get_store(settings)
        plan = load_plan(store, settings.plan_url)
        run_workflow(
            store,
            plan,
            settings.action_id,
            resource_type,
            resource_id,
            settings.report_endpoint,
            settings=settings,
        )
        typer.echo(f"✓ Ran {settings.action_id} for {resource_type}/{resource_id}")
    except Exception as exc:
        typer.echo(f"Error: {exc}", err=True)
        sys.exit(1)


@app.command()
def subscriptions(
    plan_file: str = typer.Argument(..., help="PlanDefinition JSON or YAML file"),
    out: str | None = typer.Option(None, "--out", "-o", help="Write subscriptions to this file"),
    register: bool = typer.Option(False, "--register", help="Register them in the FHIR store"),
    notification_endpoint: str | None = typer.Option(
        None, "--notification-endpoint", help="Endpoint subscriptions deliver to"
    ),
    report_endpoint: str | None = typer.Option(
        None, "--report-endpoint", help="Where finished reports are submitted"
    ),
) -> None:
    """Generate one Subscription per action trigger in a plan."""
    from medmorph_reporting.plan import Plan
    from medmorph_reporting.subscriptions import build_subscriptions, register_subscriptions

    settings = Settings.from_env()
    notification_endpoint = notification_endpoint or settings.notification_endpoint
    report_endpoint = report_endpoint or settings.report_endpoint
    if not notification_endpoint or not report_endpoint:
        typer.echo("Error: notification and report endpoints are required", err=True)
        sys.exit(2)

    try:
        plan = Plan.from_file(plan_file)
        specs = build_subscriptions(plan, notification_endpoint, report_endpoint)
        resources = [spec.resource for spec in specs]

        if out:
            Path(out).write_text(json.dumps(resources, indent=2))
            typer.echo(f"✓ Wrote {len(resources)} subscriptions: {out}")
        else:
            typer.echo(json.dumps(resources, indent=2))

        if register:
            from medmorph_reporting.store import get_store

            registered = register_subscriptions(get_store(settings), specs)
            typer.echo(f"✓ Registered {len(registered)} subscriptions")
    except Exception as exc:
        typer.echo(f"Error: {exc}", err=True)
        sys.exit(1)


@app.command("sample-report")
def sample_report(
    out: str = typer.Option("sample-content-bundle.json", "--out", "-o", help="Output file"),
    patient_id: str = typer.Option("123", "--patient", help="Patient id"),
) -> None:
    """Write a sample pathology content bundle, e.g. to exercise a plan."""
    from medmorph_reporting.resources import build_content_bundle, build_pathology_report

    observations = [
        {
            "resourceType": "Observation",
            "id": obs_id,
            "status": "final",
            "category": [{"coding": [{"code": "laboratory"}]}],
            "code": {"text": "Pathology finding"},
            "subject": {"reference": f"Patient/{patient_id}"},
        }
        for obs_id in ("789", "101")
    ]
    report = build_pathology_report(
        {"reference": f"Patient/{patient_id}"},
        {"reference": "Practitioner/456"},
        [{"reference": f"Observation/{obs['id']}"} for obs in observations],
    )
    patient = {
        "resourceType": "Patient",
        "id": patient_id,
        "name": [{"family": "Doe", "given": ["John"]}],
    }
    bundle = build_content_bundle([patient, report, *observations])

    Path(out).write_text(json.dumps(bundle, indent=2))
    typer.echo(f"✓ Wrote sample bundle with {len(bundle['entry'])} entries: {out}")


if __name__ == "__main__":
    app()
