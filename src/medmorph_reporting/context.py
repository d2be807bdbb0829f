"""Per-run workflow context: subject resolution, temporary resources, teardown."""

from __future__ import annotations

import copy
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

from medmorph_reporting.errors import PatientNotFound, SelfGeneratedBundleIgnored
from medmorph_reporting.resources import (
    RUN_TAG_SYSTEM,
    add_tag,
    has_tag,
    is_server_generated,
    new_run_tag,
)
from medmorph_reporting.store import FHIRStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResourceRef:
    """Type and id of a stored resource."""

    resource_type: str
    id: str

    @property
    def reference(self) -> str:
        return f"{self.resource_type}/{self.id}"


@dataclass
class RunContext:
    """Ephemeral state of one reporting run, passed through every action."""

    patient: dict[str, Any]
    notification: dict[str, Any]
    report_endpoint: str | None = None
    run_tag: str | None = None
    temporary_resources: list[ResourceRef] = field(default_factory=list)

    @property
    def patient_id(self) -> str:
        return str(self.patient.get("id", ""))

    def record_temporary(self, resource: dict[str, Any]) -> ResourceRef:
        """Remember a stored resource so teardown deletes it."""
        ref = ResourceRef(resource["resourceType"], resource["id"])
        self.temporary_resources.append(ref)
        return ref

    def carries_run_tag(self, resource: dict[str, Any]) -> bool:
        """True when no run tag is in play or the resource carries it."""
        return self.run_tag is None or has_tag(resource, RUN_TAG_SYSTEM, self.run_tag)


def build_context(
    store: FHIRStore,
    resource_type: str,
    resource_id: str,
    report_endpoint: str | None = None,
    patient_identifier_system: str | None = None,
) -> RunContext:
    """Build the run context for a notifying resource.

    Bundles are unpacked: every entry is tagged with a fresh run tag and
    stored, so actions can query them like any other data. The stored
    copies are recorded for teardown, and removed again if unpacking fails
    part way. For other resources the subject is resolved through the store.

    Raises:
        SelfGeneratedBundleIgnored: The bundle was produced by this service.
        PatientNotFound: No subject could be resolved.
        StoreOperationFailed: A store call failed.
    """
    notification = store.read(resource_type, resource_id)

    if resource_type == "Bundle":
        return _context_from_bundle(store, notification, report_endpoint)

    patient = _resolve_subject(store, notification, patient_identifier_system)
    return RunContext(patient=patient, notification=notification, report_endpoint=report_endpoint)


def _context_from_bundle(
    store: FHIRStore, bundle: dict[str, Any], report_endpoint: str | None
) -> RunContext:
    if is_server_generated(bundle):
        raise SelfGeneratedBundleIgnored(
            f"Bundle/{bundle.get('id')} was generated by this service"
        )

    entries = [entry for entry in bundle.get("entry", []) if "resource" in entry]
    resources = [entry["resource"] for entry in entries]
    patient_entry = next(
        (e for e in entries if e["resource"].get("resourceType") == "Patient"), None
    )
    if patient_entry is None:
        raise PatientNotFound(f"Bundle/{bundle.get('id')} contains no Patient")
    patient = patient_entry["resource"]

    context = RunContext(
        patient={},
        notification=bundle,
        report_endpoint=report_endpoint,
        run_tag=new_run_tag(),
    )
    logger.info("Unpacking Bundle/%s under run tag %s", bundle.get("id"), context.run_tag)

    try:
        stored_patient = _store_tagged(store, context, patient)
        context.patient = stored_patient

        # Entries still point at the patient's bundle-local identity
        new_reference = f"Patient/{stored_patient['id']}"
        old_references = {
            ref
            for ref in (patient_entry.get("fullUrl"), f"Patient/{patient.get('id')}")
            if ref
        }
        for resource in resources:
            if resource is not patient:
                rewritten = _rewrite_references(resource, old_references, new_reference)
                _store_tagged(store, context, rewritten)
    except Exception:
        teardown_context(store, context)
        raise

    return context


def _store_tagged(store: FHIRStore, context: RunContext, resource: dict[str, Any]) -> dict[str, Any]:
    tagged = add_tag(copy.deepcopy(resource), RUN_TAG_SYSTEM, context.run_tag or "")
    stored = store.create(tagged)
    context.record_temporary(stored)
    return stored


def _rewrite_references(obj: Any, old: set[str], new: str) -> Any:
    """Copy of *obj* with every ``reference`` in *old* replaced by *new*."""
    if isinstance(obj, dict):
        rewritten: dict[str, Any] = {}
        for key, value in obj.items():
            if key == "reference" and isinstance(value, str) and value in old:
                rewritten[key] = new
            else:
                rewritten[key] = _rewrite_references(value, old, new)
        return rewritten
    if isinstance(obj, list):
        return [_rewrite_references(item, old, new) for item in obj]
    return obj


def _resolve_subject(
    store: FHIRStore,
    resource: dict[str, Any],
    identifier_system: str | None,
) -> dict[str, Any]:
    """Find the Patient a clinical resource is about."""
    if resource.get("resourceType") == "Patient":
        return resource

    subject = resource.get("subject") or {}
    identifier = subject.get("identifier") or {}
    reference = subject.get("reference") or ""
    query = None
    if identifier.get("value"):
        query = f"Patient?identifier={identifier.get('system') or ''}|{identifier['value']}"
    elif reference.startswith("Patient/"):
        patient_id = reference.split("/", 1)[1]
        if identifier_system:
            query = f"Patient?identifier={identifier_system}|{patient_id}"
        else:
            query = f"Patient?_id={patient_id}"

    if query is None:
        raise PatientNotFound(
            f"{resource.get('resourceType')}/{resource.get('id')} has no patient subject"
        )

    patient = store.search_one(query)
    if patient is None:
        raise PatientNotFound(f"No patient matches {query}")
    return patient


def teardown_context(store: FHIRStore, context: RunContext) -> list[tuple[ResourceRef, Exception]]:
    """Delete every temporary resource of a run.

    Each deletion is attempted independently; failures are logged and
    returned, never raised.
    """
    failures: list[tuple[ResourceRef, Exception]] = []
    while context.temporary_resources:
        ref = context.temporary_resources.pop()
        try:
            store.delete(ref.resource_type, ref.id)
        except Exception as e:  # noqa: BLE001
            logger.warning("Failed to delete temporary %s: %s", ref.reference, e)
            failures.append((ref, e))
    return failures


@contextmanager
def workflow_context(
    store: FHIRStore,
    resource_type: str,
    resource_id: str,
    report_endpoint: str | None = None,
    patient_identifier_system: str | None = None,
) -> Iterator[RunContext]:
    """Build a run context and guarantee its teardown on every exit path."""
    context = build_context(
        store,
        resource_type,
        resource_id,
        report_endpoint=report_endpoint,
        patient_identifier_system=patient_identifier_system,
    )
    try:
        yield context
    finally:
        failures = teardown_context(store, context)
        if failures:
            logger.warning("%d temporary resources could not be deleted", len(failures))
