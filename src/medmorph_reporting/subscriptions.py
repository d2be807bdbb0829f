"""Generate and register Subscriptions from a plan's action triggers."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any
from urllib.parse import quote

from medmorph_reporting.criteria import trigger_criteria
from medmorph_reporting.plan import Plan
from medmorph_reporting.resources import build_subscription
from medmorph_reporting.store import FHIRStore

logger = logging.getLogger(__name__)

PLAN_HEADER = "pd-to-process"
ACTION_HEADER = "action-to-process"
ENDPOINT_HEADER = "report-endpoint"


@dataclass(frozen=True)
class SubscriptionSpec:
    """Where a subscription came from, and the resource to register."""

    action_id: str
    criteria: str
    resource: dict[str, Any]


def routing_headers(plan_url: str, action_id: str, report_endpoint: str) -> dict[str, str]:
    """Header parameters that let a notification re-enter the right plan and action."""
    return {
        PLAN_HEADER: quote(plan_url, safe=""),
        ACTION_HEADER: quote(action_id, safe=""),
        ENDPOINT_HEADER: quote(report_endpoint, safe=""),
    }


def build_subscriptions(
    plan: Plan,
    notification_endpoint: str,
    report_endpoint: str,
) -> list[SubscriptionSpec]:
    """One subscription per (action, trigger) pair with usable criteria."""
    if not plan.url:
        raise ValueError("Plan has no canonical url; subscriptions cannot route to it")

    specs: list[SubscriptionSpec] = []
    for action in plan.iter_actions():
        if not action.id:
            continue
        for trigger in action.trigger:
            compiled = trigger_criteria(trigger)
            if compiled is None:
                logger.debug("Action %s has a trigger without criteria", action.id)
                continue
            resource = build_subscription(
                criteria=compiled.criteria,
                endpoint=notification_endpoint,
                headers=routing_headers(plan.url, action.id, report_endpoint),
                additional_criteria=list(compiled.additional),
            )
            specs.append(SubscriptionSpec(action.id, compiled.criteria, resource))
    return specs


def register_subscriptions(
    store: FHIRStore, specs: list[SubscriptionSpec]
) -> list[dict[str, Any]]:
    """Create each subscription unless one with the same criteria and endpoint exists."""
    registered = []
    for spec in specs:
        endpoint = spec.resource["channel"]["endpoint"]
        query = (
            f"Subscription?criteria={quote(spec.criteria, safe='')}"
            f"&url={quote(endpoint, safe='')}"
        )
        registered.append(store.create_if_none_exist(spec.resource, query))
        logger.info("Registered subscription for %s on %s", spec.action_id, spec.criteria)
    return registered
