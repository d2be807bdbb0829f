"""MedMorph Reporting - plan-driven public health reporting for FHIR clinical events."""

from dotenv import load_dotenv

from medmorph_reporting.context import RunContext, workflow_context
from medmorph_reporting.criteria import compile_named_event, trigger_criteria
from medmorph_reporting.interpreter import ActionCode, ActionInterpreter, find_action
from medmorph_reporting.plan import Action, Plan
from medmorph_reporting.store import FHIRStore, HTTPFHIRStore, MemoryFHIRStore
from medmorph_reporting.subscriptions import build_subscriptions
from medmorph_reporting.workflow import load_plan, run_workflow

__version__ = "0.3.0"

# Load environment variables from .env file at package init
load_dotenv()


__all__ = [
    "__version__",
    "Action",
    "ActionCode",
    "ActionInterpreter",
    "FHIRStore",
    "HTTPFHIRStore",
    "MemoryFHIRStore",
    "Plan",
    "RunContext",
    "build_subscriptions",
    "compile_named_event",
    "find_action",
    "load_plan",
    "run_workflow",
    "trigger_criteria",
    "workflow_context",
]
