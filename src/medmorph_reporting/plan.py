"""Reporting plan schema parsed from FHIR PlanDefinition resources."""

from __future__ import annotations

import json
from collections.abc import Iterator
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from medmorph_reporting.fhir_spec import is_resource_type

NAMED_EVENT_EXTENSION = (
    "http://hl7.org/fhir/us/medmorph/StructureDefinition/us-ph-named-eventType-extension"
)
NAMED_EVENT_SYSTEM = "http://hl7.org/fhir/us/medmorph/CodeSystem/us-ph-triggerdefinition-namedevents"
CUSTOM_EVENT_SYSTEM = "http://example.org/fhir/CodeSystem/custom-named-events"
QUERY_PATTERN_EXTENSION = (
    "http://hl7.org/fhir/us/medmorph/StructureDefinition/ext-fhirquerypattern"
)
FHIRPATH_LANGUAGE = "text/fhirpath"


class FHIRElement(BaseModel):
    """Base for plan elements: FHIR JSON names, unknown fields ignored."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True, frozen=True)


class Coding(FHIRElement):
    """A code from a code system."""

    system: str | None = None
    code: str | None = None
    display: str | None = None


class CodeableConcept(FHIRElement):
    """A set of codings with optional text."""

    coding: list[Coding] = Field(default_factory=list)
    text: str | None = None


class Extension(FHIRElement):
    """A FHIR extension, restricted to the value types plans use."""

    url: str
    value_string: str | None = Field(default=None, alias="valueString")
    value_code: str | None = Field(default=None, alias="valueCode")
    value_coding: Coding | None = Field(default=None, alias="valueCoding")
    value_codeable_concept: CodeableConcept | None = Field(
        default=None, alias="valueCodeableConcept"
    )

    def codings(self) -> list[Coding]:
        """All codings carried by this extension's value."""
        if self.value_coding:
            return [self.value_coding]
        if self.value_codeable_concept:
            return list(self.value_codeable_concept.coding)
        return []


class Trigger(FHIRElement):
    """A named clinical event that starts an action."""

    type: str | None = None
    name: str | None = None
    extension: list[Extension] = Field(default_factory=list)

    def _event_codes(self, system: str) -> list[str]:
        return [
            coding.code
            for ext in self.extension
            if ext.url == NAMED_EVENT_EXTENSION
            for coding in ext.codings()
            if coding.system == system and coding.code
        ]

    @property
    def named_event_code(self) -> str | None:
        """Code from the standard named-event vocabulary, if any."""
        codes = self._event_codes(NAMED_EVENT_SYSTEM)
        return codes[0] if codes else None

    @property
    def custom_event_code(self) -> str | None:
        """Code from the project's custom event vocabulary, if any."""
        codes = self._event_codes(CUSTOM_EVENT_SYSTEM)
        return codes[0] if codes else None


class CodeFilter(FHIRElement):
    """One filter clause of a data requirement."""

    path: str | None = None
    search_param: str | None = Field(default=None, alias="searchParam")
    value_set: str | None = Field(default=None, alias="valueSet")
    code: list[Coding] = Field(default_factory=list)

    @property
    def attribute(self) -> str:
        """Search parameter name the clause filters on."""
        return self.search_param or self.path or "code"


class DataRequirement(FHIRElement):
    """A declared input or output of an action."""

    id: str | None = None
    type: str
    profile: list[str] = Field(default_factory=list)
    code_filter: list[CodeFilter] = Field(default_factory=list, alias="codeFilter")
    extension: list[Extension] = Field(default_factory=list)

    @field_validator("type")
    @classmethod
    def validate_type(cls, v: str) -> str:
        """Require a known FHIR resource type."""
        if not is_resource_type(v):
            raise ValueError(f"Unknown resource type in data requirement: {v!r}")
        return v

    @property
    def query_pattern(self) -> str | None:
        """Query string from the FHIR query pattern extension, if present."""
        for ext in self.extension:
            if ext.url == QUERY_PATTERN_EXTENSION and ext.value_string:
                return ext.value_string
        return None


class Expression(FHIRElement):
    """An expression in a named language."""

    language: str
    expression: str | None = None


class Condition(FHIRElement):
    """A boolean gate on an action."""

    kind: str = "applicability"
    expression: Expression

    @property
    def is_fhirpath(self) -> bool:
        return self.expression.language == FHIRPATH_LANGUAGE


class Duration(FHIRElement):
    value: float | None = None
    unit: str | None = None
    system: str | None = None
    code: str | None = None


class RelatedAction(FHIRElement):
    """Link from one action to another, anywhere in the plan.

    Offsets are kept on the model but never scheduled: related actions
    always run immediately.
    """

    action_id: str = Field(alias="actionId")
    relationship: str
    offset_duration: Duration | None = Field(default=None, alias="offsetDuration")
    offset_range: dict[str, Any] | None = Field(default=None, alias="offsetRange")

    @property
    def runs_before_dispatch(self) -> bool:
        """True for ``after*`` relationships, which run ahead of the action's own work."""
        return self.relationship.startswith("after")


class Action(FHIRElement):
    """A node in the plan's action tree."""

    id: str | None = None
    description: str | None = None
    code: list[CodeableConcept] = Field(default_factory=list)
    trigger: list[Trigger] = Field(default_factory=list)
    input: list[DataRequirement] = Field(default_factory=list)
    output: list[DataRequirement] = Field(default_factory=list)
    condition: list[Condition] = Field(default_factory=list)
    related_action: list[RelatedAction] = Field(default_factory=list, alias="relatedAction")
    action: list[Action] = Field(default_factory=list)

    @property
    def semantic_code(self) -> str | None:
        """First coded value of ``code``, or None when the action has no code."""
        for concept in self.code:
            for coding in concept.coding:
                if coding.code:
                    return coding.code
        return None


class Plan(FHIRElement):
    """A reporting workflow definition."""

    resource_type: str = Field(default="PlanDefinition", alias="resourceType")
    id: str | None = None
    url: str | None = None
    name: str | None = None
    title: str | None = None
    version: str | None = None
    status: str | None = None
    action: list[Action] = Field(default_factory=list)

    @field_validator("resource_type")
    @classmethod
    def validate_resource_type(cls, v: str) -> str:
        if v != "PlanDefinition":
            raise ValueError(f"Expected a PlanDefinition, got {v!r}")
        return v

    def iter_actions(self) -> Iterator[Action]:
        """Yield every action in the tree, pre-order."""
        stack = list(reversed(self.action))
        while stack:
            current = stack.pop()
            yield current
            stack.extend(reversed(current.action))

    @classmethod
    def from_fhir(cls, resource: dict[str, Any]) -> Plan:
        """Parse a PlanDefinition resource dict."""
        return cls.model_validate(resource)

    @classmethod
    def from_file(cls, path: str | Path) -> Plan:
        """Load a PlanDefinition from a JSON or YAML file."""
        path = Path(path)
        text = path.read_text()
        if path.suffix in (".yaml", ".yml"):
            import yaml

            data = yaml.safe_load(text)
        else:
            data = json.loads(text)
        return cls.from_fhir(data)
