"""Resource store clients.

``FHIRStore`` is the interface the workflow interpreter talks to. Two
backends are provided: ``HTTPFHIRStore`` for a FHIR REST server and
``MemoryFHIRStore``, a dict-backed store used for local runs and tests.
"""

import copy
import logging
import uuid
from abc import ABC, abstractmethod
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any
from urllib.parse import parse_qsl, quote

import requests

from medmorph_reporting.config import Settings
from medmorph_reporting.errors import StoreOperationFailed

logger = logging.getLogger(__name__)

FHIR_JSON = "application/fhir+json"

Validator = Callable[[dict[str, Any]], list[dict[str, Any]]]


class FHIRStore(ABC):
    """Abstract resource store - implement for different backends."""

    @abstractmethod
    def read(self, resource_type: str, resource_id: str) -> dict[str, Any]:
        """Read a resource by type and id."""

    @abstractmethod
    def search(self, query: str) -> list[dict[str, Any]]:
        """Run a ``Type?param=value`` search and return the matching resources."""

    @abstractmethod
    def create(self, resource: dict[str, Any]) -> dict[str, Any]:
        """Create a resource and return it as stored (with server id)."""

    @abstractmethod
    def create_if_none_exist(self, resource: dict[str, Any], query: str) -> dict[str, Any]:
        """Create *resource* unless a resource matching *query* already exists."""

    @abstractmethod
    def delete(self, resource_type: str, resource_id: str) -> None:
        """Delete a resource by type and id."""

    @abstractmethod
    def validate(self, resource: dict[str, Any]) -> list[dict[str, Any]]:
        """Validate a resource and return the OperationOutcome issues."""

    @abstractmethod
    def expand_valueset(self, url: str) -> dict[str, Any]:
        """Return the expanded ValueSet for a canonical URL."""

    def search_one(self, query: str) -> dict[str, Any] | None:
        """Return the first match for *query*, or None."""
        results = self.search(query)
        return results[0] if results else None

    def valueset_codes(self, url: str) -> list[dict[str, Any]]:
        """Flattened ``expansion.contains`` codings of a value set."""
        expansion = self.expand_valueset(url).get("expansion", {})
        codes: list[dict[str, Any]] = []
        stack = list(reversed(expansion.get("contains", [])))
        while stack:
            item = stack.pop()
            if item.get("code"):
                codes.append({"system": item.get("system"), "code": item["code"]})
            stack.extend(reversed(item.get("contains", [])))
        return codes

    @staticmethod
    def _extract_entries(bundle: dict[str, Any]) -> list[dict[str, Any]]:
        """Extract resource entries from a FHIR Bundle."""
        if bundle.get("resourceType") != "Bundle":
            return []
        return [
            entry.get("resource", {})
            for entry in bundle.get("entry", [])
            if "resource" in entry
        ]


class HTTPFHIRStore(FHIRStore):
    """Client for a FHIR REST server, with optional bearer authentication."""

    def __init__(
        self, base_url: str, token: str | None = None, follow_next: bool = False
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.follow_next = follow_next
        self.session = requests.Session()
        self.session.headers.update({
            "Accept": FHIR_JSON,
            "Content-Type": FHIR_JSON,
        })
        if token:
            self.session.headers["Authorization"] = f"Bearer {token}"

    def _request(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        if not url.startswith("http"):
            url = f"{self.base_url}/{url}"
        try:
            response = self.session.request(method, url, **kwargs)
            response.raise_for_status()
        except requests.HTTPError as e:
            status = e.response.status_code if e.response is not None else None
            raise StoreOperationFailed(f"{method} {url} failed: {e}", status) from e
        except requests.RequestException as e:
            raise StoreOperationFailed(f"{method} {url} failed: {e}") from e
        return response

    def _json(self, method: str, url: str, **kwargs: Any) -> dict[str, Any]:
        """Send a request and decode its JSON body.

        Raises:
            StoreOperationFailed: The request failed or the body is not a JSON object.
        """
        response = self._request(method, url, **kwargs)
        try:
            body = response.json()
        except ValueError as e:
            raise StoreOperationFailed(f"{method} {url} returned no JSON body: {e}") from e
        if not isinstance(body, dict):
            raise StoreOperationFailed(
                f"{method} {url} returned {type(body).__name__}, not a resource"
            )
        return body

    def read(self, resource_type: str, resource_id: str) -> dict[str, Any]:
        return self._json("GET", f"{resource_type}/{resource_id}")

    def search(self, query: str) -> list[dict[str, Any]]:
        """GET the first page of a search; with ``follow_next``, every page."""
        results: list[dict[str, Any]] = []
        url: str | None = query
        while url:
            bundle = self._json("GET", url)
            results.extend(self._extract_entries(bundle))
            if not self.follow_next:
                break
            url = next(
                (
                    link.get("url")
                    for link in bundle.get("link", [])
                    if link.get("relation") == "next"
                ),
                None,
            )
        return results

    def create(self, resource: dict[str, Any]) -> dict[str, Any]:
        return self._json("POST", resource["resourceType"], json=resource)

    def create_if_none_exist(self, resource: dict[str, Any], query: str) -> dict[str, Any]:
        """Conditional create using the ``If-None-Exist`` header."""
        _, _, params = query.partition("?")
        return self._json(
            "POST",
            resource["resourceType"],
            json=resource,
            headers={"If-None-Exist": params},
        )

    def delete(self, resource_type: str, resource_id: str) -> None:
        self._request("DELETE", f"{resource_type}/{resource_id}")

    def validate(self, resource: dict[str, Any]) -> list[dict[str, Any]]:
        outcome = self._json("POST", f"{resource['resourceType']}/$validate", json=resource)
        return list(outcome.get("issue", []))

    def expand_valueset(self, url: str) -> dict[str, Any]:
        return self._json("GET", f"ValueSet/$expand?url={quote(url, safe=':/')}")


class MemoryFHIRStore(FHIRStore):
    """In-memory store supporting the search subset used by reporting plans.

    Supported parameters: ``_id``, ``_tag``, ``_profile``, ``_count``,
    ``url``, ``identifier``, ``patient``/``subject``, ``name:missing``, and
    token searches (``param=system|code,...``) against any top-level element.
    """

    def __init__(
        self,
        resources: list[dict[str, Any]] | None = None,
        validator: Validator | None = None,
    ) -> None:
        self.resources: dict[tuple[str, str], dict[str, Any]] = {}
        self.validator = validator
        self.deleted: list[tuple[str, str]] = []
        self.queries: list[str] = []
        for resource in resources or []:
            self.put(resource)

    def read(self, resource_type: str, resource_id: str) -> dict[str, Any]:
        try:
            return copy.deepcopy(self.resources[(resource_type, resource_id)])
        except KeyError:
            raise StoreOperationFailed(f"{resource_type}/{resource_id} not found", 404) from None

    def search(self, query: str) -> list[dict[str, Any]]:
        self.queries.append(query)
        resource_type, _, raw_params = query.partition("?")
        params = parse_qsl(raw_params, keep_blank_values=True)

        count: int | None = None
        criteria: list[tuple[str, str]] = []
        for name, value in params:
            if name == "_count":
                count = int(value)
            else:
                criteria.append((name, value))

        matches = [
            copy.deepcopy(resource)
            for (rtype, _), resource in self.resources.items()
            if rtype == resource_type
            and all(_matches(resource, name, value) for name, value in criteria)
        ]
        return matches[:count] if count is not None else matches

    def create(self, resource: dict[str, Any]) -> dict[str, Any]:
        stored = copy.deepcopy(resource)
        stored["id"] = str(uuid.uuid4())
        return self._store(stored)

    def put(self, resource: dict[str, Any]) -> dict[str, Any]:
        """Store a resource under its own id (one is generated when absent)."""
        stored = copy.deepcopy(resource)
        stored.setdefault("id", str(uuid.uuid4()))
        return self._store(stored)

    def _store(self, stored: dict[str, Any]) -> dict[str, Any]:
        meta = stored.setdefault("meta", {})
        meta["versionId"] = "1"
        meta["lastUpdated"] = datetime.now(UTC).isoformat()
        self.resources[(stored["resourceType"], stored["id"])] = stored
        return copy.deepcopy(stored)

    def create_if_none_exist(self, resource: dict[str, Any], query: str) -> dict[str, Any]:
        existing = self.search_one(query)
        if existing is not None:
            return existing
        return self.create(resource)

    def delete(self, resource_type: str, resource_id: str) -> None:
        if self.resources.pop((resource_type, resource_id), None) is None:
            raise StoreOperationFailed(f"{resource_type}/{resource_id} not found", 404)
        self.deleted.append((resource_type, resource_id))

    def validate(self, resource: dict[str, Any]) -> list[dict[str, Any]]:
        if self.validator is None:
            return []
        return self.validator(resource)

    def expand_valueset(self, url: str) -> dict[str, Any]:
        valueset = self.search_one(f"ValueSet?url={url}")
        if valueset is None:
            raise StoreOperationFailed(f"ValueSet {url} not found", 404)
        if "expansion" not in valueset:
            contains = [
                {"system": include.get("system"), "code": concept["code"]}
                for include in valueset.get("compose", {}).get("include", [])
                for concept in include.get("concept", [])
            ]
            valueset["expansion"] = {"contains": contains}
        return valueset

    def all(self, resource_type: str | None = None) -> list[dict[str, Any]]:
        """Every stored resource, optionally restricted to one type."""
        return [
            copy.deepcopy(resource)
            for (rtype, _), resource in self.resources.items()
            if resource_type is None or rtype == resource_type
        ]


def _matches(resource: dict[str, Any], name: str, value: str) -> bool:
    """Evaluate one search parameter against a resource."""
    if name.endswith(":missing"):
        present = resource.get(name[: -len(":missing")]) not in (None, [], {})
        return present == (value == "false")

    if name == "_id":
        return resource.get("id") in value.split(",")
    if name == "_tag":
        return any(
            _token_matches(tag, token)
            for tag in resource.get("meta", {}).get("tag", [])
            for token in value.split(",")
        )
    if name == "_profile":
        return value in resource.get("meta", {}).get("profile", [])
    if name == "url":
        # Subscription.url searches the channel endpoint
        return value in (resource.get("url"), resource.get("channel", {}).get("endpoint"))
    if name == "criteria":
        return resource.get("criteria") == value
    if name == "identifier":
        return any(
            _identifier_matches(identifier, token)
            for identifier in resource.get("identifier", [])
            for token in value.split(",")
        )
    if name in ("patient", "subject"):
        target = value if "/" in value else f"Patient/{value}"
        references = [
            (resource.get(field) or {}).get("reference") for field in ("subject", "patient")
        ]
        return target in references

    element = resource.get(name)
    if element is None:
        return False
    return any(_element_matches(element, token) for token in value.split(","))


def _identifier_matches(identifier: dict[str, Any], token: str) -> bool:
    system, sep, value = token.rpartition("|")
    if not sep:
        return identifier.get("value") == value
    return identifier.get("value") == value and (not system or identifier.get("system") == system)


def _token_matches(coding: dict[str, Any], token: str) -> bool:
    system, sep, code = token.rpartition("|")
    if coding.get("code") != code:
        return False
    return not sep or not system or coding.get("system") == system


def _element_matches(element: Any, token: str) -> bool:
    """Token match against a code, Coding, CodeableConcept, or a list of them."""
    if isinstance(element, list):
        return any(_element_matches(item, token) for item in element)
    if isinstance(element, str):
        return element == token.rpartition("|")[2]
    if isinstance(element, dict):
        if "coding" in element:
            return any(_token_matches(coding, token) for coding in element["coding"])
        return _token_matches(element, token)
    return False


def get_store(settings: Settings) -> FHIRStore:
    """Factory function - returns the HTTP store for the configured server."""
    logger.info("Using FHIR store at %s", settings.fhir_base_url)
    return HTTPFHIRStore(settings.fhir_base_url, token=settings.fhir_auth_token)
