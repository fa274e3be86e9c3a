"""Annotated attribute groups: the rule sets resources are extracted under.

A group names a target profile, the attributes to extract from resources of
that profile and which of them are mandatory ("must-have"). Attributes with
``linked_groups`` carry references; the linked group ids are the groups a
referenced resource may be pulled in under.
"""

from __future__ import annotations

import calendar
import json
import logging
from datetime import date
from pathlib import Path
from typing import Any, Callable, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator
from pydantic.alias_generators import to_camel

from crtdl_extract import fhirpath
from crtdl_extract.config import settings
from crtdl_extract.fhir import Resource

logger = logging.getLogger(__name__)

Predicate = Callable[[Resource], bool]

# Default FHIRPath expressions of the ``date`` search parameter per resource type
DATE_PATHS: dict[str, str] = {
    "Condition": "Condition.onsetDateTime | Condition.onsetPeriod | Condition.recordedDate",
    "DiagnosticReport": "DiagnosticReport.effectiveDateTime | DiagnosticReport.effectivePeriod",
    "Encounter": "Encounter.period",
    "MedicationAdministration": (
        "MedicationAdministration.effectiveDateTime | MedicationAdministration.effectivePeriod"
    ),
    "MedicationStatement": "MedicationStatement.effectiveDateTime | MedicationStatement.effectivePeriod",
    "Observation": (
        "Observation.effectiveDateTime | Observation.effectivePeriod | Observation.effectiveInstant"
    ),
    "Procedure": "Procedure.performedDateTime | Procedure.performedPeriod",
    "Specimen": "Specimen.collection.collectedDateTime | Specimen.collection.collectedPeriod",
}


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Filters
# ---------------------------------------------------------------------------


class Code(_CamelModel):
    system: str
    code: str
    display: str | None = None


class Filter(_CamelModel):
    """A token or date restriction on the resources of a group."""

    type: Literal["token", "date"]
    name: str
    codes: list[Code] = []
    start: date | None = None
    end: date | None = None
    path: str | None = None

    def expression(self, resource_type: str) -> str:
        """Return the FHIRPath expression this filter is evaluated on."""
        if self.path:
            return self.path
        if self.type == "token" and self.name == "code":
            return f"{resource_type}.code"
        if self.type == "date" and self.name == "date" and resource_type in DATE_PATHS:
            return DATE_PATHS[resource_type]
        raise ValueError(
            f"No search parameter '{self.name}' of type {self.type} for {resource_type}"
        )

    def compile(self, resource_type: str) -> Predicate:
        """Build a predicate testing a resource against this filter."""
        path = self.expression(resource_type)
        matches = self._matches_token if self.type == "token" else self._matches_date

        def predicate(resource: Resource) -> bool:
            return any(matches(found) for found in fhirpath.evaluate(resource, path))

        return predicate

    def _matches_token(self, found: Any) -> bool:
        if not isinstance(found, dict):
            return False
        codings = found.get("coding", [found])
        return any(
            coding.get("system") == code.system and coding.get("code") == code.code
            for coding in codings
            for code in self.codes
        )

    def _matches_date(self, found: Any) -> bool:
        if isinstance(found, dict):
            start, end = _date_range(found.get("start")), _date_range(found.get("end"))
            first = start[0] if start else None
            last = end[1] if end else None
        else:
            first, last = _date_range(found) or (None, None)
        if first is None and last is None:
            return False
        # Open period ends overlap everything on that side
        if self.start is not None and last is not None and last < self.start:
            return False
        if self.end is not None and first is not None and first > self.end:
            return False
        return True


def _date_range(value: Any) -> tuple[date, date] | None:
    """Return the first and last day covered by a date, partial date or dateTime.

    ``2020`` covers the whole year and ``2020-03`` the whole month.
    """
    if value is None:
        return None
    text = str(value)
    try:
        if len(text) == 4:
            year = int(text)
            return date(year, 1, 1), date(year, 12, 31)
        if len(text) == 7:
            first = date.fromisoformat(f"{text}-01")
            days = calendar.monthrange(first.year, first.month)[1]
            return first, first.replace(day=days)
        day = date.fromisoformat(text[:10])
        return day, day
    except ValueError:
        logger.warning("Ignoring unparsable date %r", value)
        return None


def compile_filters(filters: list[Filter], resource_type: str) -> Predicate:
    """AND-combine the predicates of several filters."""
    predicates = [f.compile(resource_type) for f in filters]

    def predicate(resource: Resource) -> bool:
        return all(p(resource) for p in predicates)

    return predicate


# ---------------------------------------------------------------------------
# Attributes and groups
# ---------------------------------------------------------------------------


class AnnotatedAttribute(_CamelModel):
    """One field of a group. Immutable and hashable so it can key edge maps."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    attribute_ref: str
    fhir_path: str
    must_have: bool = False
    linked_groups: tuple[str, ...] = ()

    @property
    def is_reference(self) -> bool:
        return bool(self.linked_groups)


class AnnotatedAttributeGroup(_CamelModel):
    """A named rule set for one target profile.

    ``include_reference_only`` marks groups whose resources are only valid
    as long as some valid parent references them. ``predicate`` is the
    filter strategy; it defaults to the compiled ``filter`` list.
    """

    id: str
    name: str = ""
    resource_type: str
    group_reference: str
    attributes: list[AnnotatedAttribute] = []
    filter: list[Filter] = []
    include_reference_only: bool = False
    predicate: Predicate | None = Field(default=None, exclude=True)

    @model_validator(mode="after")
    def _compile_filter(self) -> AnnotatedAttributeGroup:
        if sum(1 for f in self.filter if f.type == "date") > 1:
            raise ValueError(f"Duplicate date type filter found in group {self.id}")
        if self.predicate is None and self.filter:
            self.predicate = compile_filters(self.filter, self.resource_type)
        return self

    def ref_attributes(self) -> list[AnnotatedAttribute]:
        """Attributes that carry references to other groups."""
        return [a for a in self.attributes if a.is_reference]

    def must_have_attributes(self) -> list[AnnotatedAttribute]:
        """Mandatory attributes that are not references."""
        return [a for a in self.attributes if a.must_have and not a.is_reference]

    def has_must_have(self) -> bool:
        return any(a.must_have for a in self.attributes)


# ---------------------------------------------------------------------------
# Catalogue loading
# ---------------------------------------------------------------------------

_GROUP_LIST = TypeAdapter(list[AnnotatedAttributeGroup])


def group_map_from_list(groups: list[AnnotatedAttributeGroup]) -> dict[str, AnnotatedAttributeGroup]:
    """Index groups by id, rejecting duplicates."""
    group_map: dict[str, AnnotatedAttributeGroup] = {}
    for group in groups:
        if group.id in group_map:
            raise ValueError(f"Duplicate attribute group id: {group.id}")
        group_map[group.id] = group
    return group_map


def load_group_map(path: Path | None = None) -> dict[str, AnnotatedAttributeGroup]:
    """Load a JSON array of attribute groups (camelCase keys).

    Defaults to ``settings.group_catalogue_file``.
    """
    path = path or settings.group_catalogue_file
    groups = _GROUP_LIST.validate_python(json.loads(path.read_text(encoding="utf-8")))
    logger.info("Loaded %d attribute groups from %s", len(groups), path)
    return group_map_from_list(groups)
