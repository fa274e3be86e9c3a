"""Resource cache: fetched records plus all validity and edge bookkeeping.

A :class:`ResourceBundle` is shared by every worker of one processing scope
(one patient, or the core pool of shared records). Every public method takes
the bundle's lock, so single map operations and the compound
check-then-act helpers (``compute_validity_if_absent``,
``valid_groups_not_yet_expanded``) are atomic.

Records are tri-state per reference: a key that is absent was never seen,
a key mapped to ``None`` was referenced but could not be resolved, any
other value is the fetched record.
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable, Iterable, Iterator, NamedTuple

from crtdl_extract.fhir import Resource, relative_url
from crtdl_extract.groups import AnnotatedAttribute

if TYPE_CHECKING:
    from crtdl_extract.compartment import CompartmentManager

logger = logging.getLogger(__name__)


class ResourceGroup(NamedTuple):
    """A record considered under one attribute group; the unit of validity."""

    resource_id: str
    group_id: str


class ResourceAttribute(NamedTuple):
    """One reference-bearing attribute occurrence on one record."""

    resource_id: str
    attribute: AnnotatedAttribute


class ReferenceWrapper(NamedTuple):
    """References extracted from one attribute of a parent group."""

    parent: ResourceGroup
    attribute: AnnotatedAttribute
    references: tuple[str, ...]

    @property
    def resource_attribute(self) -> ResourceAttribute:
        return ResourceAttribute(self.parent.resource_id, self.attribute)


@dataclass
class BundleSnapshot:
    """A detached copy of part of a bundle, used to merge into another bundle."""

    resources: dict[str, Resource | None] = field(default_factory=dict)
    group_validity: dict[ResourceGroup, bool] = field(default_factory=dict)
    attribute_validity: dict[ResourceAttribute, bool] = field(default_factory=dict)
    parent_to_attributes: dict[ResourceGroup, set[ResourceAttribute]] = field(default_factory=dict)
    attribute_to_children: dict[ResourceAttribute, set[ResourceGroup]] = field(default_factory=dict)


class ResourceBundle:
    """Thread-safe cache of records, validity decisions and reference edges."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._resources: dict[str, Resource | None] = {}
        self._group_validity: dict[ResourceGroup, bool] = {}
        self._attribute_validity: dict[ResourceAttribute, bool] = {}
        # Edges are kept in both directions so either end can be drained
        self._parent_to_attributes: dict[ResourceGroup, set[ResourceAttribute]] = defaultdict(set)
        self._attribute_to_parents: dict[ResourceAttribute, set[ResourceGroup]] = defaultdict(set)
        self._attribute_to_children: dict[ResourceAttribute, set[ResourceGroup]] = defaultdict(set)
        self._child_to_attributes: dict[ResourceGroup, set[ResourceAttribute]] = defaultdict(set)
        self._expanded: set[ResourceGroup] = set()

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    def put(self, resource: Resource) -> None:
        """Cache a fetched record. An already fetched record is kept."""
        key = relative_url(resource)
        with self._lock:
            if self._resources.get(key) is None:
                self._resources[key] = resource

    def put_empty(self, reference: str) -> None:
        """Mark *reference* as seen but unresolvable."""
        with self._lock:
            self._resources.setdefault(reference, None)

    def get(self, reference: str) -> Resource | None:
        with self._lock:
            return self._resources.get(reference)

    def contains(self, reference: str) -> bool:
        """Return ``True`` if *reference* was seen, resolved or not."""
        with self._lock:
            return reference in self._resources

    def __contains__(self, reference: str) -> bool:
        return self.contains(reference)

    def __len__(self) -> int:
        with self._lock:
            return len(self._resources)

    # ------------------------------------------------------------------
    # Group validity
    # ------------------------------------------------------------------

    def is_valid(self, group: ResourceGroup) -> bool | None:
        """Return the decided validity of *group*, or ``None`` if undecided."""
        with self._lock:
            return self._group_validity.get(group)

    def add_validity(self, group: ResourceGroup, valid: bool) -> bool:
        """Record a decision and return the validity now in effect.

        Validity only ever narrows: an invalid group is never made valid again.
        """
        with self._lock:
            current = self._group_validity.get(group)
            if current is False:
                if valid:
                    logger.debug("Ignoring attempt to revalidate %s", group)
                return False
            self._group_validity[group] = valid
            return valid

    def set_invalid(self, group: ResourceGroup) -> bool:
        """Mark *group* invalid. Return ``True`` if this changed anything."""
        with self._lock:
            if self._group_validity.get(group) is False:
                return False
            self._group_validity[group] = False
            return True

    def compute_validity_if_absent(
        self, group: ResourceGroup, decide: Callable[[], bool]
    ) -> bool:
        """Return the cached validity of *group*, deciding it first if needed.

        The decision runs under the bundle lock, so concurrent callers never
        evaluate the same group twice.
        """
        with self._lock:
            current = self._group_validity.get(group)
            if current is None:
                current = bool(decide())
                self._group_validity[group] = current
            return current

    def valid_groups_not_yet_expanded(self) -> set[ResourceGroup]:
        """Claim every valid group that has not been expanded yet.

        Each group is handed out once per bundle; the caller owns its expansion.
        """
        with self._lock:
            claimed = {
                group
                for group, valid in self._group_validity.items()
                if valid and group not in self._expanded
            }
            self._expanded |= claimed
            return claimed

    def claim_for_expansion(self, groups: Iterable[ResourceGroup]) -> set[ResourceGroup]:
        """Claim those of *groups* that are valid and not expanded yet."""
        with self._lock:
            claimed = {
                group
                for group in groups
                if self._group_validity.get(group) and group not in self._expanded
            }
            self._expanded |= claimed
            return claimed

    def valid_resource_groups(self) -> set[ResourceGroup]:
        with self._lock:
            return {g for g, valid in self._group_validity.items() if valid}

    def invalid_resource_groups(self) -> set[ResourceGroup]:
        with self._lock:
            return {g for g, valid in self._group_validity.items() if not valid}

    def known_resource_groups(self) -> set[ResourceGroup]:
        """Return every group with a decided validity."""
        with self._lock:
            return set(self._group_validity)

    # ------------------------------------------------------------------
    # Attribute validity
    # ------------------------------------------------------------------

    def attribute_validity(self, attribute: ResourceAttribute) -> bool | None:
        with self._lock:
            return self._attribute_validity.get(attribute)

    def set_attribute_valid(self, attribute: ResourceAttribute) -> None:
        with self._lock:
            # Same narrowing rule as group validity
            self._attribute_validity.setdefault(attribute, True)

    def set_attribute_invalid(self, attribute: ResourceAttribute) -> bool:
        """Mark *attribute* invalid. Return ``True`` if this changed anything."""
        with self._lock:
            if self._attribute_validity.get(attribute) is False:
                return False
            self._attribute_validity[attribute] = False
            return True

    # ------------------------------------------------------------------
    # Edges
    # ------------------------------------------------------------------

    def add_attribute_to_parent(self, attribute: ResourceAttribute, parent: ResourceGroup) -> None:
        with self._lock:
            self._parent_to_attributes[parent].add(attribute)
            self._attribute_to_parents[attribute].add(parent)

    def add_attribute_to_child(self, attribute: ResourceAttribute, child: ResourceGroup) -> None:
        with self._lock:
            self._attribute_to_children[attribute].add(child)
            self._child_to_attributes[child].add(attribute)

    def remove_parent_from_attribute(self, parent: ResourceGroup, attribute: ResourceAttribute) -> bool:
        """Drop the parent -> attribute edge.

        Returns ``True`` iff the attribute has no parent left afterwards.
        """
        with self._lock:
            self._discard(self._parent_to_attributes, parent, attribute)
            self._discard(self._attribute_to_parents, attribute, parent)
            return not self._attribute_to_parents.get(attribute)

    def remove_attribute_from_child(self, attribute: ResourceAttribute, child: ResourceGroup) -> bool:
        """Drop the attribute -> child edge.

        Returns ``True`` iff the child has no contributing attribute left.
        """
        with self._lock:
            self._discard(self._attribute_to_children, attribute, child)
            self._discard(self._child_to_attributes, child, attribute)
            return not self._child_to_attributes.get(child)

    def parent_attributes(self, parent: ResourceGroup) -> set[ResourceAttribute]:
        with self._lock:
            return set(self._parent_to_attributes.get(parent, ()))

    def attribute_parents(self, attribute: ResourceAttribute) -> set[ResourceGroup]:
        with self._lock:
            return set(self._attribute_to_parents.get(attribute, ()))

    def child_groups(self, attribute: ResourceAttribute) -> set[ResourceGroup]:
        with self._lock:
            return set(self._attribute_to_children.get(attribute, ()))

    def child_attributes(self, child: ResourceGroup) -> set[ResourceAttribute]:
        """Return the attributes whose references produced *child*."""
        with self._lock:
            return set(self._child_to_attributes.get(child, ()))

    @staticmethod
    def _discard(edges: dict, key, value) -> None:
        values = edges.get(key)
        if values is None:
            return
        values.discard(value)
        if not values:
            del edges[key]

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    def valid_resources(self) -> list[Resource]:
        """Return every fetched record with at least one valid group, sorted by reference."""
        with self._lock:
            refs = {g.resource_id for g, valid in self._group_validity.items() if valid}
            return [
                self._resources[ref]
                for ref in sorted(refs)
                if self._resources.get(ref) is not None
            ]

    def to_fhir_bundle(self) -> Resource:
        """Render the valid records as a FHIR transaction Bundle."""
        entries = []
        for resource in self.valid_resources():
            url = relative_url(resource)
            entries.append({
                "fullUrl": url,
                "resource": resource,
                "request": {"method": "PUT", "url": url},
            })
        return {"resourceType": "Bundle", "type": "transaction", "entry": entries}

    # ------------------------------------------------------------------
    # Merging
    # ------------------------------------------------------------------

    def shared_contribution(self, compartment: CompartmentManager) -> BundleSnapshot:
        """Snapshot the part of this bundle that belongs in the core pool.

        Keeps valid groups of shared (non-compartment) records, their records,
        and the edges of attributes that still have a valid parent.
        """
        snapshot = BundleSnapshot()
        with self._lock:
            for ref, resource in self._resources.items():
                if not compartment.is_in_compartment(ref):
                    snapshot.resources[ref] = resource

            for group, valid in self._group_validity.items():
                if valid and not compartment.is_in_compartment(group):
                    snapshot.group_validity[group] = True

            for attribute, parents in self._attribute_to_parents.items():
                valid_parents = {p for p in parents if self._group_validity.get(p)}
                if not valid_parents:
                    continue
                children = {
                    c
                    for c in self._attribute_to_children.get(attribute, ())
                    if not compartment.is_in_compartment(c)
                }
                if not children:
                    continue
                for parent in valid_parents:
                    snapshot.parent_to_attributes.setdefault(parent, set()).add(attribute)
                snapshot.attribute_to_children[attribute] = children
                if attribute in self._attribute_validity:
                    snapshot.attribute_validity[attribute] = self._attribute_validity[attribute]
        return snapshot

    def merge(self, snapshot: BundleSnapshot) -> None:
        """Fold a snapshot into this bundle without overriding existing decisions."""
        with self._lock:
            for ref, resource in snapshot.resources.items():
                if resource is None:
                    self._resources.setdefault(ref, None)
                elif self._resources.get(ref) is None:
                    self._resources[ref] = resource
            for group, valid in snapshot.group_validity.items():
                self._group_validity.setdefault(group, valid)
            for attribute, valid in snapshot.attribute_validity.items():
                self._attribute_validity.setdefault(attribute, valid)
            for parent, attributes in snapshot.parent_to_attributes.items():
                for attribute in attributes:
                    self.add_attribute_to_parent(attribute, parent)
            for attribute, children in snapshot.attribute_to_children.items():
                for child in children:
                    self.add_attribute_to_child(attribute, child)


class PatientResourceBundle:
    """The cache of one patient's processing scope."""

    def __init__(self, patient_id: str, bundle: ResourceBundle | None = None) -> None:
        self.patient_id = patient_id
        self.bundle = bundle if bundle is not None else ResourceBundle()

    def put(self, resource: Resource) -> None:
        self.bundle.put(resource)

    def put_empty(self, reference: str) -> None:
        self.bundle.put_empty(reference)

    def get(self, reference: str) -> Resource | None:
        return self.bundle.get(reference)

    def contains(self, reference: str) -> bool:
        return self.bundle.contains(reference)

    def __repr__(self) -> str:
        return f"PatientResourceBundle({self.patient_id!r}, {len(self.bundle)} resources)"


@dataclass
class PatientBatch:
    """Patient bundles processed together, keyed by patient id."""

    bundles: dict[str, PatientResourceBundle] = field(default_factory=dict)
    apply_consent: bool = False

    @classmethod
    def of(cls, patient_ids: Iterable[str], apply_consent: bool = False) -> PatientBatch:
        return cls(
            {pid: PatientResourceBundle(pid) for pid in patient_ids},
            apply_consent=apply_consent,
        )

    def patient_ids(self) -> list[str]:
        return list(self.bundles)

    def __getitem__(self, patient_id: str) -> PatientResourceBundle:
        return self.bundles[patient_id]

    def __iter__(self) -> Iterator[PatientResourceBundle]:
        return iter(self.bundles.values())

    def __len__(self) -> int:
        return len(self.bundles)
