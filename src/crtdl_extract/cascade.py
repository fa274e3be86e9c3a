"""Retracts validity from resource groups that only existed because of an invalid one."""

from __future__ import annotations

import logging
from collections import deque
from typing import Iterable

from crtdl_extract.bundle import PatientBatch, ResourceBundle, ResourceGroup
from crtdl_extract.groups import AnnotatedAttributeGroup

logger = logging.getLogger(__name__)


class CascadingDelete:
    """Worklist walk over the edges of a bundle, starting from invalid groups.

    Downwards, an invalid group releases the attributes it was the parent of;
    an attribute without parents releases its children, and a reference-only
    child without any contributing attribute becomes invalid. Upwards, a
    must-have attribute left without a valid child invalidates its parents.
    Each group is drained at most once per call.
    """

    def handle_batch(
        self, batch: PatientBatch, group_map: dict[str, AnnotatedAttributeGroup]
    ) -> PatientBatch:
        for patient_bundle in batch:
            self.handle_bundle(patient_bundle.bundle, group_map)
        return batch

    def handle_bundle(
        self,
        bundle: ResourceBundle,
        group_map: dict[str, AnnotatedAttributeGroup],
        seeds: Iterable[ResourceGroup] | None = None,
    ) -> set[ResourceGroup]:
        """Cascade from *seeds* (default: every invalid group of *bundle*).

        Returns the groups this call invalidated.
        """
        worklist = deque(bundle.invalid_resource_groups() if seeds is None else seeds)
        processed: set[ResourceGroup] = set()
        invalidated: set[ResourceGroup] = set()

        while worklist:
            group = worklist.popleft()
            if group in processed:
                continue
            processed.add(group)

            for found in self.handle_children(bundle, group_map, group):
                invalidated.add(found)
                worklist.append(found)
            for found in self.handle_parents(bundle, group):
                invalidated.add(found)
                worklist.append(found)

        if invalidated:
            logger.info("Cascade invalidated %d resource groups", len(invalidated))
        return invalidated

    def handle_children(
        self,
        bundle: ResourceBundle,
        group_map: dict[str, AnnotatedAttributeGroup],
        parent: ResourceGroup,
    ) -> set[ResourceGroup]:
        """Release the attributes of *parent*; return reference-only children that lost all support."""
        orphans: set[ResourceGroup] = set()
        for attribute in bundle.parent_attributes(parent):
            if not bundle.remove_parent_from_attribute(parent, attribute):
                continue
            bundle.set_attribute_invalid(attribute)
            for child in bundle.child_groups(attribute):
                if not bundle.remove_attribute_from_child(attribute, child):
                    continue
                definition = group_map.get(child.group_id)
                if definition is not None and definition.include_reference_only:
                    if bundle.set_invalid(child):
                        logger.debug("%s lost its last parent", child)
                    orphans.add(child)
        return orphans

    def handle_parents(self, bundle: ResourceBundle, child: ResourceGroup) -> set[ResourceGroup]:
        """Detach invalid *child*; return parents whose must-have attribute has no valid child left."""
        parents: set[ResourceGroup] = set()
        for attribute in bundle.child_attributes(child):
            bundle.remove_attribute_from_child(attribute, child)
            if any(bundle.is_valid(c) for c in bundle.child_groups(attribute)):
                continue
            bundle.set_attribute_invalid(attribute)
            if not attribute.attribute.must_have:
                continue
            for parent in bundle.attribute_parents(attribute):
                if bundle.set_invalid(parent):
                    logger.warning(
                        "%s invalid: must-have %s has no valid target left",
                        parent,
                        attribute.attribute.attribute_ref,
                    )
                parents.add(parent)
        return parents
