"""Turns extracted references into newly discovered valid resource groups."""

from __future__ import annotations

import logging

from crtdl_extract.bundle import (
    PatientResourceBundle,
    ReferenceWrapper,
    ResourceBundle,
    ResourceGroup,
)
from crtdl_extract.exceptions import MustHaveViolated
from crtdl_extract.fhir import Resource, relative_url
from crtdl_extract.groups import AnnotatedAttributeGroup
from crtdl_extract.validator import ResourceGroupValidator

logger = logging.getLogger(__name__)


class ReferenceHandler:
    """Resolves the references of one parent group against the caches.

    References must already be loaded (see
    :class:`crtdl_extract.loader.ReferenceBundleLoader`); a reference that
    is unseen or empty counts as zero targets. Edges are recorded for every
    candidate child, valid or not, so later invalidation can retract them.
    """

    def __init__(self, validator: ResourceGroupValidator | None = None) -> None:
        self.validator = validator or ResourceGroupValidator()

    def handle_references(
        self,
        wrappers: list[ReferenceWrapper],
        patient_bundle: PatientResourceBundle | None,
        core_bundle: ResourceBundle,
        group_map: dict[str, AnnotatedAttributeGroup],
    ) -> set[ResourceGroup]:
        """Handle the wrappers of one parent group.

        Returns the valid child groups that were not known before this call.
        Raises :class:`MustHaveViolated` on the first must-have attribute
        without a valid child.
        """
        bundle = patient_bundle.bundle if patient_bundle is not None else core_bundle
        known = bundle.known_resource_groups()

        found: set[ResourceGroup] = set()
        for wrapper in wrappers:
            found |= self.handle_reference(wrapper, patient_bundle, core_bundle, group_map)
        return found - known

    def handle_reference(
        self,
        wrapper: ReferenceWrapper,
        patient_bundle: PatientResourceBundle | None,
        core_bundle: ResourceBundle,
        group_map: dict[str, AnnotatedAttributeGroup],
    ) -> set[ResourceGroup]:
        bundle = patient_bundle.bundle if patient_bundle is not None else core_bundle
        attribute = wrapper.resource_attribute
        bundle.add_attribute_to_parent(attribute, wrapper.parent)

        known = bundle.attribute_validity(attribute)
        if known is not None:
            if not known and wrapper.attribute.must_have:
                raise MustHaveViolated(
                    f"{wrapper.attribute.attribute_ref} of {wrapper.parent.resource_id} "
                    "was already resolved without a valid target",
                    group=wrapper.parent,
                    attribute=attribute,
                )
            return set()

        valid_children: set[ResourceGroup] = set()
        for reference in wrapper.references:
            resource = self._lookup(reference, patient_bundle, core_bundle)
            if resource is None:
                logger.debug("Reference %s is unresolved, no targets", reference)
                continue

            resource_url = relative_url(resource)
            for group_id in wrapper.attribute.linked_groups:
                if group_id not in group_map:
                    logger.debug("Unknown group %s for reference %s", group_id, reference)
                    continue
                child = ResourceGroup(resource_url, group_id)
                bundle.add_attribute_to_child(attribute, child)
                if self.validator.validate(child, resource, group_map, bundle):
                    valid_children.add(child)

        if wrapper.attribute.must_have and not valid_children:
            bundle.set_attribute_invalid(attribute)
            raise MustHaveViolated(
                f"No valid target for must-have {wrapper.attribute.attribute_ref} "
                f"of {wrapper.parent.resource_id}: {list(wrapper.references)}",
                group=wrapper.parent,
                attribute=attribute,
            )

        bundle.set_attribute_valid(attribute)
        return valid_children

    @staticmethod
    def _lookup(
        reference: str,
        patient_bundle: PatientResourceBundle | None,
        core_bundle: ResourceBundle,
    ) -> Resource | None:
        if patient_bundle is not None and patient_bundle.contains(reference):
            return patient_bundle.get(reference)
        return core_bundle.get(reference)
