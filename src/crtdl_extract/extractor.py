"""Pulls reference strings out of a record for the reference attributes of a group."""

from __future__ import annotations

import logging

from crtdl_extract import fhirpath
from crtdl_extract.bundle import ReferenceWrapper, ResourceGroup
from crtdl_extract.exceptions import MustHaveViolated
from crtdl_extract.fhir import Resource, relative_url
from crtdl_extract.groups import AnnotatedAttribute, AnnotatedAttributeGroup

logger = logging.getLogger(__name__)


class ReferenceExtractor:
    def extract(
        self,
        resource: Resource,
        group_map: dict[str, AnnotatedAttributeGroup],
        group_id: str,
    ) -> list[ReferenceWrapper]:
        """Return one wrapper per reference attribute of group *group_id*.

        Wrappers with no references are returned for optional attributes.
        Raises :class:`MustHaveViolated` if a must-have reference attribute is
        empty; nothing is returned for the group in that case.
        """
        group = group_map.get(group_id)
        if group is None:
            logger.debug("Unknown attribute group %s, nothing to extract", group_id)
            return []

        parent = ResourceGroup(relative_url(resource), group_id)
        return [
            ReferenceWrapper(parent, attribute, self.references(resource, attribute, parent))
            for attribute in group.ref_attributes()
        ]

    @staticmethod
    def references(
        resource: Resource, attribute: AnnotatedAttribute, parent: ResourceGroup
    ) -> tuple[str, ...]:
        found = tuple(dict.fromkeys(fhirpath.references(resource, attribute.fhir_path)))
        if not found and attribute.must_have:
            raise MustHaveViolated(
                f"No reference in {attribute.attribute_ref} of {parent.resource_id}",
                group=parent,
            )
        return found
