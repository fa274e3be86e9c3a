"""Decides, once per bundle, whether a record is valid under an attribute group."""

from __future__ import annotations

import logging

from crtdl_extract.bundle import ResourceBundle, ResourceGroup
from crtdl_extract.checker import ProfileMustHaveChecker
from crtdl_extract.fhir import Resource
from crtdl_extract.groups import AnnotatedAttributeGroup

logger = logging.getLogger(__name__)


class ResourceGroupValidator:
    """Profile match, must-have attributes, then the group's filter predicate.

    The outcome is cached in the bundle's group validity, so a pairing is
    decided at most once per bundle no matter how many workers ask.
    """

    def __init__(self, checker: ProfileMustHaveChecker | None = None) -> None:
        self.checker = checker or ProfileMustHaveChecker()

    def validate(
        self,
        group: ResourceGroup,
        resource: Resource | None,
        group_map: dict[str, AnnotatedAttributeGroup],
        bundle: ResourceBundle,
    ) -> bool:
        definition = group_map.get(group.group_id)
        if definition is None:
            logger.debug("Unknown attribute group %s for %s", group.group_id, group.resource_id)
            return False

        def decide() -> bool:
            if not self.checker.fulfilled(resource, definition):
                return False
            if definition.predicate is not None and not definition.predicate(resource):
                return False
            return True

        valid = bundle.compute_validity_if_absent(group, decide)
        logger.debug("Group %s is %s", group, "valid" if valid else "invalid")
        return valid
