"""Profile and must-have checks of a record against an attribute group."""

from __future__ import annotations

from crtdl_extract import fhirpath
from crtdl_extract.fhir import PATIENT, Resource, profiles
from crtdl_extract.groups import AnnotatedAttributeGroup


class ProfileMustHaveChecker:
    """Checks whether a record may stand for a group before any filter runs.

    The record must be of the group's resource type and declare the group's
    profile (Patient records are exempt from the profile check), and every
    must-have non-reference attribute must be present on it.
    """

    def fulfilled(self, resource: Resource | None, group: AnnotatedAttributeGroup | None) -> bool:
        if resource is None or group is None:
            return False
        if resource.get("resourceType") != group.resource_type:
            return False
        if resource["resourceType"] != PATIENT and group.group_reference not in profiles(resource):
            return False
        return all(
            fhirpath.exists(resource, attribute.fhir_path)
            for attribute in group.must_have_attributes()
        )
