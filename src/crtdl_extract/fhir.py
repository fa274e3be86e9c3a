"""FHIR resource helpers and an in-memory store loaded from Bundle JSON files."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

# Type alias for a FHIR resource dict
Resource = dict[str, Any]

PATIENT = "Patient"

# Reference fields that point from a resource to its owning patient
_PATIENT_REFERENCE_FIELDS = ("subject", "patient", "beneficiary")


# ------------------------------------------------------------------
# Resource helpers
# ------------------------------------------------------------------


def relative_url(resource: Resource) -> str:
    """Return the ``Type/id`` key of a resource."""
    return f"{resource['resourceType']}/{resource['id']}"


def resource_type(reference: str) -> str:
    """Return the type part of a ``Type/id`` reference (or a bare type name)."""
    return reference.split("/", 1)[0]


def strip_version(url: str) -> str:
    """Drop a ``|version`` suffix from a canonical URL."""
    return url.split("|", 1)[0]


def profiles(resource: Resource) -> list[str]:
    """Return the declared ``meta.profile`` URLs without version suffixes."""
    return [strip_version(p) for p in resource.get("meta", {}).get("profile", [])]


def patient_id(resource: Resource) -> str:
    """Return the ID of the patient a resource belongs to.

    Raises ``ValueError`` if the resource carries no patient reference.
    """
    if resource.get("resourceType") == PATIENT:
        return resource["id"]

    for field in _PATIENT_REFERENCE_FIELDS:
        ref = resource.get(field, {})
        if isinstance(ref, dict):
            ref = ref.get("reference", "")
        if isinstance(ref, str) and ref.startswith(f"{PATIENT}/"):
            return ref.split("/", 1)[1]

    raise ValueError(f"No patient reference in {resource.get('resourceType')}/{resource.get('id')}")


# ------------------------------------------------------------------
# In-memory store
# ------------------------------------------------------------------


class FHIRStore:
    """In-memory store for FHIR resources loaded from Bundle JSON files.

    Implements the same batched fetch contract as
    :class:`crtdl_extract.datastore.DataStore`, so extractions can run
    against local Synthea-style dumps without a FHIR server.
    """

    def __init__(self) -> None:
        self._resources: dict[str, Resource] = {}

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def load_bundle(self, path: Path) -> None:
        """Load a single FHIR Bundle JSON file into the store."""
        with open(path) as f:
            bundle = json.load(f)

        if bundle.get("resourceType") != "Bundle":
            raise ValueError(f"Not a FHIR Bundle: {path}")

        for entry in bundle.get("entry", []):
            resource = entry.get("resource")
            if resource and "id" in resource:
                self.add(resource)

    def load_directory(self, directory: Path) -> None:
        """Load all ``*.json`` Bundle files from a directory."""
        for path in sorted(directory.glob("*.json")):
            self.load_bundle(path)

    def add(self, resource: Resource) -> None:
        self._resources[relative_url(resource)] = resource

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get(self, reference: str) -> Resource | None:
        """Return the resource for a ``Type/id`` reference, or ``None``."""
        return self._resources.get(reference)

    def patient_ids(self) -> list[str]:
        """Return the IDs of all loaded Patient resources."""
        return [
            resource["id"]
            for resource in self._resources.values()
            if resource["resourceType"] == PATIENT
        ]

    async def fetch_resources_by_references(
        self, grouped_references: dict[str, set[str]]
    ) -> list[Resource]:
        """Return every stored resource matching ``{type: {ids}}``."""
        found: list[Resource] = []
        for res_type, ids in grouped_references.items():
            for res_id in sorted(ids):
                resource = self._resources.get(f"{res_type}/{res_id}")
                if resource is None:
                    logger.debug("Resource %s/%s not in store", res_type, res_id)
                    continue
                found.append(resource)
        return found

    def __len__(self) -> int:
        return len(self._resources)
