"""Loads the unseen references of one resolution step in a single batched fetch."""

from __future__ import annotations

import logging
from typing import Protocol

from crtdl_extract.bundle import (
    PatientResourceBundle,
    ReferenceWrapper,
    ResourceBundle,
    ResourceGroup,
)
from crtdl_extract.compartment import CompartmentManager
from crtdl_extract.exceptions import ConsentViolatedError, DataStoreError, ReferenceToPatientError
from crtdl_extract.fhir import Resource, patient_id, relative_url

logger = logging.getLogger(__name__)


class ResourceStore(Protocol):
    async def fetch_resources_by_references(
        self, grouped_references: dict[str, set[str]]
    ) -> list[Resource]: ...


class ConsentValidator(Protocol):
    def check_consent(self, resource: Resource, patient_bundle: PatientResourceBundle) -> bool: ...


class ReferenceBundleLoader:
    """Fetches unseen references and routes the records into the right cache.

    Patient-scoped records go into the patient bundle after an ownership
    and (optionally) consent check; shared records go into the core bundle.
    Every reference that could not be loaded is cached as empty, so after
    :meth:`fetch_unknown_resources` all references of the step are seen.
    """

    def __init__(
        self,
        compartment: CompartmentManager,
        datastore: ResourceStore,
        consent_validator: ConsentValidator | None = None,
    ) -> None:
        self.compartment = compartment
        self.datastore = datastore
        self.consent_validator = consent_validator

    async def fetch_unknown_resources(
        self,
        wrappers_by_group: dict[ResourceGroup, list[ReferenceWrapper]],
        patient_bundle: PatientResourceBundle | None,
        core_bundle: ResourceBundle,
        apply_consent: bool = False,
    ) -> None:
        unknown = self.find_unloaded_references(wrappers_by_group, patient_bundle, core_bundle)
        if not unknown:
            return

        grouped = self.group_references_by_type(unknown)
        loaded: set[str] = set()
        try:
            resources = await self.datastore.fetch_resources_by_references(grouped) if grouped else []
        except DataStoreError as exc:
            logger.error("Failed to fetch %d references, marking all unresolved: %s", len(unknown), exc)
            resources = []

        for resource in resources:
            url = relative_url(resource)
            if not self.compartment.is_in_compartment(url):
                core_bundle.put(resource)
                loaded.add(url)
                continue
            if patient_bundle is None:
                logger.warning("Core context loaded %s belonging to a patient", url)
                continue
            try:
                self.check_bundle_and_consent(patient_bundle, apply_consent, resource)
            except (ReferenceToPatientError, ConsentViolatedError) as exc:
                logger.warning("Dropping %s: %s", url, exc)
                continue
            patient_bundle.put(resource)
            loaded.add(url)

        not_loaded = unknown - loaded
        if not_loaded:
            logger.warning("Some references were not loaded: %s", sorted(not_loaded))
        for reference in not_loaded:
            self._target_bundle(reference, patient_bundle, core_bundle).put_empty(reference)

    def find_unloaded_references(
        self,
        wrappers_by_group: dict[ResourceGroup, list[ReferenceWrapper]],
        patient_bundle: PatientResourceBundle | None,
        core_bundle: ResourceBundle,
    ) -> set[str]:
        """Return the references of the step that their target cache has never seen.

        Patient-scoped references met in core context are cached as empty
        right away instead of being fetched.
        """
        unloaded: set[str] = set()
        for wrappers in wrappers_by_group.values():
            for wrapper in wrappers:
                for reference in wrapper.references:
                    is_patient = self.compartment.is_in_compartment(reference)
                    if is_patient and patient_bundle is None:
                        logger.warning("Patient resource %s referenced outside of patient context", reference)
                        core_bundle.put_empty(reference)
                        continue
                    target = self._target_bundle(reference, patient_bundle, core_bundle)
                    if not target.contains(reference):
                        unloaded.add(reference)
        return unloaded

    @staticmethod
    def group_references_by_type(references: set[str]) -> dict[str, set[str]]:
        """Split ``Type/id`` references into ``{type: {ids}}``.

        Absolute and malformed references are skipped.
        """
        grouped: dict[str, set[str]] = {}
        absolute: list[str] = []
        malformed: list[str] = []
        for reference in sorted(references):
            if reference.startswith("http"):
                absolute.append(reference)
                continue
            parts = reference.split("/")
            if len(parts) != 2 or not all(parts):
                malformed.append(reference)
                continue
            grouped.setdefault(parts[0], set()).add(parts[1])

        if absolute:
            logger.warning("Ignoring absolute references (not supported): %s", absolute)
        if malformed:
            logger.warning("Ignoring malformed references: %s", malformed)
        return grouped

    def check_bundle_and_consent(
        self,
        patient_bundle: PatientResourceBundle,
        apply_consent: bool,
        resource: Resource,
    ) -> None:
        """Raise unless *resource* belongs to the bundle's patient and is consented."""
        try:
            owner = patient_id(resource)
        except ValueError as exc:
            raise ReferenceToPatientError(str(exc)) from exc
        if owner != patient_bundle.patient_id:
            raise ReferenceToPatientError(
                f"Resource belongs to patient {owner}, not {patient_bundle.patient_id}"
            )
        if (
            apply_consent
            and self.consent_validator is not None
            and not self.consent_validator.check_consent(resource, patient_bundle)
        ):
            raise ConsentViolatedError("Consent violated in patient resource")

    def _target_bundle(
        self,
        reference: str,
        patient_bundle: PatientResourceBundle | None,
        core_bundle: ResourceBundle,
    ) -> ResourceBundle:
        if patient_bundle is not None and self.compartment.is_in_compartment(reference):
            return patient_bundle.bundle
        return core_bundle
