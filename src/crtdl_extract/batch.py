"""Runs reference resolution over batches of patients and then over the core pool."""

from __future__ import annotations

import asyncio
import logging

from crtdl_extract.bundle import PatientBatch, PatientResourceBundle, ResourceBundle
from crtdl_extract.cascade import CascadingDelete
from crtdl_extract.config import settings
from crtdl_extract.groups import AnnotatedAttributeGroup
from crtdl_extract.resolver import ReferenceResolver

logger = logging.getLogger(__name__)

CORE = "CORE"


class BatchReferenceProcessor:
    """Resolves patients concurrently, merges their shared records, then resolves the core pool."""

    def __init__(
        self,
        resolver: ReferenceResolver,
        cascade: CascadingDelete | None = None,
        max_concurrent_patients: int | None = None,
    ) -> None:
        self.resolver = resolver
        self.compartment = resolver.compartment
        self.cascade = cascade or resolver.cascade
        self.max_concurrent_patients = max_concurrent_patients or settings.max_concurrent_patients

    async def process_batches(
        self,
        batches: list[PatientBatch],
        core_bundle: ResourceBundle,
        group_map: dict[str, AnnotatedAttributeGroup],
    ) -> list[PatientBatch]:
        """Resolve every patient and the core pool.

        Returns *batches* followed by one extra batch holding the core pool
        under the patient id ``"CORE"``.
        """
        semaphore = asyncio.Semaphore(self.max_concurrent_patients)

        async def resolve(batch: PatientBatch, patient_bundle: PatientResourceBundle) -> None:
            async with semaphore:
                await self.resolver.resolve_patient(
                    patient_bundle, core_bundle, group_map, batch.apply_consent
                )
            self.cascade.handle_bundle(patient_bundle.bundle, group_map)

        await asyncio.gather(*(
            resolve(batch, patient_bundle) for batch in batches for patient_bundle in batch
        ))
        logger.info(
            "Resolved %d patients in %d batches",
            sum(len(batch) for batch in batches),
            len(batches),
        )

        for batch in batches:
            for patient_bundle in batch:
                core_bundle.merge(patient_bundle.bundle.shared_contribution(self.compartment))

        await self.resolver.resolve_core_bundle(core_bundle, group_map)
        self.cascade.handle_bundle(core_bundle, group_map)

        core_batch = PatientBatch({CORE: PatientResourceBundle(CORE, core_bundle)})
        return [*batches, core_batch]
