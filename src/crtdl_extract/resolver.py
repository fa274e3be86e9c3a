"""Fixed-point reference resolution for one patient or for the core pool.

Each step takes the frontier (valid groups not yet expanded), extracts their
references in parallel, fetches every unseen reference in one batched call,
handles the references in parallel and claims the newly valid groups as the
next frontier. Resolution ends at the first step whose frontier is empty; that
step is counted too, so a bundle with nothing to expand resolves in one step.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable

from crtdl_extract.bundle import (
    PatientResourceBundle,
    ReferenceWrapper,
    ResourceBundle,
    ResourceGroup,
)
from crtdl_extract.cascade import CascadingDelete
from crtdl_extract.config import settings
from crtdl_extract.exceptions import MustHaveViolated, ResourceTypeMismatchError
from crtdl_extract.extractor import ReferenceExtractor
from crtdl_extract.groups import AnnotatedAttributeGroup
from crtdl_extract.handler import ReferenceHandler
from crtdl_extract.loader import ReferenceBundleLoader

logger = logging.getLogger(__name__)


class ReferenceResolver:
    def __init__(
        self,
        loader: ReferenceBundleLoader,
        extractor: ReferenceExtractor | None = None,
        handler: ReferenceHandler | None = None,
        cascade: CascadingDelete | None = None,
        max_concurrent_groups: int | None = None,
    ) -> None:
        self.loader = loader
        self.compartment = loader.compartment
        self.extractor = extractor or ReferenceExtractor()
        self.handler = handler or ReferenceHandler()
        self.cascade = cascade or CascadingDelete()
        self.max_concurrent_groups = max_concurrent_groups or settings.max_concurrent_groups

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def resolve_patient(
        self,
        patient_bundle: PatientResourceBundle,
        core_bundle: ResourceBundle,
        group_map: dict[str, AnnotatedAttributeGroup],
        apply_consent: bool = False,
    ) -> PatientResourceBundle:
        """Resolve every valid group of *patient_bundle*, reading and filling the core pool."""
        steps = await self._resolve(patient_bundle, core_bundle, group_map, apply_consent)
        logger.info("Resolved patient %s in %d steps", patient_bundle.patient_id, steps)
        return patient_bundle

    async def resolve_core_bundle(
        self,
        core_bundle: ResourceBundle,
        group_map: dict[str, AnnotatedAttributeGroup],
    ) -> ResourceBundle:
        """Resolve the shared pool. Meeting a patient-scoped group here is fatal."""
        steps = await self._resolve(None, core_bundle, group_map, apply_consent=False)
        logger.info("Resolved core bundle in %d steps", steps)
        return core_bundle

    # ------------------------------------------------------------------
    # Fixed point
    # ------------------------------------------------------------------

    async def _resolve(
        self,
        patient_bundle: PatientResourceBundle | None,
        core_bundle: ResourceBundle,
        group_map: dict[str, AnnotatedAttributeGroup],
        apply_consent: bool,
    ) -> int:
        bundle = patient_bundle.bundle if patient_bundle is not None else core_bundle
        semaphore = asyncio.Semaphore(self.max_concurrent_groups)

        frontier = bundle.valid_groups_not_yet_expanded()
        steps = 1
        while frontier:
            logger.debug("Step %d: expanding %d resource groups", steps, len(frontier))
            discovered = await self._step(
                frontier, patient_bundle, core_bundle, group_map, apply_consent, semaphore
            )
            # Groups can turn valid outside the handler's report, e.g. via a sibling worker
            frontier = bundle.claim_for_expansion(discovered) | bundle.valid_groups_not_yet_expanded()
            steps += 1
        return steps

    async def _step(
        self,
        frontier: set[ResourceGroup],
        patient_bundle: PatientResourceBundle | None,
        core_bundle: ResourceBundle,
        group_map: dict[str, AnnotatedAttributeGroup],
        apply_consent: bool,
        semaphore: asyncio.Semaphore,
    ) -> set[ResourceGroup]:
        bundle = patient_bundle.bundle if patient_bundle is not None else core_bundle
        ordered = sorted(frontier)
        invalid: set[ResourceGroup] = set()

        extracted = await asyncio.gather(*(
            self._bounded(semaphore, self._extract, group, patient_bundle, core_bundle, group_map)
            for group in ordered
        ))
        wrappers_by_group: dict[ResourceGroup, list[ReferenceWrapper]] = {}
        for group, wrappers in zip(ordered, extracted):
            if wrappers is None:
                invalid.add(group)
            else:
                wrappers_by_group[group] = wrappers

        # Barrier: every reference of the step is seen before any handling starts
        await self.loader.fetch_unknown_resources(
            wrappers_by_group, patient_bundle, core_bundle, apply_consent
        )

        handled = await asyncio.gather(*(
            self._bounded(semaphore, self._handle, wrappers, patient_bundle, core_bundle, group_map)
            for wrappers in wrappers_by_group.values()
        ))
        discovered: set[ResourceGroup] = set()
        for group, found in zip(wrappers_by_group, handled):
            if found is None:
                invalid.add(group)
            else:
                discovered |= found

        for group in invalid:
            bundle.set_invalid(group)
        if invalid:
            self.cascade.handle_bundle(bundle, group_map, seeds=invalid)
        return discovered

    # ------------------------------------------------------------------
    # Per-group work, run in worker threads
    # ------------------------------------------------------------------

    @staticmethod
    async def _bounded(semaphore: asyncio.Semaphore, fn: Callable[..., Any], *args: Any) -> Any:
        async with semaphore:
            return await asyncio.to_thread(fn, *args)

    def _extract(
        self,
        group: ResourceGroup,
        patient_bundle: PatientResourceBundle | None,
        core_bundle: ResourceBundle,
        group_map: dict[str, AnnotatedAttributeGroup],
    ) -> list[ReferenceWrapper] | None:
        """Return the group's wrappers, or ``None`` if a must-have reference is missing."""
        if patient_bundle is None and self.compartment.is_in_compartment(group):
            raise ResourceTypeMismatchError(
                f"Patient resource group {group} handled without a patient bundle"
            )
        resource = None
        if patient_bundle is not None:
            resource = patient_bundle.get(group.resource_id)
        if resource is None:
            resource = core_bundle.get(group.resource_id)
        if resource is None:
            logger.warning("No resource cached for valid group %s", group)
            return []

        try:
            return self.extractor.extract(resource, group_map, group.group_id)
        except MustHaveViolated as exc:
            logger.warning("Invalidating %s: %s", group, exc)
            return None

    def _handle(
        self,
        wrappers: list[ReferenceWrapper],
        patient_bundle: PatientResourceBundle | None,
        core_bundle: ResourceBundle,
        group_map: dict[str, AnnotatedAttributeGroup],
    ) -> set[ResourceGroup] | None:
        """Return the group's newly valid children, or ``None`` on a must-have violation."""
        try:
            return self.handler.handle_references(wrappers, patient_bundle, core_bundle, group_map)
        except MustHaveViolated as exc:
            logger.warning("Invalidating %s: %s", exc.group, exc)
            return None
