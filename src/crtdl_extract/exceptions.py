"""Exceptions raised while resolving references of an extraction."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from crtdl_extract.bundle import ResourceAttribute, ResourceGroup


class ExtractionError(Exception):
    """Base class for all extraction errors."""


class MustHaveViolated(ExtractionError):
    """A mandatory field or mandatory reference target was absent.

    ``group`` is the ResourceGroup that loses its validity because of the
    violation; the raiser may not know it yet, in which case the resolver
    fills it in when it catches the error.
    """

    def __init__(
        self,
        message: str,
        group: ResourceGroup | None = None,
        attribute: ResourceAttribute | None = None,
    ) -> None:
        super().__init__(message)
        self.group = group
        self.attribute = attribute


class DataStoreError(ExtractionError):
    """Fetching from the FHIR server failed after all retries."""


class ResourceTypeMismatchError(ExtractionError):
    """A patient resource showed up where only core resources are allowed."""


class ReferenceToPatientError(ExtractionError):
    """A patient resource was loaded in the context of another patient."""


class ConsentViolatedError(ExtractionError):
    """A patient resource is not covered by the patient's consent."""
