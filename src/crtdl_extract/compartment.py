"""Patient compartment routing: decides which records are patient-scoped."""

from __future__ import annotations

import json
import logging
from pathlib import Path

from crtdl_extract.bundle import ResourceGroup
from crtdl_extract.config import Settings, settings
from crtdl_extract.fhir import Resource, resource_type

logger = logging.getLogger(__name__)

# Resource types of the FHIR R4 Patient CompartmentDefinition with a non-empty param list
PATIENT_COMPARTMENT = frozenset({
    "Account", "AdverseEvent", "AllergyIntolerance", "Appointment", "AppointmentResponse",
    "AuditEvent", "Basic", "BodyStructure", "CarePlan", "CareTeam", "ChargeItem", "Claim",
    "ClaimResponse", "ClinicalImpression", "Communication", "CommunicationRequest",
    "Composition", "Condition", "Consent", "Coverage", "CoverageEligibilityRequest",
    "CoverageEligibilityResponse", "DetectedIssue", "DeviceRequest", "DeviceUseStatement",
    "DiagnosticReport", "DocumentManifest", "DocumentReference", "Encounter",
    "EnrollmentRequest", "EpisodeOfCare", "ExplanationOfBenefit", "FamilyMemberHistory",
    "Flag", "Goal", "Group", "ImagingStudy", "Immunization", "ImmunizationEvaluation",
    "ImmunizationRecommendation", "Invoice", "List", "MeasureReport", "Media",
    "MedicationAdministration", "MedicationDispense", "MedicationRequest",
    "MedicationStatement", "MolecularSequence", "NutritionOrder", "Observation", "Patient",
    "Person", "Procedure", "Provenance", "QuestionnaireResponse", "RelatedPerson",
    "RequestGroup", "ResearchSubject", "RiskAssessment", "Schedule", "ServiceRequest",
    "Specimen", "SupplyDelivery", "SupplyRequest", "VisionPrescription",
})


class CompartmentManager:
    """Answers whether a record, reference, type or group is patient-scoped."""

    def __init__(self, resource_types: set[str] | frozenset[str]) -> None:
        self.compartment = frozenset(resource_types)

    @classmethod
    def from_file(cls, path: Path) -> CompartmentManager:
        """Read the types of a FHIR ``CompartmentDefinition`` JSON file."""
        definition = json.loads(path.read_text(encoding="utf-8"))
        codes = {
            entry["code"]
            for entry in definition.get("resource", [])
            if entry.get("code") and entry.get("param")
        }
        logger.info("Loaded %d compartment resource types from %s", len(codes), path)
        return cls(codes)

    @classmethod
    def default(cls) -> CompartmentManager:
        return cls(PATIENT_COMPARTMENT)

    @classmethod
    def from_settings(cls, config: Settings | None = None) -> CompartmentManager:
        """Use the configured CompartmentDefinition, or the built-in one."""
        config = config or settings
        if config.compartment_file is None:
            return cls.default()
        return cls.from_file(config.compartment_file)

    def is_in_compartment(self, item: Resource | ResourceGroup | str) -> bool:
        if isinstance(item, ResourceGroup):
            return resource_type(item.resource_id) in self.compartment
        if isinstance(item, dict):
            return item.get("resourceType") in self.compartment
        return resource_type(item) in self.compartment
