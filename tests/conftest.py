"""Shared fixtures and record builders for the test suite."""

from __future__ import annotations

from typing import Any

import pytest

from crtdl_extract.bundle import PatientResourceBundle, ResourceBundle
from crtdl_extract.compartment import CompartmentManager
from crtdl_extract.fhir import Resource
from crtdl_extract.groups import AnnotatedAttribute, AnnotatedAttributeGroup, Code, Filter

OBSERVATION_PROFILE = "https://example.org/fhir/StructureDefinition/Observation"
ENCOUNTER_PROFILE = "https://example.org/fhir/StructureDefinition/Encounter"
MEDICATION_PROFILE = "https://example.org/fhir/StructureDefinition/Medication"
PATIENT_PROFILE = "https://example.org/fhir/StructureDefinition/Patient"

LOINC = "http://loinc.org"


# ------------------------------------------------------------------
# Record builders
# ------------------------------------------------------------------


def patient(pid: str = "1", **extra: Any) -> Resource:
    return {"resourceType": "Patient", "id": pid, "gender": "female", **extra}


def observation(
    oid: str = "5",
    pid: str = "1",
    code: str = "1234-5",
    profile: str = OBSERVATION_PROFILE,
    **extra: Any,
) -> Resource:
    return {
        "resourceType": "Observation",
        "id": oid,
        "meta": {"profile": [f"{profile}|1.0.0"]},
        "status": "final",
        "code": {"coding": [{"system": LOINC, "code": code}]},
        "subject": {"reference": f"Patient/{pid}"},
        **extra,
    }


def encounter(eid: str = "9", pid: str = "1", **extra: Any) -> Resource:
    return {
        "resourceType": "Encounter",
        "id": eid,
        "meta": {"profile": [ENCOUNTER_PROFILE]},
        "status": "finished",
        "subject": {"reference": f"Patient/{pid}"},
        **extra,
    }


def medication(mid: str = "7", **extra: Any) -> Resource:
    return {
        "resourceType": "Medication",
        "id": mid,
        "meta": {"profile": [MEDICATION_PROFILE]},
        "code": {"coding": [{"system": "http://fhir.de/CodeSystem/bfarm/atc", "code": "C09CA01"}]},
        **extra,
    }


def ref(reference: str) -> dict[str, str]:
    return {"reference": reference}


# ------------------------------------------------------------------
# Attribute groups
# ------------------------------------------------------------------


def attribute(
    path: str, *linked: str, must_have: bool = False
) -> AnnotatedAttribute:
    return AnnotatedAttribute(
        attribute_ref=path,
        fhir_path=path,
        must_have=must_have,
        linked_groups=linked,
    )


def group(
    gid: str,
    resource_type: str,
    profile: str,
    *attributes: AnnotatedAttribute,
    reference_only: bool = False,
    **kwargs: Any,
) -> AnnotatedAttributeGroup:
    return AnnotatedAttributeGroup(
        id=gid,
        name=gid,
        resource_type=resource_type,
        group_reference=profile,
        attributes=list(attributes),
        include_reference_only=reference_only,
        **kwargs,
    )


def code_filter(*codes: str) -> Filter:
    return Filter(type="token", name="code", codes=[Code(system=LOINC, code=c) for c in codes])


@pytest.fixture
def compartment() -> CompartmentManager:
    return CompartmentManager.default()


@pytest.fixture
def core_bundle() -> ResourceBundle:
    return ResourceBundle()


@pytest.fixture
def patient_bundle() -> PatientResourceBundle:
    return PatientResourceBundle("1")
