"""Unit tests for crtdl_extract.extractor — pulling references out of records."""

from __future__ import annotations

import pytest

from conftest import OBSERVATION_PROFILE, attribute, group, observation, ref
from crtdl_extract.bundle import ResourceGroup
from crtdl_extract.exceptions import MustHaveViolated
from crtdl_extract.extractor import ReferenceExtractor


@pytest.fixture
def group_map():
    return {
        "obs": group(
            "obs", "Observation", OBSERVATION_PROFILE,
            attribute("Observation.status"),
            attribute("Observation.subject", "patient", must_have=True),
            attribute("Observation.encounter", "encounter"),
            attribute("Observation.hasMember", "obs"),
        ),
    }


class TestExtract:
    """Verify one wrapper per reference attribute of the group."""

    def test_wrappers_per_reference_attribute(self, group_map):
        record = observation("5", encounter=ref("Encounter/9"))
        wrappers = ReferenceExtractor().extract(record, group_map, "obs")

        assert [w.attribute.attribute_ref for w in wrappers] == [
            "Observation.subject", "Observation.encounter", "Observation.hasMember",
        ]
        assert wrappers[0].references == ("Patient/1",)
        assert wrappers[1].references == ("Encounter/9",)
        assert all(w.parent == ResourceGroup("Observation/5", "obs") for w in wrappers)

    def test_empty_optional_attribute_gives_empty_wrapper(self, group_map):
        wrappers = ReferenceExtractor().extract(observation("5"), group_map, "obs")
        assert wrappers[1].references == ()

    def test_multiple_references_deduplicated(self, group_map):
        record = observation(
            "5", hasMember=[ref("Observation/6"), ref("Observation/7"), ref("Observation/6")]
        )
        wrappers = ReferenceExtractor().extract(record, group_map, "obs")
        assert wrappers[2].references == ("Observation/6", "Observation/7")

    def test_missing_must_have_aborts(self, group_map):
        record = observation("5")
        del record["subject"]
        with pytest.raises(MustHaveViolated) as info:
            ReferenceExtractor().extract(record, group_map, "obs")
        assert info.value.group == ResourceGroup("Observation/5", "obs")
        assert "Observation.subject" in str(info.value)

    def test_unknown_group(self, group_map):
        assert ReferenceExtractor().extract(observation("5"), group_map, "nope") == []
