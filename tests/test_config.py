"""Unit tests for crtdl_extract.config — Settings loading and defaults."""

from pathlib import Path


class TestSettingsDefaults:
    """Verify that Settings loads correct defaults when no env is set."""

    def test_default_fhir_base_url(self):
        from crtdl_extract.config import Settings

        s = Settings()
        assert s.fhir_base_url == "http://localhost:8080/fhir"

    def test_default_fetch_limits(self):
        from crtdl_extract.config import Settings

        s = Settings()
        assert s.fhir_page_count == 500
        assert s.fhir_max_attempts == 5

    def test_default_fan_out(self):
        from crtdl_extract.config import Settings

        s = Settings()
        assert s.max_concurrent_groups == 8
        assert s.max_concurrent_patients == 4

    def test_default_data_paths(self):
        from crtdl_extract.config import Settings

        s = Settings()
        assert s.compartment_file is None
        assert s.group_catalogue_file == Path("data/attribute_groups.json")


class TestSettingsOverride:
    """Verify that Settings picks up environment variable overrides."""

    def test_override_base_url(self, monkeypatch):
        monkeypatch.setenv("FHIR_BASE_URL", "http://blaze:8080/fhir")
        from crtdl_extract.config import Settings

        s = Settings()
        assert s.fhir_base_url == "http://blaze:8080/fhir"

    def test_override_page_count(self, monkeypatch):
        monkeypatch.setenv("FHIR_PAGE_COUNT", "50")
        from crtdl_extract.config import Settings

        s = Settings()
        assert s.fhir_page_count == 50

    def test_override_compartment_file(self, monkeypatch):
        monkeypatch.setenv("COMPARTMENT_FILE", "/tmp/compartment.json")
        from crtdl_extract.config import Settings

        s = Settings()
        assert s.compartment_file == Path("/tmp/compartment.json")


class TestSingletonSettings:
    """Verify the module-level settings instance is accessible."""

    def test_settings_instance_exists(self):
        from crtdl_extract.config import settings

        assert settings is not None
        assert hasattr(settings, "max_concurrent_groups")
