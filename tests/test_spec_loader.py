"""Tests for manifest loading."""

from pathlib import Path

import pytest

from iis_operator.config import MAX_MANIFEST_FILE_SIZE_BYTES
from iis_operator.models import EnsureState
from iis_operator.spec_loader import SpecLoadError, load_manifest


class TestLoadManifest:
    """Tests for load_manifest."""

    def test_plain_format(self, tmp_path: Path) -> None:
        """Test loading a manifest with a top-level sites list."""
        path = tmp_path / "sites.yaml"
        path.write_text(
            "sites:\n"
            "  - name: Default Web Site\n"
            "    ensure: started\n"
            "    physicalpath: C:\\inetpub\\wwwroot\n"
            "    applicationpool: DefaultAppPool\n"
        )

        manifest = load_manifest(path)

        assert len(manifest.sites) == 1
        assert manifest.sites[0].name == "Default Web Site"
        assert manifest.sites[0].ensure == EnsureState.STARTED

    def test_kubernetes_format(self, tmp_path: Path) -> None:
        """Test loading a manifest wrapped in apiVersion/kind/spec."""
        path = tmp_path / "sites.yaml"
        path.write_text(
            "apiVersion: iis.operator/v1\n"
            "kind: SiteManifest\n"
            "metadata:\n"
            "  name: web01\n"
            "spec:\n"
            "  sites:\n"
            "    - name: api\n"
            "      ensure: absent\n"
        )

        manifest = load_manifest(path)

        assert manifest.sites[0].ensure == EnsureState.ABSENT

    def test_empty_file(self, tmp_path: Path) -> None:
        """Test that an empty file is a manifest without sites."""
        path = tmp_path / "sites.yaml"
        path.write_text("")

        assert load_manifest(path).sites == []

    def test_missing_file(self, tmp_path: Path) -> None:
        """Test that a missing file raises error."""
        with pytest.raises(SpecLoadError) as exc_info:
            load_manifest(tmp_path / "missing.yaml")

        assert "not found" in str(exc_info.value)

    def test_invalid_yaml(self, tmp_path: Path) -> None:
        """Test that malformed YAML raises error."""
        path = tmp_path / "sites.yaml"
        path.write_text("sites: [\n")

        with pytest.raises(SpecLoadError) as exc_info:
            load_manifest(path)

        assert "Invalid YAML" in str(exc_info.value)

    def test_not_a_mapping(self, tmp_path: Path) -> None:
        """Test that a top-level list raises error."""
        path = tmp_path / "sites.yaml"
        path.write_text("- name: site\n")

        with pytest.raises(SpecLoadError) as exc_info:
            load_manifest(path)

        assert "mapping" in str(exc_info.value)

    def test_validation_errors_are_formatted(self, tmp_path: Path) -> None:
        """Test that Pydantic errors are listed with their location."""
        path = tmp_path / "sites.yaml"
        path.write_text("sites:\n  - name: site\n    ensure: running\n")

        with pytest.raises(SpecLoadError) as exc_info:
            load_manifest(path)

        message = str(exc_info.value)
        assert "Validation failed" in message
        assert "sites.0.ensure" in message

    def test_file_too_large(self, tmp_path: Path) -> None:
        """Test that oversized manifests are rejected before parsing."""
        path = tmp_path / "sites.yaml"
        path.write_text("#" * (MAX_MANIFEST_FILE_SIZE_BYTES + 1))

        with pytest.raises(SpecLoadError) as exc_info:
            load_manifest(path)

        assert "maximum size" in str(exc_info.value)
