"""Site manifest loading with validation.

All file operations enforce a size limit, and the manifest is validated in
full before any site is touched.
"""

from __future__ import annotations

import logging
from pathlib import Path

import yaml
from pydantic import ValidationError

from .config import MAX_MANIFEST_FILE_SIZE_BYTES, MAX_SITES_PER_MANIFEST
from .models import SiteManifest

logger = logging.getLogger(__name__)


class SpecLoadError(Exception):
    """Raised when manifest loading or validation fails."""

    pass


def load_manifest(manifest_path: Path) -> SiteManifest:
    """Load and validate a site manifest from YAML.

    Two layouts are accepted:

        sites:
          - name: Default Web Site
            ensure: started

    or a Kubernetes-style wrapper with the same content under ``spec``.

    Args:
        manifest_path: Path to the YAML file.

    Returns:
        Validated manifest.

    Raises:
        SpecLoadError: If the manifest cannot be loaded or fails validation.
    """
    if not manifest_path.exists():
        raise SpecLoadError(f"Manifest file not found: {manifest_path}")

    try:
        file_size = manifest_path.stat().st_size
    except OSError as e:
        raise SpecLoadError(f"Failed to stat manifest file {manifest_path}: {e}") from e

    if file_size > MAX_MANIFEST_FILE_SIZE_BYTES:
        raise SpecLoadError(
            f"Manifest file exceeds maximum size of {MAX_MANIFEST_FILE_SIZE_BYTES} bytes: "
            f"{manifest_path}"
        )

    try:
        content = manifest_path.read_text(encoding="utf-8")
    except OSError as e:
        raise SpecLoadError(f"Failed to read manifest file {manifest_path}: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {manifest_path}: {e}") from e

    if raw_data is None:
        raw_data = {"sites": []}

    if not isinstance(raw_data, dict):
        raise SpecLoadError(f"Manifest file must contain a YAML mapping: {manifest_path}")

    if "apiVersion" in raw_data and "spec" in raw_data:
        # Kubernetes-style format: apiVersion, kind, metadata, spec
        spec_data = raw_data.get("spec") or {}
        if not isinstance(spec_data, dict):
            raise SpecLoadError(f"Spec section must be a mapping: {manifest_path}")
    else:
        spec_data = raw_data

    sites = spec_data.get("sites")
    if isinstance(sites, list) and len(sites) > MAX_SITES_PER_MANIFEST:
        raise SpecLoadError(
            f"Manifest declares {len(sites)} sites, exceeding the limit of "
            f"{MAX_SITES_PER_MANIFEST}: {manifest_path}"
        )

    try:
        manifest = SiteManifest.model_validate(spec_data)
    except ValidationError as e:
        # Format Pydantic validation errors for readability
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            msg = error["msg"]
            errors.append(f"  - {loc}: {msg}" if loc else f"  - {msg}")

        error_list = "\n".join(errors)
        raise SpecLoadError(f"Validation failed for {manifest_path}:\n{error_list}") from e

    logger.info("Loaded %d sites from %s", len(manifest.sites), manifest_path)
    return manifest
