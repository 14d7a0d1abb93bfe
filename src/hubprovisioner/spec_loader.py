"""Parameter file loading with validation.

SECURITY: All file operations enforce size limits to prevent DoS attacks
via large files. Input validation is performed at the boundary.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .config import MAX_PARAMS_FILE_SIZE_BYTES
from .topology import HubNetworkSpec

logger = logging.getLogger(__name__)

PARAMS_KIND = "HubNetwork"


class SpecLoadError(Exception):
    """Raised when parameter loading or validation fails."""

    pass


def format_validation_error(error: ValidationError) -> str:
    """Flatten pydantic errors into one "loc: msg" line per problem."""
    lines = []
    for item in error.errors():
        loc = ".".join(str(x) for x in item["loc"]) or "<root>"
        lines.append(f"  - {loc}: {item['msg']}")
    return "\n".join(lines)


def parse_params(raw_data: Any, source: str = "<parameters>") -> HubNetworkSpec:
    """Validate an already-parsed parameter mapping.

    Accepts either flat parameters or a wrapper of the form
    `apiVersion / kind / metadata / spec`.

    Raises:
        SpecLoadError: If the data is not a mapping or fails validation.
    """
    if not isinstance(raw_data, dict):
        raise SpecLoadError(f"Parameter file must contain a YAML mapping: {source}")

    if "apiVersion" in raw_data and "spec" in raw_data:
        kind = raw_data.get("kind", PARAMS_KIND)
        if kind != PARAMS_KIND:
            raise SpecLoadError(f"Unsupported kind '{kind}' in {source}, expected {PARAMS_KIND}")
        spec_data = raw_data.get("spec")
        if not isinstance(spec_data, dict):
            raise SpecLoadError(f"Spec section must be a mapping: {source}")
    else:
        spec_data = raw_data

    try:
        return HubNetworkSpec.model_validate(spec_data)
    except ValidationError as e:
        raise SpecLoadError(f"Validation failed for {source}:\n{format_validation_error(e)}") from e


def load_params(path: Path) -> HubNetworkSpec:
    """Load and validate hub parameters from a YAML file.

    Raises:
        SpecLoadError: If the file cannot be read or fails validation.
    """
    if not path.exists():
        raise SpecLoadError(f"Parameter file not found: {path}")

    # SECURITY: Check file size before reading to prevent DoS
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise SpecLoadError(f"Failed to stat parameter file {path}: {e}") from e

    if file_size > MAX_PARAMS_FILE_SIZE_BYTES:
        raise SpecLoadError(
            f"Parameter file exceeds maximum size of {MAX_PARAMS_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise SpecLoadError(f"Failed to read parameter file {path}: {e}") from e
    except UnicodeDecodeError as e:
        raise SpecLoadError(f"Parameter file {path} is not valid UTF-8: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {path}: {e}") from e

    spec = parse_params(raw_data, str(path))
    logger.info("Loaded hub parameters '%s' from %s", spec.name, path)
    return spec
