"""Stack file loading with validation.

SECURITY: File reads enforce size limits and the resource count is capped.
Input validation is performed at the boundary; nothing downstream sees an
unvalidated property bag.
"""

from __future__ import annotations

import hashlib
import logging
from pathlib import Path

import yaml
from pydantic import ValidationError

from .config import MAX_RESOURCES_PER_STACK, MAX_SPEC_FILE_SIZE_BYTES
from .models import StackSpec

logger = logging.getLogger(__name__)


class SpecLoadError(Exception):
    """Raised when a stack file cannot be loaded or fails validation."""

    pass


def _read_stack_file(spec_path: Path) -> str:
    if not spec_path.exists():
        raise SpecLoadError(f"Stack file not found: {spec_path}")

    # SECURITY: Check file size before reading
    try:
        file_size = spec_path.stat().st_size
    except OSError as e:
        raise SpecLoadError(f"Failed to stat stack file {spec_path}: {e}") from e

    if file_size > MAX_SPEC_FILE_SIZE_BYTES:
        raise SpecLoadError(
            f"Stack file exceeds maximum size of {MAX_SPEC_FILE_SIZE_BYTES} bytes: {spec_path}"
        )

    try:
        return spec_path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise SpecLoadError(f"Failed to read stack file {spec_path}: {e}") from e


def spec_file_hash(spec_path: Path) -> str:
    """SHA256 of the stack file content, for provenance records."""
    try:
        return hashlib.sha256(spec_path.read_bytes()).hexdigest()
    except OSError:
        return ""


def load_stack(spec_path: Path) -> StackSpec:
    """Load and validate a stack file.

    Args:
        spec_path: Path to the YAML stack file.

    Returns:
        Validated stack.

    Raises:
        SpecLoadError: If the file cannot be read, is not valid YAML, or
            fails validation.
    """
    content = _read_stack_file(spec_path)

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {spec_path}: {e}") from e

    if not isinstance(raw_data, dict):
        raise SpecLoadError(f"Stack file must contain a YAML mapping: {spec_path}")

    # Support both flat format and Kubernetes-style wrapper
    if "apiVersion" in raw_data and "spec" in raw_data:
        spec_data = raw_data.get("spec") or {}
        if not isinstance(spec_data, dict):
            raise SpecLoadError(f"Spec section must be a mapping: {spec_path}")
        metadata = raw_data.get("metadata")
        if isinstance(metadata, dict) and "name" in metadata and "name" not in spec_data:
            spec_data = {**spec_data, "name": metadata["name"]}
    else:
        spec_data = raw_data

    resources = spec_data.get("resources")
    if isinstance(resources, list) and len(resources) > MAX_RESOURCES_PER_STACK:
        raise SpecLoadError(
            f"Stack declares {len(resources)} resources, maximum is "
            f"{MAX_RESOURCES_PER_STACK}: {spec_path}"
        )

    try:
        stack = StackSpec.model_validate(spec_data)
    except ValidationError as e:
        # Format Pydantic validation errors for readability
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            msg = error["msg"]
            errors.append(f"  - {loc}: {msg}")

        error_list = "\n".join(errors)
        raise SpecLoadError(f"Validation failed for {spec_path}:\n{error_list}") from e

    logger.info(
        "Loaded stack '%s' from %s",
        stack.name,
        spec_path,
        extra={"resource_count": len(stack.resources)},
    )
    return stack
