"""Cluster document and status file loading with validation.

SECURITY: All file operations enforce size limits to prevent DoS attacks
via large files. Input validation is performed at the boundary.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, TypeVar

import yaml
from pydantic import BaseModel, ValidationError

from .config import MAX_SPEC_FILE_SIZE_BYTES
from .models import ClusterDocument, ClusterStatus

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


class SpecLoadError(Exception):
    """Raised when spec loading or validation fails."""

    pass


def _read_yaml_mapping(path: Path, what: str) -> dict[str, Any]:
    if not path.exists():
        raise SpecLoadError(f"{what} not found: {path}")

    # SECURITY: Check file size before reading to prevent DoS
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise SpecLoadError(f"Failed to stat {what} {path}: {e}") from e

    if file_size > MAX_SPEC_FILE_SIZE_BYTES:
        raise SpecLoadError(f"{what} exceeds maximum size of {MAX_SPEC_FILE_SIZE_BYTES} bytes: {path}")

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise SpecLoadError(f"Failed to read {what} {path}: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {path}: {e}") from e

    if raw_data is None:
        raw_data = {}
    if not isinstance(raw_data, dict):
        raise SpecLoadError(f"{what} must contain a YAML mapping: {path}")
    return raw_data


def _validate(model: type[M], data: dict[str, Any], path: Path) -> M:
    try:
        return model.model_validate(data)
    except ValidationError as e:
        # Format Pydantic validation errors for readability
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            msg = error["msg"]
            errors.append(f"  - {loc}: {msg}")

        error_list = "\n".join(errors)
        raise SpecLoadError(f"Validation failed for {path}:\n{error_list}") from e


def load_cluster_document(path: Path) -> ClusterDocument:
    """Load and validate a cluster document from YAML.

    Two layouts are accepted. The resource layout::

        apiVersion: clusternet/v1alpha1
        kind: ClusterNetwork
        metadata:
          name: demo
        spec:
          nodeCidr: 10.6.0.0/24
        machines:
          - name: demo-control-plane-0
            controlPlane: true
            address: 10.6.0.11

    and the flat layout with top-level ``name``, ``spec`` and ``machines``.
    Without an explicit name the file stem is used.

    Raises:
        SpecLoadError: If the document cannot be loaded or fails validation.
    """
    raw_data = _read_yaml_mapping(path, "Cluster document")

    if "apiVersion" in raw_data and "spec" in raw_data:
        metadata = raw_data.get("metadata") or {}
        if not isinstance(metadata, dict):
            raise SpecLoadError(f"Metadata section must be a mapping: {path}")
        if not isinstance(raw_data["spec"], dict):
            raise SpecLoadError(f"Spec section must be a mapping: {path}")
        doc_data = {
            "name": metadata.get("name") or path.stem,
            "spec": raw_data["spec"],
            "machines": raw_data.get("machines") or [],
        }
    else:
        doc_data = {"name": path.stem, **raw_data}

    document = _validate(ClusterDocument, doc_data, path)
    logger.info(
        "Loaded cluster document",
        extra={"cluster": document.name, "path": str(path), "machines": len(document.machines)},
    )
    return document


def load_status(path: Path) -> ClusterStatus:
    """Load a status file written by write_status.

    A missing file yields an empty status.
    """
    if not path.exists():
        return ClusterStatus()
    return _validate(ClusterStatus, _read_yaml_mapping(path, "Status file"), path)


def write_status(path: Path, status: ClusterStatus) -> None:
    """Write status as YAML, replacing the file atomically."""
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    try:
        tmp_path.write_text(
            yaml.safe_dump(status.to_dict(), sort_keys=False),
            encoding="utf-8",
        )
        tmp_path.replace(path)
    except OSError as e:
        raise SpecLoadError(f"Failed to write status file {path}: {e}") from e
    logger.debug("Wrote status", extra={"path": str(path)})
