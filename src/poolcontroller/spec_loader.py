"""Spec file loading with validation.

SECURITY: All file operations enforce size limits to prevent DoS attacks
via large files. Input validation is performed at the boundary.

A spec file holds one or more YAML documents, each a ``Cluster`` or a
``MachinePool``, either Kubernetes-style::

    apiVersion: poolcontroller.io/v1
    kind: MachinePool
    metadata: {name: workers}
    spec: {clusterName: prod, minSize: 1, maxSize: 3}

or flat, with identity fields next to the spec fields::

    kind: MachinePool
    name: workers
    clusterName: prod
    minSize: 1
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ValidationError

from .config import MAX_SPEC_FILE_SIZE_BYTES
from .models import Cluster, MachinePool

logger = logging.getLogger(__name__)

SPEC_FILE_SUFFIXES = (".yaml", ".yml")

KINDS: dict[str, type[BaseModel]] = {
    "Cluster": Cluster,
    "MachinePool": MachinePool,
}

# Flat-format keys that belong to metadata rather than spec
METADATA_KEYS = ("name", "namespace", "annotations", "labels")


class SpecLoadError(Exception):
    """Raised when spec loading or validation fails."""

    pass


@dataclass
class SpecFile:
    """Parsed contents of one spec file."""

    path: Path
    digest: str
    objects: list[Cluster | MachinePool] = field(default_factory=list)


def _format_validation_error(source: str, e: ValidationError) -> str:
    errors = []
    for error in e.errors():
        loc = ".".join(str(x) for x in error["loc"])
        errors.append(f"  - {loc}: {error['msg']}")
    return f"Validation failed for {source}:\n" + "\n".join(errors)


def parse_object(raw: Any, source: str) -> Cluster | MachinePool:
    """Validate one YAML document into a Cluster or MachinePool.

    Raises:
        SpecLoadError: If the document is not a mapping, names an unknown
            kind, or fails validation.
    """
    if not isinstance(raw, dict):
        raise SpecLoadError(f"Spec document must be a YAML mapping: {source}")

    kind = raw.get("kind")
    model = KINDS.get(kind) if isinstance(kind, str) else None
    if model is None:
        raise SpecLoadError(f"Unknown kind {kind!r} in {source}. Valid kinds: {list(KINDS)}")

    # SECURITY: Support both flat format and Kubernetes-style wrapper
    if "metadata" in raw or "spec" in raw:
        data = {k: v for k, v in raw.items() if k in ("metadata", "spec", "status")}
    else:
        body = {k: v for k, v in raw.items() if k not in ("apiVersion", "kind")}
        data = {
            "metadata": {k: body.pop(k) for k in METADATA_KEYS if k in body},
            "spec": body,
        }

    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise SpecLoadError(_format_validation_error(source, e)) from e


def load_spec_file(spec_path: Path) -> SpecFile:
    """Load and validate every object in a spec file.

    Raises:
        SpecLoadError: If the file cannot be read, parsed, or validated.
    """
    if not spec_path.exists():
        raise SpecLoadError(f"Spec file not found: {spec_path}")

    # SECURITY: Check file size before reading to prevent DoS
    try:
        file_size = spec_path.stat().st_size
    except OSError as e:
        raise SpecLoadError(f"Failed to stat spec file {spec_path}: {e}") from e

    if file_size > MAX_SPEC_FILE_SIZE_BYTES:
        raise SpecLoadError(
            f"Spec file exceeds maximum size of {MAX_SPEC_FILE_SIZE_BYTES} bytes: {spec_path}"
        )

    try:
        content = spec_path.read_text(encoding="utf-8")
    except OSError as e:
        raise SpecLoadError(f"Failed to read spec file {spec_path}: {e}") from e

    try:
        documents = [doc for doc in yaml.safe_load_all(content) if doc is not None]
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {spec_path}: {e}") from e

    objects = [
        parse_object(doc, f"{spec_path}[{i}]") for i, doc in enumerate(documents)
    ]

    logger.debug("Loaded spec file %s (%d objects)", spec_path, len(objects))
    return SpecFile(
        path=spec_path,
        digest=hashlib.sha256(content.encode("utf-8")).hexdigest(),
        objects=objects,
    )


def list_spec_files(specs_dir: Path) -> list[Path]:
    """Return spec files in the directory, sorted for deterministic loading."""
    if not specs_dir.is_dir():
        raise SpecLoadError(f"Specs directory does not exist: {specs_dir}")
    return sorted(
        p for p in specs_dir.iterdir() if p.is_file() and p.suffix in SPEC_FILE_SUFFIXES
    )
