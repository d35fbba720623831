"""Load pipeline definitions from versioned TOML, YAML or JSON documents."""

from __future__ import annotations

import json
import tomllib
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from conveyor.core.errors import LoadError
from conveyor.pipeline.definition import PipelineDefinition

_FORMATS = {".toml": "toml", ".yaml": "yaml", ".yml": "yaml", ".json": "json"}


def parse_document(text: str, fmt: str) -> dict[str, Any]:
    """Parse raw document text into a mapping."""
    try:
        if fmt == "toml":
            data = tomllib.loads(text)
        elif fmt == "yaml":
            data = yaml.safe_load(text)
        elif fmt == "json":
            data = json.loads(text)
        else:
            raise LoadError(f"Unsupported definition format '{fmt}'")
    except (tomllib.TOMLDecodeError, yaml.YAMLError, json.JSONDecodeError) as e:
        raise LoadError(f"Cannot parse {fmt} definition: {e}") from e

    if not isinstance(data, dict):
        raise LoadError("Definition document must be a mapping at the top level")
    return data


def load_definition_text(text: str, fmt: str = "toml") -> PipelineDefinition:
    """Parse and validate a definition. Raises LoadError or CycleError."""
    document = parse_document(text, fmt)
    try:
        return PipelineDefinition.from_document(document)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}" for err in e.errors()
        )
        raise LoadError(f"Invalid pipeline definition: {problems}") from e


def load_definition(file_path: str | Path) -> PipelineDefinition:
    """Load a definition file; the format follows the file extension."""
    file_path = Path(file_path)
    if not file_path.exists():
        raise LoadError(f"Pipeline definition not found: {file_path}")

    fmt = _FORMATS.get(file_path.suffix.lower())
    if fmt is None:
        raise LoadError(
            f"Unknown definition file type '{file_path.suffix}'. Supported: {sorted(_FORMATS)}"
        )
    return load_definition_text(file_path.read_text(), fmt)


def resolve_definition_ref(ref: str, definitions_dir: str | Path) -> Path:
    """Resolve a trigger's definition reference to a file.

    A reference is either a path or a bare name looked up in the definitions
    directory (`release` -> `<dir>/release.toml`, `.yaml`, `.yml` or `.json`).
    """
    candidate = Path(ref).expanduser()
    if candidate.suffix and candidate.exists():
        return candidate

    base = Path(definitions_dir).expanduser()
    for suffix in _FORMATS:
        path = base / f"{ref}{suffix}"
        if path.exists():
            return path
    raise LoadError(f"Pipeline definition '{ref}' not found in {base}")
