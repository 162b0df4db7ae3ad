# loader.py
from __future__ import annotations

import logging
import runpy
from pathlib import Path
from typing import Any, List, Mapping

import yaml

from .dag import validate_definition
from .errors import DefinitionError
from .model import PipelineDefinition
from .schema import definition_from_dict

logger = logging.getLogger(__name__)

YAML_SUFFIXES = (".yml", ".yaml")
DEFAULT_FILES = ("gatedci.yml", "gatedci.yaml")


def find_pipeline_files(directory: str | Path = ".") -> List[Path]:
    """
    Pipeline files in a directory: gatedci.yml / gatedci.yaml first, then
    any *_pipeline.py.
    """
    root = Path(directory)
    found: List[Path] = [root / name for name in DEFAULT_FILES if (root / name).is_file()]
    found.extend(sorted(p for p in root.glob("*_pipeline.py") if p.is_file()))
    return found


def load_pipeline_from_dict(data: Mapping[str, Any], source: str = "dict") -> PipelineDefinition:
    """Validate a raw document, then check its stage graph."""
    definition = definition_from_dict(data, source=source)
    try:
        validate_definition(definition)
    except DefinitionError as e:
        e.source = e.source or source
        raise
    return definition


def _load_yaml(path: Path) -> PipelineDefinition:
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise DefinitionError(f"Invalid YAML: {e}", source=str(path)) from e
    if data is None:
        raise DefinitionError("Pipeline file is empty", source=str(path))
    return load_pipeline_from_dict(data, source=str(path))


def _load_python(path: Path) -> PipelineDefinition:
    """
    Run a Python pipeline file. It must define either:
      - PIPELINE = PipelineDefinition(...)
      - pipeline() -> PipelineDefinition
    """
    module_name = f"gatedci_pipeline_{path.stem}"
    globals_dict = runpy.run_path(str(path), run_name=module_name)

    definition = globals_dict.get("PIPELINE")
    if definition is None and callable(globals_dict.get("pipeline")):
        try:
            definition = globals_dict["pipeline"]()
        except TypeError as e:
            if "missing" in str(e) and "required positional argument" in str(e):
                raise DefinitionError(
                    "pipeline() was called as the DSL helper (name collision). "
                    "Import the helper under another name: `from gatedci import dsl` "
                    "then `def pipeline(): return dsl.pipeline(...)`",
                    source=str(path),
                ) from e
            raise

    if not isinstance(definition, PipelineDefinition):
        raise DefinitionError(
            "Pipeline file must return/define a PipelineDefinition. "
            "Define pipeline() -> PipelineDefinition or PIPELINE = ...",
            source=str(path),
        )

    try:
        validate_definition(definition)
    except DefinitionError as e:
        e.source = e.source or str(path)
        raise
    return definition


def load_pipeline(path: str | Path) -> PipelineDefinition:
    """Load a pipeline definition from a YAML or Python file."""
    p = Path(path).expanduser().resolve()
    if not p.exists():
        raise FileNotFoundError(f"Pipeline file not found: {p}")

    logger.debug("loading pipeline from %s", p)
    if p.suffix in YAML_SUFFIXES:
        return _load_yaml(p)
    if p.suffix == ".py":
        return _load_python(p)
    raise DefinitionError(f"Unsupported pipeline file type {p.suffix!r} (use .yml, .yaml or .py)", source=str(p))
