import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from srebench.conductor.scenarios.definition import ScenarioDefinition
from srebench.errors import ScenarioNotFoundError, ScenarioValidationError
from srebench.paths import CATALOG_DIR

logger = logging.getLogger("all.srebench.registry")

SCENARIO_SUFFIXES = (".yaml", ".yml", ".json")

# extra directories searched for scenarios, separated like PATH
EXTRA_DIRS_ENV = "SREBENCH_SCENARIO_PATH"


@dataclass
class ScenarioEntry:
    id: str
    title: str
    path: Path
    tags: list[str] = field(default_factory=list)
    builtin: bool = False


def load_document(path: Path) -> dict:
    """Parse a YAML or JSON scenario file."""
    path = Path(path)
    try:
        text = path.read_text()
    except OSError as e:
        raise ScenarioNotFoundError(f"Cannot read scenario file {path}: {e}") from e
    try:
        data = json.loads(text) if path.suffix == ".json" else yaml.safe_load(text)
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        raise ScenarioValidationError(f"Cannot parse {path}: {e}") from e
    if not isinstance(data, dict):
        raise ScenarioValidationError(f"{path} does not contain a scenario mapping")
    return data


def load_scenario(path: Path, params: dict | None = None) -> ScenarioDefinition:
    return ScenarioDefinition.from_document(load_document(path), params=params, source=str(path))


class ScenarioRegistry:
    """Built-in catalog plus any user directories; ids must be unique across all of them."""

    def __init__(self, directories: list[Path] | None = None):
        if directories is None:
            directories = [CATALOG_DIR]
            extra = os.getenv(EXTRA_DIRS_ENV)
            if extra:
                directories += [Path(p) for p in extra.split(os.pathsep) if p]
        self.directories = [Path(d) for d in directories]

    def entries(self) -> dict[str, ScenarioEntry]:
        out: dict[str, ScenarioEntry] = {}
        for directory in self.directories:
            if not directory.is_dir():
                logger.debug(f"Scenario directory {directory} does not exist, skipping")
                continue
            for path in sorted(directory.iterdir()):
                if path.suffix not in SCENARIO_SUFFIXES:
                    continue
                doc = load_document(path)
                scenario_id = doc.get("id") or path.stem
                if scenario_id in out:
                    raise ScenarioValidationError(
                        f"Duplicate scenario id '{scenario_id}' in {path} and {out[scenario_id].path}"
                    )
                out[scenario_id] = ScenarioEntry(
                    id=scenario_id,
                    title=doc.get("title", ""),
                    path=path,
                    tags=list(doc.get("tags") or []),
                    builtin=directory == CATALOG_DIR,
                )
        return out

    def list(self) -> list[ScenarioEntry]:
        return sorted(self.entries().values(), key=lambda e: e.id)

    def resolve(self, ref: str) -> Path:
        """A scenario id from the catalog, or a path to a scenario file."""
        candidate = Path(ref)
        if candidate.suffix in SCENARIO_SUFFIXES and candidate.is_file():
            return candidate
        entry = self.entries().get(ref)
        if entry is None:
            raise ScenarioNotFoundError(f"No scenario named '{ref}' (and no such file)")
        return entry.path

    def get(self, ref: str, params: dict | None = None) -> ScenarioDefinition:
        return load_scenario(self.resolve(ref), params=params)
