from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, StrictBool, StrictInt, StrictStr, ValidationError

DEFAULT_INDEX_PAGES = [
    "index.lim", "index.html", "index.htm", "index.txt",
    "default.html", "default.htm", "default.txt",
]


def _kebab(name: str) -> str:
    return name.replace("_", "-")


class Settings(BaseModel):
    """Site and runtime settings. Every field can be set from a YAML file,
    where keys are written kebab-case (`max-include-depth`)."""

    model_config = ConfigDict(extra="forbid", alias_generator=_kebab, populate_by_name=True)

    root: StrictStr = "."
    rules: List[StrictStr] = Field(default_factory=lambda: ["/"])
    index_pages: List[StrictStr] = Field(default_factory=lambda: list(DEFAULT_INDEX_PAGES))
    max_include_depth: StrictInt = Field(32, ge=1)
    max_instructions: Optional[StrictInt] = Field(None, ge=1)
    max_memory: Optional[StrictInt] = Field(None, ge=1)
    sandbox: StrictBool = True
    log_level: StrictStr = "INFO"


def _describe(e: ValidationError) -> str:
    problems = []
    for err in e.errors():
        key = ".".join(str(part) for part in err["loc"]) or "settings"
        if err["type"] == "extra_forbidden":
            problems.append(f"unknown setting '{key}'")
        else:
            problems.append(f"setting '{key}': {err['msg']}")
    return "; ".join(problems)


def settings_from_dict(data: dict, *, base_dir: Optional[Path] = None) -> Settings:
    if not isinstance(data, dict):
        raise ValueError("settings must be a mapping")
    try:
        settings = Settings.model_validate(data)
    except ValidationError as e:
        raise ValueError(_describe(e)) from e
    # A relative root is relative to the settings file.
    if base_dir is not None and not Path(settings.root).is_absolute():
        settings.root = str((base_dir / settings.root).resolve())
    return settings


def load_settings(path: str | Path) -> Settings:
    p = Path(path)
    try:
        with open(p, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ValueError(f"invalid YAML in {p}: {e}") from e
    return settings_from_dict(data, base_dir=p.parent)


def configure_logging(settings: Settings):
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        raise ValueError(f"unknown log level '{settings.log_level}'")
    logging.basicConfig(format="%(asctime)s %(message)s")
    logging.getLogger("lim").setLevel(level)
