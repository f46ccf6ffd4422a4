"""Read declaration files from disk."""

from __future__ import annotations

import json
import tomllib
from logging import getLogger
from pathlib import Path
from typing import TYPE_CHECKING

from pydantic import ValidationError

from converge.domain.errors import ConfigurationError

from .schema import DeclarationFileModel
from .translator import to_declaration

if TYPE_CHECKING:
    from collections.abc import Mapping

    from converge.domain.model import Declaration

log = getLogger(__name__)


def load_declaration(path: str | Path) -> Declaration:
    """Load a ``.toml`` or ``.json`` declaration file."""

    source = Path(path)
    try:
        text = source.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise ConfigurationError(f"Configuration file not found: {source}") from exc
    except OSError as exc:
        raise ConfigurationError(f"Cannot read configuration file {source}: {exc}") from exc

    if source.suffix.lower() == ".json":
        try:
            raw = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ConfigurationError(f"{source}: invalid JSON: {exc}") from exc
    else:
        try:
            raw = tomllib.loads(text)
        except tomllib.TOMLDecodeError as exc:
            raise ConfigurationError(f"{source}: invalid TOML: {exc}") from exc

    if not isinstance(raw, dict):
        raise ConfigurationError(f"{source}: top level must be a table")
    log.info("Loading declaration from %s", source)
    return parse_declaration(raw, source=str(source))


def parse_declaration(raw: Mapping[str, object], *, source: str = "<memory>") -> Declaration:
    try:
        payload = DeclarationFileModel.model_validate(raw)
    except ValidationError as exc:
        raise ConfigurationError(f"{source}: {_describe(exc)}") from exc
    return to_declaration(payload)


def _describe(error: ValidationError) -> str:
    problems = []
    for item in error.errors():
        location = ".".join(str(part) for part in item["loc"])
        problems.append(f"{location}: {item['msg']}" if location else item["msg"])
    return "; ".join(problems)
