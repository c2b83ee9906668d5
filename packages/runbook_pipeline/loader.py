from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable, List, Tuple

import yaml
from pydantic import ValidationError

from rag_core.errors import RunbookParseError
from rag_core.models import RunbookRecord

_log = logging.getLogger(__name__)

RUNBOOK_SUFFIXES = (".yml", ".yaml")


def iter_runbook_files(root: Path) -> Iterable[Path]:
    for path in sorted(root.iterdir()):
        if path.is_file() and path.suffix.lower() in RUNBOOK_SUFFIXES:
            yield path


def load_runbook_file(yaml_path: Path) -> RunbookRecord:
    """
    Parse one runbook YAML file into a RunbookRecord.

    Raises:
        RunbookParseError: if the file cannot be read, is not valid YAML,
            is not a mapping, or fails validation.
    """
    source = yaml_path.name
    try:
        text = yaml_path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise RunbookParseError(source, f"cannot read file: {exc}") from exc

    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise RunbookParseError(source, f"invalid YAML: {exc}") from exc

    if not isinstance(data, dict):
        raise RunbookParseError(source, "top-level YAML document must be a mapping")

    try:
        return RunbookRecord.model_validate(data)
    except (ValidationError, TypeError, ValueError) as exc:
        raise RunbookParseError(source, f"schema validation failed: {exc}") from exc


def load_runbook_directory(runbooks_dir: Path) -> List[Tuple[str, RunbookRecord]]:
    """
    Load every runbook under ``runbooks_dir`` as ``(file name, record)`` pairs.

    A malformed file is skipped with a warning so one bad runbook cannot
    block the rest of the corpus.
    """
    if not runbooks_dir.is_dir():
        _log.error("Runbooks directory does not exist: %s", runbooks_dir)
        return []

    records: list[Tuple[str, RunbookRecord]] = []
    skipped = 0
    for path in iter_runbook_files(runbooks_dir):
        try:
            record = load_runbook_file(path)
        except RunbookParseError as exc:
            _log.warning("Skipping runbook %s", exc)
            skipped += 1
            continue
        records.append((path.name, record))

    _log.info("Loaded %d runbooks from %s (%d skipped)", len(records), runbooks_dir, skipped)
    return records


__all__ = ["iter_runbook_files", "load_runbook_file", "load_runbook_directory", "RUNBOOK_SUFFIXES"]
