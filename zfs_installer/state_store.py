from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict

logger = logging.getLogger(__name__)


def _detect_format(path: Path) -> str:
    ext = path.suffix.lower().lstrip(".")
    if ext in {"yaml", "yml"}:
        return "yaml"
    # Default to JSON for unknown extensions.
    return "json"


def _yaml():
    try:
        import yaml  # type: ignore
    except Exception as e:  # pragma: no cover
        raise RuntimeError(
            "YAML requested but PyYAML is not available. Use JSON or install PyYAML."
        ) from e
    return yaml


def load_document(path: str) -> Dict[str, Any]:
    """Read a JSON or YAML mapping; a missing file is an empty mapping."""

    p = Path(path)
    if not p.exists():
        return {}

    text = p.read_text(encoding="utf-8")
    if _detect_format(p) == "yaml":
        data = _yaml().safe_load(text) or {}
    else:
        data = json.loads(text) if text.strip() else {}

    if not isinstance(data, dict):
        raise ValueError(f"{path} must contain an object/dict, got {type(data).__name__}")
    return data


def save_document(path: str, data: Dict[str, Any]) -> None:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)

    if _detect_format(p) == "yaml":
        p.write_text(_yaml().safe_dump(data, sort_keys=False) + "\n", encoding="utf-8")
    else:
        p.write_text(json.dumps(data, indent=2, sort_keys=True) + "\n", encoding="utf-8")


def save_report(path: str, report: Dict[str, Any]) -> str:
    """Persist the run report; falls back to the cwd when path is not writable."""

    try:
        save_document(path, report)
        written = path
    except OSError as e:
        written = str(Path.cwd() / Path(path).name)
        logger.warning("Cannot write report to %s (%s); using %s", path, e, written)
        save_document(written, report)
    logger.info("Run report written to %s", written)
    return written
