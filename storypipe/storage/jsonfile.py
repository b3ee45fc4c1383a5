"""JSON file helpers shared by the storage modules."""

import json
import logging
import os
from pathlib import Path
from typing import Optional

from storypipe.lib.validate import validate_before_write

logger = logging.getLogger(__name__)


def write_json(path: Path, data: dict, schema_name: Optional[str] = None) -> None:
    """Validate (if schema given) and write data, replacing path atomically."""
    if schema_name:
        validate_before_write(data, schema_name, path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f".{path.name}.{os.getpid()}.tmp")
    tmp.write_text(json.dumps(data, indent=2))
    os.replace(tmp, path)


def read_json(path: Path) -> Optional[dict]:
    """Read a JSON object. Missing file returns None; unreadable logs and returns None."""
    if not path.exists():
        return None
    try:
        data = json.loads(path.read_text())
    except (OSError, json.JSONDecodeError) as e:
        logger.warning(f"Failed to read {path}: {e}")
        return None
    if not isinstance(data, dict):
        logger.warning(f"Ignoring {path}: expected a JSON object")
        return None
    return data
