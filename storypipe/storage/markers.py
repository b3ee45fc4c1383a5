"""
Status marker file.

status.json holds the four marker flags and an append-only audit list:

    {"markers": {"approved": true, ...}, "audit": [{"status": "approved", "at": "...", "note": null}]}

A missing or corrupt file reads as all markers absent. Callers hold the
story lock around read-modify-write.
"""

import logging
from pathlib import Path
from typing import Optional

from storypipe.lib.constants import STATUS_FILE
from storypipe.lib.models import StoryStatus, now_iso
from storypipe.lib.status import StatusMarkers, apply_status
from storypipe.storage.jsonfile import read_json, write_json

logger = logging.getLogger(__name__)


def _read(story_dir: Path) -> dict:
    data = read_json(story_dir / STATUS_FILE)
    if data is None:
        return {"markers": StatusMarkers().to_dict(), "audit": []}
    audit = data.get("audit")
    return {
        "markers": StatusMarkers.from_dict(data.get("markers")).to_dict(),
        "audit": audit if isinstance(audit, list) else [],
    }


def read_markers(story_dir: Path) -> StatusMarkers:
    return StatusMarkers.from_dict(_read(story_dir)["markers"])


def read_audit(story_dir: Path) -> list[dict]:
    return _read(story_dir)["audit"]


def write_status(story_dir: Path, status: StoryStatus, note: Optional[str] = None) -> StatusMarkers:
    """Apply a status transition to the stored markers and record it in the audit list."""
    data = _read(story_dir)
    markers = apply_status(StatusMarkers.from_dict(data["markers"]), status)
    data["markers"] = markers.to_dict()
    data["audit"].append({"status": status.label, "at": now_iso(), "note": note})
    write_json(story_dir / STATUS_FILE, data, "status")
    logger.debug(f"[{story_dir.name}] status -> {status.label}")
    return markers


def clear_failed(story_dir: Path, note: Optional[str] = None) -> StatusMarkers:
    """Drop only the failed marker."""
    data = _read(story_dir)
    markers = StatusMarkers.from_dict(data["markers"])
    if not markers.failed:
        return markers
    data["markers"]["failed"] = False
    data["audit"].append({"status": "clear_failed", "at": now_iso(), "note": note})
    write_json(story_dir / STATUS_FILE, data, "status")
    return StatusMarkers.from_dict(data["markers"])


def set_approved(story_dir: Path, note: Optional[str] = None) -> StatusMarkers:
    """Set the approved flag alone, leaving in_progress as it is.

    Planning uses this mid-run; a full Approved transition would drop
    in_progress while the pipeline is still running.
    """
    data = _read(story_dir)
    data["markers"]["approved"] = True
    data["audit"].append({"status": "approved", "at": now_iso(), "note": note})
    write_json(story_dir / STATUS_FILE, data, "status")
    return StatusMarkers.from_dict(data["markers"])
