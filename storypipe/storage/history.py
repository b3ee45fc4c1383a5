"""
Pipeline snapshot and phase outputs.

pipeline.json is the latest PipelineStatus for the story; status readers poll
it. Each phase run also leaves its raw result under
outputs/<phase>-<attempt>.json so earlier attempts stay inspectable after a
retry rewinds the snapshot.
"""

import logging
from pathlib import Path
from typing import Any, Optional

from storypipe.lib.constants import OUTPUTS_DIR, PIPELINE_FILE
from storypipe.lib.models import PipelinePhase, PipelineStatus, now_iso
from storypipe.storage.jsonfile import read_json, write_json

logger = logging.getLogger(__name__)


def load_snapshot(story_dir: Path) -> Optional[PipelineStatus]:
    data = read_json(story_dir / PIPELINE_FILE)
    if data is None:
        return None
    try:
        return PipelineStatus.from_dict(data)
    except (KeyError, TypeError, ValueError) as e:
        logger.warning(f"Ignoring malformed snapshot in {story_dir}: {e}")
        return None


def save_snapshot(story_dir: Path, status: PipelineStatus) -> None:
    write_json(story_dir / PIPELINE_FILE, status.to_dict(), "pipeline")


def delete_snapshot(story_dir: Path) -> None:
    (story_dir / PIPELINE_FILE).unlink(missing_ok=True)


def output_path(story_dir: Path, phase: PipelinePhase, attempt: int) -> Path:
    return story_dir / OUTPUTS_DIR / f"{phase.label}-{attempt}.json"


def save_phase_output(story_dir: Path, phase: PipelinePhase, attempt: int,
                      success: bool, data: Any, message: Optional[str] = None) -> Path:
    path = output_path(story_dir, phase, attempt)
    write_json(path, {
        "phase": phase.label,
        "retry_attempt": attempt,
        "success": success,
        "message": message,
        "data": data,
        "recorded_at": now_iso(),
    })
    return path


def list_phase_outputs(story_dir: Path) -> list[dict]:
    """Recorded outputs ordered by (phase, retry_attempt)."""
    d = story_dir / OUTPUTS_DIR
    if not d.exists():
        return []
    outputs = []
    for f in d.glob("*.json"):
        data = read_json(f)
        if data is not None:
            outputs.append(data)

    def key(o):
        try:
            phase = PipelinePhase.parse(o.get("phase", 0))
        except ValueError:
            phase = PipelinePhase.NONE
        return (int(phase), int(o.get("retry_attempt", 0)))

    return sorted(outputs, key=key)
