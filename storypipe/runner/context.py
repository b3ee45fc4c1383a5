"""
Run context and directory management.

Each pipeline run gets runs/<timestamp>_<story id>/ with a run.log and, when
the run ends, a result.json listing every phase run with its timing.
"""

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional

from storypipe.storage.jsonfile import write_json


@dataclass
class RunContext:
    """Context for a single pipeline run."""
    run_id: str
    run_dir: Path
    story_id: str
    start_time: datetime = field(default_factory=datetime.now)
    phases: list = field(default_factory=list)

    @classmethod
    def create(cls, root: Path, story_id: str) -> 'RunContext':
        """Create a new run context with fresh run directory."""
        timestamp = datetime.now().strftime("%Y%m%d-%H%M%S-%f")
        run_id = f"{timestamp}_{story_id}"
        run_dir = Path(root) / "runs" / run_id
        run_dir.mkdir(parents=True, exist_ok=True)
        return cls(run_id=run_id, run_dir=run_dir, story_id=story_id)

    def log(self, message: str):
        """Append to run log."""
        timestamp = datetime.now().isoformat()
        with open(self.run_dir / "run.log", "a") as f:
            f.write(f"[{timestamp}] {message}\n")

    def record_phase(self, phase: str, retry_attempt: int, status: str,
                     duration: float, notes: str = ""):
        self.phases.append({
            "phase": phase,
            "retry_attempt": retry_attempt,
            "status": status,
            "duration_seconds": duration,
            "notes": notes,
        })

    def write_result(self, status: str, failed_phase: Optional[str] = None,
                     message: Optional[str] = None):
        """Write result.json."""
        end_time = datetime.now()
        result = {
            "version": 1,
            "story_id": self.story_id,
            "status": status,
            "timestamps": {
                "started": self.start_time.isoformat(),
                "ended": end_time.isoformat(),
                "duration_seconds": (end_time - self.start_time).total_seconds(),
            },
            "phases": self.phases,
        }
        if failed_phase:
            result["failed_phase"] = failed_phase
        if message:
            result["message"] = message

        write_json(self.run_dir / "result.json", result, "result")
