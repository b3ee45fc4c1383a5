"""
Pipeline update notifications.

Every update is logged and handed to registered listeners (UI push transports
plug in here). Approval waits, failures and completion also raise a desktop
notification through notify-send (freedesktop compliant: mako, dunst, GNOME,
KDE) when it is installed and enabled.
"""

import logging
import shutil
import subprocess
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from storypipe.lib.models import PipelinePhase, now_iso

logger = logging.getLogger(__name__)


PHASE_STARTED = "phase_started"
PHASE_COMPLETED = "phase_completed"
PHASE_PENDING_APPROVAL = "phase_pending_approval"
PHASE_FAILED = "phase_failed"
PROGRESS = "progress"
PIPELINE_COMPLETED = "pipeline_completed"
RETRY_REQUIRED = "retry_required"
FIX_TASKS_GENERATED = "fix_tasks_generated"
TEST_RESULTS = "test_results"
RETRY_STARTING = "retry_starting"

UPDATE_TYPES = (
    PHASE_STARTED,
    PHASE_COMPLETED,
    PHASE_PENDING_APPROVAL,
    PHASE_FAILED,
    PROGRESS,
    PIPELINE_COMPLETED,
    RETRY_REQUIRED,
    FIX_TASKS_GENERATED,
    TEST_RESULTS,
    RETRY_STARTING,
)

VALID_URGENCIES = ("low", "normal", "critical")
MAX_NOTIFICATION_LENGTH = 200

# update type -> desktop urgency
DESKTOP_URGENCY = {
    PHASE_PENDING_APPROVAL: "normal",
    RETRY_REQUIRED: "normal",
    PHASE_FAILED: "critical",
    PIPELINE_COMPLETED: "low",
}


@dataclass
class PipelineUpdate:
    story_id: str
    update_type: str
    phase: Optional[PipelinePhase] = None
    message: str = ""
    data: dict = field(default_factory=dict)
    timestamp: str = field(default_factory=now_iso)

    def to_dict(self) -> dict:
        return {
            "story_id": self.story_id,
            "update_type": self.update_type,
            "phase": int(self.phase) if self.phase is not None else None,
            "message": self.message,
            "data": self.data,
            "timestamp": self.timestamp,
        }


Listener = Callable[[PipelineUpdate], None]


class Notifier:
    """Fan-out of pipeline updates to listeners."""

    def __init__(self, desktop: bool = False):
        self.desktop = desktop
        self._listeners: list[Listener] = []
        self._lock = threading.Lock()

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener; returns a function that unregisters it."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe():
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)
        return unsubscribe

    def publish(self, update: PipelineUpdate) -> None:
        if update.update_type not in UPDATE_TYPES:
            raise ValueError(f"Unknown update type: {update.update_type}")

        phase = f" {update.phase.label}" if update.phase is not None else ""
        logger.info(f"[{update.story_id}] {update.update_type}{phase}: {update.message}")

        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(update)
            except Exception:
                logger.exception(f"Notification listener failed for {update.update_type}")

        if self.desktop and update.update_type in DESKTOP_URGENCY:
            notify(f"storypipe: {update.story_id}", update.message or update.update_type,
                   DESKTOP_URGENCY[update.update_type])

    def emit(self, story_id: str, update_type: str, phase: Optional[PipelinePhase] = None,
             message: str = "", **data: Any) -> PipelineUpdate:
        update = PipelineUpdate(story_id, update_type, phase, message, data)
        self.publish(update)
        return update


def notify(title: str, message: str, urgency: str = "normal"):
    """
    Send desktop notification.

    Args:
        title: Notification title
        message: Notification body, truncated to MAX_NOTIFICATION_LENGTH
        urgency: One of "low", "normal", "critical"
    """
    if urgency not in VALID_URGENCIES:
        logger.warning(f"Invalid urgency '{urgency}', using 'normal'")
        urgency = "normal"

    if not shutil.which("notify-send"):
        logger.debug("notify-send not found, skipping notification")
        return

    if len(message) > MAX_NOTIFICATION_LENGTH:
        message = message[:MAX_NOTIFICATION_LENGTH] + "..."

    try:
        result = subprocess.run([
            "notify-send",
            "--urgency", urgency,
            "--app-name", "storypipe",
            title,
            message
        ], capture_output=True, text=True, timeout=5)

        if result.returncode != 0:
            logger.warning(f"notify-send failed (exit {result.returncode}): {result.stderr}")
    except subprocess.TimeoutExpired:
        logger.warning("notify-send timed out")
    except OSError as e:
        logger.warning(f"Failed to run notify-send: {e}")
