"""
Pipeline configuration.

Loaded from <root>/pipeline.env. A missing file gives defaults; a value that
does not parse falls back to its default with a warning.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

from storypipe.lib import envparse
from storypipe.lib.constants import DEFAULT_ROOT_DIRNAME, ROOT_ENV_VAR
from storypipe.lib.models import PipelinePhase

logger = logging.getLogger(__name__)

CONFIG_FILE = "pipeline.env"

DEFAULT_MAX_RETRY_ATTEMPTS = 3
DEFAULT_APPROVAL_PHASES = (
    PipelinePhase.CODING,
    PipelinePhase.DEPLOYMENT,
    PipelinePhase.PULL_REQUEST,
)
DEFAULT_AGENT_TIMEOUT = 600
DEFAULT_LOCK_TIMEOUT = 60
DEFAULT_POLL_INTERVAL = 1.0


@dataclass
class PipelineConfig:
    """Settings from pipeline.env"""
    max_retry_attempts: int = DEFAULT_MAX_RETRY_ATTEMPTS
    approval_phases: frozenset = field(default_factory=lambda: frozenset(DEFAULT_APPROVAL_PHASES))
    agent_timeout: int = DEFAULT_AGENT_TIMEOUT  # seconds, 0 disables
    lock_timeout: int = DEFAULT_LOCK_TIMEOUT
    poll_interval: float = DEFAULT_POLL_INTERVAL
    desktop_notifications: bool = True


def resolve_root(root: str | Path | None = None) -> Path:
    """--root wins, then STORYPIPE_ROOT, then ./.storypipe"""
    if root:
        return Path(root).expanduser().resolve()
    env_root = os.environ.get(ROOT_ENV_VAR)
    if env_root:
        return Path(env_root).expanduser().resolve()
    return (Path.cwd() / DEFAULT_ROOT_DIRNAME).resolve()


def _int(env: dict, key: str, default: int, minimum: int = 0) -> int:
    raw = env.get(key)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning(f"Invalid {key}={raw!r} in {CONFIG_FILE}, using {default}")
        return default
    if value < minimum:
        logger.warning(f"{key}={value} below minimum {minimum}, using {default}")
        return default
    return value


def _float(env: dict, key: str, default: float) -> float:
    raw = env.get(key)
    if raw is None or raw == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning(f"Invalid {key}={raw!r} in {CONFIG_FILE}, using {default}")
        return default
    if value <= 0:
        logger.warning(f"{key} must be positive, using {default}")
        return default
    return value


def _bool(env: dict, key: str, default: bool) -> bool:
    raw = env.get(key)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def parse_phase_list(raw: str) -> frozenset:
    """Parse a comma separated phase list. Unknown names are dropped with a warning."""
    phases = set()
    for item in raw.split(","):
        item = item.strip()
        if not item:
            continue
        try:
            phases.add(PipelinePhase.parse(item))
        except ValueError:
            logger.warning(f"Unknown phase '{item}' in APPROVAL_PHASES, ignored")
    return frozenset(phases)


def config_from_env(env: dict) -> PipelineConfig:
    approval_raw = env.get("APPROVAL_PHASES")
    approval_phases = (
        parse_phase_list(approval_raw) if approval_raw is not None
        else frozenset(DEFAULT_APPROVAL_PHASES)
    )
    return PipelineConfig(
        max_retry_attempts=_int(env, "MAX_RETRY_ATTEMPTS", DEFAULT_MAX_RETRY_ATTEMPTS, minimum=1),
        approval_phases=approval_phases,
        agent_timeout=_int(env, "AGENT_TIMEOUT", DEFAULT_AGENT_TIMEOUT),
        lock_timeout=_int(env, "LOCK_TIMEOUT", DEFAULT_LOCK_TIMEOUT, minimum=1),
        poll_interval=_float(env, "POLL_INTERVAL", DEFAULT_POLL_INTERVAL),
        desktop_notifications=_bool(env, "DESKTOP_NOTIFICATIONS", True),
    )


def load_pipeline_config(root: Path) -> PipelineConfig:
    """Load pipeline.env from root and return PipelineConfig."""
    path = Path(root) / CONFIG_FILE
    if not path.exists():
        return PipelineConfig()
    try:
        env = envparse.load_env(path)
    except ValueError as e:
        logger.warning(f"Could not parse {path}: {e}; using defaults")
        return PipelineConfig()
    return config_from_env(env)
