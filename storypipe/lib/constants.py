"""Shared constants for storypipe."""

import re

# Story ID validation: STR-YYYYMMDD-XXXX
STORY_ID_PATTERN = re.compile(r'^STR-\d{8}-[A-Z0-9]{4}$')

# Root directory resolution
ROOT_ENV_VAR = "STORYPIPE_ROOT"
DEFAULT_ROOT_DIRNAME = ".storypipe"

# File names inside a story directory
STORY_FILE = "story.json"
CONTENT_FILE = "content.md"
STATUS_FILE = "status.json"
PIPELINE_FILE = "pipeline.json"
TASKS_DIR = "tasks"
INBOX_DIR = "inbox"
OUTPUTS_DIR = "outputs"
TASK_FILE_GLOB = "task-*.json"

# Exit codes
EXIT_OK = 0
EXIT_ERROR = 1
EXIT_NOT_FOUND = 2
EXIT_LOCK_TIMEOUT = 3
