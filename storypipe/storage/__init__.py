"""
File-backed persistence for storypipe.

Everything lives under one root directory; see stories.py for the layout.
"""

from storypipe.storage.locking import LockTimeout, story_lock, run_lock
from storypipe.storage.stories import StoryStore, generate_story_id

__all__ = [
    "LockTimeout",
    "StoryStore",
    "generate_story_id",
    "run_lock",
    "story_lock",
]
