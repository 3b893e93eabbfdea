"""Cosmetic mood side channel. Nothing depends on it for correctness."""

import logging
import time
from typing import Optional

logger = logging.getLogger(__name__)

MOODS = ("idle", "thinking", "joyful", "inlove", "angry", "sad")


class MoodTracker:
    def __init__(self):
        self._mood = "idle"
        self._reset_at: Optional[float] = None

    @property
    def current(self) -> str:
        if self._reset_at is not None and time.monotonic() >= self._reset_at:
            self._mood = "idle"
            self._reset_at = None
        return self._mood

    def set_mood(self, mood: str, auto_reset_seconds: float = 0) -> None:
        """Switch mood; with auto_reset_seconds > 0 it falls back to idle afterwards."""
        if mood not in MOODS:
            logger.debug(f"[MOOD] Ignoring unknown mood {mood!r}")
            return
        self._mood = mood
        self._reset_at = time.monotonic() + auto_reset_seconds if auto_reset_seconds > 0 else None


def set_mood(tracker: Optional[MoodTracker], mood: str, auto_reset_seconds: float = 0) -> None:
    """Null-safe helper used by the engines."""
    if tracker is None:
        return
    tracker.set_mood(mood, auto_reset_seconds)
