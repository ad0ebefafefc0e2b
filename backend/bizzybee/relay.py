"""Relay plumbing: per-invocation time budget and tail-call dispatch of the next hop."""
import logging
import time
from typing import Callable, Optional

from .celery_app import celery_app

logger = logging.getLogger(__name__)

IMPORT_RELAY_TASK = "bizzybee.tasks.import_relay"
CLASSIFY_RELAY_TASK = "bizzybee.tasks.classify_relay"
CONSOLIDATE_RELAY_TASK = "bizzybee.tasks.consolidate_relay"
LEARN_VOICE_TASK = "bizzybee.tasks.learn_voice"


class Deadline:
    """Wall-clock budget for one invocation. Work stops when it runs out; state is checkpointed first."""

    def __init__(self, budget_s: float, clock: Optional[Callable[[], float]] = None):
        self._clock = clock or time.monotonic
        self.budget_s = budget_s
        self._end = self._clock() + budget_s

    def remaining(self) -> float:
        return max(0.0, self._end - self._clock())

    def has_time(self, needed_s: float = 0.0) -> bool:
        return self.remaining() > needed_s

    def elapsed(self) -> float:
        return self.budget_s - self.remaining()


class CeleryDispatcher:
    """Send the next hop as a fresh task execution; the caller returns right after."""

    def dispatch(self, task_name: str, kwargs: dict, countdown_s: float = 0) -> None:
        countdown = max(0, int(round(countdown_s or 0)))
        celery_app.send_task(task_name, kwargs=kwargs, countdown=countdown)
        logger.info(f"Relay -> {task_name} (countdown={countdown}s)")


default_dispatcher = CeleryDispatcher()
