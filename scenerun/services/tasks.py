"""Fire-and-forget submission of background work.

Submitted work may never finish (the host can kill it). Callers pair every
submission with resumable, idempotent steps and staleness checks.
"""

import logging
import threading
from typing import Callable

logger = logging.getLogger(__name__)


class TaskRunner:
    def submit(self, fn: Callable, *args, **kwargs) -> None:
        raise NotImplementedError


def _run_logged(fn: Callable, *args, **kwargs) -> None:
    name = getattr(fn, "__qualname__", repr(fn))
    try:
        fn(*args, **kwargs)
    except Exception as e:
        logger.error(f"Background task {name} failed: {e}", exc_info=True)


class ThreadTaskRunner(TaskRunner):
    """Runs each task on its own daemon thread; returns immediately."""

    def submit(self, fn: Callable, *args, **kwargs) -> None:
        thread = threading.Thread(target=_run_logged, args=(fn, *args), kwargs=kwargs, daemon=True)
        thread.start()


class InlineTaskRunner(TaskRunner):
    """Runs the task before returning. For the CLI sweeper and scripts."""

    def submit(self, fn: Callable, *args, **kwargs) -> None:
        _run_logged(fn, *args, **kwargs)
