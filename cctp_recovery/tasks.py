"""
CCTP Recovery - Background task runner

Fire-and-forget work (notifications, recoveries scheduled over HTTP) runs on a
small thread pool. Failures are logged, never returned to whoever submitted
the task.
"""

import logging
from concurrent.futures import ThreadPoolExecutor

logger = logging.getLogger(__name__)


class TaskRunner:
    def __init__(self, max_workers=2, name="cctp-recovery"):
        self.name = name
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix=name)

    def submit(self, fn, *args, label=None, **kwargs):
        """Schedule fn(*args, **kwargs). Returns the Future for callers that want to wait."""
        label = label or getattr(fn, "__name__", "task")

        def _run():
            try:
                return fn(*args, **kwargs)
            except Exception:
                logger.exception("Background task %s failed", label)
                return None

        logger.debug("Scheduling background task %s", label)
        return self._executor.submit(_run)

    def shutdown(self, wait=True):
        self._executor.shutdown(wait=wait)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.shutdown()
        return False
