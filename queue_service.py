import logging
import threading

from abc import ABC, abstractmethod
from typing import Any, Callable, Set

logger = logging.getLogger(__name__)


class JobLauncher(ABC):
    """Runs job callables without making the caller wait for them."""

    @abstractmethod
    def launch(self, job_id: str, fn: Callable[..., Any], *args: Any) -> None:
        pass

    @abstractmethod
    def shutdown(self, wait: bool = True) -> None:
        pass


class ThreadLauncher(JobLauncher):
    """
    Starts every job on its own thread as soon as it is launched.

    There is no pool limit: a job never waits behind other running jobs.
    Live threads are tracked so shutdown can join them.
    """

    def __init__(self):
        self._threads: Set[threading.Thread] = set()
        self._lock = threading.Lock()

    def launch(self, job_id: str, fn: Callable[..., Any], *args: Any) -> None:
        thread = threading.Thread(
            target=self._run,
            args=(job_id, fn, args),
            name=f"job-{job_id}",
            daemon=True,
        )
        with self._lock:
            self._threads.add(thread)
        thread.start()

    def _run(self, job_id: str, fn: Callable[..., Any], args: tuple) -> None:
        try:
            fn(*args)
        except Exception:
            # Exceptions never travel back to the request that launched the job
            logger.exception("[%s] Unexpected error while processing job", job_id)
        finally:
            with self._lock:
                self._threads.discard(threading.current_thread())

    @property
    def active_count(self) -> int:
        with self._lock:
            return len(self._threads)

    def shutdown(self, wait: bool = True) -> None:
        if not wait:
            return
        with self._lock:
            threads = list(self._threads)
        for thread in threads:
            thread.join()
