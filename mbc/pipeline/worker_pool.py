"""Bounded-concurrency task runner.

Tasks are zero-argument callables. A semaphore caps the in-flight set and a
slot is handed to the next task the moment one settles, so a slow item never
holds up a whole batch. Cancellation is cooperative: the shared token is
checked before every launch, and tasks already running are left to finish.
"""

import os
import logging
import threading
import concurrent.futures
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Sequence

logger = logging.getLogger(__name__)


class CancellationToken:
    """Run-wide cancel flag shared by every pool of a run."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()


@dataclass
class TaskOutcome:
    index: int
    value: Any = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def default_image_concurrency(cpu_count: Optional[int] = None) -> int:
    cpus = cpu_count or os.cpu_count() or 1
    return max(4, min(cpus, 12))


def default_video_concurrency(cpu_count: Optional[int] = None) -> int:
    cpus = cpu_count or os.cpu_count() or 1
    return max(1, min(cpus // 4, 4))


class WorkerPool:
    """Runs tasks with at most `concurrency` of them in flight.

    Args:
        concurrency: Maximum number of tasks running at once (positive int).
        cancel_token: Checked before each launch; defaults to a private token.
        on_settled: Called as on_settled(outcome, processed) once per settled task,
            serialized under the pool lock, with processed strictly increasing.
    """

    def __init__(
        self,
        concurrency: int,
        cancel_token: Optional[CancellationToken] = None,
        on_settled: Optional[Callable[[TaskOutcome, int], None]] = None,
    ):
        if isinstance(concurrency, bool) or not isinstance(concurrency, int) or concurrency < 1:
            raise ValueError(f"concurrency must be a positive integer, got {concurrency!r}")
        self.concurrency = concurrency
        self.cancel_token = cancel_token or CancellationToken()
        self.on_settled = on_settled

    def run(self, tasks: Sequence[Callable[[], Any]]) -> List[TaskOutcome]:
        """Runs every task (until cancelled) and returns outcomes in completion order."""
        tasks = list(tasks)
        outcomes: List[TaskOutcome] = []
        if not tasks:
            return outcomes

        slots = threading.Semaphore(self.concurrency)
        lock = threading.Lock()
        processed = 0

        def settle(outcome: TaskOutcome):
            nonlocal processed
            with lock:
                outcomes.append(outcome)
                processed += 1
                if self.on_settled:
                    try:
                        self.on_settled(outcome, processed)
                    except Exception as e:
                        logger.exception(f"on_settled callback failed for task {outcome.index}: {e}")

        def run_one(index: int, task: Callable[[], Any]):
            try:
                try:
                    value = task()
                except Exception as e:
                    logger.debug(f"Task {index} failed: {e}")
                    outcome = TaskOutcome(index=index, error=e)
                else:
                    outcome = TaskOutcome(index=index, value=value)
                settle(outcome)
            finally:
                # Hand the slot to the next task immediately
                slots.release()

        with concurrent.futures.ThreadPoolExecutor(
            max_workers=self.concurrency,
            thread_name_prefix="mbc-worker",
        ) as executor:
            for index, task in enumerate(tasks):
                slots.acquire()
                if self.cancel_token.is_cancelled:
                    slots.release()
                    logger.info(f"Cancellation requested, {len(tasks) - index} task(s) not started")
                    break
                executor.submit(run_one, index, task)

        return outcomes
