"""
Worker pool draining the task queue.

One long-lived thread per task type. Each loop claims a task, runs its
handler synchronously, then completes or fails the task depending on
whether the handler raised. When the queue is empty the loop waits on the
stop event for the poll interval, so shutdown interrupts the sleep. An
optional idle hook per task type runs on each empty poll first.

Shutdown is cooperative and bounded: stop() sets the shared event and
waits up to a grace period for every loop to exit. Threads are daemons, so
a handler stuck in a model call is abandoned rather than blocking exit.
"""

import logging
import threading
import time
from typing import Callable, Optional

from .task_queue import QueueTask, TaskQueue

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 2.0
DEFAULT_SHUTDOWN_GRACE = 5.0

TaskHandler = Callable[[QueueTask], None]
IdleHook = Callable[[], None]


class WorkerPool:
    """
    Owns the worker threads and their stop signal.

    Example:
        pool = WorkerPool(queue, {"promote": handle_promote})
        pool.start()
        ...
        pool.stop(grace=5.0)
    """

    def __init__(
        self,
        queue: TaskQueue,
        handlers: dict[str, TaskHandler],
        *,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        stop_event: Optional[threading.Event] = None,
        idle: Optional[dict[str, IdleHook]] = None,
    ):
        """
        Args:
            queue: Queue to drain
            handlers: task_type -> handler. One thread per entry.
            poll_interval: Seconds to wait when the queue is empty
            stop_event: Injectable cancellation signal (created if omitted)
            idle: task_type -> hook run by that worker when its queue is empty
        """
        self._queue = queue
        self._handlers = dict(handlers)
        self._idle = dict(idle or {})
        self._poll_interval = poll_interval
        self._owns_stop = stop_event is None
        self._stop = stop_event or threading.Event()
        self._threads: list[threading.Thread] = []
        self._start_lock = threading.Lock()

    @property
    def stop_event(self) -> threading.Event:
        return self._stop

    @property
    def running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    @property
    def task_types(self) -> list[str]:
        return list(self._handlers)

    def start(self) -> None:
        """Start one thread per task type. No-op if already running.

        A pool that created its own stop event re-arms it, so a stopped pool
        can be started again. An injected event is left to its owner.
        """
        with self._start_lock:
            if self._owns_stop:
                self._stop.clear()
            if self.running:
                return
            self._threads = []
            for task_type in self._handlers:
                t = threading.Thread(
                    target=self._run,
                    args=(task_type,),
                    name=f"factbase-worker-{task_type}",
                    daemon=True,
                )
                self._threads.append(t)
                t.start()
            logger.info("Started %d workers: %s", len(self._threads), ", ".join(self._handlers))

    def stop(self, grace: float = DEFAULT_SHUTDOWN_GRACE) -> bool:
        """Signal all loops to exit and wait up to `grace` seconds in total.

        Returns True if every thread exited within the grace period.
        """
        self._stop.set()
        deadline = time.monotonic() + grace
        for t in self._threads:
            t.join(timeout=max(0.0, deadline - time.monotonic()))

        stragglers = [t.name for t in self._threads if t.is_alive()]
        if stragglers:
            logger.warning(
                "Workers did not stop within %.1fs, abandoning: %s",
                grace, ", ".join(stragglers),
            )
            return False
        logger.info("All workers stopped")
        return True

    def run_once(self, task_type: str) -> bool:
        """Claim and process a single task of this type.

        Returns True if a task was processed (successfully or not),
        False if the queue had nothing to claim.
        """
        try:
            task = self._queue.dequeue(task_type)
        except Exception as e:
            logger.warning("Dequeue %s failed: %s", task_type, e)
            return False
        if task is None:
            return False

        handler = self._handlers[task_type]
        logger.debug("Running %s task %d (attempt %d)", task_type, task.id, task.attempts)
        try:
            handler(task)
        except Exception as e:
            error_msg = f"{type(e).__name__}: {e}"
            logger.warning("Task %s %d failed: %s", task_type, task.id, error_msg)
            self._queue.fail_task(task.id, error_msg)
        else:
            self._queue.complete_task(task.id)
        return True

    def drain(self, task_type: Optional[str] = None, limit: int = 1000) -> int:
        """Process queued tasks synchronously until empty (or `limit`).

        Runs in the caller's thread; useful for one-shot processing and
        tests. Returns number of tasks processed.
        """
        types = [task_type] if task_type else list(self._handlers)
        processed = 0
        progress = True
        while progress and processed < limit:
            progress = False
            for tt in types:
                if processed >= limit:
                    break
                if self.run_once(tt):
                    processed += 1
                    progress = True
        return processed

    def _run(self, task_type: str) -> None:
        logger.debug("Worker %s started", task_type)
        while not self._stop.is_set():
            try:
                worked = self.run_once(task_type)
            except Exception as e:
                # complete/fail bookkeeping failed; keep the loop alive
                logger.error("Worker %s: %s", task_type, e)
                worked = False
            if not worked:
                self._run_idle(task_type)
                self._stop.wait(self._poll_interval)
        logger.debug("Worker %s stopped", task_type)

    def _run_idle(self, task_type: str) -> None:
        hook = self._idle.get(task_type)
        if hook is None or self._stop.is_set():
            return
        try:
            hook()
        except Exception as e:
            logger.warning("Idle hook for %s failed: %s", task_type, e)
