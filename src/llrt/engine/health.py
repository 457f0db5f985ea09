# SPDX-License-Identifier: HRUL-1.0
# Copyright (c) 2026 Gabriel Galán Pelayo
"""
Generation thread health checks and forced termination.

The native decode call can block indefinitely and has no cancellation
point. Recovery therefore works from the outside:

  ThreadHealthMonitor          decides whether the generation thread looks hung
  HealthWatchdog               runs that check periodically on its own thread
  InferenceTimeoutMonitor      fires once when the overall inference budget expires
  ForcedTerminationController  escalates cancel -> stop flags -> worker replacement

Replacing the worker abandons the stuck native call. Whatever memory that
call holds stays allocated until the process exits.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Protocol

from llrt.exceptions import InferenceTimeoutError

logger = logging.getLogger(__name__)


@dataclass
class ThreadRecord:
    thread: threading.Thread
    started_at: float = field(default_factory=time.monotonic)
    last_heartbeat: float = field(default_factory=time.monotonic)
    last_check: float | None = None


class ThreadHealthMonitor:
    """
    Health of the thread running the current generation.

    A generation is unhealthy when:
      - ``max_runtime`` is set and the thread has run longer than that
      - the thread is no longer alive while a generation is still expected
      - ``stall_timeout`` is set and the loop has not sent a heartbeat for that long

    ``None`` disables a budget.
    """

    def __init__(
        self,
        check_interval: float = 5.0,
        max_runtime: float | None = None,
        stall_timeout: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.check_interval = check_interval
        self.max_runtime = max_runtime
        self.stall_timeout = stall_timeout
        self._clock = clock
        self._lock = threading.Lock()
        self._record: ThreadRecord | None = None

    @property
    def record(self) -> ThreadRecord | None:
        return self._record

    def start(self, thread: threading.Thread) -> ThreadRecord:
        now = self._clock()
        record = ThreadRecord(thread, started_at=now, last_heartbeat=now)
        with self._lock:
            self._record = record
        return record

    def heartbeat(self) -> None:
        record = self._record
        if record is not None:
            record.last_heartbeat = self._clock()

    def clear(self) -> None:
        with self._lock:
            self._record = None

    def check(self, generating: bool, force: bool = False) -> bool:
        """Returns False when there is evidence of a hang. Rate-limited unless forced."""
        with self._lock:
            record = self._record
            if record is None or not generating:
                return True
            now = self._clock()
            if not force and record.last_check is not None:
                if now - record.last_check < self.check_interval:
                    return True
            record.last_check = now

        if self.max_runtime is not None and now - record.started_at > self.max_runtime:
            logger.warning(
                "Generation thread %s exceeded max runtime (%.1fs)",
                record.thread.name,
                self.max_runtime,
            )
            return False
        if not record.thread.is_alive():
            logger.warning("Generation thread %s terminated while generating", record.thread.name)
            return False
        if self.stall_timeout is not None and now - record.last_heartbeat > self.stall_timeout:
            logger.warning(
                "Generation thread %s blocked for %.1fs",
                record.thread.name,
                now - record.last_heartbeat,
            )
            return False
        return True


class HealthWatchdog(threading.Thread):
    """Runs the health check every interval while a generation is in flight."""

    def __init__(
        self,
        monitor: ThreadHealthMonitor,
        is_generating: Callable[[], bool],
        on_unhealthy: Callable[[str], None],
        interval: float,
    ):
        super().__init__(name="llrt-health-watchdog", daemon=True)
        self._monitor = monitor
        self._is_generating = is_generating
        self._on_unhealthy = on_unhealthy
        self._interval = interval
        self._stopped = threading.Event()

    def run(self) -> None:
        while not self._stopped.wait(self._interval):
            if not self._is_generating():
                return
            if not self._monitor.check(generating=True, force=True):
                self._on_unhealthy("generation thread is not responding")
                return

    def stop(self) -> None:
        self._stopped.set()


class InferenceTimeoutMonitor(threading.Thread):
    """Best-effort overall budget for one generation."""

    def __init__(
        self,
        timeout: float,
        is_generating: Callable[[], bool],
        on_timeout: Callable[[str], None],
    ):
        super().__init__(name="llrt-inference-timeout", daemon=True)
        self.timeout = timeout
        self._is_generating = is_generating
        self._on_timeout = on_timeout
        self._cancelled = threading.Event()

    def run(self) -> None:
        if self._cancelled.wait(self.timeout):
            return
        if self._is_generating():
            logger.warning("Inference exceeded its %.1fs budget", self.timeout)
            self._on_timeout(InferenceTimeoutError(self.timeout).message)

    def cancel(self) -> None:
        self._cancelled.set()


class TerminationTarget(Protocol):
    """What the termination controller needs from the engine for one generation."""

    def cancel_task(self) -> bool: ...

    def task_cancelled(self) -> bool: ...

    def request_stop(self) -> None: ...

    def generation_finished(self) -> bool: ...

    def replace_worker(self) -> None: ...

    def reset(self) -> None: ...


class ForcedTerminationController:
    """Escalates through increasingly forceful ways of ending a generation."""

    def __init__(
        self,
        max_retries: int = 3,
        cancel_wait: float = 1.0,
        poll_interval: float = 0.5,
        poll_attempts: int = 10,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.max_retries = max_retries
        self.cancel_wait = cancel_wait
        self.poll_interval = poll_interval
        self.poll_attempts = poll_attempts
        self._sleep = sleep
        self._lock = threading.Lock()
        self._running = threading.Lock()
        self._retries = 0

    @property
    def retries(self) -> int:
        return self._retries

    @property
    def budget(self) -> float:
        """Longest time one attempt waits before replacing the worker."""
        return self.cancel_wait + self.poll_interval * self.poll_attempts

    def reset(self) -> None:
        with self._lock:
            self._retries = 0

    def terminate(self, target: TerminationTarget) -> bool:
        """Returns True once the generation is gone and the engine is reusable."""
        if not self._running.acquire(blocking=False):
            logger.debug("Forced termination already in progress")
            return False
        try:
            with self._lock:
                if self._retries >= self.max_retries:
                    logger.error("Forced termination gave up after %d attempts", self._retries)
                    return False
                self._retries += 1
                attempt = self._retries
            logger.warning("Forced termination attempt %d/%d", attempt, self.max_retries)

            if self._escalate(target):
                target.reset()
                self.reset()
                return True
            return False
        finally:
            self._running.release()

    def _escalate(self, target: TerminationTarget) -> bool:
        # Step 1: cancel the task
        target.cancel_task()
        self._sleep(self.cancel_wait)
        if target.task_cancelled() or target.generation_finished():
            logger.info("Generation ended after task cancellation")
            return True

        # Step 2: cooperative stop flags
        target.request_stop()
        for _ in range(self.poll_attempts):
            self._sleep(self.poll_interval)
            if target.generation_finished():
                logger.info("Generation ended after stop request")
                return True

        # Step 3: abandon the worker
        try:
            target.replace_worker()
        except Exception:
            logger.exception("Could not replace the generation worker")
            return False
        logger.warning("Generation worker replaced; the stuck native call was abandoned")
        return True
