from __future__ import annotations

from dataclasses import dataclass, field
import logging
import random
import threading
from typing import Callable, Optional

logger = logging.getLogger("vaultgram.scheduler")

POLL_BACKOFF_BASE_MS = 1000
POLL_BACKOFF_MAX_MS = 30000
POLL_BACKOFF_MAX_EXPONENT = 4
POLL_BACKOFF_JITTER_MS = 500


def backoff_ms(error_streak: int, jitter: Optional[Callable[[], float]] = None) -> int:
    """Exponential backoff for consecutive poll failures, jittered and capped."""
    exponent = min(POLL_BACKOFF_MAX_EXPONENT, max(0, error_streak))
    base = POLL_BACKOFF_BASE_MS * (2 ** exponent)
    jitter_fn = jitter or random.random
    return min(POLL_BACKOFF_MAX_MS, base + int(jitter_fn() * POLL_BACKOFF_JITTER_MS))


class OverlapGuard:
    """Non-blocking re-entrancy flag: a second caller skips instead of waiting.

    Usage::

        with guard as acquired:
            if not acquired:
                return
            ...
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._lock = threading.Lock()
        self._held = threading.local()

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    def __enter__(self) -> bool:
        acquired = self._lock.acquire(blocking=False)
        stack = getattr(self._held, "stack", None)
        if stack is None:
            stack = self._held.stack = []
        stack.append(acquired)
        return acquired

    def __exit__(self, *exc_info: object) -> None:
        if self._held.stack.pop():
            self._lock.release()


@dataclass
class PeriodicJob:
    """Run ``func`` every ``interval`` seconds on a daemon thread.

    Runs never overlap: a tick arriving while the previous run is still busy
    is skipped. Exceptions are logged and the job keeps going.
    """
    name: str
    interval: float
    func: Callable[[], None]
    run_immediately: bool = False
    _stop_event: threading.Event = field(default_factory=threading.Event, init=False, repr=False)
    _thread: Optional[threading.Thread] = field(default=None, init=False, repr=False)
    _guard: OverlapGuard = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._guard = OverlapGuard(self.name)

    def tick(self) -> bool:
        """Run once now unless a run is already in flight. Returns whether it ran."""
        with self._guard as acquired:
            if not acquired:
                logger.debug("Job %s still running, skipping tick", self.name)
                return False
            try:
                self.func()
            except Exception as exc:  # noqa: BLE001
                logger.error("Job %s failed: %s", self.name, exc, exc_info=True)
            return True

    def _loop(self) -> None:
        if self.run_immediately and not self._stop_event.is_set():
            self.tick()
        while not self._stop_event.wait(self.interval):
            self.tick()

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, daemon=True, name=f"job-{self.name}")
        self._thread.start()
        logger.info("Started job %s (every %ss)", self.name, self.interval)

    def stop(self) -> None:
        self._stop_event.set()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()


class Scheduler:
    """Owns the periodic jobs and one-shot timers of a running service."""

    def __init__(self) -> None:
        self._jobs: dict[str, PeriodicJob] = {}
        self._timers: list[threading.Timer] = []

    def every(
        self,
        name: str,
        seconds: float,
        func: Callable[[], None],
        run_immediately: bool = False,
    ) -> PeriodicJob:
        if name in self._jobs:
            self._jobs[name].stop()
        job = PeriodicJob(name=name, interval=max(0.1, float(seconds)), func=func, run_immediately=run_immediately)
        self._jobs[name] = job
        return job

    def run_once_after(self, delay_seconds: float, func: Callable[[], None], name: str = "oneshot") -> threading.Timer:
        def _run() -> None:
            try:
                func()
            except Exception as exc:  # noqa: BLE001
                logger.error("One-shot %s failed: %s", name, exc, exc_info=True)

        timer = threading.Timer(max(0.0, delay_seconds), _run)
        timer.daemon = True
        timer.name = f"timer-{name}"
        self._timers.append(timer)
        timer.start()
        return timer

    def get(self, name: str) -> Optional[PeriodicJob]:
        return self._jobs.get(name)

    def start(self) -> None:
        for job in self._jobs.values():
            job.start()

    def stop(self) -> None:
        for job in self._jobs.values():
            job.stop()
        for timer in self._timers:
            timer.cancel()
        self._timers.clear()

