"""Worker loop: polls for due processes and runs them on a thread pool.

Manifesto:
    Scheduling is cooperative polling.  A worker repeatedly asks the runner
    which processes are due, hands each one to a pool thread and goes back
    to sleep.  Steps never block on remote work (they sleep and re-poll), so
    a handful of threads can keep a whole fleet moving.  Any number of
    workers may run against the same database; process leases guarantee a
    single active invocation per process.

ARCHITECTURE
────────────
::

    WorkerLoop.start()
      └── _run_loop()                      until stop() / SIGINT / SIGTERM
            ├── _poll()                    Runner.due_process_ids(batch_size)
            │     └── pool.submit(_execute, pid)   skip ids already in flight
            └── shutdown.wait(poll_interval)
"""

from __future__ import annotations

import os
import platform
import signal
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from dbplane.core.logging import get_logger
from dbplane.core.timestamps import utc_now
from dbplane.execution.runner import Runner

logger = get_logger(__name__)


@dataclass
class WorkerInfo:
    worker_id: str
    pid: int
    started_at: datetime
    poll_interval: float
    max_workers: int
    hostname: str = ""
    status: str = "running"

    def to_dict(self) -> dict[str, Any]:
        return {
            "worker_id": self.worker_id,
            "pid": self.pid,
            "started_at": self.started_at.isoformat(),
            "poll_interval": self.poll_interval,
            "max_workers": self.max_workers,
            "hostname": self.hostname,
            "status": self.status,
        }


@dataclass
class WorkerStats:
    invocations: int = 0
    failures: int = 0
    skipped: int = 0
    active: int = 0
    last_poll_at: datetime | None = None
    uptime_seconds: float = 0.0
    by_transition: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "invocations": self.invocations,
            "failures": self.failures,
            "skipped": self.skipped,
            "active": self.active,
            "last_poll_at": self.last_poll_at.isoformat() if self.last_poll_at else None,
            "uptime_seconds": round(self.uptime_seconds, 1),
            "by_transition": dict(self.by_transition),
        }


class WorkerLoop:
    """Polls the process table and runs due invocations.

    Args:
        runner: Runner bound to the control-plane database and services
        poll_interval: Seconds between poll cycles
        batch_size: Max processes dispatched per poll
        max_workers: Thread pool size
        worker_id: Custom identifier, auto-generated if omitted
    """

    def __init__(
        self,
        runner: Runner,
        poll_interval: float = 1.0,
        batch_size: int = 20,
        max_workers: int = 4,
        worker_id: str | None = None,
    ) -> None:
        self._runner = runner
        self._worker_id = worker_id or f"worker-{uuid.uuid4().hex[:8]}"
        self._poll_interval = poll_interval
        self._batch_size = batch_size
        self._max_workers = max_workers
        self._shutdown = threading.Event()
        self._started_at = utc_now()
        self._stats = WorkerStats()
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix=self._worker_id)
        self._in_flight: set[str] = set()
        self._lock = threading.Lock()
        self.info = WorkerInfo(
            worker_id=self._worker_id,
            pid=os.getpid(),
            started_at=self._started_at,
            poll_interval=poll_interval,
            max_workers=max_workers,
            hostname=platform.node(),
        )

    @property
    def worker_id(self) -> str:
        return self._worker_id

    def start(self) -> None:
        """Run the poll loop (blocking) with SIGINT/SIGTERM handlers for graceful shutdown."""
        logger.info(
            "worker_starting",
            worker_id=self._worker_id,
            poll_interval=self._poll_interval,
            batch_size=self._batch_size,
            max_workers=self._max_workers,
        )
        try:
            signal.signal(signal.SIGINT, self._handle_signal)
            signal.signal(signal.SIGTERM, self._handle_signal)
        except (ValueError, OSError):
            logger.debug("signal_handlers_skipped", reason="not in main thread")
        try:
            self._run_loop()
        finally:
            self._cleanup()

    def start_background(self) -> threading.Thread:
        """Start the worker in a daemon thread."""
        t = threading.Thread(target=self.start, name=f"{self._worker_id}-loop", daemon=True)
        t.start()
        return t

    def stop(self) -> None:
        logger.info("worker_stopping", worker_id=self._worker_id)
        self._shutdown.set()
        self.info.status = "stopping"

    def get_stats(self) -> WorkerStats:
        with self._lock:
            self._stats.active = len(self._in_flight)
        self._stats.uptime_seconds = (utc_now() - self._started_at).total_seconds()
        return self._stats

    # ── Internals ────────────────────────────────────────────────

    def _run_loop(self) -> None:
        while not self._shutdown.is_set():
            try:
                dispatched = self._poll()
                if dispatched:
                    logger.debug("worker_dispatched", worker_id=self._worker_id, count=dispatched)
            except Exception:
                logger.exception("worker_poll_error", worker_id=self._worker_id)
            self._stats.last_poll_at = utc_now()
            self._shutdown.wait(self._poll_interval)

    def _poll(self) -> int:
        dispatched = 0
        for process_id in self._runner.due_process_ids(self._batch_size):
            with self._lock:
                if process_id in self._in_flight:
                    continue
                self._in_flight.add(process_id)
            self._pool.submit(self._execute, process_id)
            dispatched += 1
        return dispatched

    def _execute(self, process_id: str) -> None:
        try:
            outcome = self._runner.run_once(process_id)
            with self._lock:
                if outcome is None:
                    self._stats.skipped += 1
                    return
                self._stats.invocations += 1
                self._stats.by_transition[outcome.transition] = self._stats.by_transition.get(outcome.transition, 0) + 1
                if outcome.failed:
                    self._stats.failures += 1
        except Exception:
            logger.exception("worker_invocation_error", worker_id=self._worker_id, process_id=process_id)
        finally:
            with self._lock:
                self._in_flight.discard(process_id)

    def _handle_signal(self, signum: int, frame: Any) -> None:
        logger.info("worker_signal", worker_id=self._worker_id, signal=signum)
        self.stop()

    def _cleanup(self) -> None:
        self.info.status = "stopped"
        self._pool.shutdown(wait=True)
        logger.info("worker_stopped", worker_id=self._worker_id, **self.get_stats().to_dict())
