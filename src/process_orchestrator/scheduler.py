"""Periodic per-workspace background ticks (SLA recomputation, cron evaluation).

Each scheduler owns one timer thread and a bounded worker pool. Every round it asks for
the workspaces that need work and submits one tick per workspace. A workspace whose
previous tick is still running is skipped for that round, so a slow workspace never
delays the others and never runs twice concurrently. All progress lives in the stores;
the scheduler itself holds no state worth persisting.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable
from concurrent.futures import Future, ThreadPoolExecutor, wait

from process_orchestrator.logging import log_context

logger = logging.getLogger(__name__)


class WorkspaceTickScheduler:
    def __init__(
        self,
        *,
        name: str,
        interval_seconds: float,
        list_workspaces: Callable[[], Iterable[str]],
        tick: Callable[[str], object],
        max_workers: int = 4,
    ) -> None:
        self._name = name
        self._interval = interval_seconds
        self._list_workspaces = list_workspaces
        self._tick = tick
        self._max_workers = max_workers
        self._executor: ThreadPoolExecutor | None = None
        self._running: set[str] = set()
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def name(self) -> str:
        return self._name

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _pool(self) -> ThreadPoolExecutor:
        # Created lazily; stop() discards it.
        with self._lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self._max_workers, thread_name_prefix=f"{self._name}-tick"
                )
            return self._executor

    def _run_workspace(self, workspace_id: str) -> None:
        try:
            with log_context(scheduler=self._name, workspace_id=workspace_id):
                self._tick(workspace_id)
        except Exception:
            logger.exception(
                "Workspace tick failed",
                extra={"scheduler": self._name, "workspace_id": workspace_id},
            )
        finally:
            with self._lock:
                self._running.discard(workspace_id)

    def run_once(self, *, wait_for_completion: bool = False) -> list[str]:
        """Submit one tick per workspace; returns the workspaces that were submitted."""

        submitted: list[str] = []
        futures: list[Future[None]] = []
        for workspace_id in self._list_workspaces():
            with self._lock:
                if workspace_id in self._running:
                    logger.debug(
                        "Previous tick still running; skipping workspace",
                        extra={"scheduler": self._name, "workspace_id": workspace_id},
                    )
                    continue
                self._running.add(workspace_id)
            futures.append(self._pool().submit(self._run_workspace, workspace_id))
            submitted.append(workspace_id)

        if wait_for_completion and futures:
            wait(futures)
        return submitted

    def _loop(self) -> None:
        logger.info(
            "Scheduler started", extra={"scheduler": self._name, "interval": self._interval}
        )
        while not self._stop.wait(self._interval):
            try:
                self.run_once()
            except Exception:
                logger.exception("Scheduler round failed", extra={"scheduler": self._name})
        logger.info("Scheduler stopped", extra={"scheduler": self._name})

    def start(self) -> None:
        if self.is_running:
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._loop, name=f"{self._name}-scheduler", daemon=True
        )
        self._thread.start()

    def stop(self, timeout: float | None = 10.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
        with self._lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=True)
