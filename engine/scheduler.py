from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, Optional

from engine import state
from engine.errors import TransitionError

log = logging.getLogger("scheduler")


@dataclass
class TickReport:
    skipped: bool = False
    processed: list[str] = field(default_factory=list)
    completed: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    deferred: list[str] = field(default_factory=list)
    recovered: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "skipped": self.skipped,
            "processed": list(self.processed),
            "completed": list(self.completed),
            "failed": list(self.failed),
            "deferred": list(self.deferred),
            "recovered": list(self.recovered),
        }


class ExecutionScheduler:
    """
    Single-worker poller for due executions.

    A tick that finds the previous one still running is skipped, never queued.
    Each due record runs in isolation: one failure is stored on that record and
    the rest of the tick carries on.

    `service_factory(db)` must return an ExecutionService bound to `db`.
    """

    def __init__(
        self,
        session_factory: Callable,
        service_factory: Callable,
        *,
        tick_seconds: int = 3600,
        stuck_minutes: int = 0,
    ):
        self.session_factory = session_factory
        self.service_factory = service_factory
        self.tick_seconds = max(1, int(tick_seconds or 1))
        self.stuck_minutes = max(0, int(stuck_minutes or 0))
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def tick(self) -> TickReport:
        if not self._lock.acquire(blocking=False):
            log.debug("previous tick still running; skipping")
            return TickReport(skipped=True)
        try:
            return self._run_tick()
        finally:
            self._lock.release()

    def _run_tick(self) -> TickReport:
        report = TickReport()
        db = self.session_factory()
        try:
            service = self.service_factory(db)

            if self.stuck_minutes:
                try:
                    report.recovered = service.recover_stalled(self.stuck_minutes)
                except Exception:
                    db.rollback()
                    log.exception("stalled execution scan failed")

            due_ids = [row.executionId for row in service.due()]
            if due_ids:
                log.info("tick: %s due execution(s)", len(due_ids))

            for execution_id in due_ids:
                report.processed.append(execution_id)
                try:
                    status = service.run(execution_id)
                except TransitionError as e:
                    # Claimed elsewhere (e.g. a manual run) since the due query.
                    db.rollback()
                    log.info("execution=%s skipped: %s", execution_id, e.message)
                    report.deferred.append(execution_id)
                    continue
                except Exception as e:
                    log.exception("execution=%s failed outside the step pipeline", execution_id)
                    report.failed.append(execution_id)
                    try:
                        service.orchestrator.record_unexpected_failure(execution_id, e)
                    except Exception:
                        db.rollback()
                        log.exception("execution=%s could not record failure", execution_id)
                    continue

                if status == state.COMPLETED:
                    report.completed.append(execution_id)
                elif status == state.FAILED:
                    report.failed.append(execution_id)
                else:
                    report.deferred.append(execution_id)
        finally:
            db.close()

        if report.processed or report.recovered:
            log.info(
                "tick done completed=%s failed=%s deferred=%s recovered=%s",
                len(report.completed),
                len(report.failed),
                len(report.deferred),
                len(report.recovered),
            )
        return report

    def _loop(self) -> None:
        while not self._stop.wait(self.tick_seconds):
            try:
                self.tick()
            except Exception:
                log.exception("scheduler tick failed")

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="execution-scheduler", daemon=True)
        self._thread.start()
        log.info("scheduler started tick_seconds=%s", self.tick_seconds)

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
