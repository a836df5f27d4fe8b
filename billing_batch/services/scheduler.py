"""
BillingScheduler -- In-process polling scheduler for invoice runs.

Contract:
    Polls configured schedules on an interval, evaluates ``should_fire()``
    (pure), and calls the run trigger (rent / utility runs) or the overdue
    sweep for every organization.

Architecture: billing_batch/services.  Uses billing_batch.domain.schedule
    for pure evaluation.  Schedules are any objects with ``name``, ``job``,
    ``cron``, ``period_offset`` and ``is_active`` (billing_config's
    ScheduleDef).

Invariants enforced:
    - All timestamps from the injected Clock.
    - Schedule evaluation is pure.
    - A failing organization or schedule is logged and skipped; the loop
      keeps running.
    - Graceful shutdown (respects stop signal between schedules).
"""

from __future__ import annotations

import threading
from typing import Any, Callable, Iterable
from uuid import UUID

from billing_kernel.domain.clock import Clock, SystemClock
from billing_kernel.domain.types import RunType
from billing_kernel.logging_config import get_logger

from billing_batch.domain.schedule import CronSpec, parse_cron, period_key_for, should_fire
from billing_batch.domain.types import ScheduledJob

logger = get_logger("batch.scheduler")

_RUN_TYPES = {
    ScheduledJob.RENT_RUN: RunType.RENT,
    ScheduledJob.UTILITY_RUN: RunType.UTILITY,
}


class BillingScheduler:
    """In-process polling scheduler for billing schedules.

    Contract:
        - ``tick()`` evaluates all active schedules and fires due ones.
        - ``start()`` / ``stop()`` for background thread operation.

    Non-goals:
        - NOT a distributed scheduler (no leader election).  Duplicate
          fires are harmless because runs are idempotent.
        - Does NOT handle timezone conversions (expects UTC).
    """

    def __init__(
        self,
        schedules: Iterable[Any],
        trigger: Callable[[UUID, str, RunType], Any],
        sweep: Callable[[UUID], Any],
        org_ids: Callable[[], Iterable[UUID]],
        clock: Clock | None = None,
        tick_interval_seconds: int = 60,
    ):
        self._clock = clock or SystemClock()
        self._trigger = trigger
        self._sweep = sweep
        self._org_ids = org_ids
        self._tick_interval = tick_interval_seconds
        self._schedules: list[tuple[Any, CronSpec]] = [
            (s, parse_cron(s.cron)) for s in schedules if s.is_active
        ]
        started = self._clock.now_utc()
        self._since = {s.name: started for s, _ in self._schedules}
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def tick(self) -> int:
        """Evaluate and fire due schedules (public for testing).

        Returns the number of schedules that were fired.
        """
        now = self._clock.now_utc()
        fired = 0

        for schedule, spec in self._schedules:
            if self._stop_event.is_set():
                break
            if not should_fire(spec, self._since[schedule.name], now):
                continue

            self._since[schedule.name] = now
            try:
                self._fire(schedule, now)
                fired += 1
            except Exception:
                logger.exception(
                    "schedule_fire_failed",
                    extra={"schedule": schedule.name, "job": schedule.job},
                )

        return fired

    def start(self) -> None:
        """Start the scheduler in a background thread."""
        if self._thread is not None and self._thread.is_alive():
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_loop,
            name="billing-scheduler",
            daemon=True,
        )
        self._thread.start()
        logger.info("scheduler_started", extra={"tick_interval": self._tick_interval})

    def stop(self, timeout: float = 30.0) -> None:
        """Signal stop and wait for the scheduler thread to finish."""
        self._stop_event.set()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        logger.info("scheduler_stopped")

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.tick()
            except Exception:
                logger.exception("scheduler_tick_exception")
            self._stop_event.wait(timeout=self._tick_interval)

    def _fire(self, schedule: Any, now) -> None:
        job = ScheduledJob(schedule.job)
        period_key = period_key_for(job, now, schedule.period_offset)

        for org_id in self._org_ids():
            if self._stop_event.is_set():
                break
            try:
                if job is ScheduledJob.OVERDUE_SWEEP:
                    self._sweep(org_id)
                else:
                    self._trigger(org_id, period_key, _RUN_TYPES[job])
            except Exception:
                logger.exception(
                    "schedule_org_failed",
                    extra={"schedule": schedule.name, "org_id": str(org_id)},
                )

        logger.info(
            "schedule_fired",
            extra={
                "schedule": schedule.name,
                "job": job.value,
                "period_key": period_key,
                "fired_at": now.isoformat(),
            },
        )
