"""Adaptive consolidation scheduler.

A single asyncio loop wakes every ``check_interval_minutes``, recomputes
the metrics snapshot, asks the :class:`~memcortex.triggers.TriggerEvaluator`
for the most urgent trigger and, if one fires, runs a consolidation pass
with the scope that trigger suggests.

Concurrency rules:

- Evaluate-then-consolidate runs under one :class:`asyncio.Lock`, taken
  before the metrics scan.  A tick that arrives while the lock is held is
  skipped.
- A manual request that arrives while the lock is held is kept in a queue
  of depth one and runs before the lock is released.  A second request
  while one is already queued is rejected with a ``skipped`` result.
- Retrieval reads inside :meth:`AdaptiveScheduler.reading`.  A pass waits
  for open readers to finish before it writes, and new readers wait for
  the pass, so retrieval never reads a half-consolidated store.
- A failing tick is logged and retried at the next interval.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator

from memcortex.config import SchedulerConfig, get_config
from memcortex.consolidation import ConsolidationEngine, ConsolidationResult
from memcortex.metrics import MetricsCalculator, MetricsSnapshot
from memcortex.triggers import ConsolidationTrigger, TriggerEvaluator, manual_trigger

logger = logging.getLogger(__name__)


class AdaptiveScheduler:
    """Runs consolidation when the store's metrics call for it.

    Parameters
    ----------
    metrics:
        Computes the snapshot each tick evaluates.
    evaluator:
        Turns a snapshot into a trigger.
    engine:
        Executes consolidation passes.
    config:
        Interval and thresholds.  Defaults to the global scheduler section.
    """

    def __init__(
        self,
        metrics: MetricsCalculator,
        evaluator: TriggerEvaluator,
        engine: ConsolidationEngine,
        config: SchedulerConfig | None = None,
    ) -> None:
        self._metrics = metrics
        self._evaluator = evaluator
        self._engine = engine
        self._cfg = config or get_config().scheduler

        self._lock = asyncio.Lock()
        self._idle = asyncio.Event()
        self._idle.set()
        self._readers = 0
        self._no_readers = asyncio.Event()
        self._no_readers.set()
        self._pending: (
            tuple[ConsolidationTrigger, bool, asyncio.Future[ConsolidationResult]] | None
        ) = None

        self._shutdown: asyncio.Event | None = None
        self._task: asyncio.Task[None] | None = None

        self._snapshot: MetricsSnapshot | None = None
        self._last_run: datetime | None = None
        self._last_trigger: ConsolidationTrigger | None = None
        self._last_result: ConsolidationResult | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def busy(self) -> bool:
        """Whether an evaluation or consolidation pass is in progress."""
        return self._lock.locked()

    async def start(self) -> None:
        """Start the periodic loop.

        Runs one evaluation immediately and consolidates only if it yields
        a critical trigger.  Calling ``start`` on a running scheduler is a
        no-op.
        """
        if not self._cfg.enabled:
            logger.info("Adaptive scheduler disabled by configuration")
            return
        if self.running:
            return

        self._shutdown = asyncio.Event()
        try:
            await self.tick(critical_only=True)
        except Exception:
            logger.exception("Initial trigger check failed; continuing with periodic checks")

        self._task = asyncio.create_task(self._loop(self._shutdown))
        logger.info(
            "Adaptive scheduler started (every %.1f min)", self._cfg.check_interval_minutes,
        )

    async def stop(self) -> None:
        """Stop the loop and wait for the current tick to finish."""
        if self._shutdown is not None:
            self._shutdown.set()
        if self._task is not None:
            await self._task
            self._task = None
            logger.info("Adaptive scheduler stopped")

    async def _loop(self, shutdown: asyncio.Event) -> None:
        interval = self._cfg.check_interval_minutes * 60
        while not shutdown.is_set():
            try:
                await asyncio.wait_for(shutdown.wait(), timeout=interval)
                break
            except asyncio.TimeoutError:
                pass

            try:
                await self.tick()
            except Exception:
                logger.exception("Scheduler tick failed; retrying next interval")

    async def tick(self, critical_only: bool = False) -> ConsolidationResult | None:
        """One evaluate-then-consolidate cycle under the scheduler lock.

        Parameters
        ----------
        critical_only:
            Consolidate only for a ``critical`` trigger (used at startup).

        Returns ``None`` when nothing fired or a pass is already running.
        A manual request queued during evaluation still runs before the
        lock is released.
        """
        if self.busy:
            logger.debug("Scheduler tick skipped: consolidation in progress")
            return None

        async with self._lock:
            try:
                trigger = await self.check_triggers()
            except Exception:
                if self._pending is not None:
                    await self._guarded(None, False)
                raise
            if trigger is not None and critical_only and trigger.urgency != "critical":
                trigger = None
            if trigger is None:
                logger.debug("Scheduler tick: no trigger")
                if self._pending is None:
                    return None
                await self._guarded(None, False)
                return None
            if critical_only:
                logger.warning("Critical trigger at startup: %s", trigger.reason)
            return await self._guarded(trigger, False)

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    async def check_triggers(self, now: datetime | None = None) -> ConsolidationTrigger | None:
        """Refresh the metrics and return the most urgent trigger, if any."""
        now = now or datetime.now(tz=timezone.utc)
        snapshot = await self.refresh_metrics(now)
        last_run = await self.get_last_run()
        return self._evaluator.evaluate(snapshot, last_run, now)

    async def refresh_metrics(self, now: datetime | None = None) -> MetricsSnapshot:
        self._snapshot = await self._metrics.snapshot(now)
        return self._snapshot

    async def get_metrics(self) -> MetricsSnapshot:
        """The latest snapshot, computing one if none exists yet."""
        if self._snapshot is None:
            return await self.refresh_metrics()
        return self._snapshot

    async def get_last_run(self) -> datetime | None:
        """When the last pass completed, from memory or the audit log."""
        if self._last_run is None:
            self._last_run = await self._engine.last_run_at()
        return self._last_run

    # ------------------------------------------------------------------
    # Consolidation
    # ------------------------------------------------------------------

    async def run_consolidation(
        self,
        trigger: ConsolidationTrigger,
        dry_run: bool = False,
    ) -> ConsolidationResult:
        """Run a pass for *trigger* under the scheduler lock.

        A manual request queued meanwhile runs before the lock is released.
        """
        async with self._lock:
            result = await self._guarded(trigger, dry_run)
        assert result is not None
        return result

    async def _guarded(
        self,
        trigger: ConsolidationTrigger | None,
        dry_run: bool,
    ) -> ConsolidationResult | None:
        """Run *trigger* and any queued manual request as writers.

        The caller holds ``self._lock``.  New readers are held back first,
        then open readers are drained before the store is touched.
        """
        self._idle.clear()
        try:
            await self._no_readers.wait()
            if trigger is None:
                return None
            return await self._run(trigger, dry_run)
        finally:
            await self._drain_pending()
            self._idle.set()

    async def request_manual(
        self,
        trigger: ConsolidationTrigger | None = None,
        dry_run: bool = False,
    ) -> ConsolidationResult:
        """Run a manual pass now, or right after the one in progress.

        Returns a ``skipped`` result if another manual request is already
        waiting.
        """
        trigger = trigger or manual_trigger()
        if not self.busy:
            return await self.run_consolidation(trigger, dry_run)

        if self._pending is not None:
            logger.warning("Manual consolidation already queued; rejecting request")
            return ConsolidationResult(
                dry_run=dry_run,
                skipped=True,
                trigger_type=trigger.type,
                scope=trigger.suggested_scope.to_dict(),
            )

        future: asyncio.Future[ConsolidationResult] = asyncio.get_running_loop().create_future()
        self._pending = (trigger, dry_run, future)
        logger.info("Manual consolidation queued behind the current pass")
        return await future

    async def wait_until_idle(self) -> None:
        await self._idle.wait()

    @asynccontextmanager
    async def reading(self) -> AsyncIterator[None]:
        """Hold off consolidation writes for the duration of the block.

        Waits for a pass in progress to finish before entering.  Readers
        run concurrently with each other.
        """
        while not self._idle.is_set():
            await self._idle.wait()
        self._readers += 1
        self._no_readers.clear()
        try:
            yield
        finally:
            self._readers -= 1
            if self._readers == 0:
                self._no_readers.set()

    async def _run(self, trigger: ConsolidationTrigger, dry_run: bool) -> ConsolidationResult:
        logger.info("Consolidation triggered (%s, %s): %s", trigger.type, trigger.urgency, trigger.reason)
        result = await self._engine.run(
            trigger.suggested_scope,
            dry_run=dry_run,
            trigger_type=trigger.type,
        )
        self._last_trigger = trigger
        self._last_result = result
        if not result.skipped and not dry_run:
            self._last_run = datetime.now(tz=timezone.utc)
        return result

    async def _drain_pending(self) -> None:
        while self._pending is not None:
            trigger, dry_run, future = self._pending
            self._pending = None
            if future.done():
                continue
            try:
                result = await self._run(trigger, dry_run)
            except Exception as exc:
                future.set_exception(exc)
            else:
                future.set_result(result)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def status(self) -> dict[str, Any]:
        return {
            "enabled": self._cfg.enabled,
            "running": self.running,
            "busy": self.busy,
            "manual_queued": self._pending is not None,
            "check_interval_minutes": self._cfg.check_interval_minutes,
            "last_run": self._last_run.isoformat() if self._last_run else None,
            "last_trigger": self._last_trigger.to_dict() if self._last_trigger else None,
            "last_result": self._last_result.to_dict() if self._last_result else None,
        }
