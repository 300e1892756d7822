"""
Reward cycle scheduler.

This service provides:
- One reward cycle per interval, numbered within a UTC epoch
- At most one cycle in progress and a minimum spacing between recorded runs
- FAILED results recorded for cycles that blow up
- Restore and payout reconciliation on startup
- Status and health reporting for the API
"""

import asyncio
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence

import structlog

from holder_rewards.cache import CircuitBreaker
from holder_rewards.services.cycle_processor import CycleProcessor
from holder_rewards.services.distribution import DistributionExecutor
from holder_rewards.services.eligibility import EligibleHolderRegistry
from holder_rewards.services.types import CycleResult, CycleState, SchedulerPhase
from holder_rewards.store import StateStore
from .epoch_clock import CyclePosition, EpochClock, ensure_utc


logger = structlog.get_logger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SchedulerState:
    """Everything the scheduler knows about its own progress."""
    phase: SchedulerPhase = SchedulerPhase.STOPPED
    is_running: bool = False
    last_run_at: Optional[datetime] = None
    next_run_at: Optional[datetime] = None
    last_result: Optional[CycleResult] = None
    total_runs: int = 0
    distributed_runs: int = 0
    rolled_over_runs: int = 0
    failed_runs: int = 0
    skipped_ticks: int = 0
    started_at: Optional[datetime] = None


class RewardScheduler:
    """
    Drives ``CycleProcessor`` once per interval.

    ``tick()`` can be called directly (tests, manual triggers) or from the
    background loop started by ``start()``.
    """

    def __init__(
        self,
        store: StateStore,
        processor: CycleProcessor,
        clock: EpochClock,
        distribution: Optional[DistributionExecutor] = None,
        registry: Optional[EligibleHolderRegistry] = None,
        breakers: Sequence[CircuitBreaker] = (),
        retention_epochs: int = 30,
        enabled: bool = True,
        now: Callable[[], datetime] = utc_now
    ):
        self.store = store
        self.processor = processor
        self.clock = clock
        self.distribution = distribution
        self.registry = registry
        self.breakers = list(breakers)
        self.retention_epochs = retention_epochs
        self.enabled = enabled
        self._now = now

        self.state = SchedulerState()
        self._should_stop = False
        self._scheduler_task: Optional[asyncio.Task] = None
        self._cycle_task: Optional[asyncio.Future] = None
        self._initialized = False
        self._last_pruned_epoch: Optional[str] = None

        self.logger = logger.bind(service="reward_scheduler")

    @property
    def interval(self) -> timedelta:
        return timedelta(seconds=self.clock.interval_seconds)

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()

    async def initialize(self) -> None:
        """Restore state from the store and reconcile in-flight payouts."""
        if self._initialized:
            return

        snapshot = await self.store.load_scheduler_state()
        self.state.last_run_at = snapshot.last_run_at
        self.state.last_result = await self.store.last_cycle_result()
        if self.state.phase == SchedulerPhase.STOPPED:
            self.state.phase = SchedulerPhase.IDLE

        reconciled = None
        if self.distribution is not None:
            reconciled = await self.distribution.reconcile()

        self._initialized = True
        self.logger.info(
            "Reward scheduler restored",
            last_run_at=self.state.last_run_at.isoformat() if self.state.last_run_at else None,
            last_state=self.state.last_result.state.value if self.state.last_result else None,
            reconciled=reconciled
        )

    async def tick(self, now: Optional[datetime] = None) -> Optional[CycleResult]:
        """
        Run one cycle if allowed.

        Returns None without doing anything when a cycle is already in
        progress or the last recorded run is less than one interval ago.
        """
        if self.state.is_running:
            self.state.skipped_ticks += 1
            self.logger.info("Cycle already in progress, tick ignored")
            return None

        now = ensure_utc(now or self._now())
        last_run = self.state.last_run_at
        if last_run is not None and now - last_run < self.interval:
            self.state.skipped_ticks += 1
            self.logger.debug(
                "Minimum interval not elapsed, tick ignored",
                since_last_run=(now - last_run).total_seconds()
            )
            return None

        # Claimed before the first await so a concurrent tick sees it
        self.state.is_running = True
        self.state.phase = SchedulerPhase.RUNNING
        position = self.clock.position(now)

        # A cancelled caller does not cancel the cycle; it still records a result
        self._cycle_task = asyncio.ensure_future(self._run_cycle(position, now))
        return await asyncio.shield(self._cycle_task)

    async def _run_cycle(self, position: CyclePosition, now: datetime) -> CycleResult:
        try:
            self.logger.info("Cycle started", epoch=position.epoch, cycle=position.cycle)

            try:
                result = await self.processor.run(position, now)
            except Exception as e:
                self.logger.error("Cycle crashed", error=str(e), exc_info=True)
                result = CycleResult(
                    epoch=position.epoch,
                    cycle=position.cycle,
                    state=CycleState.FAILED,
                    started_at=now,
                    finished_at=self._now(),
                    error=f"{type(e).__name__}: {e}"
                )

            await self._record(result, now)
            await self._prune(position.epoch)
            return result

        finally:
            self.state.is_running = False
            if self.state.phase == SchedulerPhase.RUNNING:
                self.state.phase = SchedulerPhase.IDLE

    async def _record(self, result: CycleResult, run_at: datetime) -> None:
        self.state.last_run_at = run_at
        self.state.last_result = result
        self.state.total_runs += 1
        if result.state == CycleState.DISTRIBUTED:
            self.state.distributed_runs += 1
        elif result.state == CycleState.ROLLED_OVER:
            self.state.rolled_over_runs += 1
        else:
            self.state.failed_runs += 1

        try:
            await self.store.append_cycle_result(result, last_run_at=run_at)
        except Exception as e:
            self.logger.error(
                "Failed to persist cycle result",
                epoch=result.epoch,
                cycle=result.cycle,
                error=str(e)
            )

        self.logger.info(
            "Cycle finished",
            epoch=result.epoch,
            cycle=result.cycle,
            state=result.state.value,
            distributed_amount=result.distributed_amount,
            error=result.error
        )

    async def _prune(self, epoch: str) -> None:
        if epoch == self._last_pruned_epoch:
            return
        try:
            await self.store.prune_history(self.retention_epochs)
            self._last_pruned_epoch = epoch
        except Exception as e:
            self.logger.warning("History pruning failed", error=str(e))

    async def start(self) -> None:
        """Start the background loop. The first cycle waits for the next slot."""
        if not self.enabled:
            self.logger.info("Reward scheduler is disabled")
            return

        if self._scheduler_task is not None and not self._scheduler_task.done():
            self.logger.warning("Scheduler already running", phase=self.state.phase.value)
            return

        await self.initialize()

        self._should_stop = False
        self.processor.stopping = False
        self.state.phase = SchedulerPhase.IDLE
        self.state.started_at = self._now()
        self.state.next_run_at = self._first_run_time(self.state.started_at)
        self._scheduler_task = asyncio.create_task(self._scheduler_loop())

        self.logger.info(
            "Reward scheduler started",
            interval_seconds=self.clock.interval_seconds,
            next_run=self.state.next_run_at.isoformat()
        )

    async def stop(self) -> None:
        """
        Stop the background loop.

        A cycle in progress runs to its result first; a batched harvest ends
        after the batch it is on.
        """
        self._should_stop = True
        self.processor.stopping = True

        if self._scheduler_task and not self._scheduler_task.done():
            self._scheduler_task.cancel()
            try:
                await self._scheduler_task
            except asyncio.CancelledError:
                pass
        self._scheduler_task = None

        await self.wait_for_cycle()

        self.state.phase = SchedulerPhase.STOPPED
        self.state.next_run_at = None
        self.logger.info("Reward scheduler stopped")

    async def wait_for_cycle(self) -> Optional[CycleResult]:
        """Wait for the cycle in progress, if any, and return its result."""
        task = self._cycle_task
        if task is None or task.done():
            return None
        self.logger.info("Waiting for the cycle in progress to finish")
        return await asyncio.shield(task)

    def _first_run_time(self, now: datetime) -> datetime:
        next_slot = self.clock.position(now).next_cycle_at
        if self.state.last_run_at is None:
            return next_slot
        return max(next_slot, self.state.last_run_at + self.interval)

    async def _scheduler_loop(self) -> None:
        self.logger.info("Scheduler loop started")

        while not self._should_stop:
            try:
                now = self._now()
                target = self.state.next_run_at or self._first_run_time(now)
                delay = (target - now).total_seconds()
                if delay > 0:
                    await asyncio.sleep(delay)
                    continue

                await self.tick(now)
                await self._refresh_eligible_if_due()

                if self.state.last_run_at is not None:
                    self.state.next_run_at = self.state.last_run_at + self.interval
                else:
                    self.state.next_run_at = self._first_run_time(self._now())

            except asyncio.CancelledError:
                self.logger.info("Scheduler loop cancelled")
                break

            except Exception as e:
                self.logger.error("Error in scheduler loop", error=str(e))
                await asyncio.sleep(min(60, self.clock.interval_seconds))

        self.logger.info("Scheduler loop stopped")

    async def _refresh_eligible_if_due(self) -> None:
        if self.registry is None or not self.registry.is_due():
            return
        try:
            await self.registry.refresh()
            await self.store.save_eligible_refresh(self._now())
        except Exception as e:
            self.logger.warning("Periodic eligible holder refresh failed", error=str(e))

    async def get_status(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Current epoch/cycle, run state and payout queue totals."""
        now = ensure_utc(now or self._now())
        position = self.clock.position(now)

        pending_count, pending_total = await self.store.pending_totals()
        accumulated_holders, accumulated_total = await self.store.accumulated_totals()
        ledger = await self.store.get_ledger()
        last = self.state.last_result

        return {
            "epoch": position.epoch,
            "cycle": position.cycle,
            "cycles_per_epoch": position.cycles_per_epoch,
            "next_cycle_in_seconds": round(position.seconds_until_next(now), 1),
            "is_running": self.state.is_running,
            "phase": self.state.phase.value,
            "enabled": self.enabled,
            "last_run": self.state.last_run_at.isoformat() if self.state.last_run_at else None,
            "next_run": self.state.next_run_at.isoformat() if self.state.next_run_at else None,
            "last_result": last.summary() if last else None,
            "pending_payouts": {
                "count": pending_count,
                "total_lamports": pending_total,
            },
            "accumulated_rewards": {
                "holders": accumulated_holders,
                "total_lamports": accumulated_total,
            },
            "outstanding_tax": ledger.outstanding_tax,
            "stats": {
                "total_runs": self.state.total_runs,
                "distributed_runs": self.state.distributed_runs,
                "rolled_over_runs": self.state.rolled_over_runs,
                "failed_runs": self.state.failed_runs,
                "skipped_ticks": self.state.skipped_ticks,
            },
            "circuit_breakers": [breaker.get_status() for breaker in self.breakers],
        }

    async def get_cycle_history(self, limit: int = 50, epoch: Optional[str] = None) -> List[CycleResult]:
        return await self.store.list_cycle_results(limit=limit, epoch=epoch)

    async def get_epoch_statistics(self, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        return await self.store.epoch_statistics(limit=limit or self.retention_epochs)

    async def health_check(self) -> Dict[str, Any]:
        """Scheduler health for the API."""
        database_ok = await self.store.database.health_check()
        open_breakers = [b.name for b in self.breakers if b.state.value != "closed"]
        last = self.state.last_result

        healthy = database_ok and (
            not self.enabled
            or self.state.phase != SchedulerPhase.STOPPED
        )

        state = asdict(self.state)
        state["phase"] = self.state.phase.value
        state["last_result"] = last.summary() if last else None
        for key in ("last_run_at", "next_run_at", "started_at"):
            if state[key] is not None:
                state[key] = state[key].isoformat()

        return {
            "healthy": healthy,
            "database": database_ok,
            "open_circuit_breakers": open_breakers,
            "scheduler": state,
        }
