"""
Durable state store.

Every public method is one logical update and runs in one database
transaction, so a crash leaves the previous committed state intact.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple

import structlog
from sqlalchemy import select, delete, func, case
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from holder_rewards.core.database import Database
from holder_rewards.core.exceptions import StateStoreError
from holder_rewards.models import (
    SchedulerStateRecord,
    TaxLedger,
    HolderAccount,
    PendingPayoutRecord,
    PayoutRecord,
    PayoutStatus,
    CycleResultRecord,
    SINGLETON_ID,
)
from holder_rewards.services.types import CycleResult, CycleState, PendingPayout


logger = structlog.get_logger(__name__)


def to_db_time(value: Optional[datetime]) -> Optional[datetime]:
    """Aware datetime to the naive UTC form stored in the database."""
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def from_db_time(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass
class SchedulerSnapshot:
    last_run_at: Optional[datetime] = None
    last_eligible_refresh_at: Optional[datetime] = None


@dataclass
class LedgerSnapshot:
    outstanding_tax: int = 0
    total_harvested: int = 0
    total_converted: int = 0
    total_settlement_received: int = 0
    total_to_holders: int = 0
    total_to_treasury: int = 0
    last_harvest_at: Optional[datetime] = None


@dataclass
class AccountSnapshot:
    address: str
    accumulated_reward: int
    total_paid: int
    last_paid_at: Optional[datetime]


@dataclass
class PayoutRecordSnapshot:
    action_key: str
    address: str
    epoch: str
    cycle: int
    amount: int
    status: str
    action_id: Optional[str]
    retry_count: int
    error: Optional[str]
    updated_at: Optional[datetime]


class StateStore:
    """SQLAlchemy-backed persistence for the reward engine."""

    def __init__(self, database: Database):
        self.database = database
        self.logger = logger.bind(service="state_store")

    async def _run(self, operation: str, func_, *args):
        try:
            async with self.database.session() as session:
                return await func_(session, *args)
        except SQLAlchemyError as e:
            self.logger.error("State store operation failed", operation=operation, error=str(e))
            raise StateStoreError(
                f"State store operation '{operation}' failed",
                {"operation": operation, "error": str(e)}
            ) from e

    # Scheduler bookkeeping

    async def load_scheduler_state(self) -> SchedulerSnapshot:
        async def op(session: AsyncSession) -> SchedulerSnapshot:
            record = await session.get(SchedulerStateRecord, SINGLETON_ID)
            if record is None:
                return SchedulerSnapshot()
            return SchedulerSnapshot(
                last_run_at=from_db_time(record.last_run_at),
                last_eligible_refresh_at=from_db_time(record.last_eligible_refresh_at)
            )
        return await self._run("load_scheduler_state", op)

    async def save_last_run(self, at: datetime) -> None:
        async def op(session: AsyncSession) -> None:
            record = await self._scheduler_record(session)
            record.last_run_at = to_db_time(at)
        await self._run("save_last_run", op)

    async def save_eligible_refresh(self, at: datetime) -> None:
        async def op(session: AsyncSession) -> None:
            record = await self._scheduler_record(session)
            record.last_eligible_refresh_at = to_db_time(at)
        await self._run("save_eligible_refresh", op)

    # Tax ledger

    async def get_ledger(self) -> LedgerSnapshot:
        async def op(session: AsyncSession) -> LedgerSnapshot:
            return self._ledger_snapshot(await self._ledger(session))
        return await self._run("get_ledger", op)

    async def record_withdrawal(self, amount: int) -> LedgerSnapshot:
        """Add newly withdrawn tax to the outstanding balance."""
        async def op(session: AsyncSession) -> LedgerSnapshot:
            ledger = await self._ledger(session)
            if amount > 0:
                ledger.outstanding_tax += amount
                ledger.total_harvested += amount
            return self._ledger_snapshot(ledger)
        return await self._run("record_withdrawal", op)

    async def record_conversion(
        self,
        converted_in: int,
        amount_out: int,
        to_holders: int,
        to_treasury: int,
        at: datetime
    ) -> LedgerSnapshot:
        """Remove converted tax from the outstanding balance and add the proceeds."""
        async def op(session: AsyncSession) -> LedgerSnapshot:
            ledger = await self._ledger(session)
            ledger.outstanding_tax = max(0, ledger.outstanding_tax - converted_in)
            ledger.total_converted += converted_in
            ledger.total_settlement_received += amount_out
            ledger.total_to_holders += to_holders
            ledger.total_to_treasury += to_treasury
            ledger.last_harvest_at = to_db_time(at)
            return self._ledger_snapshot(ledger)
        return await self._run("record_conversion", op)

    # Holder accounts

    async def get_account(self, address: str) -> Optional[AccountSnapshot]:
        async def op(session: AsyncSession) -> Optional[AccountSnapshot]:
            account = await session.get(HolderAccount, address)
            return self._account_snapshot(account) if account else None
        return await self._run("get_account", op)

    async def get_accounts(self, addresses: Iterable[str]) -> Dict[str, AccountSnapshot]:
        async def op(session: AsyncSession) -> Dict[str, AccountSnapshot]:
            result = await session.execute(
                select(HolderAccount).where(HolderAccount.address.in_(list(addresses)))
            )
            return {a.address: self._account_snapshot(a) for a in result.scalars().all()}
        return await self._run("get_accounts", op)

    async def get_accumulated_map(self, addresses: Optional[Iterable[str]] = None) -> Dict[str, int]:
        """Accumulated rewards by address, only non-zero entries."""
        async def op(session: AsyncSession) -> Dict[str, int]:
            query = select(HolderAccount.address, HolderAccount.accumulated_reward).where(
                HolderAccount.accumulated_reward > 0
            )
            if addresses is not None:
                query = query.where(HolderAccount.address.in_(list(addresses)))
            result = await session.execute(query)
            return {address: amount for address, amount in result.all()}
        return await self._run("get_accumulated_map", op)

    async def add_accumulated(self, address: str, amount: int) -> int:
        """Increase a holder's accumulator, returning the new value."""
        async def op(session: AsyncSession) -> int:
            account = await self._account(session, address)
            account.accumulated_reward += amount
            return account.accumulated_reward
        return await self._run("add_accumulated", op)

    async def accumulated_totals(self) -> Tuple[int, int]:
        """(holders with an accumulated balance, total accumulated lamports)."""
        async def op(session: AsyncSession) -> Tuple[int, int]:
            result = await session.execute(
                select(
                    func.count(HolderAccount.address),
                    func.coalesce(func.sum(HolderAccount.accumulated_reward), 0)
                ).where(HolderAccount.accumulated_reward > 0)
            )
            count, total = result.one()
            return int(count), int(total)
        return await self._run("accumulated_totals", op)

    # Pending payouts and audit trail

    async def get_pending_payouts(self) -> List[PendingPayout]:
        async def op(session: AsyncSession) -> List[PendingPayout]:
            result = await session.execute(
                select(PendingPayoutRecord).order_by(
                    PendingPayoutRecord.queued_at, PendingPayoutRecord.address
                )
            )
            return [self._pending(r) for r in result.scalars().all()]
        return await self._run("get_pending_payouts", op)

    async def pending_totals(self) -> Tuple[int, int]:
        """(queued payouts, total queued lamports)."""
        async def op(session: AsyncSession) -> Tuple[int, int]:
            result = await session.execute(
                select(
                    func.count(PendingPayoutRecord.address),
                    func.coalesce(func.sum(PendingPayoutRecord.amount), 0)
                )
            )
            count, total = result.one()
            return int(count), int(total)
        return await self._run("pending_totals", op)

    async def begin_attempt(self, payout: PendingPayout, amount: int) -> None:
        """
        Queue the payout and mark its audit row ``sending`` before the transfer.

        ``amount`` is what will actually be sent (queued amount plus any
        accumulated reward riding along).
        """
        async def op(session: AsyncSession) -> None:
            pending = await session.get(PendingPayoutRecord, payout.address)
            if pending is None:
                session.add(PendingPayoutRecord(
                    address=payout.address,
                    amount=payout.amount,
                    queued_at=to_db_time(payout.queued_at),
                    retry_count=payout.retry_count,
                    epoch=payout.epoch,
                    cycle_number=payout.cycle,
                ))

            record = await self._payout_record(session, payout.action_key)
            if record is None:
                session.add(PayoutRecord(
                    action_key=payout.action_key,
                    address=payout.address,
                    epoch=payout.epoch,
                    cycle_number=payout.cycle,
                    amount=amount,
                    status=PayoutStatus.SENDING.value,
                    retry_count=payout.retry_count,
                ))
            else:
                record.amount = amount
                record.status = PayoutStatus.SENDING.value
                record.retry_count = payout.retry_count
                record.error = None
        await self._run("begin_attempt", op)

    async def complete_attempt(
        self,
        payout: PendingPayout,
        amount: int,
        action_id: Optional[str],
        paid_at: datetime,
        remaining_accumulated: int = 0
    ) -> None:
        """
        Record a settled payout: audit row paid, queue entry removed.

        The accumulator is reset to ``remaining_accumulated``, which is only
        non-zero when rewards were added after the settled attempt was made.
        """
        async def op(session: AsyncSession) -> None:
            record = await self._payout_record(session, payout.action_key)
            if record is not None:
                record.status = PayoutStatus.PAID.value
                record.action_id = action_id
                record.amount = amount
                record.error = None

            await session.execute(
                delete(PendingPayoutRecord).where(PendingPayoutRecord.address == payout.address)
            )

            account = await self._account(session, payout.address)
            account.accumulated_reward = remaining_accumulated
            account.total_paid += amount
            account.last_paid_at = to_db_time(paid_at)
        await self._run("complete_attempt", op)

    async def fail_attempt(
        self,
        payout: PendingPayout,
        error: str,
        max_retries: int,
        count_retry: bool = True
    ) -> PayoutStatus:
        """
        Record a failed transfer.

        The retry count goes up by one unless ``count_retry`` is False. When
        it reaches ``max_retries`` the payout leaves the queue and its audit
        row becomes ``permanently_failed``.
        """
        async def op(session: AsyncSession) -> PayoutStatus:
            retry_count = payout.retry_count + (1 if count_retry else 0)
            permanent = retry_count >= max_retries
            status = PayoutStatus.PERMANENTLY_FAILED if permanent else PayoutStatus.FAILED

            record = await self._payout_record(session, payout.action_key)
            if record is not None:
                record.status = status.value
                record.retry_count = retry_count
                record.error = error

            pending = await session.get(PendingPayoutRecord, payout.address)
            if permanent:
                if pending is not None:
                    await session.delete(pending)
            elif pending is None:
                session.add(PendingPayoutRecord(
                    address=payout.address,
                    amount=payout.amount,
                    queued_at=to_db_time(payout.queued_at),
                    retry_count=retry_count,
                    epoch=payout.epoch,
                    cycle_number=payout.cycle,
                    last_error=error,
                ))
            else:
                pending.retry_count = retry_count
                pending.last_error = error
            return status
        return await self._run("fail_attempt", op)

    async def get_payout_records(
        self,
        status: Optional[PayoutStatus] = None,
        limit: int = 100
    ) -> List[PayoutRecordSnapshot]:
        async def op(session: AsyncSession) -> List[PayoutRecordSnapshot]:
            query = select(PayoutRecord).order_by(PayoutRecord.updated_at.desc(), PayoutRecord.id.desc())
            if status is not None:
                query = query.where(PayoutRecord.status == status.value)
            result = await session.execute(query.limit(limit))
            return [self._record_snapshot(r) for r in result.scalars().all()]
        return await self._run("get_payout_records", op)

    async def get_payout_record(self, action_key: str) -> Optional[PayoutRecordSnapshot]:
        async def op(session: AsyncSession) -> Optional[PayoutRecordSnapshot]:
            record = await self._payout_record(session, action_key)
            return self._record_snapshot(record) if record else None
        return await self._run("get_payout_record", op)

    async def resolve_in_flight(
        self,
        action_key: str,
        status: PayoutStatus,
        action_id: Optional[str] = None,
        resolved_at: Optional[datetime] = None
    ) -> None:
        """
        Settle an audit row left in ``sending`` by a crash.

        ``paid`` also removes the queue entry and clears the accumulator the
        attempt carried; ``not_sent`` and ``needs_reconciliation`` leave the
        payout queued.
        """
        async def op(session: AsyncSession) -> None:
            record = await self._payout_record(session, action_key)
            if record is None:
                return
            record.status = status.value
            if action_id:
                record.action_id = action_id

            if status == PayoutStatus.PAID:
                await session.execute(
                    delete(PendingPayoutRecord).where(PendingPayoutRecord.address == record.address)
                )
                account = await self._account(session, record.address)
                account.accumulated_reward = 0
                account.total_paid += record.amount
                account.last_paid_at = to_db_time(resolved_at or datetime.now(timezone.utc))
        await self._run("resolve_in_flight", op)

    # Cycle history

    async def append_cycle_result(self, result: CycleResult, last_run_at: datetime) -> None:
        """Append a cycle result and move the last-run mark in one transaction."""
        async def op(session: AsyncSession) -> None:
            session.add(CycleResultRecord(
                epoch=result.epoch,
                cycle_number=result.cycle,
                state=result.state.value,
                started_at=to_db_time(result.started_at),
                finished_at=to_db_time(result.finished_at),
                tax_withdrawn=result.tax_withdrawn,
                tax_harvested=result.tax_harvested,
                tax_converted=result.tax_converted,
                settlement_received=result.settlement_received,
                holder_amount=result.holder_amount,
                treasury_amount=result.treasury_amount,
                distributed_amount=result.distributed_amount,
                batched=result.batched,
                batch_count=result.batch_count,
                payouts_sent=result.payouts_sent,
                payouts_failed=result.payouts_failed,
                payouts_accumulated=result.payouts_accumulated,
                eligible_holders=result.eligible_holders,
                swap_signatures=",".join(result.swap_signatures) or None,
                treasury_signature=result.treasury_signature,
                token_price_usd=str(result.token_price_usd) if result.token_price_usd is not None else None,
                error=result.error,
            ))
            record = await self._scheduler_record(session)
            record.last_run_at = to_db_time(last_run_at)
        await self._run("append_cycle_result", op)

    async def list_cycle_results(
        self,
        limit: int = 50,
        epoch: Optional[str] = None,
        offset: int = 0
    ) -> List[CycleResult]:
        """Cycle results, newest first."""
        async def op(session: AsyncSession) -> List[CycleResult]:
            query = select(CycleResultRecord).order_by(CycleResultRecord.id.desc())
            if epoch is not None:
                query = query.where(CycleResultRecord.epoch == epoch)
            result = await session.execute(query.limit(limit).offset(offset))
            return [self._cycle_result(r) for r in result.scalars().all()]
        return await self._run("list_cycle_results", op)

    async def last_cycle_result(self) -> Optional[CycleResult]:
        results = await self.list_cycle_results(limit=1)
        return results[0] if results else None

    async def epoch_statistics(self, limit: int = 30, epoch: Optional[str] = None) -> List[Dict[str, Any]]:
        """Per-epoch cycle counts and totals, newest epoch first."""
        async def op(session: AsyncSession) -> List[Dict[str, Any]]:
            query = (
                select(
                    CycleResultRecord.epoch,
                    func.count(CycleResultRecord.id),
                    func.sum(case((CycleResultRecord.state == CycleState.DISTRIBUTED.value, 1), else_=0)),
                    func.sum(case((CycleResultRecord.state == CycleState.ROLLED_OVER.value, 1), else_=0)),
                    func.sum(case((CycleResultRecord.state == CycleState.FAILED.value, 1), else_=0)),
                    func.coalesce(func.sum(CycleResultRecord.tax_harvested), 0),
                    func.coalesce(func.sum(CycleResultRecord.tax_converted), 0),
                    func.coalesce(func.sum(CycleResultRecord.distributed_amount), 0),
                    func.coalesce(func.sum(CycleResultRecord.treasury_amount), 0),
                    func.coalesce(func.sum(CycleResultRecord.payouts_sent), 0),
                    func.max(CycleResultRecord.cycle_number),
                )
                .group_by(CycleResultRecord.epoch)
                .order_by(CycleResultRecord.epoch.desc())
            )
            if epoch is not None:
                query = query.where(CycleResultRecord.epoch == epoch)
            result = await session.execute(query.limit(limit))
            return [
                {
                    "epoch": row[0],
                    "cycles": int(row[1]),
                    "distributed": int(row[2] or 0),
                    "rolled_over": int(row[3] or 0),
                    "failed": int(row[4] or 0),
                    "tax_harvested": int(row[5]),
                    "tax_converted": int(row[6]),
                    "distributed_amount": int(row[7]),
                    "treasury_amount": int(row[8]),
                    "payouts_sent": int(row[9]),
                    "last_cycle": int(row[10]),
                }
                for row in result.all()
            ]
        return await self._run("epoch_statistics", op)

    async def prune_history(self, keep_epochs: int) -> int:
        """Delete cycle results of all but the newest ``keep_epochs`` epochs."""
        async def op(session: AsyncSession) -> int:
            result = await session.execute(
                select(CycleResultRecord.epoch)
                .group_by(CycleResultRecord.epoch)
                .order_by(CycleResultRecord.epoch.desc())
                .offset(keep_epochs)
            )
            stale_epochs = [row[0] for row in result.all()]
            if not stale_epochs:
                return 0
            deleted = await session.execute(
                delete(CycleResultRecord).where(CycleResultRecord.epoch.in_(stale_epochs))
            )
            self.logger.info("Pruned cycle history", epochs=stale_epochs, rows=deleted.rowcount)
            return deleted.rowcount or 0
        return await self._run("prune_history", op)

    # Helpers

    async def _scheduler_record(self, session: AsyncSession) -> SchedulerStateRecord:
        record = await session.get(SchedulerStateRecord, SINGLETON_ID)
        if record is None:
            record = SchedulerStateRecord(id=SINGLETON_ID)
            session.add(record)
        return record

    async def _ledger(self, session: AsyncSession) -> TaxLedger:
        ledger = await session.get(TaxLedger, SINGLETON_ID)
        if ledger is None:
            ledger = TaxLedger(
                id=SINGLETON_ID,
                outstanding_tax=0,
                total_harvested=0,
                total_converted=0,
                total_settlement_received=0,
                total_to_holders=0,
                total_to_treasury=0,
            )
            session.add(ledger)
        return ledger

    async def _account(self, session: AsyncSession, address: str) -> HolderAccount:
        account = await session.get(HolderAccount, address)
        if account is None:
            account = HolderAccount(address=address, accumulated_reward=0, total_paid=0)
            session.add(account)
        return account

    async def _payout_record(self, session: AsyncSession, action_key: str) -> Optional[PayoutRecord]:
        result = await session.execute(
            select(PayoutRecord).where(PayoutRecord.action_key == action_key)
        )
        return result.scalar_one_or_none()

    @staticmethod
    def _ledger_snapshot(ledger: TaxLedger) -> LedgerSnapshot:
        return LedgerSnapshot(
            outstanding_tax=ledger.outstanding_tax,
            total_harvested=ledger.total_harvested,
            total_converted=ledger.total_converted,
            total_settlement_received=ledger.total_settlement_received,
            total_to_holders=ledger.total_to_holders,
            total_to_treasury=ledger.total_to_treasury,
            last_harvest_at=from_db_time(ledger.last_harvest_at),
        )

    @staticmethod
    def _account_snapshot(account: HolderAccount) -> AccountSnapshot:
        return AccountSnapshot(
            address=account.address,
            accumulated_reward=account.accumulated_reward,
            total_paid=account.total_paid,
            last_paid_at=from_db_time(account.last_paid_at),
        )

    @staticmethod
    def _pending(record: PendingPayoutRecord) -> PendingPayout:
        return PendingPayout(
            address=record.address,
            amount=record.amount,
            queued_at=from_db_time(record.queued_at),
            retry_count=record.retry_count,
            epoch=record.epoch,
            cycle=record.cycle_number,
            last_error=record.last_error,
        )

    @staticmethod
    def _record_snapshot(record: PayoutRecord) -> PayoutRecordSnapshot:
        return PayoutRecordSnapshot(
            action_key=record.action_key,
            address=record.address,
            epoch=record.epoch,
            cycle=record.cycle_number,
            amount=record.amount,
            status=record.status,
            action_id=record.action_id,
            retry_count=record.retry_count,
            error=record.error,
            updated_at=from_db_time(record.updated_at),
        )

    @staticmethod
    def _cycle_result(record: CycleResultRecord) -> CycleResult:
        return CycleResult(
            epoch=record.epoch,
            cycle=record.cycle_number,
            state=CycleState(record.state),
            started_at=from_db_time(record.started_at),
            finished_at=from_db_time(record.finished_at),
            tax_withdrawn=record.tax_withdrawn,
            tax_harvested=record.tax_harvested,
            tax_converted=record.tax_converted,
            settlement_received=record.settlement_received,
            holder_amount=record.holder_amount,
            treasury_amount=record.treasury_amount,
            distributed_amount=record.distributed_amount,
            batched=record.batched,
            batch_count=record.batch_count,
            payouts_sent=record.payouts_sent,
            payouts_failed=record.payouts_failed,
            payouts_accumulated=record.payouts_accumulated,
            eligible_holders=record.eligible_holders,
            swap_signatures=tuple(record.swap_signatures.split(",")) if record.swap_signatures else (),
            treasury_signature=record.treasury_signature,
            token_price_usd=Decimal(record.token_price_usd) if record.token_price_usd else None,
            error=record.error,
        )
