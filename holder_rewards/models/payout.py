"""
Payout models: per-holder accounts, the active payout queue and the
audit trail of settlement attempts.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import BigInteger, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, TimestampMixin, utcnow


class PayoutStatus(str, Enum):
    """Status of a single settlement attempt."""
    SENDING = "sending"
    PAID = "paid"
    FAILED = "failed"
    PERMANENTLY_FAILED = "permanently_failed"
    NEEDS_RECONCILIATION = "needs_reconciliation"
    NOT_SENT = "not_sent"


class HolderAccount(BaseModel, TimestampMixin):
    """Accumulated unpaid reward and payment history for one holder."""

    __tablename__ = "holder_accounts"

    address: Mapped[str] = mapped_column(String(44), primary_key=True)

    accumulated_reward: Mapped[int] = mapped_column(
        BigInteger,
        default=0,
        comment="Lamports owed but below the payout threshold"
    )

    total_paid: Mapped[int] = mapped_column(BigInteger, default=0)

    last_paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    def __repr__(self) -> str:
        return f"<HolderAccount(address={self.address}, accumulated={self.accumulated_reward})>"


class PendingPayoutRecord(BaseModel, TimestampMixin):
    """A payout waiting to be (re)sent. At most one per holder."""

    __tablename__ = "pending_payouts"

    address: Mapped[str] = mapped_column(String(44), primary_key=True)

    amount: Mapped[int] = mapped_column(
        BigInteger,
        comment="Lamports owed from the originating cycle"
    )

    queued_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    retry_count: Mapped[int] = mapped_column(Integer, default=0)

    epoch: Mapped[str] = mapped_column(String(32))
    cycle_number: Mapped[int] = mapped_column(Integer)

    last_error: Mapped[Optional[str]] = mapped_column(Text)

    def __repr__(self) -> str:
        return f"<PendingPayoutRecord(address={self.address}, amount={self.amount}, retries={self.retry_count})>"


class PayoutRecord(BaseModel, TimestampMixin):
    """Audit row for one settlement attempt, keyed by its action key."""

    __tablename__ = "payout_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    action_key: Mapped[str] = mapped_column(
        String(128),
        unique=True,
        comment="epoch:cycle:address"
    )

    address: Mapped[str] = mapped_column(String(44))
    epoch: Mapped[str] = mapped_column(String(32))
    cycle_number: Mapped[int] = mapped_column(Integer)

    amount: Mapped[int] = mapped_column(BigInteger)

    status: Mapped[str] = mapped_column(String(32), default=PayoutStatus.SENDING.value)

    action_id: Mapped[Optional[str]] = mapped_column(
        String(128),
        comment="Settlement transaction signature"
    )

    retry_count: Mapped[int] = mapped_column(Integer, default=0)

    error: Mapped[Optional[str]] = mapped_column(Text)

    __table_args__ = (
        Index("idx_payout_records_address", "address", "created_at"),
        Index("idx_payout_records_status", "status"),
        Index("idx_payout_records_epoch", "epoch", "cycle_number"),
    )

    def __repr__(self) -> str:
        return f"<PayoutRecord(key={self.action_key}, status={self.status})>"
