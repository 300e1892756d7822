"""
Append-only cycle history.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import BigInteger, Boolean, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, utcnow


class CycleResultRecord(BaseModel):
    """Outcome of one scheduler cycle. Never updated after insert."""

    __tablename__ = "cycle_results"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    epoch: Mapped[str] = mapped_column(String(32))
    cycle_number: Mapped[int] = mapped_column(Integer)
    state: Mapped[str] = mapped_column(String(16))

    started_at: Mapped[datetime] = mapped_column(DateTime)
    finished_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    tax_withdrawn: Mapped[int] = mapped_column(BigInteger, default=0)
    tax_harvested: Mapped[int] = mapped_column(
        BigInteger,
        default=0,
        comment="Tax tokens considered for conversion this cycle"
    )
    tax_converted: Mapped[int] = mapped_column(BigInteger, default=0)
    settlement_received: Mapped[int] = mapped_column(BigInteger, default=0)
    holder_amount: Mapped[int] = mapped_column(BigInteger, default=0)
    treasury_amount: Mapped[int] = mapped_column(BigInteger, default=0)
    distributed_amount: Mapped[int] = mapped_column(BigInteger, default=0)

    batched: Mapped[bool] = mapped_column(Boolean, default=False)
    batch_count: Mapped[int] = mapped_column(Integer, default=0)

    payouts_sent: Mapped[int] = mapped_column(Integer, default=0)
    payouts_failed: Mapped[int] = mapped_column(Integer, default=0)
    payouts_accumulated: Mapped[int] = mapped_column(Integer, default=0)
    eligible_holders: Mapped[int] = mapped_column(Integer, default=0)

    swap_signatures: Mapped[Optional[str]] = mapped_column(
        Text,
        comment="Comma separated swap signatures"
    )
    treasury_signature: Mapped[Optional[str]] = mapped_column(String(128))
    token_price_usd: Mapped[Optional[str]] = mapped_column(String(64))

    error: Mapped[Optional[str]] = mapped_column(Text)

    __table_args__ = (
        Index("idx_cycle_results_epoch", "epoch", "cycle_number"),
        Index("idx_cycle_results_state", "state"),
    )

    def __repr__(self) -> str:
        return f"<CycleResultRecord(epoch={self.epoch}, cycle={self.cycle_number}, state={self.state})>"
