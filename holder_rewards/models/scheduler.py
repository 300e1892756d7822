"""
Scheduler and tax ledger singletons.

Both tables hold exactly one row (id = 1); the state store creates it on
first access.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import BigInteger, DateTime, Integer
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, TimestampMixin


SINGLETON_ID = 1


class SchedulerStateRecord(BaseModel, TimestampMixin):
    """Run bookkeeping that must survive restarts."""

    __tablename__ = "scheduler_state"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    last_run_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime,
        comment="Last recorded cycle run (UTC)"
    )

    last_eligible_refresh_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime,
        comment="Last eligible-holder snapshot refresh (UTC)"
    )

    def __repr__(self) -> str:
        return f"<SchedulerStateRecord(last_run_at={self.last_run_at})>"


class TaxLedger(BaseModel, TimestampMixin):
    """Outstanding tax and lifetime totals, all in raw units."""

    __tablename__ = "tax_ledger"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    outstanding_tax: Mapped[int] = mapped_column(
        BigInteger,
        default=0,
        comment="Withdrawn tax tokens not yet converted"
    )

    total_harvested: Mapped[int] = mapped_column(BigInteger, default=0)
    total_converted: Mapped[int] = mapped_column(BigInteger, default=0)
    total_settlement_received: Mapped[int] = mapped_column(
        BigInteger,
        default=0,
        comment="Lamports received from swaps"
    )
    total_to_holders: Mapped[int] = mapped_column(BigInteger, default=0)
    total_to_treasury: Mapped[int] = mapped_column(BigInteger, default=0)

    last_harvest_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    def __repr__(self) -> str:
        return f"<TaxLedger(outstanding={self.outstanding_tax})>"
