"""
Database models for the reward engine state store.
"""

from .base import Base, BaseModel, TimestampMixin
from .scheduler import SchedulerStateRecord, TaxLedger, SINGLETON_ID
from .payout import HolderAccount, PendingPayoutRecord, PayoutRecord, PayoutStatus
from .cycle import CycleResultRecord

__all__ = [
    "Base",
    "BaseModel",
    "TimestampMixin",
    "SchedulerStateRecord",
    "TaxLedger",
    "SINGLETON_ID",
    "HolderAccount",
    "PendingPayoutRecord",
    "PayoutRecord",
    "PayoutStatus",
    "CycleResultRecord",
]
