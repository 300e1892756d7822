from .state_store import (
    StateStore,
    SchedulerSnapshot,
    LedgerSnapshot,
    AccountSnapshot,
    PayoutRecordSnapshot,
)

__all__ = [
    "StateStore",
    "SchedulerSnapshot",
    "LedgerSnapshot",
    "AccountSnapshot",
    "PayoutRecordSnapshot",
]
