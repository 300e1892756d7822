"""
Wall-clock epoch and cycle arithmetic.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

SECONDS_PER_DAY = 86_400


@dataclass(frozen=True)
class CyclePosition:
    """Where a moment falls in the epoch/cycle grid."""
    epoch: str
    cycle: int
    cycles_per_epoch: int
    cycle_started_at: datetime
    next_cycle_at: datetime
    epoch_started_at: datetime

    @property
    def is_last_cycle(self) -> bool:
        return self.cycle == self.cycles_per_epoch

    def seconds_until_next(self, now: datetime) -> float:
        return max(0.0, (self.next_cycle_at - now).total_seconds())


class EpochClock:
    """
    Maps UTC time onto epochs of ``cycles_per_epoch`` cycles of
    ``interval_seconds`` each.

    Epochs are aligned to the Unix epoch. With the default 288 x 5 minutes
    an epoch is one UTC day and is identified by its date (``YYYY-MM-DD``);
    other spans are identified by their UTC start time.
    """

    def __init__(self, interval_seconds: int = 300, cycles_per_epoch: int = 288):
        if interval_seconds <= 0 or cycles_per_epoch <= 0:
            raise ValueError("interval and cycles per epoch must be positive")
        self.interval_seconds = interval_seconds
        self.cycles_per_epoch = cycles_per_epoch

    @property
    def span_seconds(self) -> int:
        return self.interval_seconds * self.cycles_per_epoch

    def position(self, now: Optional[datetime] = None) -> CyclePosition:
        now = ensure_utc(now or datetime.now(timezone.utc))
        timestamp = now.timestamp()

        epoch_start_ts = (timestamp // self.span_seconds) * self.span_seconds
        cycle_index = int((timestamp - epoch_start_ts) // self.interval_seconds)
        cycle_index = min(cycle_index, self.cycles_per_epoch - 1)

        epoch_start = datetime.fromtimestamp(epoch_start_ts, tz=timezone.utc)
        cycle_start = epoch_start + timedelta(seconds=cycle_index * self.interval_seconds)

        return CyclePosition(
            epoch=self.epoch_id(epoch_start),
            cycle=cycle_index + 1,
            cycles_per_epoch=self.cycles_per_epoch,
            cycle_started_at=cycle_start,
            next_cycle_at=cycle_start + timedelta(seconds=self.interval_seconds),
            epoch_started_at=epoch_start
        )

    def epoch_id(self, epoch_start: datetime) -> str:
        if self.span_seconds == SECONDS_PER_DAY:
            return epoch_start.strftime("%Y-%m-%d")
        return epoch_start.strftime("%Y-%m-%dT%H:%M:%SZ")


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
