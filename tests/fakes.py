"""
In-memory fakes of the external collaborators and a pipeline wired to them.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional

from holder_rewards.cache import CircuitBreaker, UpstreamGuard
from holder_rewards.core.exceptions import InsufficientFundsError
from holder_rewards.services.cycle_processor import CycleProcessor
from holder_rewards.services.distribution import DistributionExecutor, PayoutThresholdResolver
from holder_rewards.services.eligibility import EligibilityFilter, EligibleHolderRegistry
from holder_rewards.services.harvest_policy import TaxHarvestPolicy
from holder_rewards.services.holder_directory import HolderDirectory
from holder_rewards.services.price_oracle import PriceOracle
from holder_rewards.services.types import Holder, SwapReceipt


class FakeClock:
    """Monotonic clock the test moves by hand."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeHolderSource:
    def __init__(self, holders: Optional[List[Holder]] = None):
        self.holders = list(holders or [])
        self.calls = 0
        self.error: Optional[Exception] = None

    async def fetch_holders(self) -> List[Holder]:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return list(self.holders)


class FakePriceSource:
    def __init__(self, price: Decimal = Decimal("1"), sol_price: Decimal = Decimal("100")):
        self.price = price
        self.sol_price = sol_price
        self.calls = 0
        self.error: Optional[Exception] = None

    async def fetch_price(self) -> Decimal:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.price

    async def fetch_sol_price_usd(self) -> Decimal:
        if self.error is not None:
            raise self.error
        return self.sol_price


class FakeTaxSource:
    """Returns queued withdrawal amounts, then zero."""

    def __init__(self, amounts: Optional[List[int]] = None):
        self.amounts = list(amounts or [])
        self.calls = 0

    async def withdraw_withheld(self) -> int:
        self.calls += 1
        return self.amounts.pop(0) if self.amounts else 0


class FakeSwapper:
    """Swaps at a fixed lamports-per-unit rate; can fail chosen calls (1-based)."""

    def __init__(self, rate: int = 1, fail_on: Optional[set] = None):
        self.rate = rate
        self.fail_on = set(fail_on or ())
        self.swaps: List[int] = []
        self.calls = 0

    async def swap(self, amount_in: int) -> SwapReceipt:
        self.calls += 1
        if self.calls in self.fail_on:
            raise RuntimeError(f"swap {self.calls} rejected")
        self.swaps.append(amount_in)
        return SwapReceipt(amount_out=amount_in * self.rate, signature=f"swap-{self.calls}")


class FakeSettlement:
    """In-memory settlement without action lookup."""

    def __init__(self, balance: int = 10 ** 15):
        self.balance = balance
        self.transfers: List[tuple] = []
        self.failing: Dict[str, str] = {}
        self.calls = 0

    async def transfer(self, to: str, amount: int, action_key: str) -> str:
        self.calls += 1
        if to in self.failing:
            raise RuntimeError(self.failing[to])
        if amount > self.balance:
            raise InsufficientFundsError(amount, self.balance)
        self.balance -= amount
        self.transfers.append((to, amount, action_key))
        return f"sig-{len(self.transfers)}"

    def paid_to(self, address: str) -> int:
        return sum(amount for to, amount, _ in self.transfers if to == address)


class LookupSettlement(FakeSettlement):
    """Settlement that can also find past actions by key."""

    def __init__(self, balance: int = 10 ** 15):
        super().__init__(balance)
        self.landed: Dict[str, str] = {}

    async def lookup_action(self, action_key: str) -> Optional[str]:
        for _, _, key in self.transfers:
            if key == action_key:
                return f"found-{key}"
        return self.landed.get(action_key)


def make_guard(name: str = "test", threshold: int = 5, clock=None) -> UpstreamGuard:
    breaker = CircuitBreaker(name, threshold=threshold, clock=clock or FakeClock())
    return UpstreamGuard(name, breaker, timeout=5.0)


def holder(address: str, balance: int, decimals: int = 0) -> Holder:
    return Holder(address=address, balance=balance, decimals=decimals)


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


async def no_sleep(seconds: float) -> None:
    return None


class Pipeline:
    """Cycle processor wired to fakes over a real state store."""

    def __init__(
        self,
        store,
        holders: Optional[List[Holder]] = None,
        withdrawals: Optional[List[int]] = None,
        rate: int = 1000,
        treasury: Optional[str] = "TREASURY",
        swapper: Optional[FakeSwapper] = None,
        settlement: Optional[FakeSettlement] = None,
        min_payout: int = 1,
        sleep=no_sleep,
    ):
        self.store = store
        self.holder_source = FakeHolderSource(holders if holders is not None else [
            holder("A", 100), holder("B", 300)
        ])
        self.prices = FakePriceSource(Decimal("1"), Decimal("100"))
        self.tax_source = FakeTaxSource(withdrawals)
        self.swapper = swapper or FakeSwapper(rate=rate)
        self.settlement = settlement or FakeSettlement()
        self.guard = make_guard("rpc")

        self.oracle = PriceOracle(self.prices, make_guard("prices"))
        self.registry = EligibleHolderRegistry(
            HolderDirectory(self.holder_source, self.guard),
            self.oracle,
            EligibilityFilter(Decimal("5"), blacklist={"POOL"}),
            clock=FakeClock()
        )
        self.policy = TaxHarvestPolicy(
            mode="TOKEN",
            min_threshold_token=Decimal("5"),
            max_harvest_token=Decimal("12000"),
            batch_count=4,
            sleep=sleep
        )
        self.distribution = DistributionExecutor(store, self.settlement, self.guard, max_retries=3)
        self.processor = CycleProcessor(
            store=store,
            tax_source=self.tax_source,
            swapper=self.swapper,
            guard=self.guard,
            policy=self.policy,
            registry=self.registry,
            oracle=self.oracle,
            distribution=self.distribution,
            threshold=PayoutThresholdResolver("TOKEN", min_payout),
            holder_share_bps=7500,
            treasury_address=treasury,
            token_decimals=0
        )
