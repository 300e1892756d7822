"""
Test holder eligibility, the holder directory and the eligible holder registry.
"""

import asyncio
from decimal import Decimal

import pytest

from holder_rewards.cache import SWRCache
from holder_rewards.core.config import RewardSettings
from holder_rewards.core.exceptions import TransientUpstreamError
from holder_rewards.services.eligibility import EligibilityFilter, EligibleHolderRegistry
from holder_rewards.services.holder_directory import HolderDirectory, normalize_holders
from holder_rewards.services.price_oracle import PriceOracle
from holder_rewards.services.types import EligibilityStatus
from tests.fakes import FakeClock, FakeHolderSource, FakePriceSource, holder, make_guard


def test_classify_by_usd_value():
    eligibility = EligibilityFilter(Decimal("5"), blacklist={"POOL"})
    price = Decimal("0.01")

    assert eligibility.classify(holder("A", 1000), price).status == EligibilityStatus.ELIGIBLE
    assert eligibility.classify(holder("B", 499), price).status == EligibilityStatus.EXCLUDED
    assert eligibility.classify(holder("POOL", 10 ** 9), price).status == EligibilityStatus.BLACKLISTED


def test_threshold_is_inclusive():
    eligibility = EligibilityFilter(Decimal("5"))

    result = eligibility.classify(holder("A", 500), Decimal("0.01"))

    assert result.usd_value == Decimal("5")
    assert result.is_eligible


def test_usd_value_uses_decimals():
    eligibility = EligibilityFilter(Decimal("5"))

    result = eligibility.classify(holder("A", 5_000_000, decimals=6), Decimal("1"))

    assert result.usd_value == Decimal("5")
    assert result.is_eligible


def test_from_settings_denies_pools_and_treasury():
    settings = RewardSettings(
        _env_file=None,
        blacklist=["BURN"],
        pool_addresses="POOL1,POOL2",
        treasury_wallet_address="TREASURY",
    )

    eligibility = EligibilityFilter.from_settings(settings, extra_blacklist=["REWARD"])

    assert eligibility.blacklist == {"BURN", "POOL1", "POOL2", "TREASURY", "REWARD"}


def test_evaluate_orders_by_address():
    eligibility = EligibilityFilter(Decimal("0"))

    result = eligibility.evaluate([holder("C", 1), holder("A", 1), holder("B", 1)], Decimal("1"))

    assert [h.address for h in result] == ["A", "B", "C"]


def test_normalize_holders_merges_and_drops_empty():
    raw = [holder("B", 5), holder("A", 0), holder("B", 7), holder("C", 1)]

    result = normalize_holders(raw)

    assert result == (holder("B", 12), holder("C", 1))


def build_registry(source, prices, clock, interval=3600.0):
    cache = SWRCache("holders", ttl=300, hard_ttl=1800, clock=clock)
    directory = HolderDirectory(source, make_guard("holders"), cache=cache)
    oracle = PriceOracle(prices, make_guard("prices"), ttl=300, hard_ttl=3600)
    return EligibleHolderRegistry(
        directory,
        oracle,
        EligibilityFilter(Decimal("5")),
        refresh_interval=interval,
        clock=clock
    )


@pytest.mark.asyncio
async def test_registry_refresh_builds_snapshot():
    source = FakeHolderSource([holder("A", 100), holder("B", 1)])
    registry = build_registry(source, FakePriceSource(Decimal("0.1")), FakeClock())

    snapshot = await registry.current()

    assert snapshot.price_usd == Decimal("0.1")
    assert [h.address for h in snapshot.eligible] == ["A"]
    assert snapshot.count(EligibilityStatus.EXCLUDED) == 1
    assert not registry.is_due()


@pytest.mark.asyncio
async def test_registry_reuses_snapshot_until_due():
    clock = FakeClock()
    source = FakeHolderSource([holder("A", 100)])
    registry = build_registry(source, FakePriceSource(), clock, interval=3600)

    first = await registry.current()
    clock.advance(1800)
    second = await registry.current()

    assert first is second
    assert source.calls == 1

    clock.advance(1800)
    assert registry.is_due()


@pytest.mark.asyncio
async def test_failed_refresh_keeps_previous_snapshot():
    clock = FakeClock()
    source = FakeHolderSource([holder("A", 100)])
    registry = build_registry(source, FakePriceSource(), clock)

    first = await registry.current()
    source.error = RuntimeError("rpc down")
    clock.advance(3600)

    second = await registry.current()

    assert second is first
    assert registry.failed_refreshes == 1


@pytest.mark.asyncio
async def test_failed_first_refresh_raises():
    source = FakeHolderSource()
    source.error = RuntimeError("rpc down")
    registry = build_registry(source, FakePriceSource(), FakeClock())

    with pytest.raises(TransientUpstreamError):
        await registry.current()

    assert registry.snapshot is None


@pytest.mark.asyncio
async def test_registry_uses_stale_holders_while_they_revalidate():
    clock = FakeClock()
    source = FakeHolderSource([holder("A", 100)])
    registry = build_registry(source, FakePriceSource(), clock, interval=600)
    await registry.current()

    source.holders = [holder("A", 100), holder("B", 100)]
    clock.advance(600)
    snapshot = await registry.current()

    assert [h.address for h in snapshot.eligible] == ["A"]
    cache = registry.directory.cache
    assert cache.stats.stale_hits == 1
    while cache.is_fetching("holders"):
        await asyncio.sleep(0)

    assert source.calls == 2
    assert [h.address for h in cache.get_stale("holders")] == ["A", "B"]
