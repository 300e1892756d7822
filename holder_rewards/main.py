"""
Main entry point for the holder rewards service.
Wires the Solana adapters into the reward pipeline and runs the scheduler,
with the status API when enabled.
"""

import asyncio
import signal
from typing import Optional

import structlog
import uvicorn
from solana.rpc.async_api import AsyncClient

from holder_rewards.cache import CircuitBreaker, UpstreamGuard
from holder_rewards.core.config import RewardSettings, SolanaConfig, settings
from holder_rewards.core.database import close_database, init_database
from holder_rewards.core.logging import RateLimitLogger, setup_logging
from holder_rewards.scheduler.epoch_clock import EpochClock
from holder_rewards.scheduler.reward_scheduler import RewardScheduler
from holder_rewards.services.coingecko_service import CoinGeckoPriceSource
from holder_rewards.services.cycle_processor import CycleProcessor
from holder_rewards.services.distribution import DistributionExecutor, PayoutThresholdResolver
from holder_rewards.services.eligibility import EligibilityFilter, EligibleHolderRegistry
from holder_rewards.services.harvest_policy import TaxHarvestPolicy
from holder_rewards.services.holder_directory import HolderDirectory
from holder_rewards.services.price_oracle import PriceOracle
from holder_rewards.services.solana import (
    JupiterSwapper,
    SolanaHolderSource,
    SolTransferSettlement,
    Token2022TaxSource,
    load_keypair,
)
from holder_rewards.store import StateStore


logger = structlog.get_logger(__name__)


class RewardService:
    """Main reward service coordinator."""

    def __init__(self, config: RewardSettings = settings):
        self.config = config
        self.client: Optional[AsyncClient] = None
        self.scheduler: Optional[RewardScheduler] = None
        self.registry: Optional[EligibleHolderRegistry] = None
        self._stop_event = asyncio.Event()

    def _breaker(self, name: str) -> CircuitBreaker:
        return CircuitBreaker(
            name,
            threshold=self.config.circuit_breaker_threshold,
            window_seconds=self.config.circuit_breaker_window_seconds,
            cooldown_seconds=self.config.circuit_breaker_cooldown_seconds
        )

    async def initialize(self) -> None:
        """Validate configuration and build every component."""
        config = self.config
        logger.info("Initializing reward service", environment=config.environment)

        config.validate_for_startup()
        database = await init_database(config.database_url)
        store = StateStore(database)

        self.client = AsyncClient(**SolanaConfig.get_rpc_config())
        keypair = load_keypair(config.reward_wallet_private_key)
        reward_wallet = str(keypair.pubkey())

        rate_limit_logger = RateLimitLogger()
        rpc_breaker = self._breaker("rpc")
        price_breaker = self._breaker("price")
        rpc_guard = UpstreamGuard(
            "rpc", rpc_breaker,
            timeout=config.upstream_timeout_seconds,
            rate_limit_logger=rate_limit_logger
        )
        price_guard = UpstreamGuard(
            "price", price_breaker,
            timeout=config.upstream_timeout_seconds,
            rate_limit_logger=rate_limit_logger
        )

        holder_source = SolanaHolderSource(self.client, config.token_mint)
        token_decimals = config.token_decimals
        try:
            token_decimals = await holder_source.get_decimals()
        except Exception as e:
            logger.warning(
                "Could not read mint decimals, using configured value",
                token_decimals=token_decimals,
                error=str(e)
            )

        directory = HolderDirectory(
            holder_source, rpc_guard,
            ttl=config.holder_cache_ttl,
            hard_ttl=config.holder_cache_hard_ttl
        )
        oracle = PriceOracle(
            CoinGeckoPriceSource(config.token_mint, base_url=config.coingecko_base_url),
            price_guard,
            ttl=config.price_cache_ttl,
            hard_ttl=config.price_cache_hard_ttl
        )
        self.registry = EligibleHolderRegistry(
            directory,
            oracle,
            EligibilityFilter.from_settings(config, extra_blacklist=[reward_wallet]),
            refresh_interval=config.eligible_refresh_interval_seconds
        )

        distribution = DistributionExecutor(
            store,
            SolTransferSettlement(self.client, keypair),
            rpc_guard,
            max_retries=config.max_retries
        )
        processor = CycleProcessor(
            store=store,
            tax_source=Token2022TaxSource(self.client, config.token_mint, keypair),
            swapper=JupiterSwapper(
                self.client,
                keypair,
                config.token_mint,
                base_url=config.jupiter_base_url,
                slippage_bps=config.swap_slippage_bps
            ),
            guard=rpc_guard,
            policy=TaxHarvestPolicy.from_settings(config),
            registry=self.registry,
            oracle=oracle,
            distribution=distribution,
            threshold=PayoutThresholdResolver.from_settings(config, oracle),
            holder_share_bps=config.holder_share_bps,
            treasury_address=config.treasury_wallet_address,
            token_decimals=token_decimals
        )

        self.scheduler = RewardScheduler(
            store,
            processor,
            EpochClock(config.cycle_interval_seconds, config.cycles_per_epoch),
            distribution=distribution,
            registry=self.registry,
            breakers=[rpc_breaker, price_breaker],
            retention_epochs=config.history_retention_epochs,
            enabled=config.scheduler_enabled
        )
        await self.scheduler.initialize()

        logger.info(
            "Reward service initialized",
            reward_wallet=reward_wallet,
            token_mint=config.token_mint,
            token_decimals=token_decimals,
            mode=config.reward_value_mode
        )

    async def run(self) -> None:
        """Run until stopped: behind the API server, or standalone."""
        if self.config.api_enabled:
            # Imported here so a scheduler-only deployment never loads FastAPI
            from holder_rewards.api.main import create_app

            app = create_app(self.scheduler, self.registry, manage_scheduler=True)
            server = uvicorn.Server(uvicorn.Config(
                app,
                host=self.config.host,
                port=self.config.port,
                log_level=self.config.log_level.lower()
            ))
            await server.serve()
            return

        await self.scheduler.start()
        await self._stop_event.wait()

    def request_stop(self) -> None:
        self._stop_event.set()

    async def stop(self) -> None:
        """Stop the scheduler and release connections."""
        logger.info("Stopping reward service")

        if self.scheduler is not None:
            await self.scheduler.stop()
        if self.client is not None:
            await self.client.close()
            self.client = None
        await close_database()

        logger.info("Reward service stopped")


async def main() -> None:
    """Main function to run the reward service."""
    setup_logging(settings.log_file)

    service = RewardService()

    if not settings.api_enabled:
        # uvicorn installs its own handlers when the API runs
        def signal_handler(signum):
            logger.info(f"Received signal {signum}, shutting down...")
            service.request_stop()

        loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(signum, signal_handler, signum)

    try:
        await service.initialize()
        await service.run()
    except KeyboardInterrupt:
        logger.info("Received keyboard interrupt, shutting down...")
    except Exception as e:
        logger.error("Reward service failed", error=str(e))
        raise
    finally:
        await service.stop()


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
