"""
Stage service: wires one pipeline stage to the store and the bus and runs it.
"""

import asyncio
import logging
from typing import Iterable, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from ..errors import BusError, ConfigError, StoreError
from ..messaging.bus import MessageBus, RedisMessageBus
from ..storage.identifier_store import IdentifierStore, RedisIdentifierStore
from ..storage.page_store import PageStore
from ..utils.config import Config
from ..utils.logger import get_stage_logger
from ..utils.monitoring import CrawlerMetrics
from .analyzer import AnalyticsSink
from .fetcher import FetchStage, WebFetcher
from .frontier import AckDelayPolicy, FrontierCoordinator, HostFilter, inject_seeds
from .parser import ParseStage


STAGES = ('frontier', 'fetcher', 'parser', 'analyzer')


class StageService:
    """
    Owns the connections of one stage process.

    Call ``initialize()`` once, then ``run()`` until the stop event is set,
    and ``close()`` in all cases.
    """

    def __init__(self, config: Config, stage: str):
        if stage not in STAGES:
            raise ConfigError(f"Unknown stage: {stage}")

        self.config = config
        self.stage = stage
        self.logger = get_stage_logger(__name__, stage=stage)

        self.store: Optional[IdentifierStore] = None
        self.bus: Optional[MessageBus] = None
        self.fetcher: Optional[WebFetcher] = None
        self.metrics = CrawlerMetrics()
        self.worker = None

    async def initialize(self):
        """Connect to the store and the bus and build the stage worker."""
        if self.stage == 'frontier' and not self.config.frontier.host_pattern:
            raise ConfigError("frontier.host_pattern must be set to run the frontier")

        self.bus = await self._connect_bus(self.config)
        if self.stage != 'analyzer':
            self.store = await self._connect_store(self.config)

        if self.config.monitoring.metrics_enabled:
            self.metrics.start_server(self.config.monitoring.prometheus_port)

        self.worker = await self._build_worker()
        self.logger.info(f"{self.stage} stage initialized")

    @staticmethod
    async def _connect_store(config: Config) -> IdentifierStore:
        client = redis.from_url(
            config.store.url,
            socket_timeout=config.store.operation_timeout,
            socket_connect_timeout=config.store.operation_timeout
        )
        try:
            await client.ping()
        except (RedisError, OSError) as e:
            await client.aclose()
            raise StoreError(f"Cannot connect to the store at {config.store.url}: {e}") from e

        logging.getLogger(__name__).info("Connected to the identifier store")
        return RedisIdentifierStore(client, config.store.operation_timeout)

    @staticmethod
    async def _connect_bus(config: Config) -> MessageBus:
        # Blocking receives wait up to poll_interval, so the socket timeout
        # has to cover both.
        client = redis.from_url(
            config.bus.url,
            socket_timeout=config.bus.poll_interval + config.bus.operation_timeout,
            socket_connect_timeout=config.bus.operation_timeout
        )
        try:
            await client.ping()
        except (RedisError, OSError) as e:
            await client.aclose()
            raise BusError(f"Cannot connect to the bus at {config.bus.url}: {e}") from e

        logging.getLogger(__name__).info("Connected to the message bus")
        return RedisMessageBus(
            client,
            consumer_id=config.bus.consumer_id,
            operation_timeout=config.bus.operation_timeout,
            poll_interval=config.bus.poll_interval
        )

    async def _build_worker(self):
        queues = self.config.bus.queues

        if self.stage == 'frontier':
            frontier = self.config.frontier
            return FrontierCoordinator(
                self.store,
                self.bus,
                HostFilter(frontier.host_pattern),
                ack_delay=AckDelayPolicy(frontier.ack_delay),
                queues=queues,
                prefetch=frontier.prefetch,
                metrics=self.metrics
            )

        if self.stage == 'fetcher':
            fetcher_config = self.config.fetcher
            self.fetcher = WebFetcher(
                user_agent=fetcher_config.user_agent,
                request_timeout=fetcher_config.request_timeout,
                max_concurrent_requests=fetcher_config.max_concurrent_requests,
                max_content_size=fetcher_config.max_content_size
            )
            await self.fetcher.start()
            return FetchStage(
                self.store,
                self.bus,
                self.fetcher,
                PageStore(fetcher_config.storage_directory),
                queues=queues,
                prefetch=fetcher_config.max_concurrent_requests,
                metrics=self.metrics
            )

        if self.stage == 'parser':
            return ParseStage(
                self.store,
                self.bus,
                PageStore(self.config.fetcher.storage_directory),
                queues=queues,
                prefetch=self.config.parser.max_concurrent_jobs,
                metrics=self.metrics
            )

        return AnalyticsSink(
            self.bus,
            queues=queues,
            report_interval=self.config.analyzer.report_interval,
            metrics=self.metrics
        )

    async def run(self, stop_event: Optional[asyncio.Event] = None):
        """Run the stage worker until ``stop_event`` is set."""
        if self.worker is None:
            raise RuntimeError("Stage service not initialized")
        self.logger.info(f"=== {self.stage.upper()} STARTING ===")
        await self.worker.run(stop_event)

    async def close(self):
        """Close all connections."""
        if self.fetcher:
            await self.fetcher.close()
        if self.store:
            await self.store.close()
        if self.bus:
            await self.bus.close()
        self.logger.info(f"{self.stage} stage closed")


async def seed(config: Config, urls: Iterable[str]) -> int:
    """Publish seed candidates and return how many were published."""
    bus = await StageService._connect_bus(config)
    try:
        return await inject_seeds(bus, urls, config.bus.queues.candidates)
    finally:
        await bus.close()
