"""
Analytics sink: aggregates fetch and discover events into crawl statistics.

Purely observational; nothing on the crawl's correctness path reads from it.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from ..errors import MessageError
from ..messaging.bus import Delivery, MessageBus
from ..messaging.messages import DiscoverEvent, FetchEvent, decode_event
from ..utils.config import QueueNames
from ..utils.monitoring import CrawlerMetrics


@dataclass
class CrawlStats:
    """Running totals of the crawl as seen through analytics events."""
    start_time: float = field(default_factory=time.time)
    total_fetched: int = 0
    total_discovered: int = 0
    total_size: int = 0
    total_url_size: int = 0

    def page_fetched(self, size: int):
        self.total_fetched += 1
        self.total_size += size

    def link_discovered(self, url: str):
        self.total_discovered += 1
        self.total_url_size += len(url.encode('utf-8'))

    @property
    def mean_page_size(self) -> float:
        """Mean fetched page size in bytes."""
        return self.total_size / self.total_fetched if self.total_fetched else 0.0

    @property
    def mean_url_size(self) -> float:
        """Mean discovered URL length in bytes."""
        return self.total_url_size / self.total_discovered if self.total_discovered else 0.0

    @property
    def mean_out_degree(self) -> float:
        """Discovered URLs per fetched page."""
        return self.total_discovered / self.total_fetched if self.total_fetched else 0.0

    @property
    def elapsed_time(self) -> float:
        return time.time() - self.start_time

    def to_dict(self) -> Dict[str, Any]:
        return {
            'total_fetched': self.total_fetched,
            'total_discovered': self.total_discovered,
            'total_size_bytes': self.total_size,
            'mean_page_size_bytes': self.mean_page_size,
            'mean_url_size_bytes': self.mean_url_size,
            'mean_out_degree': self.mean_out_degree,
        }


class AnalyticsSink:
    """Consumes the analytics queue and periodically reports crawl progress."""

    def __init__(self, bus: MessageBus, queues: Optional[QueueNames] = None,
                 report_interval: float = 30.0, metrics: Optional[CrawlerMetrics] = None):
        self.bus = bus
        self.queues = queues or QueueNames()
        self.report_interval = report_interval
        self.metrics = metrics or CrawlerMetrics()
        self.stats = CrawlStats()
        self.logger = logging.getLogger(__name__)

    async def run(self, stop_event: Optional[asyncio.Event] = None):
        reporter = asyncio.create_task(self._stats_reporter())
        try:
            await self.bus.consume(
                self.queues.analytics,
                self.handle,
                auto_ack=True,
                prefetch=1,
                stop_event=stop_event
            )
        finally:
            reporter.cancel()
            await asyncio.gather(reporter, return_exceptions=True)
            self.log_stats()

    async def handle(self, delivery: Delivery):
        try:
            event = decode_event(delivery.body)
        except MessageError as e:
            self.logger.debug(f"Ignoring analytics message: {e}")
            return

        if isinstance(event, FetchEvent):
            self.stats.page_fetched(event.size)
        elif isinstance(event, DiscoverEvent):
            self.stats.link_discovered(event.url)

        self.metrics.update_crawl_stats(self.stats.to_dict())

    async def _stats_reporter(self):
        """Periodically log crawl statistics."""
        while True:
            await asyncio.sleep(self.report_interval)
            self.log_stats()

    def log_stats(self):
        s = self.stats
        self.logger.info(
            f"Crawl Progress: "
            f"Discovered={s.total_discovered}, "
            f"Fetched={s.total_fetched}, "
            f"MeanOutDegree={s.mean_out_degree:.1f}, "
            f"MeanPageSize={s.mean_page_size / 1024:.1f} KiB, "
            f"MeanUrlSize={s.mean_url_size:.0f} B, "
            f"Elapsed={s.elapsed_time:.0f}s"
        )
