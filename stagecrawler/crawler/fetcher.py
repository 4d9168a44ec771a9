"""
Fetch stage: retrieves the page behind a URL id and stores it.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import aiohttp
from aiohttp import ClientError, ClientSession, ClientTimeout

from ..errors import BusError, MessageError, PageStoreError, StoreError
from ..messaging.bus import Delivery, MessageBus
from ..messaging.messages import FetchEvent, FetchJob, ParseJob
from ..storage.identifier_store import IdentifierStore
from ..storage.page_store import PageStore
from ..utils.config import QueueNames
from ..utils.monitoring import CrawlerMetrics


@dataclass
class FetchResult:
    """Result of a fetch operation."""
    url: str
    status_code: int
    content: Optional[str] = None
    error: Optional[str] = None
    fetch_time: float = 0.0
    content_type: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.content is not None


class WebFetcher:
    """Fetches web pages over HTTP with a size limit and error handling."""

    TEXT_TYPES = (
        'text/html',
        'text/plain',
        'text/xml',
        'application/xml',
        'application/xhtml+xml',
    )

    def __init__(self, user_agent: str, request_timeout: int = 30,
                 max_concurrent_requests: int = 10,
                 max_content_size: int = 10 * 1024 * 1024):
        self.user_agent = user_agent
        self.request_timeout = request_timeout
        self.max_concurrent_requests = max_concurrent_requests
        self.max_content_size = max_content_size

        self.logger = logging.getLogger(__name__)
        self.session: Optional[ClientSession] = None

        self.stats = {
            'total_requests': 0,
            'successful_requests': 0,
            'failed_requests': 0,
            'total_bytes_downloaded': 0
        }

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def start(self):
        """Initialize the fetcher session."""
        if self.session is None:
            self.session = aiohttp.ClientSession(
                timeout=ClientTimeout(total=self.request_timeout),
                headers={'User-Agent': self.user_agent},
                connector=aiohttp.TCPConnector(
                    limit=self.max_concurrent_requests * 2,
                    ttl_dns_cache=300
                )
            )
            self.logger.info("WebFetcher session started")

    async def close(self):
        """Close the fetcher session."""
        if self.session:
            await self.session.close()
            self.session = None
            self.logger.info("WebFetcher session closed")

    async def fetch(self, url: str) -> FetchResult:
        """
        Fetch a single URL.

        Failures are reported through ``FetchResult.error``, never raised.
        """
        start_time = time.time()
        self.stats['total_requests'] += 1

        try:
            async with self.session.get(url) as response:
                content_type = response.headers.get('content-type', '').lower()

                if response.status >= 400:
                    error_msg = f"HTTP {response.status}"
                elif not any(t in content_type for t in self.TEXT_TYPES):
                    error_msg = f"Non-text content type: {content_type or 'unknown'}"
                else:
                    content = await self._read_content(response)
                    if content is None:
                        error_msg = "Content too large"
                    else:
                        self.stats['successful_requests'] += 1
                        self.stats['total_bytes_downloaded'] += len(content)
                        self.logger.debug(f"Fetched {url}: {response.status} ({len(content)} chars)")
                        return FetchResult(
                            url=url,
                            status_code=response.status,
                            content=content,
                            content_type=content_type,
                            fetch_time=time.time() - start_time
                        )

                status_code = response.status

        except asyncio.TimeoutError:
            error_msg = "Request timeout"
            status_code = 0

        except ClientError as e:
            error_msg = f"Client error: {e}"
            status_code = 0

        self.stats['failed_requests'] += 1
        return FetchResult(
            url=url,
            status_code=status_code,
            error=error_msg,
            fetch_time=time.time() - start_time
        )

    async def _read_content(self, response) -> Optional[str]:
        """Read the body, or None when it exceeds ``max_content_size``."""
        content_length = response.headers.get('content-length')
        if content_length and content_length.isdigit() and int(content_length) > self.max_content_size:
            return None

        content_bytes = bytearray()
        async for chunk in response.content.iter_chunked(8192):
            content_bytes.extend(chunk)
            if len(content_bytes) > self.max_content_size:
                return None

        encoding = response.charset or 'utf-8'
        try:
            return content_bytes.decode(encoding)
        except (UnicodeDecodeError, LookupError):
            return content_bytes.decode('utf-8', errors='replace')

    def get_stats(self) -> Dict[str, int]:
        return self.stats.copy()


class FetchStage:
    """
    Consumes fetch jobs. A successful fetch is stored and handed on as a
    parse job plus a size event; a failed fetch ends that branch of the crawl.
    """

    def __init__(self, store: IdentifierStore, bus: MessageBus, fetcher: WebFetcher,
                 page_store: PageStore, queues: Optional[QueueNames] = None,
                 prefetch: int = 10, metrics: Optional[CrawlerMetrics] = None):
        self.store = store
        self.bus = bus
        self.fetcher = fetcher
        self.page_store = page_store
        self.queues = queues or QueueNames()
        self.prefetch = prefetch
        self.metrics = metrics or CrawlerMetrics()
        self.logger = logging.getLogger(__name__)

    async def run(self, stop_event: Optional[asyncio.Event] = None):
        await self.store.ensure_sequence()
        await self.page_store.initialize()
        try:
            await self.bus.consume(
                self.queues.fetch_jobs,
                self.handle,
                auto_ack=True,
                prefetch=self.prefetch,
                stop_event=stop_event
            )
        finally:
            self.logger.info(f"Fetch stage stopped: {self.get_stats()}")

    def get_stats(self) -> Dict[str, Dict[str, Any]]:
        return {
            'fetcher': self.fetcher.get_stats(),
            'pages': self.page_store.get_stats()
        }

    async def handle(self, delivery: Delivery):
        try:
            job = FetchJob.decode(delivery.body)
        except MessageError as e:
            self.logger.warning(f"Dropping malformed fetch job: {e}")
            return

        self.logger.info(f"Consumed message to fetch URL ID: {job.url_id}")
        try:
            await self.process(job)
        except (StoreError, BusError, PageStoreError) as e:
            self.logger.error(f"Fetch of URL ID {job.url_id} abandoned: {e}")
            self.metrics.record_fetch('error')

    async def process(self, job: FetchJob) -> bool:
        """Fetch, store and hand on one job. Returns True if a parse job was published."""
        url = await self.store.resolve_id(job.url_id)
        if url is None:
            self.logger.error(f"No URL is bound to ID {job.url_id}")
            self.metrics.record_fetch('unknown_id')
            return False

        self.logger.debug(f"URL matching ID {job.url_id} is: {url}")
        result = await self.fetcher.fetch(url)
        if not result.ok:
            self.logger.error(f"Error fetching URL ID {job.url_id} ({url}): {result.error}")
            self.metrics.record_fetch('failed')
            return False

        size = await self.page_store.save(job.url_id, url, result.content)
        self.logger.debug(f"Saved URL ID {job.url_id}")

        await self.bus.publish(self.queues.parse_jobs, ParseJob(job.url_id).encode())
        try:
            await self.bus.publish(self.queues.analytics, FetchEvent(job.url_id, size).encode())
        except BusError as e:
            self.logger.warning(f"Could not publish fetch event for {job.url_id}: {e}")

        self.metrics.record_fetch('success', size)
        self.logger.info(f"Done fetching URL ID {job.url_id}")
        return True
