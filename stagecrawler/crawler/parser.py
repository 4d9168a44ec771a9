"""
Parse stage: extracts outbound links from stored pages and feeds them
back to the frontier as candidates.
"""

import asyncio
import logging
from typing import List, Optional
from urllib.parse import urljoin, urlsplit, urlunsplit

from bs4 import BeautifulSoup

from ..errors import BusError, MessageError, PageStoreError, StoreError
from ..messaging.bus import Delivery, MessageBus
from ..messaging.messages import CandidateUrl, ParseJob
from ..storage.identifier_store import IdentifierStore
from ..storage.page_store import PageStore
from ..utils.config import QueueNames
from ..utils.monitoring import CrawlerMetrics


class LinkExtractor:
    """Extracts and normalizes ``<a href>`` targets from HTML."""

    SKIP_SCHEMES = ('mailto:', 'javascript:', 'tel:', 'data:')

    def __init__(self):
        self.logger = logging.getLogger(__name__)

    def extract(self, page_url: str, html_content: str) -> List[str]:
        """
        Extract links from a page.

        Root-relative targets are prefixed with the page's origin, other
        relative targets are resolved against the page URL. Fragments are
        dropped and repeated links are reported once, in document order.
        """
        soup = BeautifulSoup(html_content, 'lxml')
        origin = self._origin(page_url)

        links = {}
        for link in soup.find_all('a', href=True):
            href = link['href'].strip()
            if not href or href.startswith('#') or href.lower().startswith(self.SKIP_SCHEMES):
                continue

            if href.startswith('/') and not href.startswith('//'):
                absolute_url = origin + href
            else:
                absolute_url = urljoin(page_url, href)

            normalized = self._normalize_url(absolute_url)
            if normalized:
                links.setdefault(normalized, None)

        return list(links)

    @staticmethod
    def _origin(url: str) -> str:
        parsed = urlsplit(url)
        return f"{parsed.scheme}://{parsed.netloc}"

    @staticmethod
    def _normalize_url(url: str) -> Optional[str]:
        """Drop the fragment; None for anything that is not an http(s) URL."""
        try:
            parsed = urlsplit(url)
        except ValueError:
            return None
        if parsed.scheme not in ('http', 'https') or not parsed.netloc:
            return None
        return urlunsplit((parsed.scheme, parsed.netloc, parsed.path, parsed.query, ''))


class ParseStage:
    """Consumes parse jobs and publishes one candidate per outbound link."""

    def __init__(self, store: IdentifierStore, bus: MessageBus, page_store: PageStore,
                 extractor: Optional[LinkExtractor] = None,
                 queues: Optional[QueueNames] = None, prefetch: int = 10,
                 metrics: Optional[CrawlerMetrics] = None):
        self.store = store
        self.bus = bus
        self.page_store = page_store
        self.extractor = extractor or LinkExtractor()
        self.queues = queues or QueueNames()
        self.prefetch = prefetch
        self.metrics = metrics or CrawlerMetrics()
        self.logger = logging.getLogger(__name__)

    async def run(self, stop_event: Optional[asyncio.Event] = None):
        await self.bus.consume(
            self.queues.parse_jobs,
            self.handle,
            auto_ack=True,
            prefetch=self.prefetch,
            stop_event=stop_event
        )

    async def handle(self, delivery: Delivery):
        try:
            job = ParseJob.decode(delivery.body)
        except MessageError as e:
            self.logger.warning(f"Dropping malformed parse job: {e}")
            return

        self.logger.info(f"Consumed URL ID {job.url_id} to parse")
        try:
            await self.process(job)
        except (StoreError, BusError, PageStoreError) as e:
            self.logger.error(f"Parse of URL ID {job.url_id} abandoned: {e}")

    async def process(self, job: ParseJob) -> List[str]:
        """Parse one stored page. Returns the candidate URLs published."""
        url = await self.store.resolve_id(job.url_id)
        if url is None:
            self.logger.error(f"No URL is bound to ID {job.url_id}")
            return []

        html_content = await self.page_store.load(job.url_id)
        if html_content is None:
            self.logger.error(f"No stored page for URL ID {job.url_id}")
            return []

        links = self.extractor.extract(url, html_content)
        for link in links:
            self.logger.debug(f"Publishing URL to enqueue: {link}")
            await self.bus.publish(self.queues.candidates, CandidateUrl(link).encode())

        self.metrics.record_parse(len(links))
        self.logger.info(f"Parsed URL ID {job.url_id}: {len(links)} links")
        return links
