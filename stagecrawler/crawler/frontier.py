"""
Frontier coordinator.

The only component that mints URL ids. It consumes candidate URLs, keeps
the crawl inside the target host, drops URLs it has already seen and
publishes a fetch job for every newly admitted URL.

Admission never relies on a multi-key transaction. A fresh id is taken
from the atomic sequence counter and the URL key is then claimed with a
single set-if-absent write. The id is bound back to the URL with a second
set-if-absent write, and whoever wins that write publishes the fetch job,
then records the publication under its own key. Losing the URL claim burns
the id, so ids stay unique and strictly increasing but may have gaps under
contention. A URL that is bound but has no recorded fetch job is published
again by the next coordinator that sees it.
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional
from urllib.parse import urlsplit

from ..errors import BusError, ConfigError, IdSpaceExhausted, MessageError, StoreError
from ..messaging.bus import Delivery, MessageBus
from ..messaging.messages import CandidateUrl, DiscoverEvent, FetchJob, MAX_URL_ID
from ..storage.identifier_store import IdentifierStore, SEQUENCE_KEY
from ..utils.config import QueueNames
from ..utils.monitoring import CrawlerMetrics


MAX_URL_LENGTH = 2048

_FORBIDDEN_CHARS = re.compile(r'[\s\x00-\x1f\x7f]')


class AdmissionResult(Enum):
    """Outcome of one admission attempt."""
    ADMITTED = "admitted"
    REPAIRED = "repaired"
    DUPLICATE = "duplicate"
    FILTERED = "filtered"
    MALFORMED = "malformed"


@dataclass
class Admission:
    """Result of admitting a candidate, with the id bound to it if any."""
    result: AdmissionResult
    url: Optional[str] = None
    url_id: Optional[int] = None

    @property
    def published(self) -> bool:
        """True when this admission published a fetch job."""
        return self.result in (AdmissionResult.ADMITTED, AdmissionResult.REPAIRED)


def is_valid_url(url: str) -> bool:
    """Absolute http(s) URL with a host and no whitespace or control characters."""
    if not url or len(url) > MAX_URL_LENGTH or _FORBIDDEN_CHARS.search(url):
        return False
    try:
        parsed = urlsplit(url)
        parsed.port  # raises ValueError on a bad port
    except ValueError:
        return False
    return parsed.scheme in ('http', 'https') and bool(parsed.hostname)


class HostFilter:
    """Restricts the crawl to hosts fully matching one regular expression."""

    def __init__(self, pattern: str):
        if not pattern:
            raise ConfigError("A host pattern is required")
        self.pattern = pattern
        self._regex = re.compile(pattern, re.IGNORECASE)

    def matches(self, url: str) -> bool:
        try:
            host = urlsplit(url).hostname
        except ValueError:
            return False
        return bool(host) and self._regex.fullmatch(host) is not None

    def __repr__(self) -> str:
        return f"HostFilter({self.pattern!r})"


@dataclass
class AckDelayPolicy:
    """
    Fixed pause between publishing a fetch job and acknowledging the
    candidate that produced it.

    With a prefetch limit on the candidate queue this caps how fast each
    coordinator can expand the crawl.
    """
    delay: float = 5.0

    async def wait(self):
        if self.delay > 0:
            await asyncio.sleep(self.delay)


class FrontierCoordinator:
    """Consumes candidate URLs and admits the new ones."""

    def __init__(self, store: IdentifierStore, bus: MessageBus, host_filter: HostFilter,
                 ack_delay: Optional[AckDelayPolicy] = None,
                 queues: Optional[QueueNames] = None,
                 prefetch: int = 1,
                 requeue_delay: float = 1.0,
                 metrics: Optional[CrawlerMetrics] = None):
        self.store = store
        self.bus = bus
        self.host_filter = host_filter
        self.ack_delay = ack_delay or AckDelayPolicy()
        self.queues = queues or QueueNames()
        self.prefetch = prefetch
        self.requeue_delay = requeue_delay
        self.metrics = metrics or CrawlerMetrics()
        self.logger = logging.getLogger(__name__)

    async def initialize(self):
        """Make sure the sequence counter exists."""
        await self.store.ensure_sequence()

    async def run(self, stop_event: Optional[asyncio.Event] = None):
        """Consume the candidate queue until ``stop_event`` is set."""
        await self.initialize()
        self.logger.info(f"Frontier started with {self.host_filter}, prefetch={self.prefetch}, "
                         f"ack delay={self.ack_delay.delay}s")
        await self.bus.consume(
            self.queues.candidates,
            self.handle,
            auto_ack=False,
            prefetch=self.prefetch,
            stop_event=stop_event
        )

    async def handle(self, delivery: Delivery):
        """Admit one candidate delivery and settle it."""
        try:
            candidate = CandidateUrl.decode(delivery.body)
        except MessageError as e:
            self.logger.warning(f"Dropping unparsable candidate: {e}")
            self.metrics.record_admission(AdmissionResult.MALFORMED.value)
            await delivery.reject()
            return

        self.logger.info(f"Consumed candidate: {candidate.url}")

        try:
            admission = await self.admit(candidate)
        except (StoreError, BusError) as e:
            self.logger.error(f"Admission of {candidate.url} failed, requeueing: {e}")
            self.metrics.record_admission('requeued')
            if self.requeue_delay > 0:
                await asyncio.sleep(self.requeue_delay)
            await delivery.nack(requeue=True)
            return
        except IdSpaceExhausted as e:
            self.logger.critical(f"Cannot admit {candidate.url}: {e}")
            self.metrics.record_admission('rejected')
            await delivery.reject()
            return

        self.metrics.record_admission(admission.result.value)

        if admission.result is AdmissionResult.MALFORMED:
            await delivery.reject()
            return

        if admission.published:
            await self.ack_delay.wait()
        await delivery.ack()

    async def admit(self, candidate: CandidateUrl) -> Admission:
        """
        Decide whether a candidate is new and, if so, bind it to a fresh id.

        Raises:
            StoreError: the identifier store failed
            BusError: the fetch job could not be published
        """
        url = candidate.url

        if not is_valid_url(url):
            self.logger.warning(f"Dropping malformed URL: {url!r}")
            return Admission(AdmissionResult.MALFORMED, url)

        if not self.host_filter.matches(url):
            self.logger.debug(f"URL {url} did not match {self.host_filter}")
            return Admission(AdmissionResult.FILTERED, url)

        if await self.store.exists(url):
            return await self._check_binding(url)

        url_id = await self.store.increment(SEQUENCE_KEY) - 1
        if url_id > MAX_URL_ID:
            raise IdSpaceExhausted(f"next id {url_id} exceeds {MAX_URL_ID}")

        if not await self.store.set_if_absent(url, url_id):
            self.logger.info(f"URL {url} was claimed concurrently, id {url_id} left unused")
            return Admission(AdmissionResult.DUPLICATE, url, await self.store.resolve_url(url))

        if not await self.store.set_if_absent(str(url_id), url):
            # A duplicate completed the binding first and published the job itself
            self.logger.info(f"ID {url_id} of {url} was bound concurrently")
            return Admission(AdmissionResult.DUPLICATE, url, url_id)

        self.logger.info(f"URL {url} is new and has been assigned ID {url_id}")
        await self._publish(url_id, url)
        return Admission(AdmissionResult.ADMITTED, url, url_id)

    async def _check_binding(self, url: str) -> Admission:
        """
        Handle a URL that is already claimed.

        A binding missing its reverse key, or a complete binding whose fetch
        job was never recorded as published, belongs to a coordinator that
        failed part way. The reverse write is a set-if-absent so that only
        one caller completes a binding and publishes for it.
        """
        url_id = await self.store.resolve_url(url)
        if url_id is None:
            return Admission(AdmissionResult.DUPLICATE, url)

        bound_url = await self.store.resolve_id(url_id)
        if bound_url is None:
            if not await self.store.set_if_absent(str(url_id), url):
                self.logger.info(f"ID {url_id} of {url} was bound concurrently")
                return Admission(AdmissionResult.DUPLICATE, url, url_id)
            self.logger.warning(f"URL {url} has ID {url_id} without a reverse binding, repairing")
            await self._publish(url_id, url)
            return Admission(AdmissionResult.REPAIRED, url, url_id)

        if bound_url != url:
            self.logger.error(f"ID {url_id} of {url} is bound to {bound_url}")
            return Admission(AdmissionResult.DUPLICATE, url, url_id)

        if not await self.store.is_published(url_id):
            self.logger.warning(f"No fetch job was recorded for ID {url_id} ({url}), republishing")
            await self._publish(url_id, url)
            return Admission(AdmissionResult.REPAIRED, url, url_id)

        self.logger.info(f"URL {url} already exists")
        return Admission(AdmissionResult.DUPLICATE, url, url_id)

    async def _publish(self, url_id: int, url: str):
        await self.bus.publish(self.queues.fetch_jobs, FetchJob(url_id).encode())
        await self.store.mark_published(url_id)
        self.logger.info(f"Published URL with ID {url_id} to be crawled")

        try:
            await self.bus.publish(self.queues.analytics, DiscoverEvent(url_id, url).encode())
        except BusError as e:
            self.logger.warning(f"Could not publish discover event for {url_id}: {e}")


async def inject_seeds(bus: MessageBus, urls: Iterable[str],
                       queue: Optional[str] = None) -> int:
    """Publish each URL as a candidate. Returns the number published."""
    queue = queue or QueueNames().candidates
    logger = logging.getLogger(__name__)

    count = 0
    for url in urls:
        await bus.publish(queue, CandidateUrl(url).encode())
        logger.info(f"Seeded candidate: {url}")
        count += 1
    return count
