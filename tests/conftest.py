"""
Shared fixtures: in-process store and bus, and a coordinator wired to them.
"""

import pytest

from stagecrawler.crawler.frontier import AckDelayPolicy, FrontierCoordinator, HostFilter
from stagecrawler.messaging.bus import Delivery, MemoryMessageBus
from stagecrawler.messaging.messages import CandidateUrl
from stagecrawler.storage.identifier_store import MemoryIdentifierStore


@pytest.fixture
def store():
    return MemoryIdentifierStore()


@pytest.fixture
def bus():
    return MemoryMessageBus(poll_interval=0.01)


@pytest.fixture
def coordinator(store, bus):
    return FrontierCoordinator(
        store,
        bus,
        HostFilter(r"site\.test"),
        ack_delay=AckDelayPolicy(0),
        requeue_delay=0
    )


class RecordingSettle:
    """Settle callback that remembers how each delivery ended."""

    def __init__(self):
        self.calls = []

    async def __call__(self, delivery, requeue):
        self.calls.append((delivery.body, requeue))


def candidate_delivery(url, settle=None):
    """Explicit-ack delivery carrying a candidate URL."""
    return Delivery("inbound-candidates", CandidateUrl(url).encode(),
                    auto_ack=False, settle=settle)
