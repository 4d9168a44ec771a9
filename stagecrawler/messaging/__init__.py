"""
Message bus and message contracts between crawler stages.
"""

from .bus import Delivery, MessageBus, RedisMessageBus, MemoryMessageBus
from .messages import (
    CandidateUrl, FetchJob, ParseJob, FetchEvent, DiscoverEvent, decode_event,
    CANDIDATES_QUEUE, FETCH_JOBS_QUEUE, PARSE_JOBS_QUEUE, ANALYTICS_QUEUE
)

__all__ = [
    'Delivery', 'MessageBus', 'RedisMessageBus', 'MemoryMessageBus',
    'CandidateUrl', 'FetchJob', 'ParseJob', 'FetchEvent', 'DiscoverEvent', 'decode_event',
    'CANDIDATES_QUEUE', 'FETCH_JOBS_QUEUE', 'PARSE_JOBS_QUEUE', 'ANALYTICS_QUEUE'
]
