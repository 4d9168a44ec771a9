"""
Typed messages exchanged between crawler stages and their wire encodings.

Candidates and analytics events travel as JSON, job messages carry a bare
4-byte big-endian unsigned URL id.
"""

import json
import struct
from dataclasses import dataclass
from typing import Union

from ..errors import MessageError


# Default queue names
CANDIDATES_QUEUE = "inbound-candidates"
FETCH_JOBS_QUEUE = "fetch-jobs"
PARSE_JOBS_QUEUE = "parse-jobs"
ANALYTICS_QUEUE = "analytics-events"

MAX_URL_ID = 0xFFFFFFFF

_ID_STRUCT = struct.Struct(">I")


def encode_url_id(url_id: int) -> bytes:
    """Encode a URL id as a 4-byte big-endian unsigned integer."""
    if not isinstance(url_id, int) or isinstance(url_id, bool):
        raise MessageError(f"URL id must be an integer, got {url_id!r}")
    if not 0 <= url_id <= MAX_URL_ID:
        raise MessageError(f"URL id out of range: {url_id}")
    return _ID_STRUCT.pack(url_id)


def decode_url_id(body: bytes) -> int:
    """Decode a 4-byte big-endian unsigned URL id."""
    if len(body) != _ID_STRUCT.size:
        raise MessageError(f"Expected a {_ID_STRUCT.size}-byte id, got {len(body)} bytes")
    return _ID_STRUCT.unpack(body)[0]


def _load_json(body: bytes) -> dict:
    try:
        data = json.loads(body.decode('utf-8'))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise MessageError(f"Payload is not a parsable JSON object: {e}") from e
    if not isinstance(data, dict):
        raise MessageError("Payload is not a JSON object")
    return data


@dataclass(frozen=True)
class CandidateUrl:
    """A URL proposed for crawling, not yet known to be unique."""
    url: str

    def encode(self) -> bytes:
        return json.dumps({'url': self.url}).encode('utf-8')

    @classmethod
    def decode(cls, body: bytes) -> 'CandidateUrl':
        data = _load_json(body)
        url = data.get('url')
        if not isinstance(url, str):
            raise MessageError("Candidate payload has no string 'url' field")
        return cls(url=url)


@dataclass(frozen=True)
class FetchJob:
    """Request to fetch the page bound to ``url_id``."""
    url_id: int

    def encode(self) -> bytes:
        return encode_url_id(self.url_id)

    @classmethod
    def decode(cls, body: bytes) -> 'FetchJob':
        return cls(url_id=decode_url_id(body))


@dataclass(frozen=True)
class ParseJob:
    """Request to extract links from the stored page of ``url_id``."""
    url_id: int

    def encode(self) -> bytes:
        return encode_url_id(self.url_id)

    @classmethod
    def decode(cls, body: bytes) -> 'ParseJob':
        return cls(url_id=decode_url_id(body))


@dataclass(frozen=True)
class FetchEvent:
    """Analytics event: a page was fetched and persisted."""
    url_id: int
    size: int

    EVENT = "FETCH"

    def encode(self) -> bytes:
        return json.dumps({
            'event': self.EVENT,
            'payload': {'id': self.url_id, 'size': self.size}
        }).encode('utf-8')


@dataclass(frozen=True)
class DiscoverEvent:
    """Analytics event: a new URL was admitted to the frontier."""
    url_id: int
    url: str

    EVENT = "DISCOVER"

    def encode(self) -> bytes:
        return json.dumps({
            'event': self.EVENT,
            'payload': {'id': self.url_id, 'url': self.url}
        }).encode('utf-8')


AnalyticsEvent = Union[FetchEvent, DiscoverEvent]


def decode_event(body: bytes) -> AnalyticsEvent:
    """Decode an analytics event envelope."""
    data = _load_json(body)
    event = data.get('event')
    payload = data.get('payload')
    if not isinstance(payload, dict):
        raise MessageError("Event has no 'payload' object")

    try:
        if event == FetchEvent.EVENT:
            return FetchEvent(url_id=int(payload['id']), size=int(payload['size']))
        if event == DiscoverEvent.EVENT:
            return DiscoverEvent(url_id=int(payload['id']), url=str(payload['url']))
    except (KeyError, TypeError, ValueError) as e:
        raise MessageError(f"Malformed {event} payload: {e}") from e

    raise MessageError(f"Unknown event type: {event!r}")
