"""
Identifier store: the shared URL <-> id map and the id sequence counter.

All keys live in one flat namespace: URL text maps to its decimal id,
the decimal id maps back to the URL, ``published:<id>`` records that the
fetch job for an id went out, and ``SEQUENCE_KEY`` holds the next id.
Every operation is atomic on a single key; nothing here spans keys.
"""

import asyncio
import logging
from typing import Awaitable, Dict, Optional, Union

import redis.asyncio as redis
from redis.exceptions import RedisError, TimeoutError as RedisTimeoutError

from ..errors import StoreError, StoreTimeoutError


SEQUENCE_KEY = "urlIdSeq"
PUBLISHED_PREFIX = "published:"

Value = Union[str, int]


class IdentifierStore:
    """Abstract base class for identifier store backends."""

    def __init__(self):
        self.logger = logging.getLogger(__name__)

    async def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    async def set(self, key: str, value: Value):
        raise NotImplementedError

    async def set_if_absent(self, key: str, value: Value) -> bool:
        """Write ``value`` only if ``key`` does not exist. Returns True if written."""
        raise NotImplementedError

    async def exists(self, key: str) -> bool:
        raise NotImplementedError

    async def increment(self, key: str) -> int:
        """Atomically increment ``key`` and return the new value."""
        raise NotImplementedError

    async def close(self):
        pass

    async def ensure_sequence(self):
        """Seed the sequence counter with 1 unless it is already set."""
        if await self.set_if_absent(SEQUENCE_KEY, 1):
            self.logger.info(f"{SEQUENCE_KEY} did not exist, created with value = 1")
        else:
            self.logger.debug(f"{SEQUENCE_KEY} already exists")

    async def resolve_id(self, url_id: int) -> Optional[str]:
        """URL bound to ``url_id``, or None."""
        return await self.get(str(url_id))

    async def resolve_url(self, url: str) -> Optional[int]:
        """Id bound to ``url``, or None."""
        value = await self.get(url)
        if value is None:
            return None
        try:
            return int(value)
        except ValueError as e:
            raise StoreError(f"Key {url!r} holds a non-numeric id: {value!r}") from e

    async def mark_published(self, url_id: int) -> bool:
        """Record that the fetch job for ``url_id`` was published. True if this call recorded it."""
        return await self.set_if_absent(f"{PUBLISHED_PREFIX}{url_id}", 1)

    async def is_published(self, url_id: int) -> bool:
        return await self.exists(f"{PUBLISHED_PREFIX}{url_id}")


class RedisIdentifierStore(IdentifierStore):
    """Identifier store backed by Redis string keys."""

    def __init__(self, redis_client: redis.Redis, operation_timeout: float = 5.0):
        super().__init__()
        self.redis_client = redis_client
        self.operation_timeout = operation_timeout

    async def _call(self, awaitable: Awaitable, what: str):
        try:
            return await asyncio.wait_for(awaitable, self.operation_timeout)
        except (asyncio.TimeoutError, RedisTimeoutError) as e:
            raise StoreTimeoutError(f"Store {what} timed out") from e
        except RedisError as e:
            raise StoreError(f"Store {what} failed: {e}") from e

    @staticmethod
    def _decode(value) -> Optional[str]:
        if isinstance(value, bytes):
            return value.decode('utf-8')
        return value

    async def get(self, key: str) -> Optional[str]:
        return self._decode(await self._call(self.redis_client.get(key), f"GET {key}"))

    async def set(self, key: str, value: Value):
        await self._call(self.redis_client.set(key, value), f"SET {key}")

    async def set_if_absent(self, key: str, value: Value) -> bool:
        reply = await self._call(self.redis_client.set(key, value, nx=True), f"SET NX {key}")
        return bool(reply)

    async def exists(self, key: str) -> bool:
        return await self._call(self.redis_client.exists(key), f"EXISTS {key}") == 1

    async def increment(self, key: str) -> int:
        return int(await self._call(self.redis_client.incr(key), f"INCR {key}"))

    async def close(self):
        await self.redis_client.aclose()


class MemoryIdentifierStore(IdentifierStore):
    """
    Dict-backed identifier store.

    Each operation yields to the event loop once before touching the data,
    so concurrent tasks interleave between calls the way they do against a
    networked store.
    """

    def __init__(self):
        super().__init__()
        self.data: Dict[str, str] = {}

    async def get(self, key: str) -> Optional[str]:
        await asyncio.sleep(0)
        return self.data.get(key)

    async def set(self, key: str, value: Value):
        await asyncio.sleep(0)
        self.data[key] = str(value)

    async def set_if_absent(self, key: str, value: Value) -> bool:
        await asyncio.sleep(0)
        if key in self.data:
            return False
        self.data[key] = str(value)
        return True

    async def exists(self, key: str) -> bool:
        await asyncio.sleep(0)
        return key in self.data

    async def increment(self, key: str) -> int:
        await asyncio.sleep(0)
        try:
            value = int(self.data.get(key, 0)) + 1
        except ValueError as e:
            raise StoreError(f"Key {key!r} does not hold an integer") from e
        self.data[key] = str(value)
        return value
