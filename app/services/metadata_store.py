"""Keyed persistence for object, short-link and reservation records.

Every record lives under ``pastecdn:<id>`` so object and short-link
identifiers share one namespace and a single existence check covers both.
"""
import time
from typing import AsyncIterator, Dict, Optional, Tuple, Union

from pydantic import ValidationError
from redis import asyncio as redis_async
from redis.exceptions import RedisError

from app.models.records import (
    ObjectRecord,
    ReservationRecord,
    ShortLinkRecord,
    dump_record,
    load_record,
)
from app.services.errors import StorageFailure
from logger_config import setup_logger

logger = setup_logger()

KEY_PREFIX = "pastecdn:"

Record = Union[ObjectRecord, ShortLinkRecord, ReservationRecord]


def build_key(identifier: str) -> str:
    return f"{KEY_PREFIX}{identifier}"


class MetadataStore:
    """Interface shared by the Redis and in-memory stores."""

    async def set_if_absent(self, identifier: str, record: Record, ttl_seconds: Optional[int] = None) -> bool:  # pragma: no cover - interface
        raise NotImplementedError

    async def put(self, record: Record) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    async def get(self, identifier: str) -> Optional[Record]:  # pragma: no cover - interface
        raise NotImplementedError

    async def delete(self, identifier: str) -> bool:  # pragma: no cover - interface
        raise NotImplementedError

    def scan_objects(self) -> AsyncIterator[ObjectRecord]:  # pragma: no cover - interface
        raise NotImplementedError

    async def close(self) -> None:
        pass

    async def delete_reservation(self, identifier: str) -> bool:
        """Delete the key only while it still holds a reservation."""
        record = await self.get(identifier)
        if isinstance(record, ReservationRecord):
            return await self.delete(identifier)
        return False


def _parse(identifier: str, payload) -> Optional[Record]:
    try:
        return load_record(payload)
    except ValidationError as e:
        logger.error(f"Corrupt metadata record for {identifier}: {e}")
        return None


class RedisMetadataStore(MetadataStore):
    """Async Redis store; the Redis server provides the atomicity."""

    def __init__(self, url: str, client=None):
        self._redis = client or redis_async.from_url(
            url,
            encoding="utf-8",
            decode_responses=True,
        )

    async def ping(self) -> None:
        try:
            await self._redis.ping()
        except RedisError as e:
            raise StorageFailure(f"Could not connect to Redis: {e}") from e

    async def set_if_absent(self, identifier: str, record: Record, ttl_seconds: Optional[int] = None) -> bool:
        try:
            result = await self._redis.set(build_key(identifier), dump_record(record), nx=True, ex=ttl_seconds)
        except RedisError as e:
            logger.error(f"Failed to reserve key {identifier} in Redis: {e}")
            raise StorageFailure(f"Unable to query redis for existing name: {e}") from e
        return bool(result)

    async def put(self, record: Record) -> None:
        # Plain SET also clears the TTL left by a reservation
        try:
            await self._redis.set(build_key(record.id), dump_record(record))
        except RedisError as e:
            logger.error(f"Failed to set key {record.id} in Redis: {e}")
            raise StorageFailure(f"Failed to save data to Redis: {e}") from e

    async def get(self, identifier: str) -> Optional[Record]:
        try:
            payload = await self._redis.get(build_key(identifier))
        except RedisError as e:
            logger.error(f"Failed to get key {identifier} from Redis: {e}")
            raise StorageFailure(f"Failed to get data from Redis for {identifier}: {e}") from e
        if payload is None:
            return None
        return _parse(identifier, payload)

    async def delete(self, identifier: str) -> bool:
        try:
            removed = await self._redis.delete(build_key(identifier))
        except RedisError as e:
            logger.error(f"Failed to delete key {identifier} from Redis: {e}")
            raise StorageFailure(f"Failed to delete data from Redis for {identifier}: {e}") from e
        return removed > 0

    async def scan_objects(self) -> AsyncIterator[ObjectRecord]:
        """Yield every object record.

        A key that cannot be read is logged and skipped; only a failure of
        the scan itself raises StorageFailure.
        """
        try:
            async for key in self._redis.scan_iter(match=f"{KEY_PREFIX}*", count=500):
                identifier = key[len(KEY_PREFIX):]
                try:
                    payload = await self._redis.get(key)
                except RedisError as e:
                    logger.error(f"Failed to read {identifier} while scanning, skipping it: {e}")
                    continue
                if payload is None:
                    continue
                record = _parse(identifier, payload)
                if isinstance(record, ObjectRecord):
                    yield record
        except RedisError as e:
            logger.error(f"Failed to scan Redis: {e}")
            raise StorageFailure(f"Failed to scan Redis: {e}") from e

    async def close(self) -> None:
        await self._redis.aclose()


class InMemoryMetadataStore(MetadataStore):
    """Process-local store for tests and single-process runs.

    Methods never await between reading and writing the dict, so each call
    is atomic on the event loop.
    """

    def __init__(self):
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}

    def _live_payload(self, key: str) -> Optional[str]:
        entry = self._data.get(key)
        if entry is None:
            return None
        payload, expires_at = entry
        if expires_at is not None and expires_at <= time.monotonic():
            del self._data[key]
            return None
        return payload

    async def set_if_absent(self, identifier: str, record: Record, ttl_seconds: Optional[int] = None) -> bool:
        key = build_key(identifier)
        if self._live_payload(key) is not None:
            return False
        expires_at = time.monotonic() + ttl_seconds if ttl_seconds else None
        self._data[key] = (dump_record(record), expires_at)
        return True

    async def put(self, record: Record) -> None:
        self._data[build_key(record.id)] = (dump_record(record), None)

    async def get(self, identifier: str) -> Optional[Record]:
        payload = self._live_payload(build_key(identifier))
        if payload is None:
            return None
        return _parse(identifier, payload)

    async def delete(self, identifier: str) -> bool:
        key = build_key(identifier)
        live = self._live_payload(key) is not None
        self._data.pop(key, None)
        return live

    async def scan_objects(self) -> AsyncIterator[ObjectRecord]:
        # Snapshot so deletes during iteration are safe
        for key in list(self._data):
            payload = self._live_payload(key)
            if payload is None:
                continue
            record = _parse(key[len(KEY_PREFIX):], payload)
            if isinstance(record, ObjectRecord):
                yield record

    def __len__(self) -> int:
        return sum(1 for key in list(self._data) if self._live_payload(key) is not None)
