import asyncio
import json
from abc import ABC, abstractmethod
from typing import Dict, Optional, Tuple

import structlog
from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError
from sqlmodel import select

from ..models import IdempotencyRecord
from .retry import Clock, SystemClock

logger = structlog.get_logger(__name__)


def resource_key(product_id: str, plan_type: str, gateway: Optional[str] = None) -> str:
    parts = ["resource", product_id, plan_type]
    if gateway:
        parts.append(gateway)
    return ":".join(parts)


def verification_key(resource_id: str) -> str:
    return f"verification:{resource_id}"


def activation_key(resource_id: str) -> str:
    return f"activation:{resource_id}"


class IdempotencyCache(ABC):
    """Short-lived key/value records guarding duplicate backend calls.

    ``try_acquire`` is an atomic check-and-set: it writes a record only when no
    live (unexpired) record exists for the key and reports whether it did.
    """

    @abstractmethod
    async def try_acquire(self, key: str, ttl: float, payload: Optional[dict] = None) -> bool:
        ...

    @abstractmethod
    async def get(self, key: str) -> Optional[dict]:
        """Payload of the live record ({} when stored without one), else None."""

    @abstractmethod
    async def put(self, key: str, payload: dict, ttl: float) -> None:
        ...

    @abstractmethod
    async def release(self, key: str) -> None:
        ...


class InMemoryIdempotencyCache(IdempotencyCache):
    def __init__(self, clock: Optional[Clock] = None):
        self._clock = clock or SystemClock()
        self._records: Dict[str, Tuple[float, Optional[dict]]] = {}
        self._lock = asyncio.Lock()

    def _live(self, key: str) -> Optional[Tuple[float, Optional[dict]]]:
        record = self._records.get(key)
        if record is None:
            return None
        if record[0] <= self._clock.now():
            del self._records[key]
            return None
        return record

    async def try_acquire(self, key: str, ttl: float, payload: Optional[dict] = None) -> bool:
        async with self._lock:
            if self._live(key) is not None:
                return False
            self._records[key] = (self._clock.now() + ttl, payload)
            return True

    async def get(self, key: str) -> Optional[dict]:
        async with self._lock:
            record = self._live(key)
        if record is None:
            return None
        return dict(record[1] or {})

    async def put(self, key: str, payload: dict, ttl: float) -> None:
        async with self._lock:
            self._records[key] = (self._clock.now() + ttl, payload)

    async def release(self, key: str) -> None:
        async with self._lock:
            self._records.pop(key, None)


class SqlIdempotencyCache(IdempotencyCache):
    """Persistent cache on the ``idempotency_records`` table.

    The primary key is the lock: an expired row is deleted and a fresh row
    inserted in the same transaction, and a concurrent live row surfaces as an
    ``IntegrityError``.
    """

    def __init__(self, session_factory, clock: Optional[Clock] = None):
        self._session_factory = session_factory
        self._clock = clock or SystemClock()

    async def try_acquire(self, key: str, ttl: float, payload: Optional[dict] = None) -> bool:
        now = self._clock.now()
        async with self._session_factory() as session:
            await session.execute(
                delete(IdempotencyRecord).where(
                    IdempotencyRecord.key == key,
                    IdempotencyRecord.expires_at <= now,
                )
            )
            session.add(
                IdempotencyRecord(
                    key=key,
                    payload=json.dumps(payload) if payload is not None else None,
                    created_at=now,
                    expires_at=now + ttl,
                )
            )
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                logger.debug("idempotency_key_live", key=key)
                return False
        return True

    async def get(self, key: str) -> Optional[dict]:
        async with self._session_factory() as session:
            res = await session.exec(select(IdempotencyRecord).where(IdempotencyRecord.key == key))
            found = res.one_or_none()
        if found is None or found.expires_at <= self._clock.now():
            return None
        return json.loads(found.payload) if found.payload else {}

    async def put(self, key: str, payload: dict, ttl: float) -> None:
        now = self._clock.now()
        async with self._session_factory() as session:
            await session.merge(
                IdempotencyRecord(key=key, payload=json.dumps(payload), created_at=now, expires_at=now + ttl)
            )
            await session.commit()

    async def release(self, key: str) -> None:
        async with self._session_factory() as session:
            await session.execute(delete(IdempotencyRecord).where(IdempotencyRecord.key == key))
            await session.commit()
