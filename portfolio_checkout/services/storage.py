import asyncio
import json
from abc import ABC, abstractmethod
from typing import Dict, Optional, Tuple

from sqlalchemy import delete
from sqlmodel import select

from ..models import CheckoutSnapshot, ResumptionTokenRecord
from ..schemas import CheckoutSession, ResumptionToken
from .retry import Clock, SystemClock


class SessionStore(ABC):
    """Checkout session snapshots that outlive a full-page navigation."""

    @abstractmethod
    async def save(self, session: CheckoutSession) -> None:
        ...

    @abstractmethod
    async def load(self, session_id: str) -> Optional[CheckoutSession]:
        ...

    @abstractmethod
    async def delete(self, session_id: str) -> None:
        ...


class ResumptionStore(ABC):
    """Tokens written before a redirect and consumed exactly once on return."""

    @abstractmethod
    async def put(self, token: ResumptionToken, ttl: float) -> None:
        ...

    @abstractmethod
    async def consume(self, token: str) -> Optional[ResumptionToken]:
        ...


class InMemorySessionStore(SessionStore):
    def __init__(self, ttl: float, clock: Optional[Clock] = None):
        self._ttl = ttl
        self._clock = clock or SystemClock()
        self._data: Dict[str, Tuple[float, str]] = {}

    async def save(self, session: CheckoutSession) -> None:
        self._data[session.id] = (self._clock.now() + self._ttl, session.model_dump_json())

    async def load(self, session_id: str) -> Optional[CheckoutSession]:
        item = self._data.get(session_id)
        if item is None:
            return None
        if item[0] <= self._clock.now():
            del self._data[session_id]
            return None
        return CheckoutSession.model_validate_json(item[1])

    async def delete(self, session_id: str) -> None:
        self._data.pop(session_id, None)


class InMemoryResumptionStore(ResumptionStore):
    def __init__(self, clock: Optional[Clock] = None):
        self._clock = clock or SystemClock()
        self._tokens: Dict[str, Tuple[float, ResumptionToken]] = {}
        self._lock = asyncio.Lock()

    async def put(self, token: ResumptionToken, ttl: float) -> None:
        async with self._lock:
            self._tokens[token.token] = (self._clock.now() + ttl, token)

    async def consume(self, token: str) -> Optional[ResumptionToken]:
        async with self._lock:
            item = self._tokens.pop(token, None)
        if item is None or item[0] <= self._clock.now():
            return None
        return item[1]


class SqlSessionStore(SessionStore):
    def __init__(self, session_factory, ttl: float, clock: Optional[Clock] = None):
        self._session_factory = session_factory
        self._ttl = ttl
        self._clock = clock or SystemClock()

    async def save(self, session: CheckoutSession) -> None:
        now = self._clock.now()
        async with self._session_factory() as db:
            await db.merge(
                CheckoutSnapshot(
                    session_id=session.id,
                    data=session.model_dump_json(),
                    updated_at=now,
                    expires_at=now + self._ttl,
                )
            )
            await db.commit()

    async def load(self, session_id: str) -> Optional[CheckoutSession]:
        async with self._session_factory() as db:
            res = await db.exec(select(CheckoutSnapshot).where(CheckoutSnapshot.session_id == session_id))
            found = res.one_or_none()
        if found is None or found.expires_at <= self._clock.now():
            return None
        return CheckoutSession.model_validate_json(found.data)

    async def delete(self, session_id: str) -> None:
        async with self._session_factory() as db:
            await db.execute(delete(CheckoutSnapshot).where(CheckoutSnapshot.session_id == session_id))
            await db.commit()


class SqlResumptionStore(ResumptionStore):
    def __init__(self, session_factory, clock: Optional[Clock] = None):
        self._session_factory = session_factory
        self._clock = clock or SystemClock()

    async def put(self, token: ResumptionToken, ttl: float) -> None:
        now = self._clock.now()
        async with self._session_factory() as db:
            db.add(
                ResumptionTokenRecord(
                    token=token.token,
                    session_id=token.session_id,
                    resource_id=token.resource_id,
                    gateway=token.gateway,
                    return_context=json.dumps(token.return_context),
                    created_at=now,
                    expires_at=now + ttl,
                )
            )
            await db.commit()

    async def consume(self, token: str) -> Optional[ResumptionToken]:
        async with self._session_factory() as db:
            res = await db.exec(select(ResumptionTokenRecord).where(ResumptionTokenRecord.token == token))
            found = res.one_or_none()
            if found is None:
                return None
            # only the caller whose delete removed the row owns the token
            deleted = await db.execute(delete(ResumptionTokenRecord).where(ResumptionTokenRecord.token == token))
            await db.commit()
        if deleted.rowcount != 1 or found.expires_at <= self._clock.now():
            return None
        return ResumptionToken(
            token=found.token,
            session_id=found.session_id,
            resource_id=found.resource_id,
            gateway=found.gateway,
            return_context=json.loads(found.return_context) if found.return_context else {},
        )
