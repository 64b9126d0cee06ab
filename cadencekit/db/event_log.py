from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlmodel import SQLModel, select

from .models import CadenceEvent, EventType

logger = logging.getLogger(__name__)


class EventLogDB:
    """Async audit log of compilation, branching, scheduling and outcomes."""

    def __init__(self, database_url: str) -> None:
        connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}
        self.engine = create_async_engine(
            database_url, echo=False, future=True, connect_args=connect_args
        )

    async def init_db(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        async with AsyncSession(self.engine) as session:
            yield session

    async def record(
        self,
        event_type: EventType,
        owner_id: str,
        cadence_id: Optional[str] = None,
        enrollment_id: Optional[str] = None,
        step_id: Optional[str] = None,
        detail: Optional[dict] = None,
    ) -> CadenceEvent:
        event = CadenceEvent(
            event_type=EventType(event_type).value,
            owner_id=owner_id,
            cadence_id=cadence_id,
            enrollment_id=enrollment_id,
            step_id=step_id,
            detail=detail or {},
        )
        async with self.session() as session:
            session.add(event)
            await session.commit()
            await session.refresh(event)
        logger.debug(f"Recorded {event.event_type} for enrollment {enrollment_id}")
        return event

    async def list_events(
        self,
        owner_id: str,
        enrollment_id: Optional[str] = None,
        event_type: Optional[EventType] = None,
    ) -> List[CadenceEvent]:
        query = select(CadenceEvent).where(CadenceEvent.owner_id == owner_id)
        if enrollment_id is not None:
            query = query.where(CadenceEvent.enrollment_id == enrollment_id)
        if event_type is not None:
            query = query.where(CadenceEvent.event_type == EventType(event_type).value)
        query = query.order_by(CadenceEvent.recorded_at)
        async with self.session() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def dispose(self) -> None:
        await self.engine.dispose()
