"""Durable work records on top of async SQLAlchemy.

Partial updates go through ``atomic_update``: the row is read, the patch is
applied in Python and written back with ``WHERE version = <read version>``.
A writer that lost the race re-reads and re-applies, so concurrent appends to
``messages``/``errors`` are never lost and status never regresses.
"""

import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from worktrack.core.config import settings
from worktrack.core.errors import StoreError
from worktrack.models.work import Work
from worktrack.schemas.work import WorkFilter, WorkMessage, WorkRecord, WorkStatus, utcnow
from worktrack.services.db import get_session_factory

logger = logging.getLogger(__name__)

Cursor = Tuple[object, str]


@dataclass
class WorkPatch:
    """Changes applied to one work record in a single atomic update."""
    now: datetime = field(default_factory=utcnow)
    status: Optional[WorkStatus] = None
    received_time: Optional[datetime] = None
    processed_time: Optional[datetime] = None
    # Set to finalize: status complete, completed_number and completed_time
    completed_number: Optional[int] = None
    messages: List[WorkMessage] = field(default_factory=list)
    errors: List[WorkMessage] = field(default_factory=list)

    def apply(self, row: Work) -> dict:
        values = {}
        current = WorkStatus(row.status)
        if self.status is not None and self.status.rank > current.rank:
            values["status"] = self.status.value
        if self.received_time is not None and row.received_time is None:
            values["received_time"] = self.received_time
        if self.processed_time is not None:
            values["processed_time"] = self.processed_time
        if self.completed_number is not None and current is not WorkStatus.COMPLETE:
            values["status"] = WorkStatus.COMPLETE.value
            values["completed_number"] = self.completed_number
            values["completed_time"] = self.now
        if self.messages:
            values["messages"] = list(row.messages or []) + [m.to_storage() for m in self.messages]
        if self.errors:
            values["errors"] = list(row.errors or []) + [e.to_storage() for e in self.errors]
        return values


def _plain(value):
    return value.value if isinstance(value, enum.Enum) else value


def _where(filters: Iterable[WorkFilter]):
    clauses = []
    for f in filters:
        column = getattr(Work, f.key)
        values = [_plain(v) for v in f.values]
        if f.operator == "eq":
            clauses.append(column.in_(values))
        elif f.operator == "lte":
            clauses.append(column <= values[0])
        else:
            raise ValueError(f"Unsupported filter operator: {f.operator}")
    return clauses


def cursor_of(record: WorkRecord, order_by: str) -> Cursor:
    return _plain(getattr(record, order_by)), record.id


class WorkStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None,
                 max_attempts: int | None = None):
        self._session_factory = session_factory
        self._max_attempts = max_attempts or settings.WORK_UPDATE_MAX_ATTEMPTS

    @property
    def sessions(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            self._session_factory = get_session_factory()
        return self._session_factory

    async def insert(self, record: WorkRecord) -> None:
        row = Work(
            id=record.id,
            timestamp=record.timestamp,
            name=record.name,
            event_type=_plain(record.event_type),
            event_source_id=record.event_source_id,
            user_id=record.user_id,
            connector_id=record.connector_id,
            status=_plain(record.status),
            received_time=record.received_time,
            processed_time=record.processed_time,
            completed_time=record.completed_time,
            completed_number=record.completed_number,
            messages=[m.to_storage() for m in record.messages],
            errors=[e.to_storage() for e in record.errors],
            version=0,
            updated_at=record.updated_at or record.timestamp,
        )
        try:
            async with self.sessions() as session:
                session.add(row)
                await session.commit()
        except SQLAlchemyError as e:
            raise StoreError(f"Cannot insert work {record.id}") from e

    async def get_by_id(self, work_id: str) -> WorkRecord | None:
        try:
            async with self.sessions() as session:
                row = await session.get(Work, work_id)
        except SQLAlchemyError as e:
            raise StoreError(f"Cannot load work {work_id}") from e
        return WorkRecord.model_validate(row) if row is not None else None

    async def paginate(
        self,
        filters: Sequence[WorkFilter] = (),
        order_by: str = "timestamp",
        order_mode: str = "desc",
        first: int = 10,
        after: Cursor | None = None,
    ) -> list[WorkRecord]:
        """One page of works, keyset-ordered by ``order_by`` then id."""
        column = getattr(Work, order_by)
        descending = order_mode == "desc"
        stmt = select(Work).where(*_where(filters))
        if after is not None:
            value, last_id = after
            if descending:
                stmt = stmt.where(or_(column < value, and_(column == value, Work.id < last_id)))
            else:
                stmt = stmt.where(or_(column > value, and_(column == value, Work.id > last_id)))
        if descending:
            stmt = stmt.order_by(column.desc(), Work.id.desc())
        else:
            stmt = stmt.order_by(column.asc(), Work.id.asc())
        stmt = stmt.limit(first)
        try:
            async with self.sessions() as session:
                rows = (await session.execute(stmt)).scalars().all()
        except SQLAlchemyError as e:
            raise StoreError("Error paginating works") from e
        return [WorkRecord.model_validate(r) for r in rows]

    async def count(self, filters: Sequence[WorkFilter] = ()) -> int:
        stmt = select(func.count()).select_from(Work).where(*_where(filters))
        try:
            async with self.sessions() as session:
                return (await session.execute(stmt)).scalar_one()
        except SQLAlchemyError as e:
            raise StoreError("Error counting works") from e

    async def atomic_update(self, work_id: str, patch: WorkPatch) -> bool:
        """Apply ``patch`` to one work. Returns False if the work does not exist."""
        for attempt in range(1, self._max_attempts + 1):
            try:
                async with self.sessions() as session:
                    row = (await session.execute(select(Work).where(Work.id == work_id))).scalar_one_or_none()
                    if row is None:
                        return False
                    values = patch.apply(row)
                    values["version"] = row.version + 1
                    values["updated_at"] = patch.now
                    result = await session.execute(
                        update(Work)
                        .where(Work.id == work_id, Work.version == row.version)
                        .values(**values)
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount == 1:
                        await session.commit()
                        return True
                    await session.rollback()
            except SQLAlchemyError as e:
                raise StoreError(f"Cannot update work {work_id}") from e
            logger.debug("Version race on work %s (attempt %s/%s)", work_id, attempt, self._max_attempts)
        raise StoreError(f"Work {work_id} kept changing, update abandoned after {self._max_attempts} attempts")

    async def delete_by_records(self, records: Iterable[WorkRecord]) -> int:
        ids = [r.id for r in records]
        if not ids:
            return 0
        try:
            async with self.sessions() as session:
                result = await session.execute(
                    delete(Work).where(Work.id.in_(ids)).execution_options(synchronize_session=False)
                )
                await session.commit()
        except SQLAlchemyError as e:
            raise StoreError(f"Cannot delete {len(ids)} work(s)") from e
        return result.rowcount
