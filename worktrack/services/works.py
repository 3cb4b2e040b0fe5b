"""Work tracking engine.

Owns the lifecycle of connector works: creation, progress reports coming from
concurrent worker processes, completion detection, deletion and export
progress. The engine holds no locks. Completion relies on the atomic counter
transaction of the CounterStore and the version-checked updates of the
WorkStore, whose finalization only applies while the work is not complete.
"""

import logging
from datetime import datetime
from typing import Callable, Optional

from worktrack.core.config import settings
from worktrack.core.errors import OrphanRiskError, StoreError
from worktrack.memory.counters import CounterStore
from worktrack.schemas.work import (
    CompletionState,
    Connector,
    ConnectorType,
    ErrorData,
    ExportProgressFile,
    ExportProgressMeta,
    UserContext,
    WorkFilter,
    WorkMessage,
    WorkRecord,
    WorkStatus,
    utcnow,
)
from worktrack.services.connectors import ConnectorRegistry
from worktrack.services.identifiers import IdentifierSource, UuidWorkIds
from worktrack.services.retention import RetentionScanner
from worktrack.services.work_store import WorkPatch, WorkStore, cursor_of

logger = logging.getLogger(__name__)

DELETE_PAGE_SIZE = 500


def work_to_export_file(work: WorkRecord, now: datetime | None = None) -> ExportProgressFile:
    last_modified = work.updated_at or work.timestamp
    since_min = None
    if last_modified is not None:
        reference = now or utcnow()
        if last_modified.tzinfo is None:
            reference = reference.replace(tzinfo=None)
        since_min = int((reference - last_modified).total_seconds() // 60)
    return ExportProgressFile(
        id=work.id,
        name=work.name or "Unknown",
        size=0,
        last_modified=last_modified,
        last_modified_since_min=since_min,
        upload_status=work.status,
        meta_data=ExportProgressMeta(messages=work.messages, errors=work.errors),
    )


class WorkTrackingEngine:
    def __init__(
        self,
        works: WorkStore,
        counters: CounterStore,
        connectors: ConnectorRegistry,
        ids: IdentifierSource | None = None,
        retention: RetentionScanner | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.works = works
        self.counters = counters
        self.connectors = connectors
        self.ids = ids or UuidWorkIds()
        self.retention = retention or RetentionScanner(works, counters, clock=clock)
        self.clock = clock

    # ---- queries ------------------------------------------------------------

    async def load_work(self, work_id: str) -> Optional[WorkRecord]:
        return await self.works.get_by_id(work_id)

    async def find_all(
        self, first: int = 50, order_by: str = "timestamp", order_mode: str = "desc",
    ) -> list[WorkRecord]:
        return await self.works.paginate(order_by=order_by, order_mode=order_mode, first=first)

    async def works_for_connector(self, connector_id: str, first: int = 10) -> list[WorkRecord]:
        filters = [WorkFilter(key="connector_id", values=[connector_id])]
        return await self.works.paginate(filters, order_by="timestamp", order_mode="desc", first=first)

    async def works_for_source(
        self, source_id: str, first: int = 10, event_type: ConnectorType | None = None, after=None,
    ) -> list[WorkRecord]:
        filters = [WorkFilter(key="event_source_id", values=[source_id])]
        if event_type:
            filters.append(WorkFilter(key="event_type", values=[event_type]))
        return await self.works.paginate(filters, order_by="timestamp", order_mode="desc", first=first, after=after)

    async def connector_for_work(self, work_id: str) -> Optional[Connector]:
        work = await self.works.get_by_id(work_id)
        if work is None:
            return None
        return await self.connectors.get_by_id(work.connector_id)

    async def project_export_progress(self, source_id: str) -> list[ExportProgressFile]:
        works = await self.works_for_source(
            source_id, first=settings.EXPORT_PROGRESS_LIMIT, event_type=ConnectorType.INTERNAL_EXPORT_FILE,
        )
        now = self.clock()
        return [
            work_to_export_file(w, now)
            for w in works
            if w.status != WorkStatus.COMPLETE or len(w.errors) > 0
        ]

    # ---- lifecycle ----------------------------------------------------------

    async def create_work(
        self,
        user: UserContext,
        connector: Connector,
        friendly_name: str,
        source_id: str,
        received_time: datetime | None = None,
    ) -> WorkRecord:
        # 01. Cleanup complete works older than the connector retention
        await self.retention.delete_old_completed_works(connector)
        # 02. Create the counters, then the work itself
        work_id = self.ids.new_work_id()
        work = WorkRecord(
            id=work_id,
            timestamp=self.clock(),
            name=friendly_name,
            event_type=connector.connector_type,
            event_source_id=source_id,
            user_id=user.id,
            connector_id=connector.id,
            status=WorkStatus.IN_PROGRESS if received_time else WorkStatus.WAITING,
            received_time=received_time,
        )
        await self.counters.create(work_id, expected=0, processed=0)
        try:
            await self.works.insert(work)
        except StoreError:
            logger.warning("Work %s insert failed, removing its counters", work_id)
            try:
                await self.counters.delete(work_id)
            except StoreError as e:
                raise OrphanRiskError(f"Counters of work {work_id} left without a work record", work_id) from e
            raise
        logger.info("Created work %s (%s) for connector %s", work_id, friendly_name, connector.id)
        return await self.works.get_by_id(work_id)

    async def add_expectations(self, work_id: str, count: int = 1) -> int:
        return await self.counters.increment_expected(work_id, count)

    async def report_received(self, work_id: str, message: str | None = None) -> str:
        now = self.clock()
        patch = WorkPatch(now=now, status=WorkStatus.IN_PROGRESS, received_time=now)
        if message:
            patch.messages.append(WorkMessage(timestamp=now, message=message))
        if not await self.works.atomic_update(work_id, patch):
            logger.warning("Received report for unknown work %s", work_id)
        return work_id

    async def report_processed(self, work_id: str, message: str | None = None, in_error: bool = False) -> str:
        now = self.clock()
        patch = WorkPatch(now=now, processed_time=now)
        figures = await self.counters.get(work_id)
        if figures is not None and figures.is_complete:
            # Finalization is ignored by the store if the work is already complete
            patch.completed_number = figures.processed
        if message:
            entry = WorkMessage(timestamp=now, message=message)
            (patch.errors if in_error else patch.messages).append(entry)
        if not await self.works.atomic_update(work_id, patch):
            logger.warning("Processed report for unknown work %s", work_id)
        return work_id

    async def report_action(self, work_id: str, error_data: ErrorData | dict | None = None) -> Optional[CompletionState]:
        if isinstance(error_data, dict):
            error_data = ErrorData(**error_data)
        state = await self.counters.increment_and_compare(work_id)
        if state is None:
            return None
        if state.is_complete or error_data:
            now = self.clock()
            patch = WorkPatch(now=now)
            if state.is_complete:
                patch.completed_number = state.total
            if error_data:
                patch.errors.append(WorkMessage(timestamp=now, message=error_data.error, source=error_data.source))
            await self.works.atomic_update(work_id, patch)
        if state.is_complete:
            logger.info("Work %s complete (%s processed)", work_id, state.total)
        return state

    # ---- deletion -----------------------------------------------------------

    async def _delete_work_raw(self, work: WorkRecord) -> str:
        await self.works.delete_by_records([work])
        try:
            await self.counters.delete(work.id)
        except StoreError as e:
            raise OrphanRiskError(f"Work {work.id} deleted but its counters remain", work.id) from e
        return work.id

    async def delete_work(self, work_id: str) -> str:
        work = await self.works.get_by_id(work_id)
        if work is None:
            return work_id
        await self._delete_work_raw(work)
        logger.info("Deleted work %s", work_id)
        return work_id

    async def delete_work_for_source(self, source_id: str) -> int:
        deleted = 0
        after = None
        while True:
            works = await self.works_for_source(source_id, first=DELETE_PAGE_SIZE, after=after)
            if not works:
                break
            after = cursor_of(works[-1], "timestamp")
            for work in works:
                await self._delete_work_raw(work)
                deleted += 1
        logger.info("Deleted %s work(s) of source %s", deleted, source_id)
        return deleted


def build_work_engine(connectors: ConnectorRegistry, ids: IdentifierSource | None = None) -> WorkTrackingEngine:
    """Engine wired to the database and Redis configured in settings."""
    return WorkTrackingEngine(works=WorkStore(), counters=CounterStore(), connectors=connectors, ids=ids)
