import logging
from datetime import datetime, timedelta
from typing import Callable

from worktrack.core.config import settings
from worktrack.memory.counters import CounterStore
from worktrack.schemas.work import Connector, ConnectorType, WorkFilter, WorkStatus, utcnow
from worktrack.services.work_store import WorkStore, cursor_of

logger = logging.getLogger(__name__)


def retention_days(connector: Connector) -> int:
    if connector.connector_type == ConnectorType.INTERNAL_ENRICHMENT:
        return settings.RETENTION_DAYS_ENRICHMENT
    return settings.RETENTION_DAYS_DEFAULT


def retention_horizon(connector: Connector, now: datetime) -> datetime:
    """Last instant of the day ``retention_days`` ago (``now-Nd/d`` rounded up)."""
    day = (now - timedelta(days=retention_days(connector))).replace(hour=0, minute=0, second=0, microsecond=0)
    return day + timedelta(days=1) - timedelta(microseconds=1)


class RetentionScanner:
    """Deletes completed works of a connector once past their retention horizon.

    Pages through candidates newest-completed first with a keyset cursor and
    deletes counters then records for each page, so memory stays bounded by
    the page size whatever the backlog.
    """

    def __init__(self, works: WorkStore, counters: CounterStore,
                 page_size: int | None = None, clock: Callable[[], datetime] = utcnow):
        self.works = works
        self.counters = counters
        self.page_size = page_size or settings.RETENTION_PAGE_SIZE
        self.clock = clock

    async def delete_old_completed_works(self, connector: Connector, log_info: bool = False) -> int:
        horizon = retention_horizon(connector, self.clock())
        filters = [
            WorkFilter(key="connector_id", values=[connector.id]),
            WorkFilter(key="status", values=[WorkStatus.COMPLETE]),
            WorkFilter(key="completed_time", values=[horizon], operator="lte"),
        ]
        total = await self.works.count(filters) if log_info else None
        deleted = 0
        after = None
        while True:
            page = await self.works.paginate(
                filters, order_by="completed_time", order_mode="desc", first=self.page_size, after=after,
            )
            if not page:
                break
            after = cursor_of(page[-1], "completed_time")
            await self.counters.delete([w.id for w in page])
            await self.works.delete_by_records(page)
            deleted += len(page)
            if log_info:
                logger.info("[WORKS] Deleting old works %s: %s/%s", connector.name, deleted, total)
        return deleted
