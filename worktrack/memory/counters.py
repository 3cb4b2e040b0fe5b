import logging
from typing import Iterable

from redis.exceptions import RedisError

from worktrack.core.config import settings
from worktrack.core.errors import StoreError
from worktrack.memory.redis import get_redis
from worktrack.schemas.work import CompletionState, CounterState, utcnow

logger = logging.getLogger(__name__)

EXPECTED = "import_expected_number"
PROCESSED = "import_processed_number"
LAST_PROCESSED = "import_last_processed"


class CounterStore:
    """Per-work expected/processed figures kept in a Redis hash."""

    def __init__(self, client=None, prefix: str | None = None):
        self._client = client
        self._prefix = prefix or settings.COUNTER_KEY_PREFIX

    @property
    def client(self):
        if self._client is None:
            self._client = get_redis()
        return self._client

    def _key(self, work_id: str) -> str:
        return f"{self._prefix}:{work_id}"

    async def create(self, work_id: str, expected: int = 0, processed: int = 0) -> None:
        try:
            await self.client.hset(self._key(work_id), mapping={
                "internal_id": work_id,
                EXPECTED: expected,
                PROCESSED: processed,
            })
        except RedisError as e:
            raise StoreError(f"Cannot create counters for work {work_id}") from e

    async def get(self, work_id: str) -> CounterState | None:
        try:
            data = await self.client.hgetall(self._key(work_id))
        except RedisError as e:
            raise StoreError(f"Cannot read counters for work {work_id}") from e
        if not data:
            return None
        return CounterState(expected=int(data.get(EXPECTED, 0)), processed=int(data.get(PROCESSED, 0)))

    async def increment_expected(self, work_id: str, count: int = 1) -> int:
        if count <= 0:
            raise ValueError("Expectations can only grow")
        key = self._key(work_id)
        try:
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.exists(key)
                pipe.hincrby(key, EXPECTED, count)
                existed, expected = await pipe.execute()
            if not existed:
                await self.client.delete(key)
        except RedisError as e:
            raise StoreError(f"Cannot update expectations of work {work_id}") from e
        if not existed:
            raise StoreError(f"No counters for work {work_id}")
        return int(expected)

    async def increment_and_compare(self, work_id: str) -> CompletionState | None:
        """Count one processed item and report whether the work is now complete.

        The increment and the read of both figures run in one MULTI/EXEC so
        exactly one caller observes processed == expected. Returns None when
        the work has no counters anymore (deleted meanwhile).
        """
        key = self._key(work_id)
        try:
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.exists(key)
                pipe.hincrby(key, PROCESSED, 1)
                pipe.hset(key, LAST_PROCESSED, utcnow().isoformat())
                pipe.hgetall(key)
                existed, _, _, figures = await pipe.execute()
            if not existed:
                # hincrby recreated a hash for a vanished work
                await self.client.delete(key)
        except RedisError as e:
            raise StoreError(f"Cannot update counters for work {work_id}") from e
        if not existed:
            logger.warning("Processed report for unknown work %s", work_id)
            return None
        processed = int(figures.get(PROCESSED, 0))
        expected = int(figures.get(EXPECTED, 0))
        return CompletionState(is_complete=processed == expected, total=processed)

    async def delete(self, work_ids: str | Iterable[str]) -> int:
        ids = [work_ids] if isinstance(work_ids, str) else list(work_ids)
        if not ids:
            return 0
        try:
            return await self.client.delete(*[self._key(i) for i in ids])
        except RedisError as e:
            raise StoreError(f"Cannot delete counters for {len(ids)} work(s)") from e
