import datetime
import logging
from typing import Iterable, List, Optional

from db import ChangeQueueRepository
from models import ChangeQueueEntry, SyncOperation

logger = logging.getLogger(__name__)


def _epoch_ms(moment: Optional[datetime.datetime] = None) -> int:
    moment = moment or datetime.datetime.now()
    return int(moment.timestamp() * 1000)


class ChangeQueue:
    """Best-effort outbound log of local mutations awaiting remote sync.

    Entries are unique per ``(table, record id, operation)``; marking an
    already queued mutation refreshes its timestamp and makes it pending
    again. Marking never raises, so a broken queue cannot undo a write.
    """

    def __init__(self, repo: ChangeQueueRepository, retention_days: int = 7) -> None:
        self.repo = repo
        self.retention_days = retention_days

    async def enqueue(self, table: str, record_id: str, operation: "SyncOperation | str") -> bool:
        try:
            op = SyncOperation(operation)
            await self.repo.upsert(table, str(record_id), op, _epoch_ms())
        except Exception:
            logger.warning(
                "could not queue %s of %s/%s for sync", operation, table, record_id,
                exc_info=True,
            )
            return False
        logger.debug("queued %s of %s/%s", op.value, table, record_id)
        return True

    async def pending(self, limit: Optional[int] = None) -> List[ChangeQueueEntry]:
        return await self.repo.fetch_pending(limit)

    async def pending_count(self) -> int:
        return await self.repo.count_pending()

    async def mark_synced(self, ids: Iterable[int]) -> int:
        return await self.repo.mark_synced(ids)

    async def mark_failed(self, entry_id: int, error: str) -> bool:
        logger.info("sync of queue entry %s failed: %s", entry_id, error)
        return await self.repo.mark_failed(entry_id, error)

    async def purge_synced(self, older_than_days: Optional[int] = None) -> int:
        days = self.retention_days if older_than_days is None else older_than_days
        cutoff = datetime.datetime.now() - datetime.timedelta(days=days)
        removed = await self.repo.purge_synced(_epoch_ms(cutoff))
        if removed:
            logger.info("purged %d synced queue entries older than %d days", removed, days)
        return removed
