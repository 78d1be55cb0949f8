import asyncio
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ..models.job import ItemUpdate, Job, JobItem, JobStatus
from ..models.errors import JobNotFoundError
from .job_queue import JobQueue


@dataclass
class HandlerContext:
    """What a handler gets for one claimed job: the job (with its items) and
    helpers bound to that job. Handlers never complete or fail the job
    themselves; the worker does that from the handler's return value."""

    job: Job
    queue: JobQueue

    @property
    def storage(self):
        return self.queue.storage

    async def update_progress(self, progress: int, details: Optional[Dict[str, Any]] = None) -> None:
        await self.queue.update_progress(self.job.id, progress, details)

    async def get_pending_items(self, limit: int = 100) -> List[JobItem]:
        return await asyncio.to_thread(self.storage.find_pending_items, self.job.id, limit)

    async def update_item(self, item_id: str, update: ItemUpdate) -> None:
        await asyncio.to_thread(self.storage.update_item, item_id, update.changes())

    async def batch_update_items(self, updates: Sequence[Tuple[str, ItemUpdate]]) -> None:
        if not updates:
            return
        changes = [(item_id, update.changes()) for item_id, update in updates]
        await asyncio.to_thread(self.storage.batch_update_items, changes)

    async def current_status(self) -> JobStatus:
        job = await asyncio.to_thread(self.storage.get_job, self.job.id)
        if job is None:
            raise JobNotFoundError(self.job.id)
        return job.status
