import asyncio
import logging
from typing import Any, Dict, List, Optional, Union

from ..models.job import EnqueueBatchJob, EnqueueJob, Job, JobStatus
from ..models.errors import JobNotCancellableError, JobNotRetryableError
from ..storage.database import Storage
from ..utils.time import seconds_from_now, utc_now

logger = logging.getLogger(__name__)

BACKOFF_BASE_SECONDS = 10
BACKOFF_MAX_SECONDS = 1800  # 30 minutes

ACTIVE_STATES = (JobStatus.QUEUED, JobStatus.RUNNING)
CANCELLABLE_STATES = ACTIVE_STATES


class JobQueue:
    """Job lifecycle on top of :class:`Storage`: enqueue, claim, progress,
    completion, failure with exponential backoff, cancellation and retry.

    Storage calls are synchronous; they are pushed to a worker thread so the
    event loop only ever waits cooperatively.
    """

    def __init__(
        self,
        storage: Storage,
        backoff_base_seconds: int = BACKOFF_BASE_SECONDS,
        backoff_max_seconds: int = BACKOFF_MAX_SECONDS,
    ):
        self.storage = storage
        self.backoff_base_seconds = backoff_base_seconds
        self.backoff_max_seconds = backoff_max_seconds

    async def _run(self, fn, *args, **kwargs):
        return await asyncio.to_thread(fn, *args, **kwargs)

    def backoff_seconds(self, attempts: int) -> int:
        """Delay before a failed job is eligible again: base * 2^(attempts-1), capped."""
        exponent = max(attempts - 1, 0)
        return int(min(self.backoff_base_seconds * (2 ** exponent), self.backoff_max_seconds))

    # ---------- Enqueue ----------

    async def enqueue(self, params: Union[EnqueueJob, Dict[str, Any]]) -> Job:
        if not isinstance(params, EnqueueJob):
            params = EnqueueJob.model_validate(params)
        job = await self._run(self.storage.add_job, params.model_dump())
        logger.debug("Enqueued job %s (%s)", job.id, job.type)
        return job

    async def enqueue_with_items(self, params: Union[EnqueueBatchJob, Dict[str, Any]]) -> Job:
        if not isinstance(params, EnqueueBatchJob):
            params = EnqueueBatchJob.model_validate(params)
        data = params.model_dump()
        items = data.pop("items")
        job = await self._run(self.storage.add_job_with_items, data, items)
        logger.debug("Enqueued job %s (%s) with %d items", job.id, job.type, len(job.items))
        return job

    # ---------- Claiming ----------

    async def claim_next(self, job_type: Optional[str] = None, limit: int = 10) -> List[Job]:
        return await self._run(self.storage.claim_next, job_type, limit)

    async def count_running(self, job_type: str) -> int:
        return await self._run(self.storage.count_running_by_type, job_type)

    async def release(self, job: Job) -> None:
        """Hand a claimed job back to the queue without counting the claim as an attempt."""
        await self._run(self.storage.update_job, job.id, {
            "status": JobStatus.QUEUED,
            "started_at": None,
            "attempts": max(0, job.attempts - 1),
        })

    # ---------- Progress and outcome ----------

    async def update_progress(self, job_id: str, progress: int, details: Optional[Dict[str, Any]] = None) -> None:
        job = await self._run(self.storage.require_job, job_id)
        updates: Dict[str, Any] = {"progress": max(0, min(100, int(round(progress))))}
        if details is not None:
            merged = dict(job.progress_details or {})
            merged.update(details)
            updates["progress_details"] = merged
        await self._run(self.storage.update_job, job_id, updates)

    async def complete_job(self, job_id: str, output: Optional[Dict[str, Any]] = None) -> bool:
        """Mark a job completed. Returns False if it had already left the
        queued/running states (cancelled or timed out meanwhile)."""
        updates: Dict[str, Any] = {
            "status": JobStatus.COMPLETED,
            "progress": 100,
            "completed_at": utc_now(),
        }
        if output is not None:
            updates["output"] = output
        if not await self._run(self.storage.update_job_if_status, job_id, ACTIVE_STATES, updates):
            logger.warning("Not completing job %s: no longer queued or running", job_id)
            return False
        return True

    async def fail_job(self, job_id: str, error: Dict[str, Any]) -> bool:
        """Record a failure. Re-queues with backoff while attempts remain,
        otherwise fails the job permanently. Returns False if the job had
        already reached a terminal state."""
        job = await self._run(self.storage.require_job, job_id)
        if job.is_terminal:
            logger.warning("Not failing job %s: already %s", job_id, job.status.value)
            return False

        if job.attempts < job.max_attempts:
            delay = self.backoff_seconds(job.attempts)
            updates = {
                "status": JobStatus.QUEUED,
                "error": error,
                "next_run_at": seconds_from_now(delay),
                "started_at": None,
            }
        else:
            delay = None
            updates = {
                "status": JobStatus.FAILED,
                "error": error,
                "completed_at": utc_now(),
            }

        if not await self._run(self.storage.update_job_if_status, job_id, ACTIVE_STATES, updates):
            logger.warning("Not failing job %s: no longer queued or running", job_id)
            return False

        if delay is not None:
            logger.info(
                "Job %s failed (attempt %d/%d), retrying in %ds",
                job_id, job.attempts, job.max_attempts, delay,
            )
        else:
            logger.info("Job %s failed permanently after %d attempts", job_id, job.attempts)
        return True

    async def cancel_job(self, job_id: str) -> Job:
        job = await self._run(self.storage.require_job, job_id)
        if job.status not in CANCELLABLE_STATES:
            raise JobNotCancellableError(job_id, job.status.value)
        return await self._run(self.storage.update_job, job_id, {
            "status": JobStatus.CANCELLED,
            "completed_at": utc_now(),
        })

    async def retry_job(self, job_id: str) -> Job:
        job = await self._run(self.storage.require_job, job_id)
        if job.status != JobStatus.FAILED:
            raise JobNotRetryableError(job_id, job.status.value)
        return await self._run(self.storage.update_job, job_id, {
            "status": JobStatus.QUEUED,
            "attempts": 0,
            "progress": 0,
            "error": None,
            "next_run_at": None,
            "started_at": None,
            "completed_at": None,
        })

    async def detect_timeouts(self) -> int:
        count = await self._run(self.storage.detect_and_fail_timed_out)
        if count:
            logger.warning("Failed %d timed-out job(s)", count)
        return count
