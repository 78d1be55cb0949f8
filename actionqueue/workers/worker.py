import asyncio
import inspect
import logging
import os
import signal
import threading
import traceback
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field

from ..models.job import Job
from ..models.errors import JobError
from ..scheduling.context import HandlerContext
from ..scheduling.job_queue import JobQueue
from ..scheduling.registry import HandlerRegistry


class JobOutcome(BaseModel):
    id: str
    type: str
    result: str  # succeeded | failed | throttled
    code: Optional[str] = None
    error: Optional[str] = None


class CycleResult(BaseModel):
    """Summary of one worker cycle, for logs and diagnostics."""

    timed_out: int = 0
    claimed: int = 0
    succeeded: int = 0
    failed: int = 0
    throttled: int = 0
    jobs: List[JobOutcome] = Field(default_factory=list)


def format_error(exc: BaseException, code: str) -> Dict[str, Any]:
    return {
        "code": code,
        "message": str(exc) or type(exc).__name__,
        "stack": "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
    }


class Worker:
    def __init__(self, worker_id: int, queue: JobQueue, registry: HandlerRegistry, claim_limit: int = 10):
        self.worker_id = worker_id
        self.queue = queue
        self.registry = registry
        self.claim_limit = claim_limit
        self.running = False
        self._stop_event = threading.Event()
        self.logger = logging.getLogger(f"actionqueue.worker_{worker_id}")

    def stop(self):
        self.running = False
        self._stop_event.set()

    async def run_cycle(self, job_type: Optional[str] = None, limit: Optional[int] = None) -> CycleResult:
        """Reclaim timed-out jobs, claim queued ones, run each through its handler."""
        result = CycleResult()

        # Timeouts first so stuck jobs stop occupying concurrency slots
        result.timed_out = await self.queue.detect_timeouts()

        claimed = await self.queue.claim_next(job_type, limit or self.claim_limit)
        result.claimed = len(claimed)
        if claimed:
            self.logger.info("Claimed %d job(s)", len(claimed))

        for job in claimed:
            outcome = await self.process_job(job)
            result.jobs.append(outcome)
            if outcome.result == "succeeded":
                result.succeeded += 1
            elif outcome.result == "throttled":
                result.throttled += 1
            else:
                result.failed += 1

        return result

    async def process_job(self, job: Job) -> JobOutcome:
        """Process a single claimed job"""
        try:
            config = self.registry.lookup(job.type)

            if config.concurrency_limit > 0:
                # The claim already counts this job as running
                running = await self.queue.count_running(job.type)
                if running > config.concurrency_limit:
                    await self.queue.release(job)
                    self.logger.info(
                        "Released job %s: %d running for type '%s' (limit %d)",
                        job.id, running, job.type, config.concurrency_limit,
                    )
                    return JobOutcome(
                        id=job.id,
                        type=job.type,
                        result="throttled",
                        code="CONCURRENCY_LIMIT_REACHED",
                        error=f"Concurrency limit reached for type '{job.type}' (limit: {config.concurrency_limit})",
                    )

            context = HandlerContext(job=job, queue=self.queue)
            output = config.handler(context)
            if inspect.isawaitable(output):
                output = await output

            await self.queue.complete_job(job.id, output)
            return JobOutcome(id=job.id, type=job.type, result="succeeded")

        except Exception as e:
            code = e.code if isinstance(e, JobError) else "HANDLER_ERROR"
            self.logger.error("Error processing job %s: %s", job.id, e, exc_info=True)
            try:
                await self.queue.fail_job(job.id, format_error(e, code))
            except JobError as record_error:
                # The row is gone (deleted mid-run); the rest of the cycle goes on
                self.logger.error("Could not record failure for job %s: %s", job.id, record_error)
            return JobOutcome(id=job.id, type=job.type, result="failed", code=code, error=str(e))

    async def run_forever(self, interval: float = 60.0, job_type: Optional[str] = None) -> None:
        """Main worker loop: one cycle per interval until stopped."""
        self.running = True
        self._stop_event.clear()
        self.logger.info("Worker %s started (interval=%ss)", self.worker_id, interval)
        while self.running:
            try:
                result = await self.run_cycle(job_type)
                if result.claimed or result.timed_out:
                    self.logger.info(
                        "Cycle done: claimed=%d succeeded=%d failed=%d throttled=%d timed_out=%d",
                        result.claimed, result.succeeded, result.failed, result.throttled, result.timed_out,
                    )
            except Exception as e:
                self.logger.error("Worker error: %s", e, exc_info=True)

            await self._sleep(interval)
            if self._stop_event.is_set():
                break
        self.logger.info("Worker %s stopped", self.worker_id)

    async def _sleep(self, seconds: float) -> None:
        # Short naps so stop() from another thread is noticed quickly
        remaining = seconds
        while remaining > 0 and not self._stop_event.is_set():
            step = min(0.5, remaining)
            await asyncio.sleep(step)
            remaining -= step


class WorkerManager:
    """Runs several workers in threads, each with its own event loop."""

    def __init__(self, queue: JobQueue, registry: HandlerRegistry, claim_limit: int = 10):
        self.queue = queue
        self.registry = registry
        self.claim_limit = claim_limit
        self.workers = {}
        self._lock = threading.Lock()
        self.logger = logging.getLogger("actionqueue.workers")

    def install_signal_handlers(self):
        signal.signal(signal.SIGINT, self.handle_shutdown)
        signal.signal(signal.SIGTERM, self.handle_shutdown)

    def start_workers(self, count: int = 1, interval: float = 60.0, job_type: Optional[str] = None):
        """Start the specified number of worker threads"""
        with self._lock:
            for _ in range(count):
                worker_id = len(self.workers) + 1
                worker = Worker(worker_id, self.queue, self.registry, self.claim_limit)
                thread = threading.Thread(
                    target=asyncio.run,
                    args=(worker.run_forever(interval, job_type),),
                    name=f"actionqueue-worker-{worker_id}",
                    daemon=True,
                )
                self.workers[worker_id] = (worker, thread)
                thread.start()

    def stop_workers(self):
        """Stop all workers gracefully"""
        with self._lock:
            for worker, thread in self.workers.values():
                worker.stop()

            # Let each worker finish the job it is on
            for worker, thread in self.workers.values():
                thread.join()

            self.workers.clear()

    def wait(self):
        """Block until every worker thread has exited."""
        for _, thread in list(self.workers.values()):
            while thread.is_alive():
                thread.join(timeout=1.0)

    def handle_shutdown(self, signum, frame):
        self.logger.info("Shutting down workers gracefully...")
        self.stop_workers()
        os._exit(0)

    def get_active_workers_count(self):
        """Get the count of currently active workers"""
        return len(self.workers)
