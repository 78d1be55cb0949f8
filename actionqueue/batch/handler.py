"""Handler for ``batch_operation`` jobs.

Two processing paths:

* bulk: the action has a bulk endpoint, items go out in chunks through
  :class:`BulkDispatcher`;
* individual: one gateway call per item, bounded concurrency, optional
  pacing delay, cancellation checked between chunks.

Item failures are recorded on the items. An unexpected error skips the
remaining pending items; the job itself still completes with the summary.
"""
import asyncio
import logging
from typing import Any, Dict, Optional

from pydantic import ValidationError

from ..models.job import ItemStatus, ItemUpdate, JobStatus
from ..scheduling.context import HandlerContext
from ..utils.semaphore import Semaphore
from ..utils.time import utc_now
from .bulk_dispatcher import BulkDispatchContext, BulkDispatcher, BulkItem
from .interfaces import ActionGateway, Credential, CredentialResolver
from .schemas import BatchJobInput, BatchResultSummary, BulkConfig, BulkOutcome

logger = logging.getLogger(__name__)

ITEM_FETCH_CHUNK_SIZE = 50
MAX_ITEMS_PER_JOB = 10000


def auth_headers_for(credential: Optional[Credential]) -> Dict[str, str]:
    if credential is None:
        return {}
    data = credential.data
    if credential.credential_type == "api_key":
        return {data.get("header_name") or "Authorization": data.get("api_key") or ""}
    if credential.credential_type in ("oauth2_tokens", "bearer"):
        return {"Authorization": f"Bearer {data.get('access_token') or ''}"}
    return {}


class BatchOperationHandler:
    def __init__(
        self,
        gateway: ActionGateway,
        dispatcher: BulkDispatcher,
        credentials: Optional[CredentialResolver] = None,
    ):
        self.gateway = gateway
        self.dispatcher = dispatcher
        self.credentials = credentials

    async def __call__(self, ctx: HandlerContext) -> Dict[str, Any]:
        try:
            job_input = BatchJobInput.model_validate(ctx.job.input or {})
        except ValidationError:
            # Nothing can run without a valid input; leave no item pending
            await self.skip_pending(ctx)
            raise

        summary = BatchResultSummary()
        await ctx.update_progress(5, {"stage": "starting", "total_items": len(ctx.job.items)})

        try:
            if job_input.has_bulk_route:
                await self.process_bulk(ctx, job_input, summary)
            else:
                await self.process_individual(ctx, job_input, summary)
        except Exception:
            logger.exception("Error during batch processing of job %s", ctx.job.id)
            summary.skipped += await self.skip_pending(ctx)

        await ctx.update_progress(100, {"stage": "completed", **summary.model_dump()})
        return summary.model_dump()

    async def skip_pending(self, ctx: HandlerContext) -> int:
        skipped = 0
        while True:
            remaining = await ctx.get_pending_items(MAX_ITEMS_PER_JOB)
            if not remaining:
                return skipped
            now = utc_now()
            await ctx.batch_update_items([
                (item.id, ItemUpdate(status=ItemStatus.SKIPPED, completed_at=now))
                for item in remaining
            ])
            skipped += len(remaining)

    # ---------- Bulk path ----------

    async def resolve_bulk_context(self, tenant_id: Optional[str], job_input: BatchJobInput) -> BulkDispatchContext:
        headers: Dict[str, str] = {}
        if self.credentials is not None:
            try:
                credential = await self.credentials.get_decrypted_credential(tenant_id, job_input.integration_id)
                headers = auth_headers_for(credential)
            except Exception as e:
                # The bulk call's own failure will surface a real auth problem
                logger.warning(
                    "Credential lookup failed for integration %s, continuing without auth: %s",
                    job_input.integration_id, e,
                )
        return BulkDispatchContext(
            integration_id=job_input.integration_id,
            base_url=job_input.base_url,
            auth_headers=headers,
        )

    async def process_bulk(self, ctx: HandlerContext, job_input: BatchJobInput, summary: BatchResultSummary) -> None:
        try:
            bulk_config = BulkConfig.model_validate(job_input.bulk_config or {})
        except ValidationError:
            logger.warning("Invalid bulk config for job %s, falling back to individual path", ctx.job.id)
            await self.process_individual(ctx, job_input, summary)
            return

        bulk_context = await self.resolve_bulk_context(ctx.job.tenant_id, job_input)

        pending = await ctx.get_pending_items(MAX_ITEMS_PER_JOB)
        items = [BulkItem(item_id=item.id, input=item.input or {}) for item in pending]
        total = len(items)
        await ctx.update_progress(10, {"stage": "bulk_dispatch", "item_count": total})

        processed = 0

        async def record_chunk(results):
            nonlocal processed
            summary.bulk_calls_made += 1
            now = utc_now()
            updates = []
            for result in results:
                if result.success:
                    summary.succeeded += 1
                    if result.outcome == BulkOutcome.MAPPING_UNRESOLVED:
                        summary.unresolved += 1
                    updates.append((result.item_id, ItemUpdate(
                        status=ItemStatus.COMPLETED, output=result.output, completed_at=now,
                    )))
                else:
                    summary.failed += 1
                    updates.append((result.item_id, ItemUpdate(
                        status=ItemStatus.FAILED, error={"message": result.error}, completed_at=now,
                    )))
            await ctx.batch_update_items(updates)

            processed += len(results)
            await ctx.update_progress(min(95, 10 + round(processed / total * 85)), {
                "stage": "bulk_dispatch",
                "processed": processed,
                "total": total,
                **summary.model_dump(),
            })

        await self.dispatcher.dispatch(items, bulk_config, bulk_context, on_chunk=record_chunk)

    # ---------- Individual path ----------

    async def process_individual(self, ctx: HandlerContext, job_input: BatchJobInput, summary: BatchResultSummary) -> None:
        job = ctx.job
        config = job_input.config
        total = len(job.items)
        processed = 0
        started = 0

        async def run_item(item, semaphore):
            nonlocal processed, started
            await semaphore.acquire()
            try:
                is_first = started == 0
                started += 1
                if config.delay_ms > 0 and not is_first:
                    await asyncio.sleep(config.delay_ms / 1000.0)

                result = await self.gateway.invoke(
                    job.tenant_id, job_input.integration_slug, job_input.action_slug, item.input or {}
                )
                summary.individual_calls_made += 1

                if result.success:
                    await ctx.update_item(item.id, ItemUpdate(
                        status=ItemStatus.COMPLETED, output={"data": result.data}, completed_at=utc_now(),
                    ))
                    summary.succeeded += 1
                else:
                    error = result.error.model_dump() if result.error else {"message": "Invocation failed"}
                    await ctx.update_item(item.id, ItemUpdate(
                        status=ItemStatus.FAILED, error=error, completed_at=utc_now(),
                    ))
                    summary.failed += 1
            except Exception as e:
                await ctx.update_item(item.id, ItemUpdate(
                    status=ItemStatus.FAILED, error={"message": str(e) or "Unknown error"}, completed_at=utc_now(),
                ))
                summary.failed += 1
            finally:
                semaphore.release()
                processed += 1

        while True:
            if await ctx.current_status() == JobStatus.CANCELLED:
                skipped = await self.skip_pending(ctx)
                summary.skipped += skipped
                logger.info("Job %s cancelled, skipped %d pending item(s)", job.id, skipped)
                break

            pending = await ctx.get_pending_items(ITEM_FETCH_CHUNK_SIZE)
            if not pending:
                break

            semaphore = Semaphore(config.concurrency)
            await asyncio.gather(*(run_item(item, semaphore) for item in pending))

            progress = min(95, round(processed / total * 100)) if total else 95
            await ctx.update_progress(progress, {
                "stage": "processing",
                "processed": processed,
                "total": total,
                **summary.model_dump(),
            })
