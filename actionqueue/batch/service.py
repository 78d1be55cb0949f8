import logging
from typing import Any, Dict, List, Optional, Tuple

from pydantic import ValidationError

from ..scheduling.job_queue import JobQueue
from .errors import (
    BatchActionNotFoundError, BatchItemLimitExceededError, BatchNotEnabledError, BatchValidationError,
)
from .interfaces import ActionResolver, Validator
from .schemas import (
    BATCH_OPERATION_JOB_TYPE,
    DEFAULT_ITEM_TIMEOUT_SECONDS,
    MAX_CONCURRENCY,
    MAX_DELAY_MS,
    BatchConfig,
    BatchItemInput,
    BatchItemValidationError,
    BatchOperationInput,
    BatchOperationResponse,
    BatchRequestConfig,
    BulkConfig,
    ExecutionConfig,
)

logger = logging.getLogger(__name__)

SECONDS_PER_ITEM = 10
MIN_JOB_TIMEOUT_SECONDS = 300
MAX_JOB_TIMEOUT_SECONDS = 3600


def parse_batch_config(raw: Optional[Dict[str, Any]]) -> BatchConfig:
    """Stored batch config, or the defaults when missing or malformed."""
    if not raw:
        return BatchConfig()
    try:
        return BatchConfig.model_validate(raw)
    except ValidationError:
        return BatchConfig()


def parse_bulk_config(raw: Optional[Dict[str, Any]]) -> Optional[BulkConfig]:
    if not raw:
        return None
    try:
        return BulkConfig.model_validate(raw)
    except ValidationError:
        return None


def merge_config(batch_config: BatchConfig, request: Optional[BatchRequestConfig]) -> ExecutionConfig:
    request = request or BatchRequestConfig()
    concurrency = request.concurrency if request.concurrency is not None else batch_config.default_concurrency
    delay_ms = request.delay_ms if request.delay_ms is not None else batch_config.default_delay_ms
    return ExecutionConfig(
        concurrency=min(concurrency, MAX_CONCURRENCY),
        delay_ms=min(delay_ms, MAX_DELAY_MS),
        timeout_seconds=request.timeout_seconds or DEFAULT_ITEM_TIMEOUT_SECONDS,
    )


def job_timeout_for(item_count: int) -> int:
    return min(MAX_JOB_TIMEOUT_SECONDS, max(MIN_JOB_TIMEOUT_SECONDS, item_count * SECONDS_PER_ITEM))


def validate_items(
    items: List[BatchItemInput],
    input_schema: Optional[Dict[str, Any]],
    validator: Optional[Validator],
) -> Tuple[List[BatchItemInput], List[BatchItemValidationError]]:
    """Split items into valid ones and per-index errors."""
    if not input_schema or validator is None:
        return list(items), []

    valid: List[BatchItemInput] = []
    errors: List[BatchItemValidationError] = []
    for index, item in enumerate(items):
        result = validator(input_schema, item.input)
        if result.valid:
            valid.append(item)
        else:
            errors.append(BatchItemValidationError(index=index, errors=result.errors or ["Validation failed"]))
    return valid, errors


class BatchService:
    """Submission side of batch operations: checks the request and enqueues one
    ``batch_operation`` job whose items are the payloads."""

    def __init__(self, queue: JobQueue, actions: ActionResolver, validator: Optional[Validator] = None):
        self.queue = queue
        self.actions = actions
        self.validator = validator

    async def submit_batch(self, tenant_id: str, raw_input: Any) -> BatchOperationResponse:
        try:
            request = BatchOperationInput.model_validate(raw_input)
        except ValidationError as e:
            raise BatchValidationError(
                [BatchItemValidationError(index=0, errors=[error["msg"] for error in e.errors()])],
                valid_count=0,
                invalid_count=1,
            ) from e

        try:
            action = self.actions.get_action(tenant_id, request.integration_slug, request.action_slug)
        except LookupError as e:
            raise BatchActionNotFoundError(request.integration_slug, request.action_slug) from e
        if not action.batch_enabled:
            raise BatchNotEnabledError(request.action_slug)

        batch_config = parse_batch_config(action.batch_config)
        if len(request.items) > batch_config.max_items:
            raise BatchItemLimitExceededError(len(request.items), batch_config.max_items)

        bulk_config = parse_bulk_config(action.bulk_config)
        has_bulk_route = bulk_config is not None

        valid, item_errors = validate_items(request.items, action.input_schema, self.validator)
        skip_invalid = request.config is not None and request.config.skip_invalid_items

        if item_errors and not skip_invalid:
            raise BatchValidationError(item_errors, len(valid), len(item_errors))

        to_enqueue = valid if skip_invalid else request.items
        if not to_enqueue:
            raise BatchValidationError(item_errors, 0, len(item_errors))
        if item_errors:
            logger.info(
                "Skipping %d invalid item(s) for %s/%s",
                len(item_errors), request.integration_slug, request.action_slug,
            )

        job = await self.queue.enqueue_with_items({
            "type": BATCH_OPERATION_JOB_TYPE,
            "tenant_id": tenant_id,
            "input": {
                "integration_slug": request.integration_slug,
                "action_slug": request.action_slug,
                "integration_id": action.integration_id,
                "base_url": action.base_url,
                "config": merge_config(batch_config, request.config).model_dump(),
                "has_bulk_route": has_bulk_route,
                "bulk_config": bulk_config.model_dump(mode="json") if bulk_config else None,
            },
            # Items are tracked one by one; the job itself is not retried
            "max_attempts": 1,
            "timeout_seconds": job_timeout_for(len(to_enqueue)),
            "items": [{"input": item.input} for item in to_enqueue],
        })

        return BatchOperationResponse(
            job_id=job.id,
            item_count=len(job.items),
            has_bulk_route=has_bulk_route,
        )
