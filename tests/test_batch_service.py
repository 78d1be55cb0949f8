import asyncio

import pytest

from actionqueue.batch.errors import (
    BatchActionNotFoundError, BatchItemLimitExceededError, BatchNotEnabledError, BatchValidationError,
)
from actionqueue.batch.handler import BatchOperationHandler
from actionqueue.batch.bulk_dispatcher import BulkDispatcher
from actionqueue.batch.interfaces import ActionDefinition, InvocationResult, StaticActionCatalog, ValidationResult
from actionqueue.batch.rate_limit import InMemoryRateLimitTracker
from actionqueue.batch.schemas import BATCH_OPERATION_JOB_TYPE, BatchConfig, BatchRequestConfig
from actionqueue.batch.service import BatchService, job_timeout_for, merge_config, parse_bulk_config
from actionqueue.models.job import JobStatus
from actionqueue.scheduling.registry import HandlerRegistry
from actionqueue.workers.worker import Worker

BULK_CONFIG = {
    "endpoint": "/contacts/bulk",
    "http_method": "POST",
    "payload_transform": "csv",
    "response_mapping": {"item_id_field": "id", "success_field": "ok", "error_field": "msg"},
}


def run(coro):
    return asyncio.run(coro)


def make_action(**overrides):
    data = {
        "id": "act-1",
        "slug": "create-contact",
        "integration_id": "int-1",
        "integration_slug": "crm",
        "base_url": "https://api.example.com",
        "batch_enabled": True,
        "input_schema": {"type": "object", "required": ["email"]},
    }
    data.update(overrides)
    return ActionDefinition.model_validate(data)


def require_email(schema, payload):
    if "email" in payload:
        return ValidationResult(valid=True)
    return ValidationResult(valid=False, errors=["email is required"])


def request(*inputs, **config):
    body = {
        "integration_slug": "crm",
        "action_slug": "create-contact",
        "items": [{"input": value} for value in inputs],
    }
    if config:
        body["config"] = config
    return body


@pytest.fixture
def service(queue):
    return BatchService(queue, StaticActionCatalog([make_action()]), require_email)


def test_submit_batch_enqueues_job_with_items(service, queue):
    response = run(service.submit_batch("tenant-1", request({"email": "a@x.io"}, {"email": "b@x.io"})))

    assert response.status == "queued"
    assert response.item_count == 2
    assert response.has_bulk_route is False

    job = queue.storage.get_job(response.job_id)
    assert job.type == BATCH_OPERATION_JOB_TYPE
    assert job.tenant_id == "tenant-1"
    assert job.max_attempts == 1
    assert job.timeout_seconds == 300
    assert job.input["integration_id"] == "int-1"
    assert job.input["config"] == {"concurrency": 5, "delay_ms": 0, "timeout_seconds": 300}
    assert queue.storage.count_items_by_status(job.id).pending == 2


def test_submit_batch_rejects_disabled_action(queue):
    service = BatchService(queue, StaticActionCatalog([make_action(batch_enabled=False)]))
    with pytest.raises(BatchNotEnabledError) as excinfo:
        run(service.submit_batch("tenant-1", request({"email": "a@x.io"})))
    assert excinfo.value.code == "BATCH_NOT_ENABLED"


def test_submit_batch_unknown_action(service, queue):
    body = request({"email": "a@x.io"})
    body["action_slug"] = "delete-contact"
    with pytest.raises(BatchActionNotFoundError) as excinfo:
        run(service.submit_batch("tenant-1", body))
    assert excinfo.value.code == "ACTION_NOT_FOUND"
    assert excinfo.value.details == {"integration_slug": "crm", "action_slug": "delete-contact"}
    assert queue.storage.list_jobs().total_count == 0


def test_submit_batch_enforces_item_limit(queue):
    action = make_action(batch_config={"max_items": 2})
    service = BatchService(queue, StaticActionCatalog([action]))
    with pytest.raises(BatchItemLimitExceededError) as excinfo:
        run(service.submit_batch("tenant-1", request({}, {}, {})))
    assert excinfo.value.details == {"count": 3, "max_items": 2}
    assert queue.storage.list_jobs().total_count == 0


def test_submit_batch_reports_invalid_items(service, queue):
    with pytest.raises(BatchValidationError) as excinfo:
        run(service.submit_batch("tenant-1", request({"email": "a@x.io"}, {"name": "no email"})))

    error = excinfo.value
    assert error.details["valid_count"] == 1
    assert error.details["invalid_count"] == 1
    assert error.details["items"] == [{"index": 1, "errors": ["email is required"]}]
    assert queue.storage.list_jobs().total_count == 0


def test_submit_batch_can_skip_invalid_items(service, queue):
    response = run(service.submit_batch(
        "tenant-1",
        request({"email": "a@x.io"}, {"name": "no email"}, skip_invalid_items=True),
    ))
    assert response.item_count == 1


def test_submit_batch_all_invalid_still_fails(service):
    with pytest.raises(BatchValidationError):
        run(service.submit_batch("tenant-1", request({"name": "x"}, skip_invalid_items=True)))


def test_submit_batch_rejects_malformed_request(service):
    with pytest.raises(BatchValidationError):
        run(service.submit_batch("tenant-1", {"integration_slug": "crm", "action_slug": "create-contact", "items": []}))


def test_submit_batch_without_schema_skips_validation(queue):
    service = BatchService(queue, StaticActionCatalog([make_action(input_schema=None)]), require_email)
    response = run(service.submit_batch("tenant-1", request({"anything": 1})))
    assert response.item_count == 1


def test_submit_batch_detects_bulk_route(queue):
    service = BatchService(queue, StaticActionCatalog([make_action(bulk_config=BULK_CONFIG)]))
    response = run(service.submit_batch("tenant-1", request({"email": "a@x.io"})))

    assert response.has_bulk_route is True
    job = queue.storage.get_job(response.job_id)
    assert job.input["has_bulk_route"] is True
    assert job.input["bulk_config"]["payload_transform"] == "csv"
    assert job.input["bulk_config"]["max_items_per_call"] == 200


def test_parse_bulk_config_ignores_invalid_config():
    assert parse_bulk_config(None) is None
    assert parse_bulk_config({"endpoint": "/x"}) is None
    assert parse_bulk_config(BULK_CONFIG).endpoint == "/contacts/bulk"


def test_merge_config_request_overrides_win():
    batch_config = BatchConfig(default_concurrency=3, default_delay_ms=250)
    assert merge_config(batch_config, None).model_dump() == {
        "concurrency": 3, "delay_ms": 250, "timeout_seconds": 300,
    }
    merged = merge_config(batch_config, BatchRequestConfig(concurrency=20, delay_ms=0, timeout_seconds=60))
    assert merged.model_dump() == {"concurrency": 20, "delay_ms": 0, "timeout_seconds": 60}


def test_job_timeout_scales_with_items():
    assert job_timeout_for(3) == 300
    assert job_timeout_for(100) == 1000
    assert job_timeout_for(1000) == 3600


def test_submitted_batch_runs_to_completion(queue):
    calls = []

    class Gateway:
        async def invoke(self, tenant_id, integration_slug, action_slug, input):
            calls.append(input)
            return InvocationResult(success=True, data={"id": len(calls)})

    service = BatchService(queue, StaticActionCatalog([make_action(input_schema=None)]))
    response = run(service.submit_batch(
        "tenant-1",
        request({"n": 1}, {"n": 2}, {"n": 3}, concurrency=1, delay_ms=0),
    ))

    registry = HandlerRegistry()
    registry.register(
        BATCH_OPERATION_JOB_TYPE,
        BatchOperationHandler(Gateway(), BulkDispatcher(InMemoryRateLimitTracker())),
    )
    run(Worker(1, queue, registry).run_cycle())

    job = queue.storage.get_job(response.job_id)
    assert job.status == JobStatus.COMPLETED
    assert job.output["succeeded"] == 3
    assert job.output["failed"] == 0
    assert job.output["individual_calls_made"] == 3
    assert calls == [{"n": 1}, {"n": 2}, {"n": 3}]
