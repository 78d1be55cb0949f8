import threading
import time
from datetime import timedelta

import pytest

from actionqueue.models.errors import JobItemNotFoundError, JobNotFoundError
from actionqueue.models.job import ItemStatus, JobStatus
from actionqueue.utils.time import utc_now


def add_jobs(storage, count, job_type="test", **extra):
    jobs = []
    for _ in range(count):
        jobs.append(storage.add_job({"type": job_type, **extra}))
        time.sleep(0.002)  # distinct created_at
    return jobs


def test_storage_add_job(storage):
    job = storage.add_job({"type": "sync", "tenant_id": "t1", "input": {"x": 1}})
    retrieved = storage.get_job(job.id)
    assert retrieved is not None
    assert retrieved.type == "sync"
    assert retrieved.tenant_id == "t1"
    assert retrieved.input == {"x": 1}
    assert retrieved.status == JobStatus.QUEUED
    assert retrieved.attempts == 0
    assert retrieved.progress == 0
    assert retrieved.max_attempts == 3
    assert retrieved.timeout_seconds == 300


def test_storage_add_job_with_items_keeps_order(storage):
    job = storage.add_job_with_items(
        {"type": "batch_operation"},
        [{"input": {"n": n}} for n in range(5)],
    )
    assert [item.position for item in job.items] == [0, 1, 2, 3, 4]
    assert all(item.status == ItemStatus.PENDING for item in job.items)

    pending = storage.find_pending_items(job.id, limit=3)
    assert [item.input["n"] for item in pending] == [0, 1, 2]


def test_storage_update_job(storage):
    job = storage.add_job({"type": "sync"})
    storage.update_job(job.id, {"status": JobStatus.COMPLETED, "output": {"ok": True}})
    retrieved = storage.get_job(job.id)
    assert retrieved.status == JobStatus.COMPLETED
    assert retrieved.output == {"ok": True}


def test_storage_update_rejects_unknown_fields(storage):
    job = storage.add_job({"type": "sync"})
    with pytest.raises(ValueError):
        storage.update_job(job.id, {"type": "other"})


def test_storage_update_missing_job(storage):
    with pytest.raises(JobNotFoundError):
        storage.update_job("missing", {"progress": 5})


def test_update_job_if_status_only_touches_matching_rows(storage):
    job = storage.add_job({"type": "sync"})
    active = (JobStatus.QUEUED, JobStatus.RUNNING)

    assert storage.update_job_if_status(job.id, active, {"status": JobStatus.CANCELLED})
    assert not storage.update_job_if_status(job.id, active, {"status": JobStatus.COMPLETED})
    assert not storage.update_job_if_status("missing", active, {"progress": 5})
    assert storage.get_job(job.id).status == JobStatus.CANCELLED


def test_delete_job_cascades_to_items(storage):
    job = storage.add_job_with_items({"type": "batch_operation"}, [{"input": {}}, {"input": {}}])
    item_id = job.items[0].id

    storage.delete_job(job.id)

    assert storage.get_job(job.id) is None
    assert storage.get_item(item_id) is None
    with pytest.raises(JobNotFoundError):
        storage.delete_job(job.id)


def test_get_job_for_tenant(storage):
    job = storage.add_job({"type": "sync", "tenant_id": "t1"})
    assert storage.get_job_for_tenant(job.id, "t1").id == job.id
    assert storage.get_job_for_tenant(job.id, "t2") is None


def test_claim_next_marks_running_oldest_first(storage):
    jobs = add_jobs(storage, 3)

    claimed = storage.claim_next(limit=2)

    assert [job.id for job in claimed] == [jobs[0].id, jobs[1].id]
    for job in claimed:
        assert job.status == JobStatus.RUNNING
        assert job.attempts == 1
        assert job.started_at is not None
    assert storage.get_job(jobs[2].id).status == JobStatus.QUEUED


def test_claim_next_filters_by_type(storage):
    add_jobs(storage, 2, job_type="a")
    wanted = add_jobs(storage, 1, job_type="b")

    claimed = storage.claim_next("b", limit=10)

    assert [job.id for job in claimed] == [wanted[0].id]


def test_claim_next_skips_jobs_in_backoff(storage):
    job = storage.add_job({"type": "sync"})
    storage.update_job(job.id, {"next_run_at": utc_now() + timedelta(minutes=5)})
    assert storage.claim_next() == []

    storage.update_job(job.id, {"next_run_at": utc_now() - timedelta(seconds=1)})
    assert [claimed.id for claimed in storage.claim_next()] == [job.id]


def test_claim_next_includes_items(storage):
    job = storage.add_job_with_items({"type": "batch_operation"}, [{"input": {"a": 1}}])
    claimed = storage.claim_next()
    assert len(claimed[0].items) == 1
    assert claimed[0].items[0].input == {"a": 1}
    assert claimed[0].id == job.id


def test_concurrent_claims_never_share_a_job(storage):
    add_jobs(storage, 12)
    results = []
    lock = threading.Lock()

    def claimer():
        claimed = storage.claim_next(limit=3)
        with lock:
            results.extend(job.id for job in claimed)

    threads = [threading.Thread(target=claimer) for _ in range(6)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(results) == len(set(results))
    assert len(results) == 12


def test_detect_and_fail_timed_out(storage):
    stale, fresh = add_jobs(storage, 2)
    storage.claim_next(limit=2)
    storage.update_job(stale.id, {"started_at": utc_now() - timedelta(seconds=301)})
    storage.update_job(fresh.id, {"started_at": utc_now() - timedelta(seconds=100)})

    assert storage.detect_and_fail_timed_out() == 1

    timed_out = storage.get_job(stale.id)
    assert timed_out.status == JobStatus.FAILED
    assert timed_out.error["code"] == "JOB_TIMEOUT"
    assert timed_out.completed_at is not None
    assert storage.get_job(fresh.id).status == JobStatus.RUNNING


def test_detect_ignores_queued_jobs(storage):
    job = storage.add_job({"type": "sync"})
    storage.update_job(job.id, {"started_at": utc_now() - timedelta(hours=2)})
    assert storage.detect_and_fail_timed_out() == 0
    assert storage.get_job(job.id).status == JobStatus.QUEUED


def test_list_jobs_paginates_newest_first(storage):
    jobs = add_jobs(storage, 5, tenant_id="t1")
    add_jobs(storage, 2, tenant_id="t2")

    first = storage.list_jobs(tenant_id="t1", limit=2)
    assert [job.id for job in first.jobs] == [jobs[4].id, jobs[3].id]
    assert first.total_count == 5
    assert first.has_more

    second = storage.list_jobs(tenant_id="t1", limit=2, cursor=first.next_cursor)
    assert [job.id for job in second.jobs] == [jobs[2].id, jobs[1].id]

    last = storage.list_jobs(tenant_id="t1", limit=2, cursor=second.next_cursor)
    assert [job.id for job in last.jobs] == [jobs[0].id]
    assert not last.has_more


def test_list_jobs_filters_and_bounds(storage):
    add_jobs(storage, 3, job_type="a")
    add_jobs(storage, 2, job_type="b")

    page = storage.list_jobs(job_type="b", status=JobStatus.QUEUED, limit=500)
    assert len(page.jobs) == 2
    assert page.total_count == 2

    assert len(storage.list_jobs(limit=0).jobs) == 1


def test_list_jobs_unknown_cursor(storage):
    with pytest.raises(JobNotFoundError):
        storage.list_jobs(cursor="missing")


def test_list_items_and_counts(storage):
    job = storage.add_job_with_items({"type": "batch_operation"}, [{"input": {"n": n}} for n in range(5)])
    storage.update_item(job.items[0].id, {"status": ItemStatus.COMPLETED, "output": {"data": 1}})
    storage.batch_update_items([
        (job.items[1].id, {"status": ItemStatus.FAILED, "error": {"message": "bad"}}),
        (job.items[2].id, {"status": ItemStatus.SKIPPED}),
    ])

    counts = storage.count_items_by_status(job.id)
    assert counts.total == 5
    assert counts.completed == 1
    assert counts.failed == 1
    assert counts.skipped == 1
    assert counts.pending == 2

    page = storage.list_items(job.id, limit=3)
    assert [item.position for item in page.items] == [0, 1, 2]
    rest = storage.list_items(job.id, cursor=page.next_cursor, limit=3)
    assert [item.position for item in rest.items] == [3, 4]
    assert rest.next_cursor is None

    failed = storage.list_items(job.id, status=ItemStatus.FAILED)
    assert [item.error for item in failed.items] == [{"message": "bad"}]


def test_batch_update_items_is_all_or_nothing(storage):
    job = storage.add_job_with_items({"type": "batch_operation"}, [{"input": {}}])
    with pytest.raises(JobItemNotFoundError):
        storage.batch_update_items([
            (job.items[0].id, {"status": ItemStatus.COMPLETED}),
            ("missing", {"status": ItemStatus.COMPLETED}),
        ])
    assert storage.get_item(job.items[0].id).status == ItemStatus.PENDING


def test_update_missing_item(storage):
    with pytest.raises(JobItemNotFoundError):
        storage.update_item("missing", {"status": ItemStatus.COMPLETED})


def test_count_jobs_by_status(storage):
    add_jobs(storage, 3)
    storage.claim_next(limit=1)
    counts = storage.count_jobs_by_status()
    assert counts[JobStatus.QUEUED] == 2
    assert counts[JobStatus.RUNNING] == 1
    assert counts[JobStatus.CANCELLED] == 0
    assert storage.count_running_by_type("test") == 1
