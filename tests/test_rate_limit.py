import asyncio
import time

from actionqueue.batch.rate_limit import InMemoryRateLimitTracker, RateLimitInfo, extract_rate_limit_info


class FakeClock:
    def __init__(self, now=1_700_000_000.0):
        self.now = now
        self.sleeps = []

    def __call__(self):
        return self.now

    async def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


def test_no_budget_is_optimistic():
    tracker = InMemoryRateLimitTracker()
    assert tracker.has_budget("int-1")
    asyncio.run(tracker.acquire_budget("int-1"))
    assert tracker.get_budget_info("int-1") is None


def test_update_without_remaining_or_reset_is_ignored():
    tracker = InMemoryRateLimitTracker()
    tracker.update_from_headers("int-1", {"limit": 100})
    assert tracker.get_budget_info("int-1") is None


def test_update_keeps_previous_values():
    clock = FakeClock()
    tracker = InMemoryRateLimitTracker(clock=clock)
    tracker.update_from_headers("int-1", RateLimitInfo(remaining=10, limit=100, reset=clock.now + 30))
    tracker.update_from_headers("int-1", {"remaining": 9})

    budget = tracker.get_budget_info("int-1")
    assert budget.remaining == 9
    assert budget.limit == 100
    assert budget.reset_at == clock.now + 30


def test_acquire_decrements_remaining():
    clock = FakeClock()
    tracker = InMemoryRateLimitTracker(clock=clock, sleep=clock.sleep)
    tracker.update_from_headers("int-1", {"remaining": 2, "reset": clock.now + 60})

    asyncio.run(tracker.acquire_budget("int-1"))
    asyncio.run(tracker.acquire_budget("int-1"))

    assert tracker.get_budget_info("int-1").remaining == 0
    assert not tracker.has_budget("int-1")
    assert clock.sleeps == []


def test_exhausted_budget_waits_for_reset_then_clears():
    clock = FakeClock()
    tracker = InMemoryRateLimitTracker(clock=clock, sleep=clock.sleep)
    tracker.update_from_headers("int-1", {"remaining": 0, "reset": clock.now + 12})

    asyncio.run(tracker.acquire_budget("int-1"))

    assert clock.sleeps == [12]
    assert tracker.get_budget_info("int-1") is None


def test_stale_window_is_discarded():
    clock = FakeClock()
    tracker = InMemoryRateLimitTracker(clock=clock, sleep=clock.sleep)
    tracker.update_from_headers("int-1", {"remaining": 0, "reset": clock.now + 5})
    clock.now += 6

    assert tracker.has_budget("int-1")
    assert tracker.get_budget_info("int-1") is None


def test_acquire_blocks_until_reset_in_real_time():
    tracker = InMemoryRateLimitTracker()
    tracker.update_from_headers("int-1", {"remaining": 0, "reset": time.time() + 1.0})

    started = time.monotonic()
    asyncio.run(tracker.acquire_budget("int-1"))
    assert time.monotonic() - started >= 0.9


def test_acquire_is_prompt_once_reset_has_passed():
    tracker = InMemoryRateLimitTracker()
    tracker.update_from_headers("int-1", {"remaining": 0, "reset": time.time() + 0.2})
    time.sleep(0.25)

    started = time.monotonic()
    asyncio.run(tracker.acquire_budget("int-1"))
    assert time.monotonic() - started < 0.1


def test_clear():
    tracker = InMemoryRateLimitTracker()
    tracker.update_from_headers("int-1", {"remaining": 3, "reset": time.time() + 60})
    tracker.clear()
    assert tracker.get_budget_info("int-1") is None


def test_extract_rate_limit_info_reads_x_headers():
    clock = FakeClock()
    info = extract_rate_limit_info(
        {"X-RateLimit-Remaining": "4", "X-RateLimit-Limit": "100", "X-RateLimit-Reset": "30"},
        clock=clock,
    )
    assert info.remaining == 4
    assert info.limit == 100
    assert info.reset == clock.now + 30


def test_extract_rate_limit_info_normalises_reset():
    clock = FakeClock()
    epoch = extract_rate_limit_info({"RateLimit-Reset": "1700000100"}, clock=clock)
    assert epoch.reset == 1_700_000_100
    millis = extract_rate_limit_info({"x-ratelimit-reset": "1700000100000"}, clock=clock)
    assert millis.reset == 1_700_000_100


def test_extract_rate_limit_info_retry_after():
    clock = FakeClock()
    info = extract_rate_limit_info({"Retry-After": "7"}, clock=clock)
    assert info.remaining == 0
    assert info.reset == clock.now + 7


def test_extract_rate_limit_info_without_headers():
    assert extract_rate_limit_info({"Content-Type": "application/json"}) is None
