"""Reactive per-integration rate limit pacing.

Budgets are learned from response headers (X-RateLimit-Remaining /
X-RateLimit-Reset and friends) and spent one request at a time. When a
budget hits zero, callers wait for the reset window instead of collecting
429s.

The in-memory tracker is process-local. Deployments with several worker
processes need a shared implementation of :class:`BudgetTracker`.
"""
import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional, Union
from pydantic import BaseModel

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_SECONDS = 60.0


class RateLimitInfo(BaseModel):
    remaining: Optional[int] = None
    limit: Optional[int] = None
    reset: Optional[float] = None  # epoch seconds


@dataclass
class RateLimitBudget:
    remaining: int
    limit: int
    reset_at: float
    updated_at: float


class BudgetTracker(ABC):
    @abstractmethod
    def update_from_headers(self, integration_id: str, info: Union[RateLimitInfo, Dict[str, Any]]) -> None:
        ...

    @abstractmethod
    def has_budget(self, integration_id: str) -> bool:
        ...

    @abstractmethod
    async def acquire_budget(self, integration_id: str) -> None:
        ...

    def get_budget_info(self, integration_id: str) -> Optional[RateLimitBudget]:
        return None

    def clear(self) -> None:
        pass


class InMemoryRateLimitTracker(BudgetTracker):
    def __init__(self, clock: Callable[[], float] = time.time, sleep=asyncio.sleep):
        self._budgets: Dict[str, RateLimitBudget] = {}
        self._clock = clock
        self._sleep = sleep

    def update_from_headers(self, integration_id: str, info: Union[RateLimitInfo, Dict[str, Any]]) -> None:
        if not isinstance(info, RateLimitInfo):
            info = RateLimitInfo.model_validate(info)
        if info.remaining is None and info.reset is None:
            return

        existing = self._budgets.get(integration_id)
        now = self._clock()
        if existing is None:
            existing = RateLimitBudget(
                remaining=0, limit=0, reset_at=now + DEFAULT_WINDOW_SECONDS, updated_at=now
            )
        self._budgets[integration_id] = RateLimitBudget(
            remaining=info.remaining if info.remaining is not None else existing.remaining,
            limit=info.limit if info.limit is not None else existing.limit,
            reset_at=info.reset if info.reset is not None else existing.reset_at,
            updated_at=now,
        )

    def has_budget(self, integration_id: str) -> bool:
        budget = self._budgets.get(integration_id)
        if budget is None:
            return True
        if self._clock() >= budget.reset_at:
            del self._budgets[integration_id]
            return True
        return budget.remaining > 0

    async def acquire_budget(self, integration_id: str) -> None:
        budget = self._budgets.get(integration_id)
        if budget is None:
            return

        now = self._clock()
        if now >= budget.reset_at:
            self._budgets.pop(integration_id, None)
            return

        if budget.remaining > 0:
            budget.remaining -= 1
            return

        wait = budget.reset_at - now
        logger.info("Rate limit exhausted for integration %s, waiting %.2fs", integration_id, wait)
        await self._sleep(wait)
        # The next response repopulates the budget
        self._budgets.pop(integration_id, None)

    def get_budget_info(self, integration_id: str) -> Optional[RateLimitBudget]:
        return self._budgets.get(integration_id)

    def clear(self) -> None:
        self._budgets.clear()


def _to_number(value: Optional[str]) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(str(value).strip())
    except ValueError:
        return None


def _normalize_reset(value: float, now: float) -> float:
    if value > 1e12:  # epoch milliseconds
        return value / 1000.0
    if value < 1e9:  # seconds until reset
        return now + value
    return value


def extract_rate_limit_info(headers: Mapping[str, str], clock: Callable[[], float] = time.time) -> Optional[RateLimitInfo]:
    """Read rate limit headers from a response. Returns None when there are none."""
    lowered = {str(key).lower(): value for key, value in headers.items()}

    def header(*names):
        for name in names:
            if name in lowered:
                return lowered[name]
        return None

    remaining = _to_number(header("x-ratelimit-remaining", "ratelimit-remaining"))
    limit = _to_number(header("x-ratelimit-limit", "ratelimit-limit"))
    reset = _to_number(header("x-ratelimit-reset", "ratelimit-reset"))
    retry_after = _to_number(header("retry-after"))

    if remaining is None and limit is None and reset is None and retry_after is None:
        return None

    now = clock()
    if reset is not None:
        reset = _normalize_reset(reset, now)
    elif retry_after is not None:
        reset = now + retry_after
        if remaining is None:
            remaining = 0

    return RateLimitInfo(
        remaining=int(remaining) if remaining is not None else None,
        limit=int(limit) if limit is not None else None,
        reset=reset,
    )
