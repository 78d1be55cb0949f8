import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from ..models.errors import HandlerNotFoundError

logger = logging.getLogger(__name__)

# A handler takes a HandlerContext and returns (or resolves to) an optional
# output dict. Raising marks the attempt as failed.
Handler = Callable[[Any], Union[Optional[Dict[str, Any]], Awaitable[Optional[Dict[str, Any]]]]]


@dataclass
class HandlerConfig:
    handler: Handler
    concurrency_limit: int = 0  # 0 = unlimited


class HandlerRegistry:
    """Maps job types to handlers.

    Built once at start-up and passed to the worker; features register the
    job types they own. Registering a type twice replaces the earlier entry.
    """

    def __init__(self):
        self._handlers: Dict[str, HandlerConfig] = {}

    def register(self, job_type: str, handler: Handler, concurrency_limit: int = 0) -> None:
        if not job_type:
            raise ValueError("job_type is required")
        if not callable(handler):
            raise TypeError(f"Handler for '{job_type}' is not callable")
        if concurrency_limit < 0:
            raise ValueError("concurrency_limit must be >= 0")
        if job_type in self._handlers:
            logger.warning("Duplicate job type registered: %s. Overwriting previous handler.", job_type)
        self._handlers[job_type] = HandlerConfig(handler=handler, concurrency_limit=concurrency_limit)

    def lookup(self, job_type: str) -> HandlerConfig:
        try:
            return self._handlers[job_type]
        except KeyError:
            raise HandlerNotFoundError(job_type) from None

    def types(self) -> List[str]:
        return sorted(self._handlers)

    def __contains__(self, job_type: str) -> bool:
        return job_type in self._handlers

    def __len__(self) -> int:
        return len(self._handlers)
