from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field

from ..utils.time import utc_now


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ItemStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


TERMINAL_JOB_STATES = (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


class JobItem(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    job_id: str
    position: int = 0
    status: ItemStatus = ItemStatus.PENDING
    input: Optional[Dict[str, Any]] = None
    output: Optional[Dict[str, Any]] = None
    error: Optional[Dict[str, Any]] = None
    attempts: int = 0
    created_at: datetime = Field(default_factory=utc_now)
    completed_at: Optional[datetime] = None


class Job(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    tenant_id: Optional[str] = None  # system-level jobs have no tenant
    type: str
    status: JobStatus = JobStatus.QUEUED
    input: Optional[Dict[str, Any]] = None
    output: Optional[Dict[str, Any]] = None
    error: Optional[Dict[str, Any]] = None
    progress: int = 0
    progress_details: Optional[Dict[str, Any]] = None
    attempts: int = 0
    max_attempts: int = 3
    timeout_seconds: int = 300
    next_run_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    items: List[JobItem] = Field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATES


class EnqueueJob(BaseModel):
    """Parameters accepted by the queue when creating a job."""

    type: str = Field(min_length=1)
    tenant_id: Optional[str] = None
    input: Optional[Dict[str, Any]] = None
    max_attempts: int = Field(default=3, ge=1, le=10)
    timeout_seconds: int = Field(default=300, ge=30, le=3600)


class EnqueueItem(BaseModel):
    input: Optional[Dict[str, Any]] = None


class EnqueueBatchJob(EnqueueJob):
    items: List[EnqueueItem] = Field(min_length=1, max_length=10000)


class ItemUpdate(BaseModel):
    """Partial update applied to one item; unset fields are left alone."""

    status: Optional[ItemStatus] = None
    output: Optional[Dict[str, Any]] = None
    error: Optional[Dict[str, Any]] = None
    attempts: Optional[int] = None
    completed_at: Optional[datetime] = None

    def changes(self) -> Dict[str, Any]:
        return self.model_dump(exclude_unset=True)


class ItemCounts(BaseModel):
    total: int = 0
    pending: int = 0
    running: int = 0
    completed: int = 0
    failed: int = 0
    skipped: int = 0


class JobPage(BaseModel):
    jobs: List[Job]
    next_cursor: Optional[str] = None
    total_count: int = 0

    @property
    def has_more(self) -> bool:
        return self.next_cursor is not None


class ItemPage(BaseModel):
    items: List[JobItem]
    next_cursor: Optional[str] = None
    total_count: int = 0

    @property
    def has_more(self) -> bool:
        return self.next_cursor is not None
