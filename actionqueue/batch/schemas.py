from enum import Enum
from typing import Any, Dict, List, Literal, Optional
from pydantic import BaseModel, Field

BATCH_OPERATION_JOB_TYPE = "batch_operation"

DEFAULT_MAX_ITEMS = 1000
DEFAULT_CONCURRENCY = 5
DEFAULT_DELAY_MS = 0
MAX_CONCURRENCY = 20
MAX_DELAY_MS = 5000
DEFAULT_ITEM_TIMEOUT_SECONDS = 300


class BatchConfig(BaseModel):
    """Per-action batch behaviour stored with the action definition."""

    max_items: int = Field(default=DEFAULT_MAX_ITEMS, ge=1, le=10000)
    default_concurrency: int = Field(default=DEFAULT_CONCURRENCY, ge=1, le=MAX_CONCURRENCY)
    default_delay_ms: int = Field(default=DEFAULT_DELAY_MS, ge=0, le=MAX_DELAY_MS)
    tool_description: Optional[str] = Field(default=None, max_length=2000)


class BulkResponseMapping(BaseModel):
    item_id_field: str = Field(min_length=1)
    success_field: str = Field(min_length=1)
    error_field: str = Field(min_length=1)


class PayloadTransform(str, Enum):
    ARRAY = "array"
    CSV = "csv"
    NDJSON = "ndjson"


class BulkConfig(BaseModel):
    """Optional bulk endpoint for an action: N items in one HTTP call."""

    endpoint: str = Field(min_length=1)
    http_method: Literal["POST", "PUT", "PATCH"]
    payload_transform: PayloadTransform
    wrapper_key: Optional[str] = None
    max_items_per_call: int = Field(default=200, ge=1, le=10000)
    response_mapping: BulkResponseMapping


class ExecutionConfig(BaseModel):
    """Merged per-job settings for the individual path."""

    concurrency: int = Field(default=DEFAULT_CONCURRENCY, ge=1, le=MAX_CONCURRENCY)
    delay_ms: int = Field(default=DEFAULT_DELAY_MS, ge=0, le=MAX_DELAY_MS)
    timeout_seconds: int = DEFAULT_ITEM_TIMEOUT_SECONDS


class BatchJobInput(BaseModel):
    """Shape of ``job.input`` for batch_operation jobs."""

    integration_slug: str
    action_slug: str
    integration_id: str
    base_url: str = ""
    config: ExecutionConfig = Field(default_factory=ExecutionConfig)
    has_bulk_route: bool = False
    bulk_config: Optional[Dict[str, Any]] = None


# ---------- Submission ----------

class BatchItemInput(BaseModel):
    input: Dict[str, Any]


class BatchRequestConfig(BaseModel):
    concurrency: Optional[int] = Field(default=None, ge=1, le=MAX_CONCURRENCY)
    delay_ms: Optional[int] = Field(default=None, ge=0, le=MAX_DELAY_MS)
    timeout_seconds: Optional[int] = Field(default=None, ge=30, le=3600)
    skip_invalid_items: bool = False


class BatchOperationInput(BaseModel):
    integration_slug: str = Field(min_length=1)
    action_slug: str = Field(min_length=1)
    items: List[BatchItemInput] = Field(min_length=1, max_length=10000)
    config: Optional[BatchRequestConfig] = None


class BatchOperationResponse(BaseModel):
    job_id: str
    status: Literal["queued"] = "queued"
    item_count: int
    has_bulk_route: bool


class BatchItemValidationError(BaseModel):
    index: int
    errors: List[str]


# ---------- Results ----------

class BatchResultSummary(BaseModel):
    """Stored as the job output of a batch_operation job."""

    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    unresolved: int = 0  # bulk items whose response shape was not recognized
    bulk_calls_made: int = 0
    individual_calls_made: int = 0


class BulkOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    MAPPING_UNRESOLVED = "mapping_unresolved"


class BulkItemResult(BaseModel):
    item_id: str
    outcome: BulkOutcome
    output: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.outcome in (BulkOutcome.SUCCEEDED, BulkOutcome.MAPPING_UNRESOLVED)
