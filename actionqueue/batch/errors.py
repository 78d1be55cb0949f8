from typing import Any, Dict, List, Optional

from .schemas import BatchItemValidationError


class BatchError(Exception):
    """Raised at submission time; nothing has been enqueued."""

    code = "BATCH_OPERATION_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        payload = {"code": self.code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class BatchActionNotFoundError(BatchError):
    code = "ACTION_NOT_FOUND"

    def __init__(self, integration_slug: str, action_slug: str):
        super().__init__(
            f"Action not found: {integration_slug}/{action_slug}",
            {"integration_slug": integration_slug, "action_slug": action_slug},
        )


class BatchNotEnabledError(BatchError):
    code = "BATCH_NOT_ENABLED"

    def __init__(self, action_slug: str):
        super().__init__(f"Batch operations are not enabled for action '{action_slug}'")


class BatchItemLimitExceededError(BatchError):
    code = "BATCH_ITEM_LIMIT_EXCEEDED"

    def __init__(self, count: int, max_items: int):
        super().__init__(
            f"Batch contains {count} items, exceeding the limit of {max_items}",
            {"count": count, "max_items": max_items},
        )


class BatchValidationError(BatchError):
    code = "BATCH_VALIDATION_ERROR"

    def __init__(self, item_errors: List[BatchItemValidationError], valid_count: int, invalid_count: int):
        super().__init__(
            f"{invalid_count} batch item(s) failed validation",
            {
                "valid_count": valid_count,
                "invalid_count": invalid_count,
                "items": [error.model_dump() for error in item_errors],
            },
        )
        self.item_errors = item_errors


class BulkDispatchError(BatchError):
    code = "BULK_DISPATCH_ERROR"

    def __init__(self, message: str, status: Optional[int] = None, body: Optional[str] = None):
        super().__init__(message, {"status": status, "body": body})
        self.status = status
        self.body = body
