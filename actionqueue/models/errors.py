from typing import Any, Dict, Optional


class JobError(Exception):
    """Base class for job lifecycle errors. Carries a stable error code."""

    code = "JOB_ERROR"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message}


class JobNotFoundError(JobError):
    code = "JOB_NOT_FOUND"

    def __init__(self, job_id: str):
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class JobItemNotFoundError(JobError):
    code = "JOB_ITEM_NOT_FOUND"

    def __init__(self, item_id: str):
        super().__init__(f"Job item not found: {item_id}")
        self.item_id = item_id


class JobNotCancellableError(JobError):
    code = "JOB_NOT_CANCELLABLE"

    def __init__(self, job_id: str, status: str):
        super().__init__(f"Job {job_id} cannot be cancelled from status '{status}'")
        self.job_id = job_id
        self.status = status


class JobNotRetryableError(JobError):
    code = "JOB_NOT_RETRYABLE"

    def __init__(self, job_id: str, status: str):
        super().__init__(f"Job {job_id} cannot be retried from status '{status}' (only failed jobs)")
        self.job_id = job_id
        self.status = status


class HandlerNotFoundError(JobError):
    code = "HANDLER_NOT_FOUND"

    def __init__(self, job_type: str):
        super().__init__(f"No handler registered for job type '{job_type}'")
        self.job_type = job_type
