"""Error taxonomy shared by the job pipeline and the HTTP layer.

Validation and not-found errors surface synchronously to the caller. Upstream and
persistence errors raised inside a background run are captured into the job record
instead of being re-raised.
"""
from __future__ import annotations

from enum import Enum


class PipelineError(Exception):
    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(PipelineError):
    status_code = 400
    code = "VALIDATION_ERROR"


class NotFoundError(PipelineError):
    status_code = 404
    code = "NOT_FOUND"


class ConflictError(PipelineError):
    status_code = 409
    code = "CONFLICT"


class UpstreamCategory(str, Enum):
    AUTH = "auth"
    QUOTA = "quota"
    POLICY = "policy"
    NETWORK = "network"
    MALFORMED = "malformed"
    EMPTY_RESULT = "empty_result"


UPSTREAM_HINTS = {
    UpstreamCategory.AUTH: "authentication failed, check the model API key",
    UpstreamCategory.QUOTA: "model quota exhausted or rate limited",
    UpstreamCategory.POLICY: "request rejected by the content policy, adjust the prompt or image",
    UpstreamCategory.NETWORK: "network error or timeout while calling the model",
    UpstreamCategory.MALFORMED: "model returned a malformed response",
    UpstreamCategory.EMPTY_RESULT: "no images generated",
}


class UpstreamError(PipelineError):
    status_code = 502
    code = "UPSTREAM_ERROR"

    def __init__(self, category: UpstreamCategory, detail: str = ""):
        self.category = category
        self.hint = UPSTREAM_HINTS[category]
        self.detail = detail
        super().__init__(f"{self.hint}: {detail}" if detail else self.hint)


class PersistenceError(PipelineError):
    code = "PERSISTENCE_ERROR"


class OrphanedJobError(PipelineError):
    code = "ORPHANED_JOB"

    def __init__(self, job_id: str, age_s: float):
        self.job_id = job_id
        self.age_s = age_s
        super().__init__(f"job {job_id} has been processing for {int(age_s)}s with no live progress")
