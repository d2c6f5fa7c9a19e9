"""
Error taxonomy for the entitlement layer.

Services raise these; routers translate them into HTTP responses using
status_code, code, message and retryable. Nothing here is raised after a
reservation has been committed without the caller first rolling that reservation back.
"""
from typing import Optional


class EntitlementError(Exception):
    """Base class for caller-visible entitlement errors."""

    status_code: int = 400
    code: str = "entitlement_error"

    def __init__(self, message: str, retryable: bool = False):
        self.message = message
        self.retryable = retryable
        super().__init__(message)


class PlanExcludesModelError(EntitlementError):
    """The caller's plan has no configured limit for the requested model."""

    status_code = 403
    code = "plan_excludes_model"


class ModelNotEntitledError(EntitlementError):
    """The model is configured for the plan but with a zero limit."""

    status_code = 403
    code = "model_not_entitled"


class QuotaExhaustedError(EntitlementError):
    """The period budget is used up. Retryable once the period rolls over."""

    status_code = 429
    code = "quota_exhausted"

    def __init__(self, message: str, limit: Optional[int] = None, used: Optional[int] = None):
        super().__init__(message, retryable=True)
        self.limit = limit
        self.used = used


class AttachmentError(EntitlementError):
    """An attachment is malformed or not allowed for the caller's plan."""

    status_code = 400
    code = "invalid_attachment"


class AttachmentNotAllowedError(AttachmentError):
    """The caller's plan cannot send file or image inputs."""

    status_code = 403
    code = "attachment_not_allowed"


class UpstreamError(EntitlementError):
    """The inference provider failed after a reservation was made."""

    status_code = 502
    code = "upstream_failure"
