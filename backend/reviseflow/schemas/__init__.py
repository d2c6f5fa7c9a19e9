"""
Pydantic schemas for API request/response validation.
"""
from reviseflow.schemas.ai import (
    Attachment,
    ChatRequest,
    ChatResponse,
    UsageSummary,
    ImageRequest,
    ImageResponse,
)
from reviseflow.schemas.entitlement import (
    EntitlementResponse,
    QuotaResponse,
)

__all__ = [
    "Attachment",
    "ChatRequest",
    "ChatResponse",
    "UsageSummary",
    "ImageRequest",
    "ImageResponse",
    "EntitlementResponse",
    "QuotaResponse",
]
