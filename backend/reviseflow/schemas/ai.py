"""
Pydantic schemas for AI endpoints.
"""
from pydantic import BaseModel, ConfigDict, Field, AliasChoices
from typing import Any, Dict, List, Literal, Optional, Union


class Attachment(BaseModel):
    """File or image input. Contents are validated before any quota is reserved."""
    kind: str = Field("", description="'pdf' or 'image'")
    filename: Optional[str] = None
    mime: Optional[str] = Field(None, description="MIME type, e.g. application/pdf")
    base64: str = Field("", description="Base64-encoded file contents")


class ChatRequest(BaseModel):
    """Schema for a tutoring question."""
    model_config = ConfigDict(str_strip_whitespace=True, populate_by_name=True)

    question: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("question", "topic"),
        description="Question text ('topic' is accepted as an alias)",
    )
    history: List[Dict[str, Any]] = Field(default_factory=list, description="Prior {role, content} turns")
    attachments: List[Attachment] = Field(default_factory=list)
    detailed: bool = Field(False, description="Ask for a long-form answer")
    model: Optional[str] = Field(None, description="Model id; the plan default is used when omitted")
    timezone: Optional[str] = Field(None, description="IANA timezone for the usage period")


class UsageSummary(BaseModel):
    """Tokens charged for the request and the provider's raw totals."""
    counted_input_tokens: int
    counted_output_tokens: int
    raw_input_tokens: int
    raw_output_tokens: int
    attachment_tokens_excluded: bool
    used_fallback_totals: bool


class ChatResponse(BaseModel):
    """Schema for a tutoring answer."""
    reply: str
    model: str
    usage: UsageSummary
    remaining_tokens: Union[int, str] = Field(..., description="Tokens left this period, or 'unlimited'")


class ImageRequest(BaseModel):
    """Schema for image generation."""
    model_config = ConfigDict(str_strip_whitespace=True)

    prompt: str = Field(..., min_length=1)
    model: Literal["dall-e-2", "dall-e-3"] = "dall-e-2"
    timezone: Optional[str] = None


class ImageResponse(BaseModel):
    """Schema for a generated image."""
    image_url: str
    revised_prompt: Optional[str] = None
    model: str
    size: str
