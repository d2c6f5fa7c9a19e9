"""
Chat and image orchestration around the quota engine.

Chat flow:
1. Validate attachments (before anything is charged)
2. Reserve estimated input + output cap
3. Call the provider with the reserved cap as the ceiling
4. Settle against measured usage, or roll back if the call failed
5. Report remaining tokens

Image flow consumes one daily slot before the call and gives it back if the
call fails.
"""
import base64
import binascii
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from reviseflow.ai.base import InferenceProvider
from reviseflow.config import settings
from reviseflow.errors import (
    AttachmentError,
    AttachmentNotAllowedError,
    ModelNotEntitledError,
    QuotaExhaustedError,
    UpstreamError,
)
from reviseflow.services.quota_plans import (
    PERIOD_DAILY,
    normalize_role,
    period_key_for,
)
from reviseflow.services.quota_service import CountedUsage, QuotaService, Remaining
from reviseflow.services.token_estimator import CHAT_ROLES
from reviseflow.services.usage_store import UsageStore
from reviseflow.utils.metrics import image_quota_total

logger = logging.getLogger(__name__)

HISTORY_MAX_TURNS = 12
HISTORY_MAX_CHARS = 6000
ATTACHMENT_MAX_BASE64_CHARS = 18_000_000
IMAGE_SIZE = "1024x1024"

_MIME_PATTERN = re.compile(r"^[a-z0-9]+/[a-z0-9.+-]+$")
_DEFAULT_MIME = {"pdf": "application/pdf", "image": "image/png"}
_DEFAULT_FILENAME = {"pdf": "document.pdf", "image": "image.png"}


@dataclass
class ChatOutcome:
    """What the chat endpoint returns."""
    reply: str
    model: str
    usage: CountedUsage
    remaining_tokens: Remaining
    degraded: bool = False


@dataclass
class ImageOutcome:
    """What the image endpoint returns."""
    image_url: str
    model: str
    size: str
    revised_prompt: Optional[str] = None


def _data_url(mime: str, data: str) -> str:
    """Validate a base64 payload and return it as a data URL."""
    mime = (mime or "").strip().lower()
    data = (data or "").strip()
    if not data:
        raise AttachmentError("Attachment data is empty")
    if not _MIME_PATTERN.match(mime):
        raise AttachmentError(f"Invalid attachment mime type: {mime!r}")
    if len(data) > ATTACHMENT_MAX_BASE64_CHARS:
        raise AttachmentError("Attachment is too large")
    try:
        base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError) as e:
        raise AttachmentError("Attachment data is not valid base64") from e
    return f"data:{mime};base64,{data}"


def build_attachment_content(attachments: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """
    Validate attachments and convert them to provider input parts.

    Args:
        attachments: [{kind: "pdf"|"image", filename, mime, base64}]

    Returns:
        List of input_file / input_image content parts

    Raises:
        AttachmentError: If any attachment is malformed
    """
    parts = []
    for attachment in attachments:
        kind = str(attachment.get("kind") or "").strip().lower()
        if kind not in _DEFAULT_MIME:
            raise AttachmentError("Attachment kind must be 'pdf' or 'image'")

        mime = str(attachment.get("mime") or "").strip() or _DEFAULT_MIME[kind]
        data_url = _data_url(mime, str(attachment.get("base64") or ""))

        if kind == "pdf":
            filename = str(attachment.get("filename") or "").strip() or _DEFAULT_FILENAME[kind]
            parts.append({"type": "input_file", "filename": filename, "file_data": data_url})
        else:
            parts.append({"type": "input_image", "image_url": data_url})
    return parts


def build_input_messages(
    system_prompt: str,
    question: str,
    history: Sequence[Dict[str, Any]],
    attachment_parts: Sequence[Dict[str, Any]] = (),
) -> List[Dict[str, Any]]:
    """
    Assemble provider input: system prompt, recent turns, then the question.

    Only the last HISTORY_MAX_TURNS user/assistant turns are kept, each
    truncated to HISTORY_MAX_CHARS. Attachments precede the question text.
    """
    turns = [
        turn for turn in history
        if isinstance(turn, dict) and turn.get("role") in CHAT_ROLES
    ][-HISTORY_MAX_TURNS:]

    messages = [{"role": "system", "content": system_prompt}]
    for turn in turns:
        messages.append({
            "role": turn["role"],
            "content": str(turn.get("content") or "")[:HISTORY_MAX_CHARS],
        })

    content = list(attachment_parts)
    content.append({"type": "input_text", "text": question})
    messages.append({"role": "user", "content": content})
    return messages


class ChatService:
    """Runs provider calls inside the reserve/settle/rollback protocol."""

    def __init__(self, quota: QuotaService, system_prompt: str = None):
        self.quota = quota
        self.system_prompt = system_prompt or settings.ai_system_prompt

    async def chat(
        self,
        db: AsyncSession,
        provider: InferenceProvider,
        user_id: str,
        role: Optional[str],
        timezone: Optional[str],
        question: str,
        history: Sequence[Dict[str, Any]] = (),
        attachments: Sequence[Dict[str, Any]] = (),
        model: Optional[str] = None,
        detailed: bool = False,
    ) -> ChatOutcome:
        """
        Answer a question within the caller's token quota.

        Raises:
            AttachmentError: Malformed or disallowed attachments (nothing charged)
            PlanExcludesModelError, ModelNotEntitledError, QuotaExhaustedError:
                Reservation refused (nothing charged)
            UpstreamError: Provider failed; the reservation was rolled back
        """
        role = normalize_role(role)
        model = self.quota.select_model(role, model)
        self.quota.resolve_plan(role, model)

        if attachments and not self.quota.config.can_attach(role):
            raise AttachmentNotAllowedError("File and image inputs need a Plus or Pro plan")
        attachment_parts = build_attachment_content(attachments)
        input_messages = build_input_messages(self.system_prompt, question, history, attachment_parts)

        reservation = await self.quota.reserve(
            db,
            user_id=user_id,
            role=role,
            timezone=timezone,
            model=model,
            question=question,
            history=history,
            detailed=detailed,
        )

        try:
            completion = await provider.respond(
                model=model,
                input_messages=input_messages,
                max_output_tokens=reservation.output_cap,
            )
        except Exception as e:
            await self.quota.rollback(db, reservation)
            raise UpstreamError(f"AI provider request failed: {str(e)}") from e

        counted = await self.quota.settle(db, reservation, completion.usage, attachments_sent=bool(attachments))
        remaining = await self.quota.remaining(db, reservation, counted)

        return ChatOutcome(
            reply=completion.text,
            model=model,
            usage=counted,
            remaining_tokens=remaining,
            degraded=reservation.degraded,
        )

    async def generate_image(
        self,
        db: AsyncSession,
        provider: InferenceProvider,
        user_id: str,
        role: Optional[str],
        timezone: Optional[str],
        prompt: str,
        model: str = "dall-e-2",
    ) -> ImageOutcome:
        """
        Generate one image within the caller's daily image quota.

        Raises:
            ModelNotEntitledError: Image model not available on the plan
            QuotaExhaustedError: Daily image limit reached
            UpstreamError: Provider failed or returned no URL; the slot is given back
        """
        config = self.quota.config
        if model not in config.image_models:
            raise ModelNotEntitledError(f"Image model {model} is not available")

        role = normalize_role(role)
        limit = config.image_limit_for(role, model)
        day = None

        if limit is not None:
            if limit <= 0:
                image_quota_total.labels(model=model, outcome="not_entitled").inc()
                raise ModelNotEntitledError(f"Your plan does not include {model}")

            day = period_key_for(PERIOD_DAILY, timezone)
            allowed, count = await UsageStore.consume_image(db, user_id, day, model, limit)
            if not allowed:
                image_quota_total.labels(model=model, outcome="exhausted").inc()
                logger.info(
                    f"Daily image limit reached for user {user_id} ({model}: {count}/{limit})",
                    extra={"event": "image_quota_exhausted", "user_id": user_id, "model": model},
                )
                raise QuotaExhaustedError("Daily image limit reached.", limit=limit, used=count)
            image_quota_total.labels(model=model, outcome="consumed").inc()
        else:
            image_quota_total.labels(model=model, outcome="unlimited").inc()

        try:
            result = await provider.generate_image(model=model, prompt=prompt, size=IMAGE_SIZE)
            if not result.url:
                raise ValueError("Image generated but no URL returned")
        except Exception as e:
            if day is not None:
                await self._release_image(db, user_id, day, model)
            raise UpstreamError(f"Image generation failed: {str(e)}") from e

        return ImageOutcome(
            image_url=result.url,
            model=model,
            size=IMAGE_SIZE,
            revised_prompt=result.revised_prompt,
        )

    async def _release_image(self, db: AsyncSession, user_id: str, day: str, model: str) -> None:
        try:
            await db.rollback()
            await UsageStore.release_image(db, user_id, day, model)
            image_quota_total.labels(model=model, outcome="released").inc()
        except Exception as e:
            logger.error(
                f"Image quota release failed for user {user_id}: {e}",
                extra={"event": "image_quota_release_failed", "user_id": user_id, "model": model},
            )

