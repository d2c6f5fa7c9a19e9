"""
Request guards for AI and webhook routes.

AI routes check, in order: declared body size (413), user agent (400),
browser origin (403), per-IP rate (429 with Retry-After). The webhook route
only checks body size.
"""
import logging
from typing import Optional, Set
from urllib.parse import urlsplit

from fastapi import HTTPException, Request, status

from reviseflow.config import settings
from reviseflow.utils.metrics import guard_rejections_total
from reviseflow.utils.rate_limiter import SlidingWindowRateLimiter

logger = logging.getLogger(__name__)

USER_AGENT_MIN_LENGTH = 8
USER_AGENT_MAX_LENGTH = 512

ai_rate_limiter = SlidingWindowRateLimiter(
    limit=settings.ai_rate_limit,
    window_seconds=settings.ai_rate_window_seconds,
)


def _origin_of(url: str) -> Optional[str]:
    """scheme://host[:port] of a URL, or None if it has neither."""
    try:
        parts = urlsplit(url.strip())
    except ValueError:
        return None
    if not parts.scheme or not parts.netloc:
        return None
    return f"{parts.scheme}://{parts.netloc}"


def get_client_ip(request: Request) -> str:
    """First X-Forwarded-For entry, else the peer address."""
    forwarded = request.headers.get("x-forwarded-for", "").split(",")[0].strip()
    if forwarded:
        return forwarded
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def get_origin(request: Request) -> str:
    """Origin header, else the origin of Referer, else empty."""
    origin = request.headers.get("origin", "").strip()
    if origin:
        return origin
    referer = request.headers.get("referer", "").strip()
    if referer:
        return _origin_of(referer) or ""
    return ""


def allowed_origins(request: Request, app_base_url: Optional[str] = None) -> Set[str]:
    """Configured base URL, the request's own host, and plain http for local hosts."""
    allowed = set()
    base = app_base_url if app_base_url is not None else settings.app_base_url
    if base:
        base_origin = _origin_of(base)
        if base_origin:
            allowed.add(base_origin)

    host = request.headers.get("host", "").strip()
    proto = request.headers.get("x-forwarded-proto", "").strip() or "https"
    if host:
        allowed.add(f"{proto}://{host}")
        if host.startswith("localhost") or host.startswith("127.0.0.1"):
            allowed.add(f"http://{host}")
    return allowed


def is_allowed_browser_origin(request: Request, app_base_url: Optional[str] = None) -> bool:
    origin = get_origin(request)
    if not origin:
        return False
    return origin in allowed_origins(request, app_base_url)


def has_sane_user_agent(request: Request) -> bool:
    user_agent = request.headers.get("user-agent", "")
    return USER_AGENT_MIN_LENGTH <= len(user_agent) <= USER_AGENT_MAX_LENGTH


def content_length_ok(request: Request, max_bytes: int) -> bool:
    """False only when a declared Content-Length exceeds max_bytes."""
    raw = request.headers.get("content-length", "")
    try:
        declared = int(raw)
    except ValueError:
        return True
    return declared <= 0 or declared <= max_bytes


def _reject(reason: str, status_code: int, detail: str, headers: dict = None):
    guard_rejections_total.labels(reason=reason).inc()
    raise HTTPException(status_code=status_code, detail=detail, headers=headers)


async def guard_ai_request(request: Request) -> None:
    """
    FastAPI dependency for /api/ai routes.

    Raises:
        HTTPException 413/400/403/429
    """
    if not content_length_ok(request, settings.ai_max_body_bytes):
        _reject(
            "payload_too_large",
            status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            f"Payload too large (max {settings.ai_max_body_bytes} bytes)",
        )

    if not has_sane_user_agent(request):
        _reject("bad_user_agent", status.HTTP_400_BAD_REQUEST, "Invalid client")

    if not is_allowed_browser_origin(request):
        logger.info(f"Rejected browser origin: {get_origin(request)!r}")
        _reject("bad_origin", status.HTTP_403_FORBIDDEN, "Origin not allowed")

    decision = ai_rate_limiter.hit(f"ai:{get_client_ip(request)}")
    if not decision.allowed:
        _reject(
            "rate_limited",
            status.HTTP_429_TOO_MANY_REQUESTS,
            "Too many requests",
            headers={"Retry-After": str(decision.retry_after_seconds)},
        )


async def guard_webhook_request(request: Request) -> None:
    """FastAPI dependency for the billing webhook: body size only."""
    if not content_length_ok(request, settings.webhook_max_body_bytes):
        _reject(
            "payload_too_large",
            status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            "Payload too large",
        )
