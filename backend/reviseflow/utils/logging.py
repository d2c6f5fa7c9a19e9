"""
Production logging utility for structured JSON logging.

Provides event-specific logging functions with mandatory fields:
- timestamp (ISO8601)
- level
- service
- event

Optional fields (included when applicable):
- user_id
- event_id
- model
- duration_ms

Usage:
    from reviseflow.utils.logging import configure_logging, log_quota_reserved

    configure_logging('reviseflow-api', 'INFO')
    log_quota_reserved(logger, user_id='123', model='gpt-4o-mini', ...)
"""
import logging
import sys
from typing import Optional, Dict, Any
from pythonjsonlogger import jsonlogger


class StructuredLogger:
    """Structured JSON logger with mandatory fields."""

    _service_name = None
    _configured = False

    @classmethod
    def configure(cls, service_name: str, log_level: str = "INFO"):
        """
        Configure structured JSON logging for the application.

        Args:
            service_name: Service identifier (reviseflow-api)
            log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        """
        if cls._configured:
            return  # Already configured

        cls._service_name = service_name

        # Remove default handlers
        root_logger = logging.getLogger()
        root_logger.handlers = []

        # Create JSON formatter
        formatter = jsonlogger.JsonFormatter(
            '%(timestamp)s %(level)s %(name)s %(message)s',
            timestamp=True,
            json_ensure_ascii=False
        )

        # Create console handler (for container logs)
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(formatter)

        # Configure root logger
        root_logger.addHandler(handler)
        root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))

        # Add service name to all log records via filter
        class ServiceFilter(logging.Filter):
            def filter(self, record):
                record.service = cls._service_name
                return True

        handler.addFilter(ServiceFilter())
        cls._configured = True


def _build_log_extra(
    event: str,
    user_id: Optional[str] = None,
    event_id: Optional[str] = None,
    duration_ms: Optional[float] = None,
    **kwargs
) -> Dict[str, Any]:
    """
    Build extra fields for structured logging.

    Args:
        event: Event name (mandatory)
        user_id: Optional user ID
        event_id: Optional billing event ID
        duration_ms: Optional duration in milliseconds
        **kwargs: Additional fields

    Returns:
        Dictionary of extra fields
    """
    extra = {
        "event": event,
        **kwargs
    }

    if user_id:
        extra["user_id"] = user_id
    if event_id:
        extra["event_id"] = event_id
    if duration_ms is not None:
        extra["duration_ms"] = round(duration_ms, 2)

    return extra


# Quota event functions

def log_quota_reserved(
    logger: logging.Logger,
    user_id: str,
    model: str,
    period_key: Optional[str],
    reserved_input: int,
    reserved_output: int,
    used: int,
    limit: int,
    degraded: bool = False,
    **kwargs
):
    """Log a successful token reservation."""
    extra = _build_log_extra(
        event="quota_reserved",
        user_id=user_id,
        model=model,
        period_key=period_key,
        reserved_input=reserved_input,
        reserved_output=reserved_output,
        used=used,
        limit=limit,
        degraded=degraded,
        **kwargs
    )
    logger.info(f"Quota reserved: {reserved_input + reserved_output} tokens for {model}", extra=extra)


def log_quota_rejected(
    logger: logging.Logger,
    user_id: str,
    model: str,
    reason: str,
    limit: Optional[int] = None,
    **kwargs
):
    """Log a rejected reservation (quota exhausted or model not entitled)."""
    extra = _build_log_extra(
        event="quota_rejected",
        user_id=user_id,
        model=model,
        reason=reason,
        limit=limit,
        **kwargs
    )
    logger.info(f"Quota rejected for {model}: {reason}", extra=extra)


def log_quota_settled(
    logger: logging.Logger,
    user_id: str,
    model: str,
    delta_input: int,
    delta_output: int,
    used_fallback_totals: bool,
    **kwargs
):
    """Log reconciliation of a reservation against measured usage."""
    extra = _build_log_extra(
        event="quota_settled",
        user_id=user_id,
        model=model,
        delta_input=delta_input,
        delta_output=delta_output,
        used_fallback_totals=used_fallback_totals,
        **kwargs
    )
    logger.info(f"Quota settled for {model}: delta {delta_input}/{delta_output}", extra=extra)


def log_quota_rolled_back(
    logger: logging.Logger,
    user_id: str,
    model: str,
    refunded: int,
    **kwargs
):
    """Log a full reservation refund after a failed provider call."""
    extra = _build_log_extra(
        event="quota_rolled_back",
        user_id=user_id,
        model=model,
        refunded=refunded,
        **kwargs
    )
    logger.info(f"Quota rolled back: {refunded} tokens for {model}", extra=extra)


def log_quota_rollback_failed(
    logger: logging.Logger,
    user_id: str,
    model: str,
    error: str,
    **kwargs
):
    """
    Log a failed rollback. The original error is still returned to the caller;
    this record is what lets an operator repair the counter.
    """
    extra = _build_log_extra(
        event="quota_rollback_failed",
        user_id=user_id,
        model=model,
        error=str(error),
        **kwargs
    )
    logger.error(f"AI quota rollback failed for {model}: {error}", extra=extra)


# Webhook event functions

def log_webhook_event(
    logger: logging.Logger,
    event_id: str,
    event_type: str,
    outcome: str,
    user_id: Optional[str] = None,
    duration_ms: Optional[float] = None,
    error: Optional[str] = None,
    **kwargs
):
    """
    Log the outcome of one webhook delivery.

    Args:
        logger: Logger instance
        event_id: Provider event ID (required)
        event_type: Provider event type (required)
        outcome: processed, duplicate, skipped, ignored, failed
        user_id: Resolved user, if any
        duration_ms: Optional duration in milliseconds
        error: Error message for failed deliveries
        **kwargs: Additional fields
    """
    extra = _build_log_extra(
        event=f"webhook_event_{outcome}",
        user_id=user_id,
        event_id=event_id,
        duration_ms=duration_ms,
        event_type=event_type,
        **kwargs
    )
    message = f"Webhook {event_type} {event_id}: {outcome}"
    if error:
        extra["error"] = str(error)
        message += f" - {error}"
        exc_info = sys.exc_info()
        if exc_info[0] is not None:
            logger.error(message, extra=extra, exc_info=exc_info)
        else:
            logger.error(message, extra=extra)
    else:
        logger.info(message, extra=extra)


# Provider event functions

def log_provider_request(
    logger: logging.Logger,
    provider: str,
    operation: str,
    duration_ms: Optional[float] = None,
    user_id: Optional[str] = None,
    **kwargs
):
    """
    Log AI provider request event.

    Args:
        logger: Logger instance
        provider: Provider name (openai) (required)
        operation: Operation name (respond, generate_image) (required)
        duration_ms: Optional duration in milliseconds
        user_id: Optional user ID
        **kwargs: Additional fields
    """
    extra = _build_log_extra(
        event="provider_request",
        user_id=user_id,
        duration_ms=duration_ms,
        provider=provider,
        operation=operation,
        **kwargs
    )

    logger.info(f"Provider request: {provider}.{operation}", extra=extra)


def log_provider_failure(
    logger: logging.Logger,
    provider: str,
    operation: str,
    error: str,
    duration_ms: Optional[float] = None,
    user_id: Optional[str] = None,
    **kwargs
):
    """
    Log AI provider failure event.

    Stack traces are omitted; provider failures are usually remote errors.
    """
    extra = _build_log_extra(
        event="provider_failure",
        user_id=user_id,
        duration_ms=duration_ms,
        provider=provider,
        operation=operation,
        error=str(error),
        **kwargs
    )

    logger.error(f"Provider failure: {provider}.{operation} - {error}", extra=extra)


# Convenience alias used at application startup
def configure_logging(service_name: str, log_level: str = "INFO"):
    """Configure logging (alias for StructuredLogger.configure)."""
    StructuredLogger.configure(service_name, log_level)
