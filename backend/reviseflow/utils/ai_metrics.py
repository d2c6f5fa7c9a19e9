"""
Decorator for tracking AI provider metrics.
"""
import time
import functools
import logging

from reviseflow.utils.metrics import (
    ai_provider_requests_total,
    ai_provider_failures_total,
    ai_provider_latency_seconds,
    ai_provider_tokens_total
)
from reviseflow.utils.logging import log_provider_request, log_provider_failure

logger = logging.getLogger(__name__)


def track_ai_provider_metrics_async(provider_name: str, operation: str):
    """
    Async decorator to track AI provider metrics.

    Args:
        provider_name: Provider name (openai)
        operation: Operation name (respond, generate_image)
    """
    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            start_time = time.time()

            # Record request
            ai_provider_requests_total.labels(
                provider=provider_name,
                operation=operation
            ).inc()

            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                # Record failure
                duration = time.time() - start_time
                ai_provider_failures_total.labels(
                    provider=provider_name,
                    operation=operation
                ).inc()
                ai_provider_latency_seconds.labels(
                    provider=provider_name,
                    operation=operation
                ).observe(duration)
                log_provider_failure(
                    logger,
                    provider=provider_name,
                    operation=operation,
                    error=str(e),
                    duration_ms=duration * 1000
                )
                raise

            duration = time.time() - start_time
            ai_provider_latency_seconds.labels(
                provider=provider_name,
                operation=operation
            ).observe(duration)

            # Completion results carry a raw usage dict from the provider
            usage = getattr(result, 'usage', None) or {}
            if isinstance(usage, dict):
                for token_type in ("input_tokens", "output_tokens"):
                    value = usage.get(token_type)
                    if isinstance(value, int) and value > 0:
                        ai_provider_tokens_total.labels(
                            provider=provider_name,
                            operation=operation,
                            token_type=token_type.split("_")[0]
                        ).inc(value)

            log_provider_request(
                logger,
                provider=provider_name,
                operation=operation,
                duration_ms=duration * 1000
            )
            return result

        return wrapper
    return decorator
