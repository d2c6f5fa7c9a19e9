"""
Inference provider factory.
Selects and returns the appropriate provider based on environment configuration.
"""
import logging
from reviseflow.config import settings
from reviseflow.ai.base import InferenceProvider
from reviseflow.ai.openai_provider import OpenAIProvider

logger = logging.getLogger(__name__)

_provider: InferenceProvider = None


def get_provider_name() -> str:
    """
    Get the current provider name as a string.

    Returns:
        Provider name string (default "openai")
    """
    return (settings.ai_provider or "openai").lower()


def get_inference_provider() -> InferenceProvider:
    """
    Factory function (and FastAPI dependency) for the configured provider.

    Provider selection is controlled by AI_PROVIDER environment variable:
    - "openai" → OpenAIProvider (default)

    Returns:
        InferenceProvider instance, created once per process

    Raises:
        ValueError: If provider is misconfigured or invalid
    """
    global _provider
    if _provider is not None:
        return _provider

    provider_name = get_provider_name()

    if provider_name == "openai":
        provider = OpenAIProvider()
        if not provider.is_configured():
            logger.warning("OpenAI provider selected but API key not configured")
            raise ValueError("OpenAI API key not configured. Set OPENAI_API_KEY environment variable.")
        logger.info("Using OpenAI provider")
        _provider = provider
        return provider

    logger.error(f"Unknown AI provider: {provider_name}")
    raise ValueError(
        f"Invalid AI provider: {provider_name}. "
        f"Must be 'openai'"
    )
