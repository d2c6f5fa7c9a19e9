"""
AI provider abstraction module.
Provides a unified interface for inference providers.
"""
from reviseflow.ai.factory import get_inference_provider, get_provider_name
from reviseflow.ai.base import InferenceProvider, CompletionResult, ImageResult

__all__ = [
    "get_inference_provider",
    "get_provider_name",
    "InferenceProvider",
    "CompletionResult",
    "ImageResult",
]
