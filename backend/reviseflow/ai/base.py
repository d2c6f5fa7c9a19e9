"""
Base class for inference providers.
All providers must implement this interface so the chat service can call any
provider without knowing which one.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class CompletionResult:
    """Generated text plus the provider's raw usage dict."""
    text: str
    usage: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ImageResult:
    """Hosted image URL returned by the provider."""
    url: Optional[str]
    revised_prompt: Optional[str] = None


class InferenceProvider(ABC):
    """
    Abstract base class for inference providers.

    All providers must implement:
    - respond(): Generate a reply with a hard output-token ceiling
    - generate_image(): Generate one image
    - is_configured(): Report whether credentials are present
    """

    @abstractmethod
    async def respond(
        self,
        model: str,
        input_messages: List[Dict[str, Any]],
        max_output_tokens: int,
    ) -> CompletionResult:
        """
        Generate a reply.

        Args:
            model: Model id
            input_messages: Role/content messages, system message first
            max_output_tokens: Hard ceiling on generated tokens

        Returns:
            CompletionResult with text and usage

        Raises:
            Exception: If the provider call fails
        """
        pass

    @abstractmethod
    async def generate_image(self, model: str, prompt: str, size: str = "1024x1024") -> ImageResult:
        """
        Generate an image.

        Raises:
            Exception: If the provider call fails
        """
        pass

    @abstractmethod
    def is_configured(self) -> bool:
        """
        Check if provider is properly configured (API key present, etc.).

        Returns:
            True if provider can be used, False otherwise
        """
        pass
