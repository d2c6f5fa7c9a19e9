"""
OpenAI provider implementation.
Uses the Responses API for chat and the Images API for DALL-E generation.
"""
from typing import Any, Dict, List
import logging
from openai import AsyncOpenAI

from reviseflow.ai.base import InferenceProvider, CompletionResult, ImageResult
from reviseflow.config import settings
from reviseflow.utils.ai_metrics import track_ai_provider_metrics_async

logger = logging.getLogger(__name__)

NO_REPLY = "No response generated."


class OpenAIProvider(InferenceProvider):
    """
    OpenAI inference provider.

    API keys are stored in environment variables and never exposed to clients.
    """

    def __init__(self, api_key: str = None):
        """Initialize OpenAI provider with API key from settings."""
        self.api_key = api_key or settings.openai_api_key

        if self.api_key:
            self.client = AsyncOpenAI(api_key=self.api_key)
        else:
            self.client = None

    def is_configured(self) -> bool:
        """Check if OpenAI API key is configured."""
        return bool(self.api_key)

    @track_ai_provider_metrics_async("openai", "respond")
    async def respond(
        self,
        model: str,
        input_messages: List[Dict[str, Any]],
        max_output_tokens: int,
    ) -> CompletionResult:
        """
        Generate a reply with the Responses API.

        Raises:
            ValueError: If API key not configured
            Exception: If API call fails
        """
        if not self.is_configured() or not self.client:
            raise ValueError("OpenAI API key not configured")

        try:
            response = await self.client.responses.create(
                model=model,
                input=input_messages,
                max_output_tokens=max_output_tokens,
            )
        except Exception as e:
            logger.error(f"OpenAI responses API error: {e}")
            raise Exception(f"Failed to generate OpenAI response: {str(e)}")

        usage = response.usage.model_dump() if response.usage is not None else {}
        text = (response.output_text or "").strip() or NO_REPLY
        return CompletionResult(text=text, usage=usage)

    @track_ai_provider_metrics_async("openai", "generate_image")
    async def generate_image(self, model: str, prompt: str, size: str = "1024x1024") -> ImageResult:
        """
        Generate one image and return its hosted URL.

        Raises:
            ValueError: If API key not configured
            Exception: If API call fails
        """
        if not self.is_configured() or not self.client:
            raise ValueError("OpenAI API key not configured")

        params = {
            "model": model,
            "prompt": prompt,
            "size": size,
            "response_format": "url",
            "n": 1,
        }
        # Only dall-e-3 accepts a quality setting
        if model == "dall-e-3":
            params["quality"] = "standard"

        try:
            response = await self.client.images.generate(**params)
        except Exception as e:
            logger.error(f"OpenAI images API error: {e}")
            raise Exception(f"Failed to generate OpenAI image: {str(e)}")

        if not response.data:
            return ImageResult(url=None)
        image = response.data[0]
        return ImageResult(url=image.url, revised_prompt=getattr(image, "revised_prompt", None))
