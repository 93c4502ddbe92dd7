"""
Image generators for covers.

The OpenAI generator uses the Responses API with the image_generation tool,
either as a single request or streamed with partial previews.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Callable

import openai
from openai import AsyncOpenAI

from ..exceptions import ConfigMissingError, UpstreamError

logger = logging.getLogger(__name__)

COVER_TIMEOUT_SECONDS = 150
COVER_SIZE = "1024x1536"
PARTIAL_IMAGES = 2

# (partial_index, base64_png)
PartialCallback = Callable[[int, str], Any]


class ImageGenerator(ABC):
    """Abstract image generation capability."""

    @property
    @abstractmethod
    def name(self) -> str:
        pass

    @abstractmethod
    async def generate(self, prompt: str, on_partial: PartialCallback | None = None) -> str | None:
        """Generate one image and return it base64-encoded, or None if no image came back."""
        pass


def find_image_result(output: list | None) -> str | None:
    """First image_generation_call result in a response output list."""
    for entry in output or []:
        if getattr(entry, "type", None) == "image_generation_call" and getattr(entry, "result", None):
            return entry.result
    return None


class OpenAIImageGenerator(ImageGenerator):
    """Portrait PNG covers via the OpenAI Responses API."""

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-5",
        image_model: str = "gpt-image-1.5",
        timeout: float = COVER_TIMEOUT_SECONDS,
        streaming: bool = False,
        client: AsyncOpenAI | None = None,
    ):
        if not api_key and client is None:
            raise ConfigMissingError("OpenAI API key not configured")
        self.client = client or AsyncOpenAI(api_key=api_key, timeout=timeout, max_retries=0)
        self.model = model
        self.image_model = image_model
        self.streaming = streaming

    @property
    def name(self) -> str:
        return "openai"

    def _tool(self, stream: bool) -> dict:
        tool = {
            "type": "image_generation",
            "model": self.image_model,
            "size": COVER_SIZE,
            "quality": "high",
            "output_format": "png",
        }
        if stream:
            tool["partial_images"] = PARTIAL_IMAGES
        return tool

    def _request(self, prompt: str, stream: bool) -> dict:
        return {
            "model": self.model,
            "input": [
                {"role": "user", "content": [{"type": "input_text", "text": prompt}]}
            ],
            "tool_choice": {"type": "image_generation"},
            "tools": [self._tool(stream)],
        }

    async def generate(self, prompt: str, on_partial: PartialCallback | None = None) -> str | None:
        try:
            if self.streaming or on_partial is not None:
                return await self._generate_streaming(prompt, on_partial)
            response = await self.client.responses.create(**self._request(prompt, stream=False))
        except openai.APITimeoutError as e:
            raise UpstreamError("OpenAI image request timed out") from e
        except openai.APIConnectionError as e:
            raise UpstreamError(f"OpenAI image request network error: {e}") from e
        except openai.APIStatusError as e:
            raise UpstreamError(
                f"OpenAI image request failed with {e.status_code}: {e.message}",
                status=e.status_code,
            ) from e

        result = find_image_result(response.output)
        if not result:
            types = [getattr(entry, "type", None) for entry in response.output or []]
            logger.warning(f"Cover response had no image (output types: {types})")
        return result

    async def _generate_streaming(self, prompt: str, on_partial: PartialCallback | None) -> str | None:
        stream = await self.client.responses.create(**self._request(prompt, stream=True), stream=True)
        final_image = None

        async for event in stream:
            event_type = getattr(event, "type", "")

            if event_type == "response.image_generation_call.partial_image":
                if on_partial is not None:
                    try:
                        on_partial(event.partial_image_index, event.partial_image_b64)
                    except Exception as e:
                        logger.warning(f"Partial cover callback failed: {e}")

            elif event_type == "response.output_item.done":
                item = event.item
                if getattr(item, "type", None) == "image_generation_call" and getattr(item, "result", None):
                    final_image = item.result

            elif event_type == "response.completed":
                final_image = final_image or find_image_result(event.response.output)

            elif event_type in ("response.failed", "error"):
                raise UpstreamError(f"OpenAI image stream failed: {event_type}")

        return final_image
