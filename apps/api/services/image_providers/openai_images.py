"""OpenAI Images adapter (DALL-E 3)."""

from __future__ import annotations

from typing import Any, Optional

import httpx
from openai import AsyncOpenAI

from config import settings
from services.image_providers.base import BaseImageProvider
from services.image_providers.prompts import room_name, sanitize_instructions, style_description
from services.image_providers.types import GenerationInput, RawImage


def _usable_key(api_key: str) -> bool:
    key = (api_key or "").strip()
    return bool(key) and "your_" not in key and key != "test-key"


class OpenAIImageProvider(BaseImageProvider):
    name = "openai"
    max_variations = 4

    def __init__(self, *, api_key: Optional[str] = None, model: Optional[str] = None, **kwargs) -> None:
        super().__init__(**kwargs)
        self.api_key = settings.OPENAI_API_KEY if api_key is None else api_key
        self.model = model or settings.OPENAI_IMAGE_MODEL

    def is_configured(self) -> bool:
        return _usable_key(self.api_key)

    def build_prompt(self, input: GenerationInput) -> str:
        # DALL-E rewrites long prompts; keep it short and style-led.
        prompt = (
            f"A photorealistic {room_name(input.room_type)} interior design in "
            f"{style_description(input.style)} style.\n"
            "Professional architectural photography, perfect lighting, high-end furniture and decor,\n"
            "8k resolution, interior design magazine quality."
        )
        instructions = sanitize_instructions(input.instructions)
        if instructions:
            prompt += f"\n{instructions}"
        return prompt

    async def _prepare(self, client: httpx.AsyncClient, input: GenerationInput) -> AsyncOpenAI:
        return AsyncOpenAI(api_key=self.api_key, http_client=client, max_retries=0)

    async def _generate_variation(
        self,
        client: httpx.AsyncClient,
        input: GenerationInput,
        prompt: str,
        index: int,
        context: Any,
    ) -> Optional[RawImage]:
        openai_client: AsyncOpenAI = context
        response = await openai_client.images.generate(
            model=self.model,
            prompt=prompt,
            n=1,
            size="1024x1024",
            quality="hd",
            style="natural",
        )
        if not response.data:
            return None
        first = response.data[0]
        if first.url:
            return RawImage(url=first.url, metadata=self._metadata(input, index))
        if first.b64_json:
            return RawImage(
                url=f"data:image/png;base64,{first.b64_json}",
                metadata=self._metadata(input, index),
            )
        return None
