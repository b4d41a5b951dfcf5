"""OpenRouter adapter using the OpenAI-compatible chat API with image output."""

from __future__ import annotations

from typing import Any, List, Optional

import httpx
from openai import AsyncOpenAI

from config import settings
from services.image_providers.base import BaseImageProvider
from services.image_providers.types import GenerationInput, RawImage

OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"


def _image_urls(message: Any) -> List[str]:
    images = getattr(message, "images", None)
    if images is None:
        images = (getattr(message, "model_extra", None) or {}).get("images")
    urls: List[str] = []
    for image in images or []:
        if isinstance(image, dict):
            url = (image.get("image_url") or {}).get("url")
        else:
            url = getattr(getattr(image, "image_url", None), "url", None)
        if url:
            urls.append(url)
    return urls


class OpenRouterImageProvider(BaseImageProvider):
    name = "openrouter"
    max_variations = 4

    def __init__(self, *, api_key: Optional[str] = None, model: Optional[str] = None, **kwargs) -> None:
        super().__init__(**kwargs)
        self.api_key = settings.OPENROUTER_API_KEY if api_key is None else api_key
        self.model = model or settings.OPENROUTER_IMAGE_MODEL

    def is_configured(self) -> bool:
        return bool((self.api_key or "").strip())

    async def _prepare(self, client: httpx.AsyncClient, input: GenerationInput) -> AsyncOpenAI:
        return AsyncOpenAI(
            api_key=self.api_key,
            base_url=OPENROUTER_BASE_URL,
            http_client=client,
            max_retries=0,
            default_headers={
                "HTTP-Referer": settings.APP_URL,
                "X-Title": "RoomAI Image Generation",
            },
        )

    async def _generate_variation(
        self,
        client: httpx.AsyncClient,
        input: GenerationInput,
        prompt: str,
        index: int,
        context: Any,
    ) -> Optional[RawImage]:
        openrouter: AsyncOpenAI = context
        content: List[dict] = [{"type": "text", "text": prompt}]
        if input.reference_image_url and input.reference_image_url.startswith(("http://", "https://", "data:")):
            content.append({"type": "image_url", "image_url": {"url": input.reference_image_url}})

        completion = await openrouter.chat.completions.create(
            model=self.model,
            messages=[{"role": "user", "content": content}],
            extra_body={"modalities": ["image", "text"]},
        )
        if not completion.choices:
            return None
        urls = _image_urls(completion.choices[0].message)
        if not urls:
            return None
        return RawImage(url=urls[0], metadata=self._metadata(input, index))
