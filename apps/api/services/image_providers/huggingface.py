"""Hugging Face inference adapter (FLUX.1-dev text-to-image)."""

from __future__ import annotations

from typing import Any, Optional

import httpx

from config import settings
from services.image_providers.base import BaseImageProvider
from services.image_providers.types import GenerationInput, ImageProviderError, RawImage

HF_INFERENCE_URL = "https://router.huggingface.co/hf-inference/models"


class HuggingFaceImageProvider(BaseImageProvider):
    name = "huggingface"

    def __init__(self, *, api_key: Optional[str] = None, model: Optional[str] = None, **kwargs) -> None:
        super().__init__(**kwargs)
        self.api_key = settings.HUGGINGFACE_API_KEY if api_key is None else api_key
        self.model = model or settings.HUGGINGFACE_IMAGE_MODEL

    def is_configured(self) -> bool:
        return bool((self.api_key or "").strip())

    async def _generate_variation(
        self,
        client: httpx.AsyncClient,
        input: GenerationInput,
        prompt: str,
        index: int,
        context: Any,
    ) -> Optional[RawImage]:
        response = await client.post(
            f"{HF_INFERENCE_URL}/{self.model}",
            headers={"Authorization": f"Bearer {self.api_key}", "Accept": "image/png"},
            json={"inputs": prompt, "parameters": {"num_inference_steps": 5}},
        )
        response.raise_for_status()
        content_type = response.headers.get("content-type", "").split(";", 1)[0]
        if not content_type.startswith("image/"):
            raise ImageProviderError(f"Unexpected response format from Hugging Face: {content_type or 'unknown'}")
        if not response.content:
            return None
        return RawImage(
            data=response.content,
            content_type=content_type,
            metadata=self._metadata(input, index),
        )
