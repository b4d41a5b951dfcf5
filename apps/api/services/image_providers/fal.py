"""Fal.ai adapter (FLUX schnell over the synchronous fal.run endpoint)."""

from __future__ import annotations

from typing import Any, Optional

import httpx

from config import settings
from services.image_providers.base import BaseImageProvider
from services.image_providers.types import GenerationInput, RawImage

FAL_RUN_URL = "https://fal.run"


class FalImageProvider(BaseImageProvider):
    name = "fal"

    def __init__(self, *, api_key: Optional[str] = None, model: Optional[str] = None, **kwargs) -> None:
        super().__init__(**kwargs)
        self.api_key = settings.FAL_KEY if api_key is None else api_key
        self.model = model or settings.FAL_MODEL

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
            f"{FAL_RUN_URL}/{self.model}",
            headers={"Authorization": f"Key {self.api_key}"},
            json={
                "prompt": prompt,
                "image_size": "square_hd",
                "num_inference_steps": 4,
                "num_images": 1,
                "enable_safety_checker": True,
            },
        )
        response.raise_for_status()
        payload = response.json()
        images = payload.get("images") or []
        if not images or not images[0].get("url"):
            return None
        first = images[0]
        return RawImage(
            url=first["url"],
            content_type=first.get("content_type") or "image/jpeg",
            metadata=self._metadata(input, index, seed=payload.get("seed")),
        )
