"""Replicate adapter (synchronous predictions with ``Prefer: wait``)."""

from __future__ import annotations

from typing import Any, Optional

import httpx

from config import settings
from services.image_providers.base import BaseImageProvider
from services.image_providers.types import GenerationInput, ImageProviderError, RawImage

REPLICATE_API_URL = "https://api.replicate.com/v1"


class ReplicateImageProvider(BaseImageProvider):
    name = "replicate"

    def __init__(self, *, api_token: Optional[str] = None, model: Optional[str] = None, **kwargs) -> None:
        super().__init__(**kwargs)
        self.api_token = settings.REPLICATE_API_TOKEN if api_token is None else api_token
        self.model = model or settings.REPLICATE_MODEL

    def is_configured(self) -> bool:
        return bool((self.api_token or "").strip())

    async def _generate_variation(
        self,
        client: httpx.AsyncClient,
        input: GenerationInput,
        prompt: str,
        index: int,
        context: Any,
    ) -> Optional[RawImage]:
        response = await client.post(
            f"{REPLICATE_API_URL}/models/{self.model}/predictions",
            headers={
                "Authorization": f"Bearer {self.api_token}",
                "Prefer": "wait",
            },
            json={
                "input": {
                    "prompt": prompt,
                    "go_fast": True,
                    "num_outputs": 1,
                    "aspect_ratio": "1:1",
                    "output_format": "webp",
                    "output_quality": 90,
                }
            },
        )
        response.raise_for_status()
        prediction = response.json()
        status = prediction.get("status")
        if status in {"failed", "canceled"}:
            raise ImageProviderError(f"Replicate prediction {status}: {prediction.get('error')}")

        output = prediction.get("output")
        if isinstance(output, str):
            output = [output]
        if not output:
            return None
        return RawImage(
            url=output[0],
            content_type="image/webp",
            metadata=self._metadata(input, index, prediction_id=prediction.get("id")),
        )
