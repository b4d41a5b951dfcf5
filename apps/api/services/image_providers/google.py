"""Google Gemini image adapter.

Not every Gemini model can return images and availability differs per region, so
each variation walks the configured model followed by ``FALLBACK_MODELS`` until
one of them answers with inline image data.
"""

from __future__ import annotations

import base64
import logging
from typing import Any, List, Optional

import httpx

from config import settings
from services.image_providers.base import BaseImageProvider
from services.image_providers.types import GenerationInput, RawImage

logger = logging.getLogger(__name__)

GEMINI_API_URL = "https://generativelanguage.googleapis.com/v1beta"
FALLBACK_MODELS = [
    "gemini-2.5-flash-image-preview",
    "gemini-2.5-flash-preview-image",
    "gemini-2.0-flash-exp",
]
SAFETY_CATEGORIES = [
    "HARM_CATEGORY_HARASSMENT",
    "HARM_CATEGORY_HATE_SPEECH",
    "HARM_CATEGORY_SEXUALLY_EXPLICIT",
    "HARM_CATEGORY_DANGEROUS_CONTENT",
]


class GoogleImageProvider(BaseImageProvider):
    name = "google"

    def __init__(self, *, api_key: Optional[str] = None, model: Optional[str] = None, **kwargs) -> None:
        super().__init__(**kwargs)
        self.api_key = settings.GEMINI_API_KEY if api_key is None else api_key
        self.model = model or settings.GEMINI_IMAGE_MODEL

    def is_configured(self) -> bool:
        return bool((self.api_key or "").strip())

    @property
    def models_to_try(self) -> List[str]:
        return [self.model, *[name for name in FALLBACK_MODELS if name != self.model]]

    async def _prepare(self, client: httpx.AsyncClient, input: GenerationInput) -> Optional[dict]:
        """Load the reference photo once so every variation keeps the room layout."""
        url = input.reference_image_url or ""
        try:
            if url.startswith("data:"):
                header, encoded = url.split(",", 1)
                mime_type = header[5:].split(";", 1)[0] or "image/jpeg"
                return {"mimeType": mime_type, "data": encoded}
            if url.startswith(("http://", "https://")):
                response = await client.get(url)
                response.raise_for_status()
                mime_type = response.headers.get("content-type", "image/jpeg").split(";", 1)[0]
                return {"mimeType": mime_type, "data": base64.b64encode(response.content).decode("ascii")}
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Failed to load reference image, continuing without it: %s", exc)
        return None

    def _request_body(self, prompt: str, reference: Optional[dict]) -> dict:
        parts: List[dict] = [{"text": prompt}]
        if reference:
            parts.append({"inlineData": reference})
        return {
            "contents": [{"parts": parts}],
            "generationConfig": {
                "responseModalities": ["IMAGE"],
                "temperature": 0.7,
                "candidateCount": 1,
                "topP": 0.9,
                "topK": 40,
            },
            "safetySettings": [
                {"category": category, "threshold": "BLOCK_ONLY_HIGH"} for category in SAFETY_CATEGORIES
            ],
        }

    @staticmethod
    def _extract_inline_image(payload: dict) -> Optional[dict]:
        candidates = payload.get("candidates") or []
        if not candidates:
            return None
        parts = ((candidates[0] or {}).get("content") or {}).get("parts") or []
        for part in parts:
            inline = part.get("inlineData") or part.get("inline_data")
            if inline and inline.get("data"):
                return inline
        return None

    async def _generate_variation(
        self,
        client: httpx.AsyncClient,
        input: GenerationInput,
        prompt: str,
        index: int,
        context: Any,
    ) -> Optional[RawImage]:
        body = self._request_body(prompt, context)
        last_error: Optional[str] = None
        for model_name in self.models_to_try:
            try:
                response = await client.post(
                    f"{GEMINI_API_URL}/models/{model_name}:generateContent",
                    headers={"x-goog-api-key": self.api_key},
                    json=body,
                )
            except httpx.HTTPError as exc:
                last_error = str(exc)
                logger.warning("Gemini model %s request failed: %s", model_name, exc)
                continue

            if response.status_code in (400, 404):
                # Model missing in this region or unable to emit images.
                last_error = f"{response.status_code}: {response.text[:200]}"
                logger.warning("Gemini model %s unavailable for image output, trying next", model_name)
                continue
            response.raise_for_status()

            inline = self._extract_inline_image(response.json())
            if inline is None:
                last_error = f"{model_name} returned no image data"
                continue

            mime_type = inline.get("mimeType") or inline.get("mime_type") or "image/png"
            return RawImage(
                data=base64.b64decode(inline["data"]),
                content_type=mime_type,
                metadata={**self._metadata(input, index), "model": model_name},
            )

        logger.warning(
            "Gemini variation %s failed with every model (%s). Last error: %s",
            index + 1,
            ", ".join(self.models_to_try),
            last_error,
        )
        return None
