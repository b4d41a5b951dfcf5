"""Base adapter shared by every image generation backend."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, List, Optional

import httpx

from config import settings
from services.image_providers.prompts import build_redesign_prompt
from services.image_providers.types import (
    GenerationInput,
    ImageProviderError,
    ProviderNotConfiguredError,
    RawImage,
)

logger = logging.getLogger(__name__)


class BaseImageProvider(ABC):
    """Provider adapter: credentials check plus per-variation generation.

    Subclasses implement ``_generate_variation``; ``generate`` attempts every
    variation independently and only fails when none of them produced an image.
    """

    name: str
    model: str
    max_variations: Optional[int] = None

    def __init__(
        self,
        *,
        timeout_seconds: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.timeout_seconds = float(timeout_seconds or settings.PROVIDER_TIMEOUT_SECONDS)
        self._transport = transport

    @abstractmethod
    def is_configured(self) -> bool:
        raise NotImplementedError

    @abstractmethod
    async def _generate_variation(
        self,
        client: httpx.AsyncClient,
        input: GenerationInput,
        prompt: str,
        index: int,
        context: Any,
    ) -> Optional[RawImage]:
        raise NotImplementedError

    async def _prepare(self, client: httpx.AsyncClient, input: GenerationInput) -> Any:
        """Per-request setup shared by all variations (e.g. fetching a reference image)."""
        return None

    def build_prompt(self, input: GenerationInput) -> str:
        return build_redesign_prompt(input)

    def _metadata(self, input: GenerationInput, index: int, **extra) -> dict:
        metadata = {
            "provider": self.name,
            "model": self.model,
            "variation_index": index,
            "style": input.style,
        }
        metadata.update({key: value for key, value in extra.items() if value is not None})
        return metadata

    def _http_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport)

    async def generate(self, input: GenerationInput, num_variations: int) -> List[RawImage]:
        if not self.is_configured():
            raise ProviderNotConfiguredError(f"{self.name} is not configured")

        prompt = self.build_prompt(input)
        count = max(int(num_variations), 0)
        if self.max_variations is not None:
            count = min(count, self.max_variations)

        results: List[RawImage] = []
        async with self._http_client() as client:
            context = await self._prepare(client, input)
            for index in range(count):
                logger.debug("Generating %s image %s/%s", self.name, index + 1, count)
                try:
                    image = await self._generate_variation(client, input, prompt, index, context)
                except Exception as exc:
                    logger.warning("%s variation %s/%s failed: %s", self.name, index + 1, count, exc)
                    continue
                if image is None:
                    logger.warning("%s variation %s/%s returned no image", self.name, index + 1, count)
                    continue
                results.append(image)

        if not results:
            raise ImageProviderError(f"No images generated from {self.name}")

        logger.info("%s generation completed count=%s requested=%s", self.name, len(results), count)
        return results

    def __repr__(self) -> str:
        return f"<{type(self).__name__} name={self.name!r} model={self.model!r}>"
