"""Provider waterfall for room redesign generation.

Providers are tried one at a time in priority order. The first provider that
returns at least one image wins, even with fewer images than requested. When
nothing works the caller still gets ``num_variations`` placeholder entries that
point at the uploaded photo, so this module never raises for provider trouble.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from services.image_providers import (
    BaseImageProvider,
    GenerationInput,
    ProviderAttempt,
    RawImage,
    build_image_providers,
)

logger = logging.getLogger(__name__)

OUTCOME_COMPLETE = "complete"
OUTCOME_PARTIAL_SUCCESS = "partial_success"
OUTCOME_PLACEHOLDER_DEGRADED = "placeholder_degraded"
OUTCOME_NO_PROVIDERS_CONFIGURED = "no_providers_configured"

PLACEHOLDER_PROVIDER = "placeholder"
PLACEHOLDER_MESSAGE = (
    "Preview mode: no image generation provider produced a result. Configure FAL_KEY, "
    "REPLICATE_API_TOKEN, OPENAI_API_KEY, GEMINI_API_KEY, HUGGINGFACE_API_KEY or "
    "OPENROUTER_API_KEY to enable AI redesigns."
)


@dataclass
class GenerationOutcome:
    images: List[RawImage]
    provider: str
    status: str
    requested: int
    attempts: List[ProviderAttempt] = field(default_factory=list)

    @property
    def is_placeholder(self) -> bool:
        return self.provider == PLACEHOLDER_PROVIDER

    def summary(self) -> Dict[str, Any]:
        return {
            "provider": self.provider,
            "status": self.status,
            "requested": self.requested,
            "returned": len(self.images),
            "attempts": [
                {
                    "provider": attempt.provider,
                    "images": len(attempt.images),
                    "error": attempt.error,
                    "elapsed_seconds": round(attempt.elapsed_seconds, 3),
                }
                for attempt in self.attempts
            ],
        }


def build_placeholder_images(input: GenerationInput, num_variations: int) -> List[RawImage]:
    return [
        RawImage(
            url=input.reference_image_url,
            metadata={
                "is_placeholder": True,
                "provider": PLACEHOLDER_PROVIDER,
                "variation_index": index,
                "style": input.style,
                "message": PLACEHOLDER_MESSAGE,
            },
        )
        for index in range(max(int(num_variations), 0))
    ]


class GenerationOrchestrator:
    """Runs the provider waterfall over a fixed, ordered adapter list."""

    def __init__(self, providers: Optional[Sequence[BaseImageProvider]] = None) -> None:
        self.providers: List[BaseImageProvider] = list(
            providers if providers is not None else build_image_providers()
        )

    def configured_providers(self) -> List[BaseImageProvider]:
        configured = []
        for provider in self.providers:
            try:
                if provider.is_configured():
                    configured.append(provider)
            except Exception as exc:
                logger.warning("Provider %s configuration check failed: %s", provider.name, exc)
        return configured

    async def _attempt(
        self,
        provider: BaseImageProvider,
        input: GenerationInput,
        num_variations: int,
    ) -> ProviderAttempt:
        started = time.monotonic()
        try:
            images = await asyncio.wait_for(
                provider.generate(input, num_variations),
                timeout=provider.timeout_seconds,
            )
        except asyncio.TimeoutError:
            elapsed = time.monotonic() - started
            logger.warning("Provider %s timed out after %.1fs", provider.name, elapsed)
            return ProviderAttempt(provider.name, [], f"timeout after {provider.timeout_seconds}s", elapsed)
        except Exception as exc:
            elapsed = time.monotonic() - started
            logger.warning("Provider %s failed: %s", provider.name, exc)
            return ProviderAttempt(provider.name, [], str(exc) or type(exc).__name__, elapsed)

        return ProviderAttempt(provider.name, list(images or [])[:num_variations], None, time.monotonic() - started)

    async def generate(self, input: GenerationInput, num_variations: int) -> GenerationOutcome:
        requested = max(int(num_variations), 0)
        configured = self.configured_providers()
        logger.info(
            "Starting design generation style=%s room_type=%s variations=%s providers=%s",
            input.style,
            input.room_type,
            requested,
            [provider.name for provider in configured],
        )

        attempts: List[ProviderAttempt] = []
        for provider in configured:
            attempt = await self._attempt(provider, input, requested)
            attempts.append(attempt)
            if not attempt.succeeded:
                continue

            status = OUTCOME_COMPLETE if len(attempt.images) >= requested else OUTCOME_PARTIAL_SUCCESS
            if status == OUTCOME_PARTIAL_SUCCESS:
                logger.info(
                    "Provider %s returned %s of %s requested images",
                    provider.name,
                    len(attempt.images),
                    requested,
                )
            return GenerationOutcome(
                images=attempt.images,
                provider=provider.name,
                status=status,
                requested=requested,
                attempts=attempts,
            )

        status = OUTCOME_PLACEHOLDER_DEGRADED if configured else OUTCOME_NO_PROVIDERS_CONFIGURED
        logger.warning("No image generation provider succeeded (%s); using placeholder images", status)
        return GenerationOutcome(
            images=build_placeholder_images(input, requested),
            provider=PLACEHOLDER_PROVIDER,
            status=status,
            requested=requested,
            attempts=attempts,
        )
