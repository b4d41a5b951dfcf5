"""Ordered provider registry."""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional, Type

from config import settings
from services.image_providers.base import BaseImageProvider
from services.image_providers.fal import FalImageProvider
from services.image_providers.google import GoogleImageProvider
from services.image_providers.huggingface import HuggingFaceImageProvider
from services.image_providers.openai_images import OpenAIImageProvider
from services.image_providers.openrouter import OpenRouterImageProvider
from services.image_providers.replicate import ReplicateImageProvider

logger = logging.getLogger(__name__)

PROVIDER_CLASSES: Dict[str, Type[BaseImageProvider]] = {
    FalImageProvider.name: FalImageProvider,
    ReplicateImageProvider.name: ReplicateImageProvider,
    OpenAIImageProvider.name: OpenAIImageProvider,
    GoogleImageProvider.name: GoogleImageProvider,
    HuggingFaceImageProvider.name: HuggingFaceImageProvider,
    OpenRouterImageProvider.name: OpenRouterImageProvider,
}


def build_image_providers(order: Optional[Iterable[str]] = None) -> List[BaseImageProvider]:
    """Instantiate adapters in priority order; unknown and duplicate names are skipped."""
    names = list(order if order is not None else settings.IMAGE_PROVIDER_ORDER)
    providers: List[BaseImageProvider] = []
    seen = set()
    for raw_name in names:
        name = str(raw_name or "").strip().lower()
        if name in seen:
            continue
        provider_cls = PROVIDER_CLASSES.get(name)
        if provider_cls is None:
            logger.warning("Unknown image provider %r in IMAGE_PROVIDER_ORDER, skipping", raw_name)
            continue
        seen.add(name)
        providers.append(provider_cls())
    return providers


def provider_config_status(providers: Optional[List[BaseImageProvider]] = None) -> Dict[str, bool]:
    if providers is None:
        providers = build_image_providers()
    return {provider.name: provider.is_configured() for provider in providers}
