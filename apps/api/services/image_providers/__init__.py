"""Image generation provider adapters."""

from services.image_providers.base import BaseImageProvider
from services.image_providers.registry import (
    PROVIDER_CLASSES,
    build_image_providers,
    provider_config_status,
)
from services.image_providers.types import (
    GenerationInput,
    ImageProviderError,
    ProviderAttempt,
    ProviderNotConfiguredError,
    RawImage,
)

__all__ = [
    "BaseImageProvider",
    "GenerationInput",
    "ImageProviderError",
    "PROVIDER_CLASSES",
    "ProviderAttempt",
    "ProviderNotConfiguredError",
    "RawImage",
    "build_image_providers",
    "provider_config_status",
]
