"""Image provider contracts."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


class ImageProviderError(RuntimeError):
    """Raised by an adapter when a provider produced no usable output."""


class ProviderNotConfiguredError(ImageProviderError):
    """Raised when an adapter is invoked without credentials."""


@dataclass(frozen=True)
class GenerationInput:
    reference_image_url: str
    style: str
    room_type: str
    instructions: Optional[str] = None


@dataclass(frozen=True)
class RawImage:
    """One provider output: remote/data URL or inline bytes, plus metadata."""

    url: Optional[str] = None
    data: Optional[bytes] = None
    content_type: str = "image/png"
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_placeholder(self) -> bool:
        return bool(self.metadata.get("is_placeholder"))


@dataclass(frozen=True)
class ProviderAttempt:
    provider: str
    images: List[RawImage]
    error: Optional[str] = None
    elapsed_seconds: float = 0.0

    @property
    def succeeded(self) -> bool:
        return len(self.images) > 0
