"""Prompt catalog for room redesign generation."""

from __future__ import annotations

import re
from typing import Optional

from services.image_providers.types import GenerationInput


MAX_INSTRUCTIONS_LENGTH = 1000

STYLE_PROMPTS = {
    "MODERN_MINIMALIST": (
        "modern minimalist interior design, clean lines, neutral colors, sleek furniture, uncluttered, "
        "white walls, natural light, contemporary"
    ),
    "SCANDINAVIAN": (
        "scandinavian interior design, light oak wood, white walls, cozy hygge atmosphere, natural light, "
        "minimalist furniture, warm textiles"
    ),
    "INDUSTRIAL": (
        "industrial interior design, exposed brick, metal pipes, concrete floors, vintage Edison bulbs, "
        "raw materials, loft style"
    ),
    "BOHEMIAN": (
        "bohemian interior design, colorful textiles, layered patterns, many plants, vintage furniture, "
        "eclectic global decor, artistic"
    ),
    "TRADITIONAL": (
        "traditional interior design, elegant classic furniture, rich wood tones, ornate details, "
        "timeless sophistication"
    ),
    "COASTAL": (
        "coastal interior design, ocean blues, sandy whites, natural textures, rattan furniture, "
        "beach house style, relaxed"
    ),
    "MID_CENTURY_MODERN": (
        "mid-century modern interior design, iconic retro furniture, organic shapes, warm woods, "
        "bold accent colors, 1960s style"
    ),
    "JAPANESE_ZEN": (
        "japanese zen interior design, minimal furniture, natural materials, shoji screens, "
        "peaceful atmosphere, wabi-sabi"
    ),
    "CONTEMPORARY": (
        "contemporary interior design, current trends, bold art, mixed materials, sophisticated neutral palette"
    ),
    "RUSTIC": "rustic interior design, reclaimed wood, stone accents, cozy farmhouse, natural warmth, vintage charm",
    "ART_DECO": "art deco interior design, geometric patterns, luxurious materials, gold accents, glamorous 1920s style",
    "MEDITERRANEAN": (
        "mediterranean interior design, terracotta tiles, arched doorways, wrought iron, warm earth tones, "
        "Spanish villa"
    ),
    "LUXURY_MODERN": (
        "luxury modern interior design, premium finishes, designer furniture, marble accents, "
        "elegant lighting, high-end"
    ),
    "CUSTOM": "beautiful professional interior design, high quality, photorealistic",
}

ROOM_TYPE_NAMES = {
    "LIVING_ROOM": "living room",
    "BEDROOM": "bedroom",
    "KITCHEN": "kitchen",
    "BATHROOM": "bathroom",
    "DINING_ROOM": "dining room",
    "OFFICE": "home office",
    "BALCONY": "balcony",
    "OTHER": "room",
}

_SCRIPT_TAG_RE = re.compile(r"<script[^>]*>.*?</script>", re.IGNORECASE | re.DOTALL)
_JS_SCHEME_RE = re.compile(r"javascript:", re.IGNORECASE)
_EVENT_HANDLER_RE = re.compile(r"on\w+\s*=", re.IGNORECASE)


def sanitize_instructions(instructions: Optional[str]) -> Optional[str]:
    """Strip markup that has no business in a prompt and cap the length."""
    if not instructions:
        return None
    sanitized = _SCRIPT_TAG_RE.sub("", instructions)
    sanitized = _JS_SCHEME_RE.sub("", sanitized)
    sanitized = _EVENT_HANDLER_RE.sub("", sanitized)
    sanitized = sanitized.strip()[:MAX_INSTRUCTIONS_LENGTH]
    return sanitized or None


def style_description(style: str) -> str:
    return STYLE_PROMPTS.get((style or "").upper(), STYLE_PROMPTS["CUSTOM"])


def room_name(room_type: str) -> str:
    return ROOM_TYPE_NAMES.get((room_type or "").upper(), ROOM_TYPE_NAMES["OTHER"])


def build_redesign_prompt(input: GenerationInput) -> str:
    prompt = (
        f"A stunning {room_name(input.room_type)} interior with {style_description(input.style)}.\n"
        "Professional architectural photography, photorealistic, ultra HD 8k resolution,\n"
        "perfect natural lighting, high-end designer furniture and premium decor,\n"
        "interior design magazine cover quality, detailed textures, elegant and luxurious atmosphere."
    )
    instructions = sanitize_instructions(input.instructions)
    if instructions:
        prompt += f"\nAdditional details: {instructions}"
    return prompt
