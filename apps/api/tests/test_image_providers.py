import base64
import json
from unittest.mock import patch

import httpx
import pytest

from services.image_providers import (
    GenerationInput,
    ImageProviderError,
    ProviderNotConfiguredError,
    build_image_providers,
    provider_config_status,
)
from services.image_providers.fal import FalImageProvider
from services.image_providers.google import GoogleImageProvider
from services.image_providers.huggingface import HuggingFaceImageProvider
from services.image_providers.openai_images import OpenAIImageProvider
from services.image_providers.openrouter import OpenRouterImageProvider
from services.image_providers.prompts import build_redesign_prompt, sanitize_instructions
from services.image_providers.replicate import ReplicateImageProvider


INPUT = GenerationInput(
    reference_image_url="https://blob.example.com/room.jpg",
    style="JAPANESE_ZEN",
    room_type="LIVING_ROOM",
    instructions="Keep the window <script>alert(1)</script>and add plants",
)
PNG_BYTES = b"\x89PNG\r\n\x1a\nfake-png"


def test_sanitize_instructions_strips_markup_and_caps_length():
    assert sanitize_instructions("<script>x</script>warm lights") == "warm lights"
    assert sanitize_instructions("javascript:alert(1)") == "alert(1)"
    assert sanitize_instructions("<img onerror=boom>") == "<img boom>"
    assert sanitize_instructions("   ") is None
    assert sanitize_instructions(None) is None
    assert len(sanitize_instructions("a" * 5000)) == 1000


def test_redesign_prompt_includes_style_room_and_clean_instructions():
    prompt = build_redesign_prompt(INPUT)
    assert "living room" in prompt
    assert "japanese zen" in prompt.lower()
    assert "Additional details: Keep the window and add plants" in prompt
    assert "<script>" not in prompt


def test_registry_skips_unknown_and_duplicate_names():
    providers = build_image_providers(["fal", "midjourney", "FAL", "google"])
    assert [provider.name for provider in providers] == ["fal", "google"]


def test_provider_config_status_reflects_credentials():
    with patch("services.image_providers.fal.settings.FAL_KEY", "fal-key"), patch(
        "services.image_providers.replicate.settings.REPLICATE_API_TOKEN", ""
    ):
        status = provider_config_status(build_image_providers(["fal", "replicate"]))
    assert status == {"fal": True, "replicate": False}


@pytest.mark.asyncio
async def test_unconfigured_provider_refuses_to_generate():
    provider = FalImageProvider(api_key="")
    with pytest.raises(ProviderNotConfiguredError):
        await provider.generate(INPUT, 2)


@pytest.mark.asyncio
async def test_fal_generates_each_variation_with_key_auth():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json={"images": [{"url": f"https://fal.media/{len(seen)}.jpg", "content_type": "image/jpeg"}], "seed": 7},
        )

    provider = FalImageProvider(api_key="fal-key", transport=httpx.MockTransport(handler))
    images = await provider.generate(INPUT, 3)

    assert [image.url for image in images] == [
        "https://fal.media/1.jpg",
        "https://fal.media/2.jpg",
        "https://fal.media/3.jpg",
    ]
    assert images[0].metadata["seed"] == 7
    assert images[2].metadata["variation_index"] == 2
    assert seen[0].headers["Authorization"] == "Key fal-key"
    assert seen[0].url.path.endswith("/fal-ai/flux/schnell")
    assert json.loads(seen[0].content)["num_images"] == 1


@pytest.mark.asyncio
async def test_one_failed_variation_does_not_sink_the_others():
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        if calls["count"] == 2:
            return httpx.Response(500, json={"detail": "overloaded"})
        return httpx.Response(200, json={"images": [{"url": f"https://fal.media/{calls['count']}.jpg"}]})

    provider = FalImageProvider(api_key="fal-key", transport=httpx.MockTransport(handler))
    images = await provider.generate(INPUT, 3)

    assert calls["count"] == 3
    assert [image.url for image in images] == ["https://fal.media/1.jpg", "https://fal.media/3.jpg"]


@pytest.mark.asyncio
async def test_provider_with_no_images_raises():
    transport = httpx.MockTransport(lambda request: httpx.Response(503, text="down"))
    provider = FalImageProvider(api_key="fal-key", transport=transport)
    with pytest.raises(ImageProviderError):
        await provider.generate(INPUT, 2)


@pytest.mark.asyncio
async def test_replicate_reads_prediction_output():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["Prefer"] == "wait"
        assert request.headers["Authorization"] == "Bearer r8-token"
        return httpx.Response(
            201,
            json={"id": "pred-1", "status": "succeeded", "output": ["https://replicate.delivery/out.webp"]},
        )

    provider = ReplicateImageProvider(api_token="r8-token", transport=httpx.MockTransport(handler))
    images = await provider.generate(INPUT, 1)

    assert images[0].url == "https://replicate.delivery/out.webp"
    assert images[0].content_type == "image/webp"
    assert images[0].metadata["prediction_id"] == "pred-1"


@pytest.mark.asyncio
async def test_replicate_failed_prediction_counts_as_no_image():
    transport = httpx.MockTransport(
        lambda request: httpx.Response(201, json={"id": "p", "status": "failed", "error": "NSFW"})
    )
    provider = ReplicateImageProvider(api_token="r8-token", transport=transport)
    with pytest.raises(ImageProviderError):
        await provider.generate(INPUT, 2)


@pytest.mark.asyncio
async def test_google_falls_back_to_next_model_and_decodes_inline_data():
    requested_models = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "GET":
            return httpx.Response(200, content=b"room-photo", headers={"content-type": "image/jpeg"})
        model = request.url.path.rsplit("/", 1)[-1].split(":", 1)[0]
        requested_models.append(model)
        if model == "gemini-custom":
            return httpx.Response(404, json={"error": {"message": "not found"}})
        body = json.loads(request.content)
        reference = body["contents"][0]["parts"][1]["inlineData"]
        assert base64.b64decode(reference["data"]) == b"room-photo"
        return httpx.Response(
            200,
            json={
                "candidates": [
                    {
                        "content": {
                            "parts": [
                                {"inlineData": {"mimeType": "image/png", "data": base64.b64encode(PNG_BYTES).decode()}}
                            ]
                        }
                    }
                ]
            },
        )

    provider = GoogleImageProvider(
        api_key="gemini-key",
        model="gemini-custom",
        transport=httpx.MockTransport(handler),
    )
    images = await provider.generate(INPUT, 1)

    assert images[0].data == PNG_BYTES
    assert images[0].content_type == "image/png"
    assert images[0].metadata["model"] == "gemini-2.5-flash-image-preview"
    assert requested_models == ["gemini-custom", "gemini-2.5-flash-image-preview"]


@pytest.mark.asyncio
async def test_huggingface_returns_inline_bytes():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["Authorization"] == "Bearer hf-key"
        return httpx.Response(200, content=PNG_BYTES, headers={"content-type": "image/png"})

    provider = HuggingFaceImageProvider(api_key="hf-key", transport=httpx.MockTransport(handler))
    images = await provider.generate(INPUT, 2)

    assert [image.data for image in images] == [PNG_BYTES, PNG_BYTES]


@pytest.mark.asyncio
async def test_huggingface_json_response_is_an_error():
    transport = httpx.MockTransport(
        lambda request: httpx.Response(200, json={"error": "Model is loading"})
    )
    provider = HuggingFaceImageProvider(api_key="hf-key", transport=transport)
    with pytest.raises(ImageProviderError):
        await provider.generate(INPUT, 1)


def test_openai_placeholder_keys_are_not_configured():
    assert OpenAIImageProvider(api_key="your_openai_api_key").is_configured() is False
    assert OpenAIImageProvider(api_key="test-key").is_configured() is False
    assert OpenAIImageProvider(api_key="sk-live").is_configured() is True


@pytest.mark.asyncio
async def test_openai_images_caps_variations():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(json.loads(request.content))
        return httpx.Response(
            200,
            json={"created": 1700000000, "data": [{"url": f"https://oaidalle.example/{len(calls)}.png"}]},
        )

    provider = OpenAIImageProvider(api_key="sk-live", transport=httpx.MockTransport(handler))
    images = await provider.generate(INPUT, 8)

    assert len(images) == 4
    assert calls[0]["model"] == "dall-e-3"
    assert calls[0]["n"] == 1
    assert "japanese zen" in calls[0]["prompt"].lower()


@pytest.mark.asyncio
async def test_openrouter_extracts_message_images():
    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        assert body["modalities"] == ["image", "text"]
        return httpx.Response(
            200,
            json={
                "id": "gen-1",
                "object": "chat.completion",
                "created": 1700000000,
                "model": "openai/gpt-5-image",
                "choices": [
                    {
                        "index": 0,
                        "finish_reason": "stop",
                        "message": {
                            "role": "assistant",
                            "content": "",
                            "images": [
                                {"type": "image_url", "image_url": {"url": "data:image/png;base64,iVBORw0KGgo="}}
                            ],
                        },
                    }
                ],
            },
        )

    provider = OpenRouterImageProvider(api_key="or-key", transport=httpx.MockTransport(handler))
    images = await provider.generate(INPUT, 1)

    assert images[0].url == "data:image/png;base64,iVBORw0KGgo="
