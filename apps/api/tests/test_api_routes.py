from unittest.mock import patch

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from database import get_db
from main import app
from routers.designs import get_design_manager
from services.blob_store import LocalBlobStore
from services.designs import DesignLifecycleManager
from services.image_providers import BaseImageProvider, RawImage
from services.orchestrator import GenerationOrchestrator
from services.session_token import create_session_token


TEST_USER_ID = "api-user"
OTHER_USER_ID = "api-other-user"
TEST_AUTH_HEADER = {"Authorization": f"Bearer {create_session_token(TEST_USER_ID, 'api-user@example.com')['token']}"}
OTHER_AUTH_HEADER = {"Authorization": f"Bearer {create_session_token(OTHER_USER_ID)['token']}"}
PHOTO = b"\x89PNG\r\n\x1a\nroom"
WEBHOOK_SECRET = "relay-shared-secret-for-tests"
WEBHOOK_HEADER = {"X-Billing-Secret": WEBHOOK_SECRET}


class TwoImageProvider(BaseImageProvider):
    name = "stub"
    model = "stub-model"

    def is_configured(self):
        return True

    async def _generate_variation(self, client, input, prompt, index, context):
        return RawImage(data=f"variation-{index}".encode(), metadata=self._metadata(input, index))


@pytest_asyncio.fixture
async def api_client(session_maker, tmp_path):
    async def override_get_db():
        async with session_maker() as session:
            yield session

    def override_manager():
        return DesignLifecycleManager(
            orchestrator=GenerationOrchestrator([TwoImageProvider(timeout_seconds=5.0)]),
            blob_store=LocalBlobStore(root=str(tmp_path / "blobs"), public_base_url="http://test/blobs"),
            session_maker=session_maker,
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_design_manager] = override_manager
    with patch("routers.billing.settings.BILLING_WEBHOOK_SECRET", WEBHOOK_SECRET):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            yield client

    app.dependency_overrides.pop(get_db, None)
    app.dependency_overrides.pop(get_design_manager, None)


async def _buy(client, credits, order_id, user_id=TEST_USER_ID):
    resp = await client.post(
        "/billing/purchase",
        json={"user_id": user_id, "credits": credits, "order_id": order_id, "provider": "razorpay"},
        headers=WEBHOOK_HEADER,
    )
    assert resp.status_code == 200
    return resp.json()


def _generate_form(**overrides):
    data = {"style": "modern_minimalist", "room_type": "KITCHEN", "num_variations": "2"}
    data.update(overrides)
    return data


@pytest.mark.asyncio
async def test_routes_require_session_token(api_client):
    assert (await api_client.get("/billing/credits")).status_code == 401
    assert (await api_client.get("/designs")).status_code == 401
    bad = {"Authorization": "Bearer not-a-token"}
    assert (await api_client.get("/billing/credits", headers=bad)).status_code == 401


@pytest.mark.asyncio
async def test_health_live(api_client):
    resp = await api_client.get("/health/live")
    assert resp.status_code == 200
    assert resp.json() == {"alive": True}


@pytest.mark.asyncio
async def test_credit_summary_grants_free_monthly_credits(api_client):
    resp = await api_client.get("/billing/credits", headers=TEST_AUTH_HEADER)
    assert resp.status_code == 200
    payload = resp.json()
    assert payload["balance"] == 5
    assert payload["free_monthly_credits"] == 5

    again = await api_client.get("/billing/credits", headers=TEST_AUTH_HEADER)
    assert again.json()["balance"] == 5

    forbidden = await api_client.get(f"/billing/credits?user_id={OTHER_USER_ID}", headers=TEST_AUTH_HEADER)
    assert forbidden.status_code == 403


@pytest.mark.asyncio
async def test_purchase_is_idempotent_per_order(api_client):
    first = await _buy(api_client, 25, "order_abc")
    replay = await _buy(api_client, 25, "order_abc")

    assert first["credited"] is True
    assert first["balance_after"] == 25
    assert replay["credited"] is False
    assert replay["balance_after"] == 25

    bonus = await api_client.post(
        "/billing/subscription_bonus",
        json={"user_id": TEST_USER_ID, "credits": 50, "subscription_id": "sub_1", "period": "2026-10"},
        headers=WEBHOOK_HEADER,
    )
    assert bonus.status_code == 200
    assert bonus.json()["balance_after"] == 75

    history = await api_client.get("/billing/transactions?limit=10", headers=TEST_AUTH_HEADER)
    assert history.status_code == 200
    assert history.json()["balance"] == 80
    assert [item["entry_type"] for item in history.json()["items"]] == ["earned", "subscription_bonus", "purchased"]


@pytest.mark.asyncio
async def test_credit_top_ups_require_billing_webhook_credential(api_client):
    payload = {"user_id": TEST_USER_ID, "credits": 10000, "order_id": "made-up"}

    as_user = await api_client.post("/billing/purchase", json=payload, headers=TEST_AUTH_HEADER)
    assert as_user.status_code == 401

    wrong_secret = await api_client.post(
        "/billing/subscription_bonus",
        json={"user_id": TEST_USER_ID, "credits": 10000, "subscription_id": "sub_x", "period": "2026-10"},
        headers={"X-Billing-Secret": "guess"},
    )
    assert wrong_secret.status_code == 401

    with patch("routers.billing.settings.BILLING_WEBHOOK_SECRET", ""):
        unconfigured = await api_client.post("/billing/purchase", json=payload, headers=WEBHOOK_HEADER)
    assert unconfigured.status_code == 503

    history = await api_client.get("/billing/transactions", headers=TEST_AUTH_HEADER)
    assert history.json()["balance"] == 5
    assert [item["entry_type"] for item in history.json()["items"]] == ["earned"]


@pytest.mark.asyncio
async def test_required_credits_endpoint(api_client):
    resp = await api_client.get(
        "/billing/credits/required?is_high_res=true&num_variations=3",
        headers=TEST_AUTH_HEADER,
    )
    assert resp.status_code == 200
    assert resp.json()["credits_required"] == 15

    too_many = await api_client.get("/billing/credits/required?num_variations=9", headers=TEST_AUTH_HEADER)
    assert too_many.status_code == 422


@pytest.mark.asyncio
async def test_generate_design_end_to_end(api_client):
    await _buy(api_client, 10, "order_gen")

    resp = await api_client.post(
        "/designs/generate",
        data=_generate_form(instructions="Add a marble island"),
        files={"image": ("kitchen.png", PHOTO, "image/png")},
        headers=TEST_AUTH_HEADER,
    )
    assert resp.status_code == 200
    design = resp.json()
    assert design["status"] == "completed"
    assert design["style"] == "MODERN_MINIMALIST"
    assert design["credits_used"] == 2
    assert design["instructions"] == "Add a marble island"
    assert len(design["images"]) == 2
    assert design["images"][0]["metadata"]["provider"] == "stub"

    credits = await api_client.get("/billing/transactions", headers=TEST_AUTH_HEADER)
    assert credits.json()["balance"] == 13

    detail = await api_client.get(f"/designs/{design['id']}", headers=TEST_AUTH_HEADER)
    assert detail.status_code == 200
    assert detail.json()["id"] == design["id"]

    hidden = await api_client.get(f"/designs/{design['id']}", headers=OTHER_AUTH_HEADER)
    assert hidden.status_code == 404

    favorite = await api_client.post(
        "/designs/favorite",
        json={"image_id": design["images"][0]["id"]},
        headers=TEST_AUTH_HEADER,
    )
    assert favorite.status_code == 200
    assert favorite.json()["is_favorite"] is True

    favorites = await api_client.get("/designs?favorites=true", headers=TEST_AUTH_HEADER)
    assert [item["id"] for item in favorites.json()["items"]] == [design["id"]]

    recent = await api_client.get("/designs/recent", headers=TEST_AUTH_HEADER)
    assert recent.status_code == 200
    assert len(recent.json()["items"]) == 1


@pytest.mark.asyncio
async def test_first_generation_is_funded_by_monthly_grant(api_client):
    resp = await api_client.post(
        "/designs/generate",
        data=_generate_form(num_variations="1"),
        files={"image": ("kitchen.png", PHOTO, "image/png")},
        headers=TEST_AUTH_HEADER,
    )
    assert resp.status_code == 200
    assert resp.json()["status"] == "completed"

    history = await api_client.get("/billing/transactions", headers=TEST_AUTH_HEADER)
    assert history.json()["balance"] == 4
    assert [item["entry_type"] for item in history.json()["items"]] == ["spent", "earned"]


@pytest.mark.asyncio
async def test_generate_with_insufficient_credits_returns_402(api_client):
    resp = await api_client.post(
        "/designs/generate",
        data=_generate_form(num_variations="8"),
        files={"image": ("kitchen.png", PHOTO, "image/png")},
        headers=TEST_AUTH_HEADER,
    )
    assert resp.status_code == 402
    detail = resp.json()["detail"]
    assert detail["error"] == "insufficient_credits"
    assert detail["required"] == 8
    assert detail["available"] == 5

    listing = await api_client.get("/designs", headers=TEST_AUTH_HEADER)
    assert listing.json()["total_count"] == 0


@pytest.mark.asyncio
async def test_generate_validates_upload(api_client):
    wrong_type = await api_client.post(
        "/designs/generate",
        data=_generate_form(),
        files={"image": ("notes.txt", b"hello", "text/plain")},
        headers=TEST_AUTH_HEADER,
    )
    assert wrong_type.status_code == 422

    unknown_style = await api_client.post(
        "/designs/generate",
        data=_generate_form(style="VAPORWAVE"),
        files={"image": ("kitchen.png", PHOTO, "image/png")},
        headers=TEST_AUTH_HEADER,
    )
    assert unknown_style.status_code == 422

    too_many = await api_client.post(
        "/designs/generate",
        data=_generate_form(num_variations="12"),
        files={"image": ("kitchen.png", PHOTO, "image/png")},
        headers=TEST_AUTH_HEADER,
    )
    assert too_many.status_code == 422

    with patch("routers.designs.settings.MAX_IMAGE_UPLOAD_BYTES", 4):
        too_large = await api_client.post(
            "/designs/generate",
            data=_generate_form(),
            files={"image": ("kitchen.png", PHOTO, "image/png")},
            headers=TEST_AUTH_HEADER,
        )
    assert too_large.status_code == 413
