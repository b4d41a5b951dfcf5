from unittest.mock import MagicMock, patch

import pytest
from jose import jwt

from config import settings
from services.generation_queue import GENERATION_QUEUE_NAME, enqueue_design_job
from services.session_token import create_session_token, decode_session_token


def test_session_token_round_trip():
    session = create_session_token("user-1", "user-1@example.com", expires_hours=1)
    payload = decode_session_token(session["token"])
    assert payload["sub"] == "user-1"
    assert payload["email"] == "user-1@example.com"


def test_session_token_rejects_foreign_token_type():
    token = jwt.encode({"sub": "user-1", "type": "other"}, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)
    with pytest.raises(ValueError):
        decode_session_token(token)


def test_enqueue_design_job_targets_worker_entrypoint():
    queue = MagicMock()
    with patch("services.generation_queue.get_generation_queue", return_value=queue):
        enqueue_design_job("design-1")

    args, kwargs = queue.enqueue.call_args
    assert args == ("services.designs.process_design_job", "design-1")
    assert kwargs["job_id"] == "design:design-1"
    assert GENERATION_QUEUE_NAME == "generation_jobs"


def _request(headers, client=("203.0.113.7", 5000)):
    from starlette.requests import Request

    return Request({
        "type": "http",
        "method": "POST",
        "path": "/api/designs/generate",
        "headers": [(name.lower().encode(), value.encode()) for name, value in headers.items()],
        "client": client,
    })


def test_session_token_carries_optional_name_and_user_id():
    session = create_session_token("user-2", name="Ada")
    payload = decode_session_token(session["token"])
    assert session["user_id"] == "user-2"
    assert payload["name"] == "Ada"
    assert "email" not in payload


def test_quota_subject_prefers_signed_in_user_over_address():
    from routers.rate_limit import _quota_subject

    token = create_session_token("user-3")["token"]
    assert _quota_subject(_request({"Authorization": f"Bearer {token}"})) == "user:user-3"
    assert _quota_subject(_request({"Authorization": "Bearer not-a-jwt"})) == "ip:203.0.113.7"
    assert _quota_subject(_request({"X-Forwarded-For": "198.51.100.1, 10.0.0.1"})) == "ip:198.51.100.1"


@pytest.mark.asyncio
async def test_local_quota_blocks_after_limit():
    from routers import rate_limit

    key = "roomai:quota:test:user:quota-user"
    results = [await rate_limit._consume_local_quota(key, 2, 3600) for _ in range(3)]
    assert results == [True, True, False]
