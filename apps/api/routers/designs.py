"""Room redesign generation and gallery router."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, UploadFile
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from routers.auth_scope import AuthContext, ensure_user_record, get_auth_context
from routers.rate_limit import rate_limit
from services.blob_store import BlobStoreError
from services.credits import InsufficientCreditsError
from services.designs import (
    DesignLifecycleManager,
    DesignNotFoundError,
    DesignRequest,
    get_design,
    list_designs,
    recent_designs,
    serialize_design,
    toggle_favorite,
)
from services.generation_queue import enqueue_design_job
from services.image_providers.prompts import ROOM_TYPE_NAMES, STYLE_PROMPTS

router = APIRouter()
logger = logging.getLogger(__name__)

ALLOWED_IMAGE_TYPES = ("image/jpeg", "image/png", "image/webp")


class FavoriteRequest(BaseModel):
    image_id: str = Field(min_length=1, max_length=64)


def get_design_manager() -> DesignLifecycleManager:
    return DesignLifecycleManager()


async def _read_image(image: UploadFile) -> bytes:
    content_type = (image.content_type or "").lower()
    if content_type not in ALLOWED_IMAGE_TYPES:
        raise HTTPException(
            status_code=422,
            detail="Unsupported image type. Upload a JPEG, PNG or WebP photo.",
        )

    chunks = []
    total_size = 0
    try:
        while True:
            chunk = await image.read(1024 * 1024)
            if not chunk:
                break
            total_size += len(chunk)
            if total_size > settings.MAX_IMAGE_UPLOAD_BYTES:
                raise HTTPException(
                    status_code=413,
                    detail=f"File too large. Max upload size is {settings.MAX_IMAGE_UPLOAD_BYTES // (1024 * 1024)}MB.",
                )
            chunks.append(chunk)
    finally:
        await image.close()

    if not total_size:
        raise HTTPException(status_code=422, detail="Uploaded image is empty.")
    return b"".join(chunks)


@router.post("/generate")
async def generate_design(
    image: UploadFile = File(...),
    style: str = Form(...),
    room_type: str = Form(default="LIVING_ROOM"),
    instructions: Optional[str] = Form(default=None),
    num_variations: int = Form(default=settings.DEFAULT_VARIATIONS),
    is_high_res: bool = Form(default=False),
    _rate_limit: None = Depends(rate_limit("design_generate", limit=30, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    manager: DesignLifecycleManager = Depends(get_design_manager),
):
    """Charge credits and generate redesign variations of an uploaded room photo."""
    style_key = (style or "").strip().upper()
    room_key = (room_type or "").strip().upper()
    if style_key not in STYLE_PROMPTS:
        raise HTTPException(status_code=422, detail=f"Unknown style: {style}")
    if room_key not in ROOM_TYPE_NAMES:
        raise HTTPException(status_code=422, detail=f"Unknown room type: {room_type}")
    if not 1 <= int(num_variations) <= int(settings.MAX_VARIATIONS):
        raise HTTPException(
            status_code=422,
            detail=f"num_variations must be between 1 and {settings.MAX_VARIATIONS}.",
        )

    image_bytes = await _read_image(image)
    await ensure_user_record(db, auth)

    request = DesignRequest(
        image_bytes=image_bytes,
        content_type=(image.content_type or "").lower(),
        filename=image.filename,
        style=style_key,
        room_type=room_key,
        instructions=instructions,
        num_variations=int(num_variations),
        is_high_res=bool(is_high_res),
    )

    try:
        design = await manager.begin_design(auth.user_id, request)
    except InsufficientCreditsError as exc:
        raise HTTPException(
            status_code=402,
            detail={
                "error": "insufficient_credits",
                "message": str(exc),
                "required": exc.required,
                "available": exc.available,
            },
        ) from exc
    except BlobStoreError as exc:
        raise HTTPException(status_code=503, detail="Image storage is unavailable. Credits were refunded.") from exc

    if settings.GENERATION_QUEUE_ENABLED:
        try:
            job = enqueue_design_job(design.id)
            logger.info("Design %s queued as %s", design.id, job.id)
            return serialize_design(design)
        except Exception as exc:
            logger.warning("Generation queue unavailable for design %s, running inline: %s", design.id, exc)

    completed = await manager.complete_design(design.id, original_bytes=image_bytes)
    return serialize_design(completed)


@router.get("")
async def designs_list(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    favorites: bool = Query(default=False),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return await list_designs(auth.user_id, db, page=page, limit=limit, favorites_only=favorites)


@router.get("/recent")
async def designs_recent(
    limit: int = Query(default=8, ge=1, le=50),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return {"items": await recent_designs(auth.user_id, db, limit=limit)}


@router.post("/favorite")
async def favorite_image(
    request: FavoriteRequest,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    try:
        return await toggle_favorite(auth.user_id, db, request.image_id)
    except DesignNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@router.get("/{design_id}")
async def design_detail(
    design_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    try:
        design = await get_design(auth.user_id, db, design_id)
    except DesignNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return serialize_design(design)
