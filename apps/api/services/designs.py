"""Design lifecycle: charge, generate, store, and refund on total failure.

A design is created in ``processing`` right after the credit debit and moves
exactly once to ``completed`` (at least one stored image) or ``failed`` (none).
Failed designs get their credits back through an idempotent refund keyed on
the design id, so re-running recovery can never pay out twice.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import logging
import mimetypes
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

import httpx
from sqlalchemy import func, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.future import select
from sqlalchemy.orm import selectinload

from config import settings
from database import async_session_maker
from models.design import (
    DESIGN_STATUS_COMPLETED,
    DESIGN_STATUS_FAILED,
    DESIGN_STATUS_PROCESSING,
    Design,
)
from models.generated_image import GeneratedImage
from services.blob_store import BlobStore, BlobStoreError, BlobUploadResult, get_blob_store
from services.credits import credits_required, deduct_credits, refund_credits
from services.image_providers import GenerationInput, RawImage
from services.image_providers.prompts import sanitize_instructions
from services.orchestrator import GenerationOrchestrator, GenerationOutcome

logger = logging.getLogger(__name__)

REFUND_REASON = "Generation failed"
STALLED_ERROR_MESSAGE = "Generation was interrupted before it finished. Credits have been refunded."


class DesignError(Exception):
    """Base exception for design operations."""


class DesignNotFoundError(DesignError):
    """Raised when a design or image does not exist for the requesting user."""


class DesignStateError(DesignError):
    """Raised when a design is no longer in the state a transition expects."""


@dataclass(frozen=True)
class DesignRequest:
    image_bytes: bytes
    content_type: str
    style: str
    room_type: str = "LIVING_ROOM"
    filename: Optional[str] = None
    instructions: Optional[str] = None
    num_variations: int = 4
    is_high_res: bool = False


@dataclass(frozen=True)
class StoredImage:
    blob: BlobUploadResult
    metadata: Dict[str, Any]


def refund_idempotency_key(design_id: str) -> str:
    return f"design-refund:{design_id}"


IMAGE_EXTENSIONS = {"image/jpeg": ".jpg", "image/png": ".png", "image/webp": ".webp"}


def _extension_for(content_type: str) -> str:
    if content_type in IMAGE_EXTENSIONS:
        return IMAGE_EXTENSIONS[content_type]
    return mimetypes.guess_extension(content_type or "") or ".png"


def _decode_data_url(url: str) -> Tuple[bytes, str]:
    header, _, encoded = url.partition(",")
    content_type = header[5:].split(";", 1)[0] or "image/png"
    try:
        return base64.b64decode(encoded, validate=True), content_type
    except (binascii.Error, ValueError) as exc:
        raise ValueError("Malformed base64 image data") from exc


def serialize_image(image: GeneratedImage) -> Dict[str, Any]:
    return {
        "id": image.id,
        "image_url": image.image_url,
        "position": image.position,
        "metadata": image.metadata_json or {},
        "is_favorite": bool(image.is_favorite),
        "created_at": image.created_at.isoformat() if image.created_at else None,
    }


def serialize_design(design: Design) -> Dict[str, Any]:
    return {
        "id": design.id,
        "status": design.status,
        "credits_used": design.credits_used,
        "style": design.style,
        "room_type": design.room_type,
        "instructions": design.instructions,
        "num_variations": design.num_variations,
        "is_high_res": bool(design.is_high_res),
        "original_image_url": design.original_image_url,
        "provider": design.provider,
        "outcome": design.outcome,
        "error_message": design.error_message,
        "created_at": design.created_at.isoformat() if design.created_at else None,
        "completed_at": design.completed_at.isoformat() if design.completed_at else None,
        "images": [serialize_image(image) for image in design.images],
    }


class DesignLifecycleManager:
    """Coordinates ledger, orchestrator, blob store and design rows for one request."""

    def __init__(
        self,
        orchestrator: Optional[GenerationOrchestrator] = None,
        blob_store: Optional[BlobStore] = None,
        session_maker: Optional[async_sessionmaker] = None,
        *,
        upload_concurrency: Optional[int] = None,
        download_transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.orchestrator = orchestrator or GenerationOrchestrator()
        self.blob_store = blob_store or get_blob_store()
        self.session_maker = session_maker or async_session_maker
        self.upload_concurrency = max(int(upload_concurrency or settings.IMAGE_UPLOAD_CONCURRENCY), 1)
        self._download_transport = download_transport

    async def start_design(self, user_id: str, request: DesignRequest) -> Design:
        """Charge, generate and store a redesign; returns the design in a terminal state."""
        design = await self.begin_design(user_id, request)
        return await self.complete_design(design.id, original_bytes=request.image_bytes)

    async def begin_design(self, user_id: str, request: DesignRequest) -> Design:
        """Debit credits, store the original photo and create the ``processing`` row.

        ``InsufficientCreditsError`` propagates before anything is written.
        """
        num_variations = max(1, min(int(request.num_variations), int(settings.MAX_VARIATIONS)))
        required = credits_required(request.is_high_res, num_variations)
        design_id = str(uuid.uuid4())

        async with self.session_maker() as db:
            debit = await deduct_credits(
                user_id,
                db,
                amount=required,
                description=f"Generation: redesign x{num_variations}{' (high-res)' if request.is_high_res else ''}",
                related_id=design_id,
            )

        original_path = f"designs/{user_id}/{design_id}/original{_extension_for(request.content_type)}"
        try:
            original = await self.blob_store.upload(request.image_bytes, original_path, request.content_type)
        except BlobStoreError:
            logger.error("Original upload failed for design %s; refunding debit %s", design_id, debit.transaction_id)
            await self._refund(user_id, required, debit.transaction_id, design_id, "Original image upload failed")
            raise

        design = Design(
            id=design_id,
            user_id=user_id,
            status=DESIGN_STATUS_PROCESSING,
            credits_used=required,
            credit_transaction_id=debit.transaction_id,
            original_image_url=original.url,
            original_image_key=original.key,
            style=request.style,
            room_type=request.room_type,
            instructions=sanitize_instructions(request.instructions),
            num_variations=num_variations,
            is_high_res=bool(request.is_high_res),
        )
        try:
            async with self.session_maker() as db:
                db.add(design)
                await db.commit()
        except Exception:
            logger.error("Design %s could not be recorded; removing original %s", design_id, original.key)
            await self.blob_store.delete(original.key)
            raise

        logger.info("Design %s started user=%s credits=%s", design_id, user_id, required)
        return await self._load(design_id)

    async def complete_design(self, design_id: str, original_bytes: Optional[bytes] = None) -> Design:
        """Run generation for a ``processing`` design and move it to its terminal state."""
        design = await self._load(design_id)
        if design.status != DESIGN_STATUS_PROCESSING:
            logger.warning("Design %s already %s; skipping generation", design_id, design.status)
            return design

        outcome: Optional[GenerationOutcome] = None
        stored: List[StoredImage] = []
        failure_reason: Optional[str] = None
        try:
            generation_input = GenerationInput(
                reference_image_url=design.original_image_url,
                style=design.style,
                room_type=design.room_type,
                instructions=design.instructions,
            )
            outcome = await self.orchestrator.generate(generation_input, design.num_variations)
            stored = await self._store_images(design, outcome.images, original_bytes)
        except Exception as exc:
            logger.exception("Generation pipeline error for design %s", design_id)
            failure_reason = f"{REFUND_REASON}: {exc}"

        if stored:
            await self._mark_completed(design, outcome, stored)
            logger.info(
                "Design %s completed provider=%s images=%s/%s",
                design_id,
                outcome.provider,
                len(stored),
                design.num_variations,
            )
        else:
            message = failure_reason or f"{REFUND_REASON}: no images could be produced or stored."
            await self._mark_failed(design.id, message, outcome)
            await self._refund(
                design.user_id,
                design.credits_used,
                design.credit_transaction_id,
                design.id,
                REFUND_REASON,
            )
            logger.warning("Design %s failed: %s", design_id, message)

        return await self._load(design_id)

    async def fail_design(self, design_id: str, message: str) -> bool:
        """Force a ``processing`` design to ``failed`` and refund it. Returns False if it already finished."""
        design = await self._load(design_id)
        try:
            await self._mark_failed(design.id, message, None)
        except DesignStateError:
            return False
        await self._refund(
            design.user_id,
            design.credits_used,
            design.credit_transaction_id,
            design.id,
            REFUND_REASON,
        )
        return True

    async def _load(self, design_id: str) -> Design:
        async with self.session_maker() as db:
            result = await db.execute(
                select(Design).options(selectinload(Design.images)).where(Design.id == design_id)
            )
            design = result.scalar_one_or_none()
        if design is None:
            raise DesignNotFoundError(f"Design {design_id} not found")
        return design

    async def _materialize(self, raw: RawImage, original_bytes: Optional[bytes]) -> Tuple[bytes, str]:
        if raw.data is not None:
            return raw.data, raw.content_type
        url = raw.url or ""
        if raw.is_placeholder and original_bytes is not None:
            return original_bytes, mimetypes.guess_type(url)[0] or raw.content_type
        if url.startswith("data:"):
            return _decode_data_url(url)
        if url.startswith(("http://", "https://")):
            async with httpx.AsyncClient(timeout=60.0, transport=self._download_transport) as client:
                response = await client.get(url, follow_redirects=True)
                response.raise_for_status()
                content_type = response.headers.get("content-type", raw.content_type).split(";", 1)[0]
                return response.content, content_type or raw.content_type
        raise ValueError(f"Unsupported image reference: {url[:64]!r}")

    async def _store_one(
        self,
        design: Design,
        index: int,
        raw: RawImage,
        original_bytes: Optional[bytes],
        semaphore: asyncio.Semaphore,
    ) -> Optional[StoredImage]:
        async with semaphore:
            try:
                if raw.is_placeholder and original_bytes is None:
                    # Nothing new to store; point at the original upload.
                    blob = BlobUploadResult(
                        url=design.original_image_url,
                        key=design.original_image_key or "",
                        size=0,
                        content_type=raw.content_type,
                    )
                    return StoredImage(blob=blob, metadata=dict(raw.metadata))
                data, content_type = await self._materialize(raw, original_bytes)
                path = f"designs/{design.user_id}/{design.id}/{index}{_extension_for(content_type)}"
                blob = await self.blob_store.upload(data, path, content_type)
                return StoredImage(blob=blob, metadata=dict(raw.metadata))
            except (BlobStoreError, httpx.HTTPError, ValueError) as exc:
                logger.warning("Dropping image %s of design %s: %s", index, design.id, exc)
                return None
            except Exception:
                # One bad image must not discard the variations that did store.
                logger.exception("Unexpected error storing image %s of design %s", index, design.id)
                return None

    async def _store_images(
        self,
        design: Design,
        images: List[RawImage],
        original_bytes: Optional[bytes],
    ) -> List[StoredImage]:
        semaphore = asyncio.Semaphore(self.upload_concurrency)
        results = await asyncio.gather(
            *(self._store_one(design, index, raw, original_bytes, semaphore) for index, raw in enumerate(images))
        )
        return [item for item in results if item is not None]

    async def _transition(self, db: AsyncSession, design_id: str, **values) -> None:
        result = await db.execute(
            update(Design)
            .where(Design.id == design_id, Design.status == DESIGN_STATUS_PROCESSING)
            .values(completed_at=datetime.now(timezone.utc), **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await db.rollback()
            raise DesignStateError(f"Design {design_id} is no longer processing")

    async def _mark_completed(
        self,
        design: Design,
        outcome: GenerationOutcome,
        stored: List[StoredImage],
    ) -> None:
        async with self.session_maker() as db:
            await self._transition(
                db,
                design.id,
                status=DESIGN_STATUS_COMPLETED,
                provider=outcome.provider,
                outcome=outcome.status,
                error_message=None,
            )
            for position, item in enumerate(stored):
                db.add(
                    GeneratedImage(
                        design_id=design.id,
                        position=position,
                        image_url=item.blob.url,
                        image_key=item.blob.key or None,
                        metadata_json=item.metadata,
                        is_favorite=False,
                    )
                )
            await db.commit()

    async def _mark_failed(self, design_id: str, message: str, outcome: Optional[GenerationOutcome]) -> None:
        async with self.session_maker() as db:
            await self._transition(
                db,
                design_id,
                status=DESIGN_STATUS_FAILED,
                provider=outcome.provider if outcome else None,
                outcome=outcome.status if outcome else None,
                error_message=message[:1000],
            )
            await db.commit()

    async def _refund(
        self,
        user_id: str,
        amount: int,
        transaction_id: Optional[str],
        design_id: str,
        reason: str,
    ) -> None:
        """Best-effort compensation; a failure here is logged and never re-raised."""
        if not transaction_id or amount <= 0:
            logger.error("Cannot refund design %s: missing debit transaction", design_id)
            return
        try:
            async with self.session_maker() as db:
                await refund_credits(
                    user_id,
                    db,
                    amount=amount,
                    original_transaction_id=transaction_id,
                    reason=reason,
                    idempotency_key=refund_idempotency_key(design_id),
                )
        except Exception:
            logger.exception("Refund failed for design %s user=%s amount=%s", design_id, user_id, amount)


async def recover_stalled_designs(
    max_age_minutes: Optional[int] = None,
    manager: Optional[DesignLifecycleManager] = None,
) -> int:
    """Fail and refund designs stuck in ``processing`` after restarts/worker interruptions."""
    minutes = max(int(max_age_minutes or settings.STALLED_DESIGN_MINUTES), 1)
    cutoff = datetime.now(timezone.utc) - timedelta(minutes=minutes)
    lifecycle = manager or DesignLifecycleManager()
    async with lifecycle.session_maker() as db:
        result = await db.execute(
            select(Design.id).where(
                Design.status == DESIGN_STATUS_PROCESSING,
                Design.created_at < cutoff,
            )
        )
        stalled_ids = list(result.scalars().all())

    recovered = 0
    for design_id in stalled_ids:
        if await lifecycle.fail_design(design_id, STALLED_ERROR_MESSAGE):
            recovered += 1
    return recovered


async def list_designs(
    user_id: str,
    db: AsyncSession,
    *,
    page: int = 1,
    limit: int = 20,
    favorites_only: bool = False,
) -> Dict[str, Any]:
    page = max(int(page), 1)
    limit = max(min(int(limit), 100), 1)
    conditions = [Design.user_id == user_id]
    if favorites_only:
        conditions.append(Design.images.any(GeneratedImage.is_favorite.is_(True)))

    total = (await db.execute(select(func.count(Design.id)).where(*conditions))).scalar() or 0
    result = await db.execute(
        select(Design)
        .options(selectinload(Design.images))
        .where(*conditions)
        .order_by(Design.created_at.desc(), Design.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    designs = result.scalars().all()
    return {
        "items": [serialize_design(design) for design in designs],
        "page": page,
        "limit": limit,
        "total_count": int(total),
        "has_more": page * limit < int(total),
    }


async def recent_designs(user_id: str, db: AsyncSession, limit: int = 8) -> List[Dict[str, Any]]:
    result = await db.execute(
        select(Design)
        .options(selectinload(Design.images))
        .where(Design.user_id == user_id, Design.status == DESIGN_STATUS_COMPLETED)
        .order_by(Design.created_at.desc(), Design.id.desc())
        .limit(max(min(int(limit), 50), 1))
    )
    return [serialize_design(design) for design in result.scalars().all()]


async def get_design(user_id: str, db: AsyncSession, design_id: str) -> Design:
    result = await db.execute(
        select(Design)
        .options(selectinload(Design.images))
        .where(Design.id == design_id, Design.user_id == user_id)
    )
    design = result.scalar_one_or_none()
    if design is None:
        raise DesignNotFoundError("Design not found")
    return design


async def toggle_favorite(user_id: str, db: AsyncSession, image_id: str) -> Dict[str, Any]:
    result = await db.execute(
        select(GeneratedImage)
        .join(Design, Design.id == GeneratedImage.design_id)
        .where(GeneratedImage.id == image_id, Design.user_id == user_id)
    )
    image = result.scalar_one_or_none()
    if image is None:
        raise DesignNotFoundError("Image not found")
    image.is_favorite = not bool(image.is_favorite)
    await db.commit()
    return {"image_id": image.id, "is_favorite": image.is_favorite}


async def process_design_job_async(design_id: str) -> None:
    manager = DesignLifecycleManager()
    try:
        await manager.complete_design(design_id)
    except DesignNotFoundError:
        logger.warning("Design job %s skipped: design no longer exists", design_id)


def process_design_job(design_id: str) -> None:
    """RQ worker entrypoint for queued design generation."""
    asyncio.run(process_design_job_async(design_id))
