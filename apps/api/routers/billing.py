"""Billing and credits router."""

from __future__ import annotations

import hmac
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from models.credit_ledger import CreditEntryType
from routers.auth_scope import AuthContext, ensure_user_record, ensure_user_scope, get_auth_context
from services.credits import (
    add_credits,
    credits_required,
    get_credit_balance,
    get_credit_summary,
    list_credit_entries,
    serialize_entry,
)

router = APIRouter()
logger = logging.getLogger(__name__)


class PurchaseRequest(BaseModel):
    user_id: str = Field(min_length=1, max_length=64)
    credits: int = Field(ge=1, le=10000)
    order_id: str = Field(min_length=1, max_length=200)
    provider: str = Field(default="razorpay", min_length=1, max_length=40)


class SubscriptionBonusRequest(BaseModel):
    user_id: str = Field(min_length=1, max_length=64)
    credits: int = Field(ge=1, le=10000)
    subscription_id: str = Field(min_length=1, max_length=200)
    period: str = Field(min_length=1, max_length=40)
    provider: str = Field(default="razorpay", min_length=1, max_length=40)


async def require_billing_webhook(
    x_billing_secret: Optional[str] = Header(default=None),
) -> None:
    """Only the payment webhook relay may add purchased or subscription credits."""
    expected = (settings.BILLING_WEBHOOK_SECRET or "").strip()
    if not expected:
        raise HTTPException(status_code=503, detail="Billing webhooks are not configured.")
    if not x_billing_secret or not hmac.compare_digest(x_billing_secret.encode(), expected.encode()):
        raise HTTPException(status_code=401, detail="Invalid billing webhook credential.")


@router.get("/credits")
async def credits_summary(
    user_id: Optional[str] = Query(default=None),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(auth.user_id, user_id)
    await ensure_user_record(db, auth)
    return await get_credit_summary(scoped_user_id, db)


@router.get("/transactions")
async def credit_transactions(
    limit: int = Query(default=30, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    await ensure_user_record(db, auth)
    entries = await list_credit_entries(auth.user_id, db, limit=limit, offset=offset)
    return {
        "items": [serialize_entry(entry) for entry in entries],
        "limit": limit,
        "offset": offset,
        "balance": await get_credit_balance(auth.user_id, db),
    }


@router.get("/credits/required")
async def required_credits(
    is_high_res: bool = Query(default=False),
    num_variations: int = Query(default=settings.DEFAULT_VARIATIONS, ge=1, le=settings.MAX_VARIATIONS),
    _auth: AuthContext = Depends(get_auth_context),
):
    return {
        "is_high_res": is_high_res,
        "num_variations": num_variations,
        "credits_required": credits_required(is_high_res, num_variations),
    }


@router.post("/purchase")
async def record_purchase(
    request: PurchaseRequest,
    _webhook: None = Depends(require_billing_webhook),
    db: AsyncSession = Depends(get_db),
):
    """Credit a verified payment. Replaying the same order id is a no-op."""
    await ensure_user_record(db, AuthContext(user_id=request.user_id), grant_monthly=False)

    provider = request.provider.strip().lower()
    result = await add_credits(
        request.user_id,
        db,
        amount=request.credits,
        entry_type=CreditEntryType.PURCHASED,
        description=f"Purchased {request.credits} credits",
        idempotency_key=f"purchase:{provider}:{request.order_id}",
        billing_provider=provider,
        billing_reference=request.order_id,
    )
    if not result.created:
        logger.info("Purchase %s already credited for user %s", request.order_id, request.user_id)
    return {
        "ok": True,
        "credited": result.created,
        "credits_added": request.credits if result.created else 0,
        "balance_after": result.new_balance,
        "transaction_id": result.transaction_id,
    }


@router.post("/subscription_bonus")
async def record_subscription_bonus(
    request: SubscriptionBonusRequest,
    _webhook: None = Depends(require_billing_webhook),
    db: AsyncSession = Depends(get_db),
):
    """Credit a subscription period once per subscription and period."""
    await ensure_user_record(db, AuthContext(user_id=request.user_id), grant_monthly=False)

    provider = request.provider.strip().lower()
    result = await add_credits(
        request.user_id,
        db,
        amount=request.credits,
        entry_type=CreditEntryType.SUBSCRIPTION_BONUS,
        description=f"Subscription credits ({request.period})",
        related_id=request.subscription_id,
        idempotency_key=f"subscription:{provider}:{request.subscription_id}:{request.period}",
        billing_provider=provider,
        billing_reference=request.subscription_id,
    )
    return {
        "ok": True,
        "credited": result.created,
        "credits_added": request.credits if result.created else 0,
        "balance_after": result.new_balance,
        "transaction_id": result.transaction_id,
    }
