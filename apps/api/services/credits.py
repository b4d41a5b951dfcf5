"""Credit ledger and usage accounting helpers.

The ``credit_ledger`` table is the source of truth: a user's balance is the sum of
their entries and rows are never updated or deleted. ``credit_accounts`` holds a
cached balance plus a version counter; every mutating operation bumps that row
first so concurrent operations for the same user serialize before anyone reads
a balance.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple
import uuid

from sqlalchemy import func, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.credit_account import CreditAccount
from models.credit_ledger import CreditEntryType, CreditLedger

logger = logging.getLogger(__name__)

MONTHLY_GRANT_DESCRIPTION = "Monthly free credits"


class CreditLedgerError(Exception):
    """Base exception for credit ledger operations."""


class InsufficientCreditsError(CreditLedgerError):
    """Raised when a debit would take the balance below zero."""

    def __init__(self, required: int, available: int):
        self.required = required
        self.available = available
        super().__init__(f"Insufficient credits. Required: {required}, available: {available}.")


@dataclass(frozen=True)
class DeductResult:
    new_balance: int
    transaction_id: str


@dataclass(frozen=True)
class AddResult:
    new_balance: int
    transaction_id: str
    created: bool


@dataclass(frozen=True)
class GrantResult:
    granted: bool
    new_balance: int
    transaction_id: Optional[str] = None


def credits_required(is_high_res: bool, num_variations: int) -> int:
    """Credits charged for one generation request."""
    per_image = settings.CREDITS_PER_HIGH_RES_REDESIGN if is_high_res else settings.CREDITS_PER_REDESIGN
    return int(per_image) * max(int(num_variations), 0)


def _current_period_key(now: Optional[datetime] = None) -> str:
    current = now or datetime.now(timezone.utc)
    return current.strftime("%Y-%m")


def _month_start(now: Optional[datetime] = None) -> datetime:
    current = now or datetime.now(timezone.utc)
    return current.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


async def get_credit_balance(user_id: str, db: AsyncSession) -> int:
    result = await db.execute(
        select(func.coalesce(func.sum(CreditLedger.amount), 0)).where(CreditLedger.user_id == user_id)
    )
    return int(result.scalar() or 0)


async def get_cached_balance(user_id: str, db: AsyncSession) -> Optional[int]:
    result = await db.execute(select(CreditAccount.balance).where(CreditAccount.user_id == user_id))
    value = result.scalar_one_or_none()
    return int(value) if value is not None else None


def _insert_ignore(db: AsyncSession):
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert(CreditAccount)
    return sqlite_insert(CreditAccount)


async def _lock_account(user_id: str, db: AsyncSession) -> None:
    """Take the per-user write lock by bumping the account version.

    The UPDATE is the first statement of the transaction, so on PostgreSQL it holds
    the row lock and on SQLite the database write lock until commit/rollback.
    """
    bump = (
        update(CreditAccount)
        .where(CreditAccount.user_id == user_id)
        .values(version=CreditAccount.version + 1)
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(bump)
    if result.rowcount:
        return

    opening_balance = await get_credit_balance(user_id, db)
    create = (
        _insert_ignore(db)
        .values(user_id=user_id, balance=opening_balance, version=0)
        .on_conflict_do_nothing(index_elements=["user_id"])
    )
    await db.execute(create)
    await db.execute(bump)


async def _insert_entry(
    user_id: str,
    db: AsyncSession,
    *,
    entry_type: CreditEntryType,
    amount: int,
    current_balance: int,
    description: Optional[str] = None,
    related_id: Optional[str] = None,
    idempotency_key: Optional[str] = None,
    billing_provider: Optional[str] = None,
    billing_reference: Optional[str] = None,
    period_key: Optional[str] = None,
) -> CreditLedger:
    """Append one entry and move the cached balance. Caller must hold the account lock."""
    next_balance = current_balance + int(amount)
    entry = CreditLedger(
        id=str(uuid.uuid4()),
        user_id=user_id,
        entry_type=entry_type.value,
        amount=int(amount),
        balance_after=next_balance,
        description=description,
        related_id=related_id,
        idempotency_key=idempotency_key,
        billing_provider=billing_provider,
        billing_reference=billing_reference,
        period_key=period_key,
        created_at=datetime.now(timezone.utc),
    )
    db.add(entry)
    await db.execute(
        update(CreditAccount)
        .where(CreditAccount.user_id == user_id)
        .values(balance=next_balance, updated_at=datetime.now(timezone.utc))
        .execution_options(synchronize_session=False)
    )
    await db.flush()
    return entry


async def _find_by_idempotency_key(db: AsyncSession, idempotency_key: str) -> Optional[CreditLedger]:
    result = await db.execute(select(CreditLedger).where(CreditLedger.idempotency_key == idempotency_key))
    return result.scalar_one_or_none()


async def deduct_credits(
    user_id: str,
    db: AsyncSession,
    *,
    amount: int,
    description: str,
    related_id: Optional[str] = None,
) -> DeductResult:
    """Debit ``amount`` credits or raise ``InsufficientCreditsError``.

    The lock, balance read, check and append happen in one transaction, so two
    concurrent debits can never both spend the same credits.
    """
    debit = int(amount)
    if debit <= 0:
        raise ValueError("amount must be greater than 0")

    try:
        await _lock_account(user_id, db)
        balance = await get_credit_balance(user_id, db)
        if balance < debit:
            raise InsufficientCreditsError(required=debit, available=balance)
        entry = await _insert_entry(
            user_id,
            db,
            entry_type=CreditEntryType.SPENT,
            amount=-debit,
            current_balance=balance,
            description=description,
            related_id=related_id,
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info(
        "Credits deducted user=%s amount=%s balance_after=%s entry=%s",
        user_id,
        debit,
        entry.balance_after,
        entry.id,
    )
    return DeductResult(new_balance=int(entry.balance_after), transaction_id=entry.id)


async def add_credits(
    user_id: str,
    db: AsyncSession,
    *,
    amount: int,
    entry_type: CreditEntryType,
    description: str,
    related_id: Optional[str] = None,
    idempotency_key: Optional[str] = None,
    billing_provider: Optional[str] = None,
    billing_reference: Optional[str] = None,
) -> AddResult:
    """Append a positive entry. Replays with a known ``idempotency_key`` are no-ops."""
    grant = int(amount)
    if grant <= 0:
        raise ValueError("amount must be greater than 0")
    if entry_type == CreditEntryType.SPENT:
        raise ValueError("use deduct_credits for debits")

    try:
        await _lock_account(user_id, db)
        if idempotency_key:
            existing = await _find_by_idempotency_key(db, idempotency_key)
            if existing is not None:
                balance = await get_credit_balance(user_id, db)
                await db.commit()
                logger.info("Credit entry replay ignored key=%s entry=%s", idempotency_key, existing.id)
                return AddResult(new_balance=balance, transaction_id=existing.id, created=False)

        balance = await get_credit_balance(user_id, db)
        entry = await _insert_entry(
            user_id,
            db,
            entry_type=entry_type,
            amount=grant,
            current_balance=balance,
            description=description,
            related_id=related_id,
            idempotency_key=idempotency_key,
            billing_provider=billing_provider,
            billing_reference=billing_reference,
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info(
        "Credits added user=%s amount=%s type=%s balance_after=%s entry=%s",
        user_id,
        grant,
        entry_type.value,
        entry.balance_after,
        entry.id,
    )
    return AddResult(new_balance=int(entry.balance_after), transaction_id=entry.id, created=True)


async def refund_credits(
    user_id: str,
    db: AsyncSession,
    *,
    amount: int,
    original_transaction_id: str,
    reason: str,
    idempotency_key: Optional[str] = None,
) -> AddResult:
    """Give back a debit. At most one refund exists per original entry and reason."""
    description = f"Refund: {reason}"
    grant = int(amount)
    if grant <= 0:
        raise ValueError("amount must be greater than 0")

    try:
        await _lock_account(user_id, db)
        conditions = [
            CreditLedger.user_id == user_id,
            CreditLedger.entry_type == CreditEntryType.REFUNDED.value,
            CreditLedger.related_id == original_transaction_id,
            CreditLedger.description == description,
        ]
        existing = (await db.execute(select(CreditLedger).where(*conditions))).scalars().first()
        if existing is None and idempotency_key:
            existing = await _find_by_idempotency_key(db, idempotency_key)
        if existing is not None:
            balance = await get_credit_balance(user_id, db)
            await db.commit()
            logger.warning(
                "Duplicate refund ignored user=%s original=%s existing=%s",
                user_id,
                original_transaction_id,
                existing.id,
            )
            return AddResult(new_balance=balance, transaction_id=existing.id, created=False)

        balance = await get_credit_balance(user_id, db)
        entry = await _insert_entry(
            user_id,
            db,
            entry_type=CreditEntryType.REFUNDED,
            amount=grant,
            current_balance=balance,
            description=description,
            related_id=original_transaction_id,
            idempotency_key=idempotency_key,
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info(
        "Credits refunded user=%s amount=%s original=%s balance_after=%s",
        user_id,
        grant,
        original_transaction_id,
        entry.balance_after,
    )
    return AddResult(new_balance=int(entry.balance_after), transaction_id=entry.id, created=True)


async def grant_monthly_credits(
    user_id: str,
    db: AsyncSession,
    amount: Optional[int] = None,
) -> GrantResult:
    """Award the free monthly allowance once per calendar month (UTC)."""
    grant = max(int(settings.FREE_MONTHLY_CREDITS if amount is None else amount), 0)
    now = datetime.now(timezone.utc)
    period_key = _current_period_key(now)

    try:
        await _lock_account(user_id, db)
        existing = await db.execute(
            select(CreditLedger.id).where(
                CreditLedger.user_id == user_id,
                CreditLedger.entry_type == CreditEntryType.EARNED.value,
                (CreditLedger.period_key == period_key)
                | (
                    (CreditLedger.description == MONTHLY_GRANT_DESCRIPTION)
                    & (CreditLedger.created_at >= _month_start(now))
                ),
            )
        )
        if existing.scalars().first() is not None or grant == 0:
            balance = await get_credit_balance(user_id, db)
            await db.commit()
            return GrantResult(granted=False, new_balance=balance)

        balance = await get_credit_balance(user_id, db)
        entry = await _insert_entry(
            user_id,
            db,
            entry_type=CreditEntryType.EARNED,
            amount=grant,
            current_balance=balance,
            description=MONTHLY_GRANT_DESCRIPTION,
            period_key=period_key,
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info("Monthly credits awarded user=%s amount=%s period=%s", user_id, grant, period_key)
    return GrantResult(granted=True, new_balance=int(entry.balance_after), transaction_id=entry.id)


async def reconcile_account_balance(user_id: str, db: AsyncSession) -> Tuple[int, Optional[int]]:
    """Recompute the cached balance from the ledger. Returns ``(ledger_balance, cached_before)``."""
    try:
        cached_before = await get_cached_balance(user_id, db)
        await _lock_account(user_id, db)
        ledger_balance = await get_credit_balance(user_id, db)
        await db.execute(
            update(CreditAccount)
            .where(CreditAccount.user_id == user_id)
            .values(balance=ledger_balance, updated_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session=False)
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    if cached_before is not None and cached_before != ledger_balance:
        logger.warning(
            "Cached balance drift corrected user=%s cached=%s ledger=%s",
            user_id,
            cached_before,
            ledger_balance,
        )
    return ledger_balance, cached_before


async def list_credit_entries(
    user_id: str,
    db: AsyncSession,
    *,
    limit: int = 30,
    offset: int = 0,
) -> List[CreditLedger]:
    result = await db.execute(
        select(CreditLedger)
        .where(CreditLedger.user_id == user_id)
        .order_by(CreditLedger.created_at.desc(), CreditLedger.id.desc())
        .offset(max(int(offset), 0))
        .limit(max(min(int(limit), 200), 1))
    )
    return list(result.scalars().all())


def serialize_entry(entry: CreditLedger) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "entry_type": entry.entry_type,
        "amount": entry.amount,
        "balance_after": entry.balance_after,
        "description": entry.description,
        "related_id": entry.related_id,
        "created_at": entry.created_at.isoformat() if entry.created_at else None,
    }


async def get_credit_summary(user_id: str, db: AsyncSession) -> Dict[str, Any]:
    grant = await grant_monthly_credits(user_id, db)
    entries = await list_credit_entries(user_id, db, limit=30)
    return {
        "balance": grant.new_balance,
        "period_key": _current_period_key(),
        "free_monthly_credits": max(int(settings.FREE_MONTHLY_CREDITS), 0),
        "costs": {
            "redesign": max(int(settings.CREDITS_PER_REDESIGN), 0),
            "high_res_redesign": max(int(settings.CREDITS_PER_HIGH_RES_REDESIGN), 0),
        },
        "recent_entries": [serialize_entry(entry) for entry in entries],
    }
