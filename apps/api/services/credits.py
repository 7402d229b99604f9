"""Credit ledger: per-shop balance reservation, refund and top-up."""

from __future__ import annotations

import asyncio
import logging
import math
import weakref
from typing import Any, Dict

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from sqlalchemy.sql import func

from config import settings
from models.shop import Shop
from services.plans import DEFAULT_PLAN, get_plan_config, plan_options

logger = logging.getLogger(__name__)

# Serializes reservations within one process; FOR UPDATE covers multi-process Postgres.
# Entries disappear once no reservation holds or awaits the lock.
_shop_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()


class InsufficientCreditsError(Exception):
    """Raised when a reservation would drive the balance negative."""

    def __init__(self, required: int, available: int):
        self.required = required
        self.available = available
        super().__init__(
            f"Insufficient credits. Required: {required}, available: {available}. "
            "Please add more to continue."
        )


class InvalidCreditAmountError(ValueError):
    """Raised when a credit grant is not a positive amount."""


def normalize_amount(value: Any) -> int:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0
    if not math.isfinite(number):
        return 0
    return max(0, int(math.floor(number)))


async def _load_shop(shop_domain: str, db: AsyncSession):
    result = await db.execute(
        select(Shop)
        .where(Shop.shop_domain == shop_domain)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_or_create_shop(shop_domain: str, db: AsyncSession) -> Shop:
    """Return the shop's credit account, creating it with the default balance."""
    if not shop_domain:
        raise ValueError("Missing shop domain for credit lookup.")

    existing = await _load_shop(shop_domain, db)
    if existing:
        return existing

    shop = Shop(
        shop_domain=shop_domain,
        credits_balance=max(int(settings.INITIAL_SHOP_CREDITS), 0),
        current_plan=DEFAULT_PLAN,
    )
    db.add(shop)
    try:
        await db.commit()
    except IntegrityError:
        # Another request created the account first.
        await db.rollback()
        created = await _load_shop(shop_domain, db)
        if created is None:
            raise
        return created
    logger.info("Created credit account for %s with %s credits", shop_domain, shop.credits_balance)
    return shop


async def get_credit_balance(shop_domain: str, db: AsyncSession) -> int:
    shop = await get_or_create_shop(shop_domain, db)
    return int(shop.credits_balance or 0)


def _shop_lock(shop_domain: str) -> asyncio.Lock:
    lock = _shop_locks.get(shop_domain)
    if lock is None:
        lock = asyncio.Lock()
        _shop_locks[shop_domain] = lock
    return lock


async def reserve_credits(shop_domain: str, amount: Any, db: AsyncSession) -> int:
    """Atomically debit ``amount`` credits and return the new balance."""
    credits = normalize_amount(amount)
    shop = await get_or_create_shop(shop_domain, db)
    if credits <= 0:
        return int(shop.credits_balance or 0)

    lock = _shop_lock(shop_domain)
    async with lock:
        try:
            locked = await db.execute(
                select(Shop.credits_balance)
                .where(Shop.shop_domain == shop_domain)
                .with_for_update()
            )
            available = locked.scalar_one_or_none()
            if available is None:
                raise ValueError("Credit record not found.")
            available = int(available)
            if available < credits:
                raise InsufficientCreditsError(credits, available)

            result = await db.execute(
                update(Shop)
                .where(Shop.shop_domain == shop_domain, Shop.credits_balance >= credits)
                .values(credits_balance=Shop.credits_balance - credits, updated_at=func.now())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise InsufficientCreditsError(credits, available)
            await db.commit()
        except Exception:
            await db.rollback()
            raise

    balance_after = available - credits
    logger.info("Reserved %s credits for %s (balance %s)", credits, shop_domain, balance_after)
    return balance_after


async def _increment_balance(shop_domain: str, credits: int, db: AsyncSession, *, commit: bool) -> Shop:
    await get_or_create_shop(shop_domain, db)
    await db.execute(
        update(Shop)
        .where(Shop.shop_domain == shop_domain)
        .values(credits_balance=Shop.credits_balance + credits, updated_at=func.now())
        .execution_options(synchronize_session=False)
    )
    if commit:
        await db.commit()
    return await _load_shop(shop_domain, db)


async def refund_credits(shop_domain: str, amount: Any, db: AsyncSession):
    """Return reserved credits; a non-positive amount is a no-op returning None."""
    credits = normalize_amount(amount)
    if credits <= 0:
        return None
    shop = await _increment_balance(shop_domain, credits, db, commit=True)
    logger.info("Refunded %s credits to %s (balance %s)", credits, shop_domain, shop.credits_balance)
    return shop


async def add_credits(shop_domain: str, amount: Any, db: AsyncSession, *, commit: bool = True) -> Shop:
    """Grant purchased or plan credits."""
    credits = normalize_amount(amount)
    if credits <= 0:
        raise InvalidCreditAmountError("Credit amount must be positive.")
    return await _increment_balance(shop_domain, credits, db, commit=commit)


async def get_credit_summary(shop_domain: str, db: AsyncSession) -> Dict[str, Any]:
    shop = await get_or_create_shop(shop_domain, db)
    plan = get_plan_config(shop.current_plan)
    return {
        "shop_domain": shop.shop_domain,
        "balance": int(shop.credits_balance or 0),
        "current_plan": plan["id"],
        "plan": plan,
        "plans": plan_options(),
    }
