"""Credit purchases and subscription grants (billing collaborator)."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, List, Optional

from sqlalchemy import or_, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from sqlalchemy.sql import func

from models.credit_purchase import CreditPurchase
from models.shop import Shop
from services.credits import add_credits, get_or_create_shop, normalize_amount
from services.plans import PLAN_CONFIG, get_plan_config

logger = logging.getLogger(__name__)

PURCHASE_STATUS_PENDING = "pending"
PURCHASE_STATUS_COMPLETED = "completed"
ACTIVE_EXTERNAL_STATUSES = {"active", "accepted", "completed"}

_CREDITS_IN_NAME = re.compile(r"([\d,]+)\s+credits", re.IGNORECASE)


@dataclass(frozen=True)
class PurchaseConfirmation:
    charge_id: str
    status: str
    credits_added: int
    balance_after: Optional[int] = None


@dataclass(frozen=True)
class SubscriptionResult:
    plan: str
    credits_added: int
    balance_after: int


class PurchaseError(ValueError):
    """Raised when a purchase cannot be recorded or finalized."""

    status_code = 400


class ChargeNotFoundError(PurchaseError):
    status_code = 404


class ChargeNotActiveError(PurchaseError):
    status_code = 402


def normalize_charge_id(value: Optional[str]) -> str:
    """Shopify reports charges both as bare ids and as gids; records key on the bare id."""
    return str(value or "").strip().rsplit("/", 1)[-1]


def parse_credits_from_name(name: Optional[str]) -> Optional[int]:
    """Read the credit amount from a charge name such as "1,000 credits"."""
    if not isinstance(name, str):
        return None
    match = _CREDITS_IN_NAME.search(name)
    if not match:
        return None
    credits = normalize_amount(match.group(1).replace(",", ""))
    return credits or None


async def find_purchase(charge_id: str, db: AsyncSession) -> Optional[CreditPurchase]:
    charge_id = normalize_charge_id(charge_id)
    if not charge_id:
        return None
    result = await db.execute(
        select(CreditPurchase)
        .where(CreditPurchase.charge_id == charge_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def record_pending_purchase(
    db: AsyncSession,
    *,
    shop_domain: str,
    charge_id: str,
    credits: int,
    price_usd: Optional[float] = None,
    purchase_type: str = "one_time",
) -> CreditPurchase:
    """Create or refresh the pending record for a checkout; completed records are left alone."""
    charge_id = normalize_charge_id(charge_id)
    if not charge_id:
        raise PurchaseError("Missing charge id for purchase record.")
    await get_or_create_shop(shop_domain, db)

    purchase = await find_purchase(charge_id, db)
    if purchase is not None and purchase.status == PURCHASE_STATUS_COMPLETED:
        return purchase

    if purchase is None:
        purchase = CreditPurchase(charge_id=charge_id, shop_domain=shop_domain)
        db.add(purchase)
    purchase.shop_domain = shop_domain
    purchase.credits_added = normalize_amount(credits)
    purchase.price_usd = price_usd
    purchase.type = purchase_type
    purchase.status = PURCHASE_STATUS_PENDING
    await db.commit()
    await db.refresh(purchase)
    return purchase


async def confirm_purchase(
    db: AsyncSession,
    *,
    charge_id: str,
    external_status: str,
    shop_domain: Optional[str] = None,
    charge_name: Optional[str] = None,
    price_usd: Optional[float] = None,
) -> PurchaseConfirmation:
    """Finalize a purchase from the billing system's reported status.

    Credits are granted only by the call that moves the record to completed, so
    re-delivered confirmations for the same charge never grant twice.
    """
    charge_id = normalize_charge_id(charge_id)
    status = str(external_status or "").strip().lower()
    if not charge_id or not status:
        raise PurchaseError("Missing charge id or status for purchase confirmation.")

    purchase = await find_purchase(charge_id, db)
    if purchase is None:
        credits = parse_credits_from_name(charge_name)
        if not shop_domain or not credits:
            raise PurchaseError(f"No purchase record for charge {charge_id}.")
        purchase = await record_pending_purchase(
            db,
            shop_domain=shop_domain,
            charge_id=charge_id,
            credits=credits,
            price_usd=price_usd,
        )
    elif purchase.status != PURCHASE_STATUS_COMPLETED:
        # The billed charge name states what was paid for and wins over the recorded amount.
        credits = parse_credits_from_name(charge_name)
        if credits and credits != purchase.credits_added:
            purchase.credits_added = credits
            await db.commit()

    if purchase.status == PURCHASE_STATUS_COMPLETED:
        return PurchaseConfirmation(charge_id=charge_id, status=purchase.status, credits_added=0)

    if status not in ACTIVE_EXTERNAL_STATUSES:
        await db.execute(
            update(CreditPurchase)
            .where(
                CreditPurchase.charge_id == charge_id,
                CreditPurchase.status != PURCHASE_STATUS_COMPLETED,
            )
            .values(status=status, updated_at=func.now())
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        return PurchaseConfirmation(charge_id=charge_id, status=status, credits_added=0)

    credits = normalize_amount(purchase.credits_added)
    if credits <= 0:
        raise PurchaseError(f"Missing credit amount for purchase {charge_id}.")

    values = {"status": PURCHASE_STATUS_COMPLETED, "updated_at": func.now()}
    if price_usd is not None:
        values["price_usd"] = price_usd
    try:
        claimed = await db.execute(
            update(CreditPurchase)
            .where(
                CreditPurchase.charge_id == charge_id,
                CreditPurchase.status != PURCHASE_STATUS_COMPLETED,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            await db.rollback()
            return PurchaseConfirmation(charge_id=charge_id, status=PURCHASE_STATUS_COMPLETED, credits_added=0)
        shop = await add_credits(purchase.shop_domain, credits, db, commit=False)
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info("Purchase %s completed: %s credits added to %s", charge_id, credits, purchase.shop_domain)
    return PurchaseConfirmation(
        charge_id=charge_id,
        status=PURCHASE_STATUS_COMPLETED,
        credits_added=credits,
        balance_after=int(shop.credits_balance or 0),
    )


async def list_pending_purchases(shop_domain: str, db: AsyncSession) -> List[CreditPurchase]:
    if not shop_domain:
        return []
    result = await db.execute(
        select(CreditPurchase)
        .where(
            CreditPurchase.shop_domain == shop_domain,
            CreditPurchase.status == PURCHASE_STATUS_PENDING,
        )
        .order_by(CreditPurchase.created_at.asc())
    )
    return list(result.scalars().all())


async def apply_subscription(
    db: AsyncSession,
    *,
    shop_domain: str,
    plan_id: Optional[str],
    subscription_id: str,
) -> SubscriptionResult:
    """Switch the shop's plan and grant its monthly credits once per subscription id."""
    subscription_id = normalize_charge_id(subscription_id)
    if not subscription_id:
        raise PurchaseError("Missing subscription identifier.")
    plan = get_plan_config(plan_id)
    plan_credits = max(int(plan["credits_per_month"]), 0)
    await get_or_create_shop(shop_domain, db)

    credits_added = 0
    try:
        recorded = await db.execute(
            update(Shop)
            .where(
                Shop.shop_domain == shop_domain,
                or_(Shop.subscription_id.is_(None), Shop.subscription_id != subscription_id),
            )
            .values(current_plan=plan["id"], subscription_id=subscription_id, updated_at=func.now())
            .execution_options(synchronize_session=False)
        )
        if recorded.rowcount == 1:
            if plan_credits > 0:
                await add_credits(shop_domain, plan_credits, db, commit=False)
                credits_added = plan_credits
        else:
            await db.execute(
                update(Shop)
                .where(Shop.shop_domain == shop_domain)
                .values(current_plan=plan["id"], updated_at=func.now())
                .execution_options(synchronize_session=False)
            )
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    shop = await get_or_create_shop(shop_domain, db)
    logger.info("Subscription %s applied for %s (plan %s, +%s credits)", subscription_id, shop_domain, plan["id"], credits_added)
    return SubscriptionResult(
        plan=plan["id"],
        credits_added=credits_added,
        balance_after=int(shop.credits_balance or 0),
    )


def _billed_price(amount: Any) -> Optional[float]:
    try:
        return float(amount)
    except (TypeError, ValueError):
        return None


def plan_from_subscription_name(name: Optional[str]) -> Optional[str]:
    """Subscriptions are billed as "<PLAN> plan"; None when the name names no known plan."""
    if not isinstance(name, str) or not name.strip():
        return None
    key = name.strip().split()[0].upper()
    return key if key in PLAN_CONFIG else None


async def confirm_billed_purchase(
    db: AsyncSession,
    admin,
    *,
    shop_domain: str,
    charge_id: str,
) -> PurchaseConfirmation:
    """Finalize a one-time purchase from the status Shopify reports for the charge.

    ``admin`` is the shop's own Admin API client, so only charges billed to that
    shop resolve. The charge name, when it states a credit amount, decides how
    many credits the purchase grants.
    """
    billed = await admin.fetch_app_purchase(charge_id)
    if not billed or not billed.get("status"):
        raise ChargeNotFoundError(f"Shopify has no one-time charge {charge_id} for this shop.")

    return await confirm_purchase(
        db,
        charge_id=charge_id,
        external_status=billed["status"],
        shop_domain=shop_domain,
        charge_name=billed.get("name"),
        price_usd=_billed_price(billed.get("price_amount")),
    )


async def confirm_billed_subscription(
    db: AsyncSession,
    admin,
    *,
    shop_domain: str,
    plan_id: Optional[str],
    subscription_id: str,
) -> SubscriptionResult:
    """Apply a subscription only when Shopify reports it active for this shop."""
    billed = await admin.fetch_app_subscription(subscription_id)
    if not billed:
        raise ChargeNotFoundError(f"Shopify has no subscription {subscription_id} for this shop.")

    status = str(billed.get("status") or "").strip().lower()
    if status != "active":
        raise ChargeNotActiveError(f"Subscription {subscription_id} is {status or 'not active'}.")

    requested_plan = str(plan_id or "").strip().upper()
    billed_plan = plan_from_subscription_name(billed.get("name"))
    if billed_plan and requested_plan and billed_plan != requested_plan:
        raise PurchaseError(f"Subscription {subscription_id} was billed for the {billed_plan} plan.")

    return await apply_subscription(
        db,
        shop_domain=shop_domain,
        plan_id=billed_plan or requested_plan,
        subscription_id=billed.get("id") or subscription_id,
    )
