"""Billing and credits router."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import async_session_maker, get_db
from routers.auth_scope import AuthContext, get_auth_context
from routers.rate_limit import rate_limit
from services.credits import get_credit_summary
from services.plans import PLAN_CONFIG
from services.purchases import (
    PurchaseError,
    confirm_billed_purchase,
    confirm_billed_subscription,
    find_purchase,
    list_pending_purchases,
    record_pending_purchase,
)
from services.shopify_admin import (
    ShopifyAdminClient,
    ShopifyAdminError,
    ShopifyAuthError,
    get_admin_client_for_shop,
)

router = APIRouter()
logger = logging.getLogger(__name__)


class PurchaseRequest(BaseModel):
    charge_id: str = Field(min_length=1, max_length=255)
    credits: int = Field(ge=1, le=1_000_000)
    price_usd: Optional[float] = Field(default=None, ge=0)


class SubscriptionConfirmRequest(BaseModel):
    plan_id: str
    subscription_id: str = Field(min_length=1, max_length=255)


async def get_billing_admin_client(
    auth: AuthContext = Depends(get_auth_context),
) -> ShopifyAdminClient:
    """Admin API client on the shop's offline session; charge status is only read from Shopify."""
    try:
        return await get_admin_client_for_shop(auth.shop_domain, None, async_session_maker)
    except ShopifyAuthError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc


@router.get("/credits")
async def credits_summary(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    summary = await get_credit_summary(auth.shop_domain, db)
    pending = await list_pending_purchases(auth.shop_domain, db)
    summary["pending_purchases"] = [
        {
            "charge_id": purchase.charge_id,
            "credits": int(purchase.credits_added or 0),
            "price_usd": purchase.price_usd,
            "created_at": purchase.created_at.isoformat() if purchase.created_at else None,
        }
        for purchase in pending
    ]
    return summary


@router.post("/purchases", status_code=201)
async def create_purchase(
    request: PurchaseRequest,
    _rate_limit: None = Depends(rate_limit("billing_purchase", limit=20, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    existing = await find_purchase(request.charge_id, db)
    if existing is not None and existing.shop_domain != auth.shop_domain:
        raise HTTPException(status_code=409, detail="Charge belongs to another shop.")

    try:
        purchase = await record_pending_purchase(
            db,
            shop_domain=auth.shop_domain,
            charge_id=request.charge_id,
            credits=request.credits,
            price_usd=request.price_usd,
        )
    except PurchaseError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {
        "charge_id": purchase.charge_id,
        "status": purchase.status,
        "credits": int(purchase.credits_added or 0),
    }


@router.post("/purchases/{charge_id}/confirm")
async def confirm_purchase_endpoint(
    charge_id: str,
    _rate_limit: None = Depends(rate_limit("billing_confirm", limit=60, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    admin: ShopifyAdminClient = Depends(get_billing_admin_client),
):
    existing = await find_purchase(charge_id, db)
    if existing is not None and existing.shop_domain != auth.shop_domain:
        raise HTTPException(status_code=404, detail="Purchase not found.")

    try:
        result = await confirm_billed_purchase(
            db,
            admin,
            shop_domain=auth.shop_domain,
            charge_id=charge_id,
        )
    except PurchaseError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc
    except ShopifyAdminError as exc:
        logger.warning("Could not verify charge %s for %s: %s", charge_id, auth.shop_domain, exc)
        raise HTTPException(status_code=502, detail="Could not verify the charge with Shopify.") from exc

    return {
        "ok": True,
        "charge_id": result.charge_id,
        "status": result.status,
        "credits_added": result.credits_added,
        "balance_after": result.balance_after,
    }


@router.post("/subscriptions/confirm")
async def confirm_subscription(
    request: SubscriptionConfirmRequest,
    _rate_limit: None = Depends(rate_limit("billing_subscription", limit=20, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    admin: ShopifyAdminClient = Depends(get_billing_admin_client),
):
    plan_id = str(request.plan_id or "").strip().upper()
    if plan_id not in PLAN_CONFIG:
        raise HTTPException(status_code=400, detail=f"Unknown plan: {request.plan_id}")

    try:
        result = await confirm_billed_subscription(
            db,
            admin,
            shop_domain=auth.shop_domain,
            plan_id=plan_id,
            subscription_id=request.subscription_id,
        )
    except PurchaseError as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc
    except ShopifyAdminError as exc:
        logger.warning("Could not verify subscription %s for %s: %s", request.subscription_id, auth.shop_domain, exc)
        raise HTTPException(status_code=502, detail="Could not verify the subscription with Shopify.") from exc

    return {
        "ok": True,
        "plan": result.plan,
        "credits_added": result.credits_added,
        "balance_after": result.balance_after,
    }
