"""Tenant erasure for shop redaction requests."""

from __future__ import annotations

import logging

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession

from models.bulk_job import BulkJob
from models.credit_purchase import CreditPurchase
from models.shop import Shop
from models.shop_session import ShopSession

logger = logging.getLogger(__name__)


async def wipe_shop_records(shop_domain: str, db: AsyncSession) -> None:
    """Delete a shop's jobs, purchases and credit account."""
    if not shop_domain:
        return
    await db.execute(delete(BulkJob).where(BulkJob.shop_domain == shop_domain))
    await db.execute(delete(CreditPurchase).where(CreditPurchase.shop_domain == shop_domain))
    await db.execute(delete(Shop).where(Shop.shop_domain == shop_domain))
    await db.commit()
    logger.info("Erased bulk jobs, purchases and credit account for %s", shop_domain)


async def wipe_shop_sessions(shop_domain: str, db: AsyncSession) -> None:
    if not shop_domain:
        return
    await db.execute(delete(ShopSession).where(ShopSession.shop_domain == shop_domain))
    await db.commit()
