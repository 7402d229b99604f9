import pytest
from sqlalchemy import func, select

from conftest import product_gid, seed_shop
from models.bulk_job import BulkJob
from models.shop import Shop
from models.shop_session import ShopSession
from services.job_admission import admit_bulk_job
from services.purchases import record_pending_purchase
from services.shop_cleanup import wipe_shop_records, wipe_shop_sessions

SHOP = "redact.myshopify.com"
OTHER = "keep.myshopify.com"


async def _count(session_maker, model, shop_domain):
    async with session_maker() as db:
        result = await db.execute(
            select(func.count()).select_from(model).where(model.shop_domain == shop_domain)
        )
        return int(result.scalar_one())


@pytest.mark.asyncio
async def test_wipe_removes_only_the_redacted_shop(session_maker):
    for shop in (SHOP, OTHER):
        await seed_shop(session_maker, shop, balance=100)
        async with session_maker() as db:
            await admit_bulk_job(
                shop,
                db,
                product_ids=[product_gid(1)],
                settings_payload={"fields": ["title"]},
                session_maker=session_maker,
            )
            await record_pending_purchase(db, shop_domain=shop, charge_id=f"charge-{shop}", credits=10)

    async with session_maker() as db:
        await wipe_shop_records(SHOP, db)
        await wipe_shop_sessions(SHOP, db)

    assert await _count(session_maker, BulkJob, SHOP) == 0
    assert await _count(session_maker, Shop, SHOP) == 0
    assert await _count(session_maker, ShopSession, SHOP) == 0
    assert await _count(session_maker, BulkJob, OTHER) == 1
    assert await _count(session_maker, Shop, OTHER) == 1
    assert await _count(session_maker, ShopSession, OTHER) == 1
