from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from main import app
from database import Base
from models.shop import Shop
from models.shop_session import ShopSession
from routers import rate_limit
from services.content_generation import GenerationUnavailableError
from services.shopify_admin import offline_session_id


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters():
    """Keep in-memory rate-limit state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit._local_counters.clear()
    yield
    rate_limit._local_counters.clear()
    app.state.disable_rate_limits = previous


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    db_path = tmp_path / "bulk_jobs.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield maker
    await engine.dispose()


async def seed_shop(
    session_maker,
    shop_domain: str,
    *,
    balance: int = 100,
    plan: str = "STARTER",
    with_session: bool = True,
) -> None:
    async with session_maker() as db:
        db.add(Shop(shop_domain=shop_domain, credits_balance=balance, current_plan=plan))
        if with_session:
            db.add(
                ShopSession(
                    id=offline_session_id(shop_domain),
                    shop_domain=shop_domain,
                    access_token=f"shpat_{shop_domain}",
                )
            )
        await db.commit()


async def read_balance(session_maker, shop_domain: str) -> int:
    async with session_maker() as db:
        shop = await db.get(Shop, shop_domain)
        return int(shop.credits_balance)


def product_gid(n: int) -> str:
    return f"gid://shopify/Product/{n}"


def collection_gid(n: int) -> str:
    return f"gid://shopify/Collection/{n}"


class FakeAdmin:
    """In-memory stand-in for the Shopify Admin client."""

    def __init__(
        self,
        *,
        missing: Optional[set] = None,
        failing_updates: Optional[set] = None,
        images: Optional[Dict[str, List[Dict[str, Any]]]] = None,
        fetch_error: Optional[Exception] = None,
    ) -> None:
        self.missing = missing or set()
        self.failing_updates = failing_updates or set()
        self.images = images or {}
        self.fetch_error = fetch_error
        self.product_updates: List[Dict[str, Any]] = []
        self.collection_updates: List[Dict[str, Any]] = []
        self.alt_updates: List[tuple] = []

    async def fetch_product(self, product_id: str):
        if self.fetch_error is not None:
            raise self.fetch_error
        if product_id in self.missing:
            return None
        return {"id": product_id, "title": f"Product {product_id}", "body_html": "<p>Old</p>"}

    async def fetch_collection(self, collection_id: str):
        if collection_id in self.missing:
            return None
        return {"id": collection_id, "title": f"Collection {collection_id}", "products": []}

    async def fetch_product_images(self, product_id: str):
        if self.fetch_error is not None:
            raise self.fetch_error
        if product_id in self.missing:
            return None
        images = self.images.get(product_id, [])
        return {
            "id": product_id,
            "title": f"Product {product_id}",
            "handle": "product",
            "featured_image_id": images[0]["id"] if images else None,
            "images": images,
        }

    async def update_product(self, product_input):
        if product_input["id"] in self.failing_updates:
            return [{"field": ["title"], "message": "Title is too long"}]
        self.product_updates.append(product_input)
        return []

    async def update_collection(self, collection_input):
        self.collection_updates.append(collection_input)
        return []

    async def update_image_alt(self, product_id, image_id, alt_text):
        self.alt_updates.append((product_id, image_id, alt_text))


class FakeGenerator:
    """Returns canned copy; can be switched to unconfigured or made to fail."""

    def __init__(self, *, configured: bool = True, fail_after: Optional[int] = None, payload=None) -> None:
        self.configured = configured
        self.fail_after = fail_after
        self.payload = payload
        self.calls = 0

    def is_configured(self) -> bool:
        return self.configured

    def ensure_configured(self) -> None:
        if not self.configured:
            raise GenerationUnavailableError("OpenAI API key is not configured.")

    async def generate_json(self, messages):
        self.calls += 1
        if self.fail_after is not None and self.calls > self.fail_after:
            raise GenerationUnavailableError("OpenAI quota exhausted.")
        if self.payload is not None:
            return dict(self.payload)
        return {
            "title": "New title",
            "description_html": "<p>New description</p>",
            "meta_title": "Meta title",
            "meta_description": "Meta description",
            "alt_text": "Blue ceramic mug on a wooden table",
        }
