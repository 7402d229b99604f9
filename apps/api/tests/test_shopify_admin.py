import json

import httpx
import pytest

from conftest import seed_shop
from services.shopify_admin import (
    ShopifyAdminClient,
    ShopifyAdminError,
    ShopifyAuthError,
    extract_numeric_id,
    find_offline_session,
    get_admin_client_for_shop,
)

SHOP = "admin.myshopify.com"


def _client(handler) -> ShopifyAdminClient:
    return ShopifyAdminClient(SHOP, "shpat_test", api_version="2025-01", transport=httpx.MockTransport(handler))


def test_extract_numeric_id():
    assert extract_numeric_id("gid://shopify/ProductImage/42") == "42"
    assert extract_numeric_id(None) is None


@pytest.mark.asyncio
async def test_fetch_product_images_flattens_edges():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["token"] = request.headers["X-Shopify-Access-Token"]
        return httpx.Response(
            200,
            json={
                "data": {
                    "product": {
                        "id": "gid://shopify/Product/1",
                        "title": "Mug",
                        "handle": "mug",
                        "featuredImage": {"id": "gid://shopify/ProductImage/2"},
                        "images": {
                            "edges": [
                                {"node": {"id": "gid://shopify/ProductImage/1", "url": "https://cdn/1.jpg", "altText": None}},
                                {"node": {"id": "gid://shopify/ProductImage/2", "originalSrc": "https://cdn/2.jpg", "altText": "Mug"}},
                                {"node": {"id": "gid://shopify/ProductImage/3"}},
                            ]
                        },
                    }
                }
            },
        )

    product = await _client(handler).fetch_product_images("gid://shopify/Product/1")

    assert seen["url"] == f"https://{SHOP}/admin/api/2025-01/graphql.json"
    assert seen["token"] == "shpat_test"
    assert product["featured_image_id"] == "gid://shopify/ProductImage/2"
    assert product["images"] == [
        {"id": "gid://shopify/ProductImage/1", "url": "https://cdn/1.jpg", "alt_text": ""},
        {"id": "gid://shopify/ProductImage/2", "url": "https://cdn/2.jpg", "alt_text": "Mug"},
    ]


@pytest.mark.asyncio
async def test_missing_product_returns_none():
    product = await _client(lambda request: httpx.Response(200, json={"data": {"product": None}})).fetch_product(
        "gid://shopify/Product/404"
    )
    assert product is None


@pytest.mark.asyncio
async def test_rejected_credentials_raise_auth_error():
    with pytest.raises(ShopifyAuthError):
        await _client(lambda request: httpx.Response(401, text="Unauthorized")).fetch_product("gid://shopify/Product/1")


@pytest.mark.asyncio
async def test_graphql_errors_raise_admin_error():
    handler = lambda request: httpx.Response(200, json={"errors": [{"message": "Throttled"}]})
    with pytest.raises(ShopifyAdminError, match="Throttled"):
        await _client(handler).fetch_collection("gid://shopify/Collection/1")


@pytest.mark.asyncio
async def test_update_product_returns_user_errors():
    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        assert body["variables"]["input"]["id"] == "gid://shopify/Product/1"
        return httpx.Response(
            200,
            json={"data": {"productUpdate": {"userErrors": [{"field": ["title"], "message": "Title is too long"}]}}},
        )

    errors = await _client(handler).update_product({"id": "gid://shopify/Product/1", "title": "x" * 300})
    assert errors == [{"field": ["title"], "message": "Title is too long"}]


@pytest.mark.asyncio
async def test_update_image_alt_uses_rest_endpoint():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["method"] = request.method
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"image": {"id": 7}})

    await _client(handler).update_image_alt("gid://shopify/Product/5", "gid://shopify/ProductImage/7", "A mug")

    assert seen["method"] == "PUT"
    assert seen["path"] == "/admin/api/2025-01/products/5/images/7.json"
    assert seen["body"] == {"image": {"id": 7, "alt": "A mug"}}


@pytest.mark.asyncio
async def test_admin_client_for_shop_requires_stored_session(session_maker):
    await seed_shop(session_maker, SHOP, with_session=True)
    await seed_shop(session_maker, "nosession.myshopify.com", with_session=False)

    client = await get_admin_client_for_shop(SHOP, None, session_maker)
    assert client.shop_domain == SHOP

    async with session_maker() as db:
        assert (await find_offline_session(SHOP, db)).access_token == f"shpat_{SHOP}"

    with pytest.raises(ShopifyAuthError):
        await get_admin_client_for_shop("nosession.myshopify.com", None, session_maker)


@pytest.mark.asyncio
async def test_fetch_app_purchase_queries_the_charge_node():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["variables"] = json.loads(request.content)["variables"]
        return httpx.Response(
            200,
            json={
                "data": {
                    "node": {
                        "__typename": "AppPurchaseOneTime",
                        "id": "gid://shopify/AppPurchaseOneTime/9001",
                        "name": "1,000 credits",
                        "status": "ACTIVE",
                        "price": {"amount": "15.0", "currencyCode": "USD"},
                    }
                }
            },
        )

    charge = await _client(handler).fetch_app_purchase("9001")

    assert seen["variables"] == {"id": "gid://shopify/AppPurchaseOneTime/9001"}
    assert charge == {
        "id": "gid://shopify/AppPurchaseOneTime/9001",
        "name": "1,000 credits",
        "status": "ACTIVE",
        "price_amount": "15.0",
    }


@pytest.mark.asyncio
async def test_fetch_app_charge_ignores_other_node_types():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={"data": {"node": {"__typename": "AppPurchaseOneTime", "id": "gid://shopify/AppPurchaseOneTime/5"}}},
        )

    assert await _client(handler).fetch_app_subscription("gid://shopify/AppSubscription/5") is None

    def missing(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"data": {"node": None}})

    assert await _client(missing).fetch_app_purchase("6") is None
