"""Shopify Admin API client used by bulk job processors."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.future import select

from config import settings
from models.shop_session import ShopSession

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0

PRODUCT_QUERY = """
query ProductForJob($id: ID!) {
  product(id: $id) {
    id
    title
    handle
    productType
    vendor
    tags
    descriptionHtml
    status
    seo { title description }
    options { name values }
    variants(first: 25) {
      edges { node { id title sku selectedOptions { name value } } }
    }
    collections(first: 10) {
      edges { node { id title handle } }
    }
    metafields(first: 20) {
      edges { node { namespace key value } }
    }
  }
}
"""

PRODUCT_UPDATE_MUTATION = """
mutation ApplyGeneratedProductContent($input: ProductInput!) {
  productUpdate(input: $input) {
    product { id }
    userErrors { field message }
  }
}
"""

COLLECTION_QUERY = """
query CollectionForJob($id: ID!) {
  collection(id: $id) {
    id
    title
    handle
    descriptionHtml
    seo { title description }
    image { url altText }
    products(first: 10) {
      edges { node { id title productType vendor } }
    }
    templateSuffix
  }
}
"""

COLLECTION_UPDATE_MUTATION = """
mutation ApplyGeneratedCollectionContent($input: CollectionInput!) {
  collectionUpdate(input: $input) {
    collection { id }
    userErrors { field message }
  }
}
"""

PRODUCT_IMAGE_QUERY = """
query AltTextProduct($id: ID!) {
  product(id: $id) {
    id
    title
    handle
    featuredImage { id url }
    images(first: 50) {
      edges { node { id url originalSrc altText } }
    }
  }
}
"""

APP_CHARGE_QUERY = """
query AppChargeStatus($id: ID!) {
  node(id: $id) {
    __typename
    ... on AppPurchaseOneTime {
      id
      name
      status
      price { amount currencyCode }
    }
    ... on AppSubscription {
      id
      name
      status
    }
  }
}
"""


class ShopifyAdminError(RuntimeError):
    """Raised when the Admin API rejects or fails a request."""


class ShopifyAuthError(ShopifyAdminError):
    """Raised when the shop's credentials are missing or rejected."""


def _edges(connection: Any) -> List[Dict[str, Any]]:
    if not isinstance(connection, dict):
        return []
    return [edge.get("node") or {} for edge in connection.get("edges") or [] if isinstance(edge, dict)]


def extract_numeric_id(gid: Any) -> Optional[str]:
    if not isinstance(gid, str):
        return None
    tail = gid.rsplit("/", 1)[-1]
    return tail or None


def charge_gid(resource: str, charge_id: str) -> str:
    """Billing callbacks carry bare numeric charge ids; node lookups need the gid."""
    value = str(charge_id or "").strip()
    if value.startswith("gid://"):
        return value
    return f"gid://shopify/{resource}/{value}"


class ShopifyAdminClient:
    """Async Admin API client scoped to one shop's offline access token."""

    def __init__(
        self,
        shop_domain: str,
        access_token: str,
        *,
        api_version: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.shop_domain = shop_domain
        self._access_token = access_token
        self._api_version = api_version or settings.SHOPIFY_API_VERSION
        self._timeout = timeout
        self._transport = transport

    @property
    def _base_url(self) -> str:
        return f"https://{self.shop_domain}/admin/api/{self._api_version}"

    def _headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "X-Shopify-Access-Token": self._access_token,
        }

    async def _request(self, method: str, path: str, *, json: Optional[dict] = None) -> httpx.Response:
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            response = await client.request(method, f"{self._base_url}{path}", json=json, headers=self._headers())
        if response.status_code in (401, 403):
            raise ShopifyAuthError(
                f"Shopify rejected credentials for {self.shop_domain} ({response.status_code})."
            )
        return response

    async def graphql(self, query: str, variables: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        response = await self._request("POST", "/graphql.json", json={"query": query, "variables": variables or {}})
        if response.status_code >= 400:
            raise ShopifyAdminError(f"Shopify GraphQL error {response.status_code}: {response.text[:500]}")
        payload = response.json()
        errors = payload.get("errors") if isinstance(payload, dict) else None
        if errors:
            raise ShopifyAdminError(f"Shopify returned errors: {errors}")
        return payload.get("data") or {}

    async def fetch_product(self, product_id: str) -> Optional[Dict[str, Any]]:
        data = await self.graphql(PRODUCT_QUERY, {"id": product_id})
        node = data.get("product")
        if not node:
            return None

        metafields: Dict[str, Any] = {}
        for mf in _edges(node.get("metafields")):
            if mf.get("key"):
                namespace = mf.get("namespace")
                key = f"{namespace}.{mf['key']}" if namespace and namespace != "global" else mf["key"]
                metafields[key] = mf.get("value")

        seo = node.get("seo") or {}
        return {
            "id": node.get("id"),
            "title": node.get("title"),
            "status": node.get("status"),
            "handle": node.get("handle"),
            "vendor": node.get("vendor"),
            "product_type": node.get("productType"),
            "tags": node.get("tags") or [],
            "options": [
                {"name": option.get("name"), "values": option.get("values") or []}
                for option in node.get("options") or []
                if isinstance(option, dict)
            ],
            "variants": [
                {
                    "id": variant.get("id"),
                    "title": variant.get("title"),
                    "sku": variant.get("sku"),
                    "selected_options": variant.get("selectedOptions") or [],
                }
                for variant in _edges(node.get("variants"))
            ],
            "collections": [
                {"id": c.get("id"), "title": c.get("title"), "handle": c.get("handle")}
                for c in _edges(node.get("collections"))
            ],
            "body_html": node.get("descriptionHtml") or "",
            "metafields": metafields,
            "seo": {"title": seo.get("title") or "", "description": seo.get("description") or ""},
        }

    async def fetch_collection(self, collection_id: str) -> Optional[Dict[str, Any]]:
        data = await self.graphql(COLLECTION_QUERY, {"id": collection_id})
        node = data.get("collection")
        if not node:
            return None
        products = [
            {
                "id": product.get("id"),
                "title": product.get("title"),
                "product_type": product.get("productType"),
                "vendor": product.get("vendor"),
            }
            for product in _edges(node.get("products"))
        ]
        seo = node.get("seo") or {}
        return {
            "id": node.get("id"),
            "title": node.get("title"),
            "handle": node.get("handle"),
            "description_html": node.get("descriptionHtml") or "",
            "seo": {"title": seo.get("title") or "", "description": seo.get("description") or ""},
            "image": node.get("image"),
            "products_count": len(products),
            "template_suffix": node.get("templateSuffix"),
            "products": products,
        }

    async def fetch_product_images(self, product_id: str) -> Optional[Dict[str, Any]]:
        data = await self.graphql(PRODUCT_IMAGE_QUERY, {"id": product_id})
        node = data.get("product")
        if not node:
            return None
        images = []
        for image in _edges(node.get("images")):
            url = image.get("url") or image.get("originalSrc") or ""
            if image.get("id") and url:
                images.append({"id": image["id"], "url": url, "alt_text": image.get("altText") or ""})
        featured = node.get("featuredImage") or {}
        return {
            "id": node.get("id"),
            "title": node.get("title"),
            "handle": node.get("handle"),
            "featured_image_id": featured.get("id"),
            "images": images,
        }

    async def _fetch_app_charge(self, resource: str, charge_id: str) -> Optional[Dict[str, Any]]:
        data = await self.graphql(APP_CHARGE_QUERY, {"id": charge_gid(resource, charge_id)})
        node = data.get("node")
        if not isinstance(node, dict) or node.get("__typename") != resource:
            return None
        price = node.get("price") or {}
        return {
            "id": node.get("id"),
            "name": node.get("name"),
            "status": node.get("status"),
            "price_amount": price.get("amount"),
        }

    async def fetch_app_purchase(self, charge_id: str) -> Optional[Dict[str, Any]]:
        """Look up a one-time credit purchase as Shopify billed it; None if it is not this app's charge."""
        return await self._fetch_app_charge("AppPurchaseOneTime", charge_id)

    async def fetch_app_subscription(self, subscription_id: str) -> Optional[Dict[str, Any]]:
        return await self._fetch_app_charge("AppSubscription", subscription_id)

    async def update_product(self, product_input: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Apply a ProductInput; returns Shopify user errors (empty on success)."""
        data = await self.graphql(PRODUCT_UPDATE_MUTATION, {"input": product_input})
        return list((data.get("productUpdate") or {}).get("userErrors") or [])

    async def update_collection(self, collection_input: Dict[str, Any]) -> List[Dict[str, Any]]:
        data = await self.graphql(COLLECTION_UPDATE_MUTATION, {"input": collection_input})
        return list((data.get("collectionUpdate") or {}).get("userErrors") or [])

    async def update_image_alt(self, product_id: str, image_id: str, alt_text: str) -> None:
        """Set an image's alt text through the REST product image endpoint."""
        product_numeric_id = extract_numeric_id(product_id)
        image_numeric_id = extract_numeric_id(image_id)
        if not product_numeric_id or not image_numeric_id:
            raise ShopifyAdminError(f"Invalid product or image id ({product_id}, {image_id})")

        response = await self._request(
            "PUT",
            f"/products/{product_numeric_id}/images/{image_numeric_id}.json",
            json={"image": {"id": int(image_numeric_id), "alt": alt_text}},
        )
        if response.status_code >= 400:
            raise ShopifyAdminError(
                f"Failed to update image alt text via REST ({response.status_code}): {response.text[:500]}"
            )


async def get_admin_client_for_shop(
    shop_domain: str,
    session_id: Optional[str],
    session_maker: async_sessionmaker[AsyncSession],
) -> ShopifyAdminClient:
    """Build an Admin API client from the shop's stored offline session."""
    if not shop_domain:
        raise ShopifyAuthError("Missing shop domain for job. Please reopen the app to refresh access.")

    lookup_id = session_id or offline_session_id(shop_domain)
    async with session_maker() as db:
        result = await db.execute(
            select(ShopSession).where(
                ShopSession.id == lookup_id,
                ShopSession.shop_domain == shop_domain,
            )
        )
        stored = result.scalar_one_or_none()

    if not stored or not stored.access_token:
        raise ShopifyAuthError("Missing Shopify access token. Please reopen the app to refresh access.")
    return ShopifyAdminClient(shop_domain, stored.access_token)


def offline_session_id(shop_domain: str) -> str:
    return f"offline_{shop_domain}"


async def find_offline_session(shop_domain: str, db: AsyncSession) -> Optional[ShopSession]:
    result = await db.execute(select(ShopSession).where(ShopSession.id == offline_session_id(shop_domain)))
    return result.scalar_one_or_none()
