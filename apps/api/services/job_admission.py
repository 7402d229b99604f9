"""Bulk job admission: validate, price, reserve credits and enqueue."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database import async_session_maker
from models.bulk_job import BulkJob
from services.credit_math import (
    ALT_TEXT_FIELD_ALLOWLIST,
    COLLECTION_FIELD_ALLOWLIST,
    PRODUCT_FIELD_ALLOWLIST,
    calculate_alt_text_items,
    calculate_work_items,
    clamp_image_target_count,
    is_valid_collection_gid,
    is_valid_product_gid,
    sanitize_id_list,
    unique_field_list,
)
from services.credits import InsufficientCreditsError, get_or_create_shop, refund_credits, reserve_credits
from services.job_store import JobStore
from services.plans import get_plan_config
from services.shopify_admin import find_offline_session

logger = logging.getLogger(__name__)


class JobAdmissionError(Exception):
    """Base class for rejected job requests; carries the HTTP status to report."""

    status_code = 400

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class InvalidIdError(JobAdmissionError):
    pass


class MixedSelectionError(JobAdmissionError):
    pass


class EmptySelectionError(JobAdmissionError):
    pass


class UnsupportedFieldError(JobAdmissionError):
    pass


class PlanLimitExceededError(JobAdmissionError):
    status_code = 422


class NoEligibleWorkError(JobAdmissionError):
    pass


class CreditReservationError(JobAdmissionError):
    status_code = 402


class ShopSessionUnavailableError(JobAdmissionError):
    status_code = 503


class JobPersistenceError(JobAdmissionError):
    status_code = 500


def _validated_ids(raw_ids: Any, validator, label: str) -> List[str]:
    ids = sanitize_id_list(raw_ids)
    for value in ids:
        if not validator(value):
            raise InvalidIdError(f"{label} selection contains an invalid id.")
    return ids


def is_alt_text_request(settings_payload: Dict[str, Any], fields: List[str]) -> bool:
    return settings_payload.get("task") == "alt_text" or "alt_text" in fields


def _alt_text_settings(product_ids: List[str], settings_payload: Dict[str, Any]) -> Dict[str, Any]:
    raw_counts = settings_payload.get("image_counts")
    raw_counts = raw_counts if isinstance(raw_counts, dict) else {}
    image_counts = {
        product_id: clamp_image_target_count(raw_counts[product_id])
        for product_id in product_ids
        if product_id in raw_counts
    }
    return {
        **settings_payload,
        "task": "alt_text",
        "image_scope": "all" if settings_payload.get("image_scope") == "all" else "main",
        "image_counts": image_counts,
    }


async def admit_bulk_job(
    shop_domain: str,
    db: AsyncSession,
    *,
    product_ids: Any = None,
    collection_ids: Any = None,
    settings_payload: Optional[Dict[str, Any]] = None,
    session_maker: Optional[async_sessionmaker[AsyncSession]] = None,
) -> BulkJob:
    """Validate a bulk generation request, reserve its credits and enqueue it.

    Every rejection before the reservation leaves no trace. Reservation and job
    row are paired: if the insert fails, the reserved credits are refunded.
    """
    products = _validated_ids(product_ids, is_valid_product_gid, "Product")
    collections = _validated_ids(collection_ids, is_valid_collection_gid, "Collection")

    if products and collections:
        raise MixedSelectionError("Select products or collections, not both at once.")
    if not products and not collections:
        raise EmptySelectionError("Select at least one product or collection.")

    settings_payload = settings_payload if isinstance(settings_payload, dict) else {}
    fields = unique_field_list(settings_payload.get("fields"))
    if not fields:
        raise UnsupportedFieldError("Settings with at least one selected field are required.")

    job_type = "collections" if collections else "products"
    alt_text = is_alt_text_request(settings_payload, fields)
    if alt_text and job_type != "products":
        raise UnsupportedFieldError("Alt text generation is only supported for products.")

    if alt_text:
        allowed = ALT_TEXT_FIELD_ALLOWLIST
    elif job_type == "collections":
        allowed = COLLECTION_FIELD_ALLOWLIST
    else:
        allowed = PRODUCT_FIELD_ALLOWLIST
    invalid = [field for field in fields if field not in allowed]
    if invalid:
        raise UnsupportedFieldError(f"Unsupported field(s) selected: {', '.join(invalid)}")

    shop = await get_or_create_shop(shop_domain, db)
    plan = get_plan_config(shop.current_plan)
    if job_type == "products" and len(products) > plan["max_products_per_job"]:
        raise PlanLimitExceededError(
            f"Your {plan['title']} plan supports up to {plan['max_products_per_job']} products per bulk job. "
            "Reduce your selection or upgrade your plan."
        )

    offline_session = await find_offline_session(shop_domain, db)
    if offline_session is None:
        raise ShopSessionUnavailableError("No offline session available for this shop.")

    sanitized_settings: Dict[str, Any] = {**settings_payload, "fields": fields}
    if alt_text:
        sanitized_settings = _alt_text_settings(products, sanitized_settings)
        total_items = calculate_alt_text_items(products, sanitized_settings)
        sanitized_settings["total_image_targets"] = total_items
    else:
        target_count = len(collections) if job_type == "collections" else len(products)
        total_items = calculate_work_items(target_count, fields)

    if total_items <= 0:
        raise NoEligibleWorkError("No eligible items to generate.")

    try:
        await reserve_credits(shop_domain, total_items, db)
    except InsufficientCreditsError as exc:
        raise CreditReservationError(str(exc)) from exc

    store = JobStore(session_maker or async_session_maker)
    try:
        job = await store.create_job(
            db,
            shop_domain=shop_domain,
            job_type=job_type,
            task="alt_text" if alt_text else "content",
            config={
                "product_ids": products,
                "collection_ids": collections,
                "settings": sanitized_settings,
                "session_id": offline_session.id,
                "credit_cost": total_items,
            },
            total_items=total_items,
        )
    except Exception as exc:
        logger.exception("Failed to persist bulk job for %s; refunding %s credits", shop_domain, total_items)
        await db.rollback()
        await refund_credits(shop_domain, total_items, db)
        raise JobPersistenceError("Unable to queue the bulk job. Your credits were not charged.") from exc

    logger.info("Queued %s bulk job %s for %s (%s credits)", job_type, job.id, shop_domain, total_items)
    return job
