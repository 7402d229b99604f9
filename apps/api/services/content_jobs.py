"""Product and collection copy processors for bulk jobs."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from models.bulk_job import BulkJob
from services.content_generation import build_collection_generation_messages, build_generation_messages
from services.credit_math import (
    COLLECTION_FIELD_ALLOWLIST,
    PRODUCT_FIELD_ALLOWLIST,
    sanitize_id_list,
    unique_field_list,
)
from services.job_runtime import FATAL_JOB_ERRORS, InvalidJobConfigError, JobContext, JobOutcome
from services.shopify_admin import ShopifyAdminError

logger = logging.getLogger(__name__)


def _clean(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    trimmed = value.strip()
    return trimmed or None


def build_content_input(target_id: str, generated: Dict[str, Any], fields: List[str]) -> Optional[Dict[str, Any]]:
    """Map generated copy onto a Product/CollectionInput, keeping only requested non-empty fields."""
    payload: Dict[str, Any] = {"id": target_id}
    generated = generated if isinstance(generated, dict) else {}

    title = _clean(generated.get("title")) if "title" in fields else None
    if title:
        payload["title"] = title
    description = _clean(generated.get("description_html")) if "description" in fields else None
    if description:
        payload["descriptionHtml"] = description

    seo: Dict[str, str] = {}
    meta_title = _clean(generated.get("meta_title")) if "meta_title" in fields else None
    if meta_title:
        seo["title"] = meta_title
    meta_description = _clean(generated.get("meta_description")) if "meta_description" in fields else None
    if meta_description:
        seo["description"] = meta_description
    if seo:
        payload["seo"] = seo

    if len(payload) == 1:
        return None
    return payload


async def process_content_job(job: BulkJob, context: JobContext) -> JobOutcome:
    """Generate and apply copy for every product or collection in the job.

    Targets run sequentially. A failed fetch, generation or update is logged and
    counted, and the job moves on; progress advances by the number of requested
    fields per target because that is what each target was charged.
    """
    config = job.config or {}
    if job.type == "collections":
        target_ids = sanitize_id_list(config.get("collection_ids"))
        allowlist = COLLECTION_FIELD_ALLOWLIST
        fetch = context.admin.fetch_collection
        apply = context.admin.update_collection
        build_messages = build_collection_generation_messages
    else:
        target_ids = sanitize_id_list(config.get("product_ids"))
        allowlist = PRODUCT_FIELD_ALLOWLIST
        fetch = context.admin.fetch_product
        apply = context.admin.update_product
        build_messages = build_generation_messages

    raw_settings = config.get("settings")
    settings_payload = dict(raw_settings) if isinstance(raw_settings, dict) else {}
    fields = [field for field in unique_field_list(settings_payload.get("fields")) if field in allowlist]
    if not target_ids or not fields:
        raise InvalidJobConfigError(f"Job config missing {job.type} ids or fields.")
    generation_settings = {**settings_payload, "fields": fields}

    outcome = JobOutcome()
    for target_id in target_ids:
        try:
            entity = await context.call(fetch(target_id))
            if not entity:
                logger.warning("Bulk job %s: %s not found", job.id, target_id)
                outcome.failed += 1
                continue

            generated = await context.call(
                context.generator.generate_json(build_messages(entity, generation_settings))
            )
            content_input = build_content_input(target_id, generated, fields)
            if content_input is None:
                logger.warning("Bulk job %s: no usable content generated for %s", job.id, target_id)
                outcome.failed += 1
                continue

            user_errors = await context.call(apply(content_input))
            if user_errors:
                raise ShopifyAdminError("; ".join(str(error.get("message")) for error in user_errors))
            outcome.succeeded += 1
        except FATAL_JOB_ERRORS:
            raise
        except Exception:
            outcome.failed += 1
            logger.exception("Bulk job %s: failed to process %s", job.id, target_id)
        finally:
            await context.advance(len(fields))

    return outcome
