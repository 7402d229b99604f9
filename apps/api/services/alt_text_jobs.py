"""Image alt-text processor for bulk jobs."""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Optional

from models.bulk_job import BulkJob
from services.content_generation import build_alt_text_messages
from services.credit_math import clamp_image_target_count, sanitize_id_list
from services.job_runtime import FATAL_JOB_ERRORS, InvalidJobConfigError, JobContext, JobOutcome

logger = logging.getLogger(__name__)

ALT_TEXT_MAX_WORDS = 15


def normalize_alt_text(value: Any) -> Optional[str]:
    """Collapse whitespace and keep at most 15 words."""
    if not isinstance(value, str):
        return None
    compact = re.sub(r"\s+", " ", value).strip()
    if not compact:
        return None
    return " ".join(compact.split(" ")[:ALT_TEXT_MAX_WORDS])


def select_images(product: Dict[str, Any], scope: str) -> List[Dict[str, Any]]:
    images = [image for image in product.get("images") or [] if isinstance(image, dict)]
    if not images:
        return []
    if scope == "all":
        return images
    featured_id = product.get("featured_image_id")
    if featured_id:
        for image in images:
            if image.get("id") == featured_id:
                return [image]
    return [images[0]]


def expected_image_count(product_id: str, image_counts: Dict[str, Any]) -> int:
    if product_id in image_counts:
        return clamp_image_target_count(image_counts[product_id])
    return 1


async def process_alt_text_job(job: BulkJob, context: JobContext) -> JobOutcome:
    config = job.config or {}
    product_ids = sanitize_id_list(config.get("product_ids"))
    settings_payload = config.get("settings") if isinstance(config.get("settings"), dict) else {}
    image_scope = "all" if settings_payload.get("image_scope") == "all" else "main"
    image_counts = settings_payload.get("image_counts")
    image_counts = image_counts if isinstance(image_counts, dict) else {}

    if not product_ids:
        raise InvalidJobConfigError("Job config missing product ids for alt text generation.")

    outcome = JobOutcome()
    for product_id in product_ids:
        try:
            product = await context.call(context.admin.fetch_product_images(product_id))
        except FATAL_JOB_ERRORS:
            raise
        except Exception:
            logger.exception("Alt-text job %s: failed to fetch product %s", job.id, product_id)
            product = None

        images = select_images(product, image_scope) if product else []
        if not images:
            # Nothing to attempt; still account for what this product was charged.
            if not product:
                outcome.failed += 1
            await context.advance(expected_image_count(product_id, image_counts))
            continue

        for image in images:
            try:
                generated = await context.call(
                    context.generator.generate_json(
                        build_alt_text_messages(
                            product_title=product.get("title"),
                            product_handle=product.get("handle"),
                            existing_alt_text=image.get("alt_text"),
                            image_url=image.get("url") or "",
                        )
                    )
                )
                alt_text = normalize_alt_text(generated.get("alt_text") or generated.get("altText"))
                if not alt_text:
                    logger.warning("Alt-text job %s: no alt text returned for image %s", job.id, image.get("id"))
                    outcome.failed += 1
                    continue
                await context.call(context.admin.update_image_alt(product.get("id") or product_id, image["id"], alt_text))
                outcome.succeeded += 1
            except FATAL_JOB_ERRORS:
                raise
            except Exception:
                outcome.failed += 1
                logger.exception("Alt-text job %s: failed to update image %s", job.id, image.get("id"))
            finally:
                await context.advance(1)

    return outcome
