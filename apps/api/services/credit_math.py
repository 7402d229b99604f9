"""Work-item and credit cost calculation for bulk jobs."""

from __future__ import annotations

import math
from typing import Any, Dict, Iterable, List, Optional


MAX_IMAGES_PER_PRODUCT = 50

PRODUCT_FIELD_ALLOWLIST = ("title", "description", "meta_title", "meta_description")
COLLECTION_FIELD_ALLOWLIST = ("title", "description", "meta_title", "meta_description")
ALT_TEXT_FIELD_ALLOWLIST = ("alt_text",)

PRODUCT_GID_PREFIX = "gid://shopify/Product/"
COLLECTION_GID_PREFIX = "gid://shopify/Collection/"


def _coerce_list(value: Any) -> List[Any]:
    if isinstance(value, (list, tuple)):
        return list(value)
    return []


def _to_number(value: Any) -> float:
    if isinstance(value, bool):
        return float(value)
    try:
        return float(value)
    except (TypeError, ValueError):
        return math.nan


def sanitize_id_list(ids: Optional[Iterable[Any]] = None) -> List[str]:
    """Trim and dedupe string ids, keeping first-seen order."""
    unique: Dict[str, None] = {}
    for raw in _coerce_list(ids):
        if isinstance(raw, str):
            trimmed = raw.strip()
            if trimmed:
                unique.setdefault(trimmed, None)
    return list(unique)


def unique_field_list(fields: Optional[Iterable[Any]] = None) -> List[str]:
    unique: Dict[str, None] = {}
    for raw in _coerce_list(fields):
        if isinstance(raw, str) and raw.strip():
            unique.setdefault(raw.strip(), None)
    return list(unique)


def calculate_work_items(target_count: int, fields: Optional[Iterable[Any]] = None) -> int:
    """Return targets x distinct fields, or 0 when either side is empty."""
    unique_fields = unique_field_list(fields)
    if not target_count or target_count <= 0 or not unique_fields:
        return 0
    return int(target_count) * len(unique_fields)


def clamp_image_target_count(value: Any) -> int:
    number = _to_number(value)
    if not math.isfinite(number) or number <= 0:
        return 0
    return min(int(math.floor(number)), MAX_IMAGES_PER_PRODUCT)


def calculate_alt_text_items(product_ids: Optional[Iterable[Any]], settings: Optional[Dict[str, Any]] = None) -> int:
    """Return the number of images an alt-text job will attempt.

    An explicit positive ``total_image_targets`` wins (bounded by the per-product
    image cap), then a per-product ``image_counts`` mapping where products without
    an entry count as one image, then one image per product.
    """
    ids = sanitize_id_list(product_ids)
    if not ids:
        return 0
    settings = settings if isinstance(settings, dict) else {}

    total_from_settings = _to_number(settings.get("total_image_targets"))
    if math.isfinite(total_from_settings) and total_from_settings > 0:
        max_possible = len(ids) * MAX_IMAGES_PER_PRODUCT
        return min(int(math.floor(total_from_settings)), max_possible)

    image_counts = settings.get("image_counts")
    if isinstance(image_counts, dict):
        total = 0
        for product_id in ids:
            if product_id in image_counts:
                total += clamp_image_target_count(image_counts[product_id])
            else:
                total += 1
        return total

    return len(ids)


def is_valid_product_gid(value: Any) -> bool:
    return isinstance(value, str) and value.startswith(PRODUCT_GID_PREFIX)


def is_valid_collection_gid(value: Any) -> bool:
    return isinstance(value, str) and value.startswith(COLLECTION_GID_PREFIX)
