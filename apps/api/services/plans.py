"""Subscription plan catalogue."""

from __future__ import annotations

from typing import Any, Dict, List, Optional


PLAN_ORDER = ["FREE", "STARTER", "GROWTH", "PRO"]
DEFAULT_PLAN = "FREE"

PLAN_CONFIG: Dict[str, Dict[str, Any]] = {
    "FREE": {
        "id": "FREE",
        "title": "FREE",
        "description": "Test the workflows with a handful of products.",
        "price_amount": 0,
        "frequency": "",
        "credits_per_month": 5,
        "max_products_per_job": 5,
    },
    "STARTER": {
        "id": "STARTER",
        "title": "STARTER",
        "description": "Affordable automation for small catalogs.",
        "price_amount": 12,
        "frequency": "month",
        "credits_per_month": 2500,
        "max_products_per_job": 200,
    },
    "GROWTH": {
        "id": "GROWTH",
        "title": "GROWTH",
        "description": "Level up production with bigger queues.",
        "price_amount": 45,
        "frequency": "month",
        "credits_per_month": 13000,
        "max_products_per_job": 750,
    },
    "PRO": {
        "id": "PRO",
        "title": "PRO",
        "description": "Enterprise-grade throughput and support.",
        "price_amount": 190,
        "frequency": "month",
        "credits_per_month": 115000,
        "max_products_per_job": 3000,
    },
}


def normalize_plan_id(plan_id: Optional[str]) -> str:
    key = str(plan_id or "").strip().upper()
    return key if key in PLAN_CONFIG else DEFAULT_PLAN


def get_plan_config(plan_id: Optional[str]) -> Dict[str, Any]:
    """Return the plan entry, falling back to the default plan for unknown ids."""
    return PLAN_CONFIG[normalize_plan_id(plan_id)]


def plan_options() -> List[Dict[str, Any]]:
    return [PLAN_CONFIG[plan_id] for plan_id in PLAN_ORDER]
