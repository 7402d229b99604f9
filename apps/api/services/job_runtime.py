"""Shared execution context for bulk job processors."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Dict, List, Protocol

from services.content_generation import GenerationUnavailableError
from services.job_store import JobStore
from services.shopify_admin import ShopifyAuthError


class InvalidJobConfigError(ValueError):
    """Raised when a persisted job snapshot cannot be executed."""


# Errors that abort the whole job instead of a single target.
FATAL_JOB_ERRORS = (GenerationUnavailableError, ShopifyAuthError, InvalidJobConfigError)


class ContentGenerator(Protocol):
    def is_configured(self) -> bool: ...

    def ensure_configured(self) -> None: ...

    async def generate_json(self, messages: List[Dict[str, Any]]) -> Dict[str, Any]: ...


@dataclass
class JobOutcome:
    succeeded: int = 0
    failed: int = 0


class JobContext:
    """Per-job handles: store, external clients, timeouts and progress."""

    def __init__(
        self,
        *,
        job_id: str,
        total_items: int,
        processed_items: int,
        store: JobStore,
        admin: Any,
        generator: ContentGenerator,
        call_timeout: float,
    ) -> None:
        self.job_id = job_id
        self.total_items = max(int(total_items or 0), 0)
        self.processed = max(int(processed_items or 0), 0)
        self.store = store
        self.admin = admin
        self.generator = generator
        self.call_timeout = call_timeout

    async def call(self, awaitable: Awaitable[Any]) -> Any:
        """Await an external call, bounded by the configured timeout."""
        if self.call_timeout and self.call_timeout > 0:
            return await asyncio.wait_for(awaitable, timeout=self.call_timeout)
        return await awaitable

    async def advance(self, count: int) -> None:
        if count <= 0:
            return
        if self.total_items > 0:
            step = min(count, self.total_items - self.processed)
        else:
            step = count
        if step <= 0:
            return
        self.processed += step
        await self.store.increment_progress(self.job_id, step)
