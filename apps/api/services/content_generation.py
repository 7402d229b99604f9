"""OpenAI-backed content generation for bulk jobs."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional

import openai
from openai import OpenAI

from config import openai_temperature, settings

logger = logging.getLogger(__name__)

PLACEHOLDER_KEYS = {"", "test-key", "put api here"}

OUTPUT_SCHEMA = """{
  "title": "string or null if not requested",
  "description_html": "string or null",
  "meta_title": "string or null",
  "meta_description": "string or null"
}"""

DEFAULT_TONE = "Use a clear, neutral ecommerce tone. Concise, professional, no jokes, no hype."

PRODUCT_FIELD_LABELS = {
    "title": "Product title",
    "description": "Product description",
    "meta_title": "Meta title",
    "meta_description": "Meta description",
}

COLLECTION_FIELD_LABELS = {
    "title": "Collection title",
    "description": "Collection description",
    "meta_title": "Collection meta title",
    "meta_description": "Collection meta description",
}


class GenerationError(RuntimeError):
    """A single generation call failed; the job may continue with other targets."""


class GenerationUnavailableError(GenerationError):
    """The generation API is not configured or rejected our credentials."""


def get_openai_client(api_key: str) -> Optional[OpenAI]:
    """Get OpenAI client, handling placeholders."""
    if not api_key or api_key in PLACEHOLDER_KEYS or "your_" in api_key:
        return None
    return OpenAI(api_key=api_key)


def _field_sections(fields: List[str], labels: Dict[str, str], settings_payload: Dict[str, Any]) -> str:
    templates = settings_payload.get("templates") or {}
    custom = settings_payload.get("custom_instructions") or {}
    sections = []
    for field in fields:
        label = labels.get(field)
        if not label:
            continue
        template = (templates.get(field) or {}).get("prompt") if isinstance(templates.get(field), dict) else None
        instruction = str(custom.get(field) or "").strip()
        sections.append(
            f"{label}:\n"
            f"Template style: {template or '(none selected)'}\n"
            f"Custom merchant instructions: {instruction or '(none provided)'}"
        )
    return "\n\n".join(sections)


def _shared_instructions(kind: str, fields: List[str], labels: Dict[str, str], settings_payload: Dict[str, Any]) -> str:
    language = settings_payload.get("language") or "English"
    tone = settings_payload.get("tone_snippet") or DEFAULT_TONE
    blocked = [str(term) for term in settings_payload.get("blocked_terms") or [] if str(term).strip()]
    lines = [
        f"You are generating Shopify {kind} content. "
        "Obey the priority: Base rules > Custom merchant instructions > Template style.",
        f"Target language: {language}",
        _field_sections(fields, labels, settings_payload),
        f"Creative tone:\n- {tone}",
    ]
    if blocked:
        lines.append("Words to avoid in ANY field: " + ", ".join(blocked))
    return "\n\n".join(line for line in lines if line)


def build_generation_messages(product: Dict[str, Any], settings_payload: Dict[str, Any]) -> List[Dict[str, Any]]:
    fields = list(settings_payload.get("fields") or [])
    data = json.dumps({"product": product, "settings": settings_payload}, indent=2, default=str)
    user_content = (
        f"{_shared_instructions('product', fields, PRODUCT_FIELD_LABELS, settings_payload)}\n\n"
        f"Product data (JSON):\n\n{data}\n\n"
        "Generate only the fields listed in settings.fields and respond with JSON in this exact shape:\n"
        f"{OUTPUT_SCHEMA}"
    )
    return [
        {
            "role": "system",
            "content": (
                "You are an expert Shopify product copywriter. Never invent materials, colors, prices, "
                "or sizes that are not provided. Return only valid JSON using the exact schema requested."
            ),
        },
        {"role": "user", "content": user_content},
    ]


def build_collection_generation_messages(
    collection: Dict[str, Any],
    settings_payload: Dict[str, Any],
) -> List[Dict[str, Any]]:
    fields = list(settings_payload.get("fields") or [])
    products = collection.get("products") or []
    product_types = sorted({str(p.get("product_type")).strip() for p in products if p.get("product_type")})[:5]
    snapshot = [f"- Approximate product count: {collection.get('products_count') or len(products)}"]
    if product_types:
        snapshot.append(f"- Primary product types: {', '.join(product_types)}")
    data = json.dumps({"collection": collection, "settings": settings_payload}, indent=2, default=str)
    user_content = (
        f"{_shared_instructions('collection', fields, COLLECTION_FIELD_LABELS, settings_payload)}\n\n"
        "Collection snapshot:\n" + "\n".join(snapshot) + "\n\n"
        f"Collection data (JSON):\n\n{data}\n\n"
        "Generate only the fields listed in settings.fields and respond with JSON in this exact shape:\n"
        f"{OUTPUT_SCHEMA}"
    )
    return [
        {
            "role": "system",
            "content": (
                "You are an expert Shopify collection copywriter. Refer only to generic product categories; "
                "never mention specific product titles, SKUs, or brand names. "
                "Return only valid JSON using the exact schema requested."
            ),
        },
        {"role": "user", "content": user_content},
    ]


def build_alt_text_messages(
    *,
    product_title: Optional[str],
    product_handle: Optional[str],
    existing_alt_text: Optional[str],
    image_url: str,
) -> List[Dict[str, Any]]:
    if not image_url:
        raise GenerationError("Image URL is required for alt text generation.")
    identifier = product_title or product_handle or "product image"
    previous = f'Existing alt text: "{existing_alt_text}".' if existing_alt_text else "No existing alt text."
    user_text = (
        "Write new ecommerce image alt text following these rules:\n"
        "- Maximum 15 words.\n"
        "- Describe only what is visible in the image.\n"
        "- No opinions, emotions, or marketing language.\n"
        "- Do not guess brand names, model numbers, or colors.\n\n"
        f'Product title: "{identifier}"\n{previous}\n\n'
        'Return valid JSON only:\n{\n  "alt_text": "..."\n}'
    )
    return [
        {
            "role": "system",
            "content": (
                "You are an accessibility specialist who writes concise, descriptive alt text for "
                "ecommerce imagery. Always obey the requested JSON response schema."
            ),
        },
        {
            "role": "user",
            "content": [
                {"type": "text", "text": user_text},
                {"type": "image_url", "image_url": {"url": image_url, "detail": "auto"}},
            ],
        },
    ]


class OpenAIContentGenerator:
    """Chat-completions JSON generator; calls run in a worker thread."""

    def __init__(self, api_key: Optional[str] = None, model: Optional[str] = None) -> None:
        self._api_key = settings.OPENAI_API_KEY if api_key is None else api_key
        self._model = model or settings.OPENAI_MODEL
        self._client: Optional[OpenAI] = None

    def is_configured(self) -> bool:
        return get_openai_client(self._api_key or "") is not None

    def ensure_configured(self) -> None:
        if not self.is_configured():
            raise GenerationUnavailableError("OpenAI API key is not configured.")

    def _get_client(self) -> OpenAI:
        if self._client is None:
            client = get_openai_client(self._api_key or "")
            if client is None:
                raise GenerationUnavailableError("OpenAI API key is not configured.")
            self._client = client
        return self._client

    def _complete(self, messages: List[Dict[str, Any]]) -> Dict[str, Any]:
        client = self._get_client()
        try:
            response = client.chat.completions.create(
                model=self._model,
                temperature=openai_temperature(),
                response_format={"type": "json_object"},
                messages=messages,
            )
        except (openai.AuthenticationError, openai.PermissionDeniedError) as exc:
            raise GenerationUnavailableError(f"OpenAI rejected credentials: {exc}") from exc
        except openai.OpenAIError as exc:
            raise GenerationError(f"OpenAI error: {exc}") from exc

        content = response.choices[0].message.content if response.choices else None
        if not content:
            raise GenerationError("OpenAI response missing content.")
        try:
            data = json.loads(content)
        except json.JSONDecodeError as exc:
            raise GenerationError("Failed to parse OpenAI JSON response.") from exc
        if not isinstance(data, dict):
            raise GenerationError("OpenAI JSON response was not an object.")
        return data

    async def generate_json(self, messages: List[Dict[str, Any]]) -> Dict[str, Any]:
        return await asyncio.to_thread(self._complete, messages)
