"""Flyer offer extraction: Gemini vision call plus record validation.

The model returns either a JSON array of offers or an error object such as
``{"error": "NO_PRODUCTS_FOUND", "reason": "..."}``. Offers missing a
positive regular price or a currency are dropped one by one; the rest of
the batch is kept.
"""

from __future__ import annotations

import asyncio
from typing import Any, Protocol

import pydantic
import structlog
from google import genai
from google.genai import types

from flyer_pipeline.config import settings
from flyer_pipeline.errors import SafetyRejection, ValidationError
from flyer_pipeline.models.contracts import ExtractionResult, OfferRecord
from flyer_pipeline.utils.gemini import JSON_CONFIG, block_reason, extract_text, get_client
from flyer_pipeline.utils.llm_output import extract_json
from flyer_pipeline.utils.prompts import load_prompt

logger = structlog.get_logger()


class OfferExtractor(Protocol):
    async def extract(self, image_bytes: bytes, mime_type: str) -> ExtractionResult: ...


def name_prefixes(name: str | None) -> list[str]:
    """Growing character prefixes of ``name`` for prefix search: "Mi" -> ["M", "Mi"]."""
    if not name:
        return []
    name = name.strip()
    return [name[:i] for i in range(1, len(name) + 1)]


def validate_offers(raw: Any) -> ExtractionResult:
    """Turn parsed model output into an ExtractionResult."""
    if isinstance(raw, dict):
        if raw.get("error"):
            return ExtractionResult(error=str(raw["error"]), reason=raw.get("reason"))
        for key in ("offers", "products", "items"):
            if isinstance(raw.get(key), list):
                raw = raw[key]
                break
        else:
            raise ValidationError("Extraction output is neither a list nor an error object", raw=str(raw)[:500])
    if not isinstance(raw, list):
        raise ValidationError("Extraction output is not a list", raw=str(raw)[:500])
    if not raw:
        return ExtractionResult(error="NO_PRODUCTS_FOUND", reason="Model returned an empty list")

    offers: list[OfferRecord] = []
    dropped = 0
    for index, record in enumerate(raw):
        if not isinstance(record, dict):
            dropped += 1
            logger.info("offer_dropped", index=index, reason="not an object")
            continue
        try:
            offers.append(OfferRecord.model_validate(record))
        except pydantic.ValidationError as exc:
            dropped += 1
            logger.info(
                "offer_dropped",
                index=index,
                product_name=record.get("product_name"),
                errors=[f"{'.'.join(map(str, e['loc']))}: {e['msg']}" for e in exc.errors()],
            )

    if not offers:
        return ExtractionResult(
            dropped=dropped,
            error="NO_VALID_PRODUCTS",
            reason=f"All {dropped} extracted records were missing a price or currency",
        )
    logger.info("offers_validated", kept=len(offers), dropped=dropped)
    return ExtractionResult(offers=offers, dropped=dropped)


class GeminiOfferExtractor:
    def __init__(self, client: genai.Client | None = None, model: str | None = None) -> None:
        self._client = client
        self._model = model or settings.gemini_extraction_model

    @property
    def client(self) -> genai.Client:
        if self._client is None:
            self._client = get_client()
        return self._client

    async def extract(self, image_bytes: bytes, mime_type: str) -> ExtractionResult:
        prompt = load_prompt("flyer_extraction").format()
        logger.info("gemini_extract_start", model=self._model, size_bytes=len(image_bytes))
        response = await asyncio.to_thread(
            self.client.models.generate_content,
            model=self._model,
            contents=[types.Part.from_bytes(data=image_bytes, mime_type=mime_type), prompt],
            config=JSON_CONFIG,
        )
        blocked = block_reason(response)
        if blocked:
            raise SafetyRejection(f"Extraction blocked by content policy: {blocked}")
        text = extract_text(response)
        return validate_offers(extract_json(text, context="flyer_extraction"))
