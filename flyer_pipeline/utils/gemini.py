"""Gemini client construction and response helpers."""

from __future__ import annotations

import io

import structlog
from google import genai
from google.genai import types
from PIL import Image

from flyer_pipeline.config import settings

logger = structlog.get_logger()

IMAGE_CONFIG = types.GenerateContentConfig(
    response_modalities=["TEXT", "IMAGE"],
)

JSON_CONFIG = types.GenerateContentConfig(
    response_mime_type="application/json",
    temperature=0.1,
)


def get_client() -> genai.Client:
    """Create a Gemini client using the configured API key."""
    return genai.Client(api_key=settings.google_ai_api_key)


def extract_text(response: types.GenerateContentResponse) -> str:
    """Join all text parts of the first candidate."""
    if not response.candidates:
        return ""
    content = response.candidates[0].content
    if content is None or content.parts is None:
        return ""
    return "\n".join(part.text for part in content.parts if part.text is not None)


def extract_image(response: types.GenerateContentResponse) -> Image.Image | None:
    """Return the first image part as a PIL image, or None if there is none."""
    if not response.candidates:
        return None
    content = response.candidates[0].content
    if content is None or content.parts is None:
        return None
    for part in content.parts:
        try:
            genai_img = part.as_image()
        except (AttributeError, ValueError):
            continue
        if genai_img is not None and genai_img.image_bytes is not None:
            try:
                return Image.open(io.BytesIO(genai_img.image_bytes))
            except Exception:
                logger.error("gemini_image_decode_failed", image_bytes_len=len(genai_img.image_bytes))
                raise
    return None


def block_reason(response: types.GenerateContentResponse) -> str | None:
    """Name of the safety block on the prompt or first candidate, if any."""
    feedback = response.prompt_feedback
    if feedback is not None and feedback.block_reason is not None:
        return str(feedback.block_reason)
    if response.candidates:
        finish = response.candidates[0].finish_reason
        if finish is not None and str(finish).endswith(("SAFETY", "PROHIBITED_CONTENT", "IMAGE_SAFETY")):
            return str(finish)
    return None
