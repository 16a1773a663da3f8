"""Prompt templates shipped in ``flyer_pipeline/prompts``."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from flyer_pipeline.errors import PipelineError

PROMPTS_DIR = Path(__file__).resolve().parent.parent / "prompts"


@lru_cache(maxsize=None)
def load_prompt(name: str) -> str:
    """Read ``prompts/{name}.txt``. Templates use ``str.format`` placeholders."""
    path = PROMPTS_DIR / f"{name}.txt"
    try:
        return path.read_text(encoding="utf-8")
    except OSError as exc:
        raise PipelineError(f"Prompt template missing: {path.name}", retryable=False) from exc
