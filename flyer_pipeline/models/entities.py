"""Persisted entities: flyers, flyer items, catalog entries, rules, runs, steps.

Documents are stored as JSON (``model_dump(mode="json")``) and validated
back into these models on read.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

FlyerStatus = Literal["pending", "processing", "completed", "failed"]
MatchingStatus = Literal[
    "pending",
    "processing",
    "completed",
    "failed",
    "waiting_for_approval",
    "applied_to_product",
]
ImageExtractionStatus = Literal["pending", "processing", "completed", "failed"]
RunStatus = Literal["pending", "running", "completed", "failed"]
StepStatus = Literal["completed", "failed"]
DiscountMethod = Literal["ai_text", "structured", "manual"]

# Rank along pending -> processing -> terminal. A write may only move forward.
_STATUS_RANK: dict[str, int] = {
    "pending": 0,
    "processing": 1,
    "completed": 2,
    "failed": 2,
    "waiting_for_approval": 2,
    "applied_to_product": 2,
}

TERMINAL_MATCHING_STATUSES = frozenset(
    {"completed", "failed", "waiting_for_approval", "applied_to_product"}
)


def utcnow() -> datetime:
    return datetime.now(UTC)


def can_transition(current: str | None, new: str) -> bool:
    """True if ``current -> new`` respects the monotonic status order.

    Re-writing the same non-terminal status is allowed (idempotent retries);
    once terminal, a status never changes again.
    """
    if current is None:
        return True
    if current == new:
        return current not in TERMINAL_MATCHING_STATUSES
    return _STATUS_RANK[new] > _STATUS_RANK[current]


# === Images ===


class CleanImages(BaseModel):
    original: str
    optimized: str
    thumbnail: str
    transparent: str | None = None


class ImageResolutions(BaseModel):
    x1: str = Field(alias="1x")
    x2: str = Field(alias="2x")
    x3: str = Field(alias="3x")
    custom: str

    model_config = {"populate_by_name": True, "serialize_by_alias": True}


class ExtractionMetadata(BaseModel):
    confidence: float = Field(ge=0, le=1, default=0.0)
    background_removed: bool = False
    text_removed: bool = False
    quality_score: float = Field(ge=0, le=1, default=0.0)
    processing_method: Literal["gemini", "vision-api", "fallback", "legacy"] = "gemini"
    manual_review_required: bool = False


class ExtractedImages(BaseModel):
    """Normalized image URLs for one item (the only shape used downstream)."""

    clean: CleanImages
    resolutions: ImageResolutions
    extraction_metadata: ExtractionMetadata = ExtractionMetadata()


def normalize_extracted_images(raw: dict[str, Any] | None) -> ExtractedImages | None:
    """Convert either stored image shape into ``ExtractedImages``.

    Older documents carry ``{"urls": {"original", "optimized", "thumbnail",
    "transparent", "resolutions"}}``; newer ones use ``clean`` /
    ``resolutions`` / ``extraction_metadata``. Documents with neither return
    None.
    """
    if not raw:
        return None
    if "clean" in raw:
        return ExtractedImages.model_validate(raw)

    urls = raw.get("urls")
    if not isinstance(urls, dict) or not urls.get("original"):
        return None

    original = urls["original"]
    optimized = urls.get("optimized") or original
    resolutions = urls.get("resolutions") or {}
    return ExtractedImages(
        clean=CleanImages(
            original=original,
            optimized=optimized,
            thumbnail=urls.get("thumbnail") or optimized,
            transparent=urls.get("transparent"),
        ),
        resolutions=ImageResolutions.model_validate(
            {
                "1x": resolutions.get("1x") or optimized,
                "2x": resolutions.get("2x") or optimized,
                "3x": resolutions.get("3x") or original,
                "custom": resolutions.get("custom") or optimized,
            }
        ),
        extraction_metadata=ExtractionMetadata(
            processing_method="legacy", manual_review_required=True
        ),
    )


# === Flyers and items ===


class ImageExtractionSummary(BaseModel):
    completed: int = 0
    failed: int = 0


class Flyer(BaseModel):
    id: str
    source_url: str
    processing_status: FlyerStatus = "pending"
    failure_reason: str | None = None
    item_count: int = 0
    image_extraction_status: ImageExtractionStatus | None = None
    image_extraction_summary: ImageExtractionSummary | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class MatchedCandidate(BaseModel):
    candidate_id: str
    relevance_score: float = Field(ge=0, le=1)
    reason: str = ""
    auto_approvable: bool = True


class FlyerItem(BaseModel):
    id: str
    parent_flyer_id: str

    product_name: str
    product_name_mk: str | None = None
    product_name_prefixes: list[str] = []
    product_name_prefixes_mk: list[str] = []
    old_price: float
    discount_price: float | None = None
    discount_text: str | None = None
    currency: str
    additional_info: list[str] = []
    additional_info_mk: list[str] = []
    discount_start_date: str | None = None
    discount_end_date: str | None = None
    confidence: float = Field(ge=0, le=1, default=0.0)

    matching_status: MatchingStatus = "pending"
    matching_error: str | None = None
    matched_candidates: list[MatchedCandidate] = []
    selected_candidate_id: str | None = None
    auto_approval_status: Literal["success", "failed"] | None = None
    auto_approval_reason: str | None = None
    auto_approval_confidence: float | None = None
    discount_applied: bool = False
    discount_percentage: int | None = None
    discount_applied_at: datetime | None = None

    image_extraction_status: ImageExtractionStatus = "pending"
    image_extraction_error: str | None = None
    extracted_images: ExtractedImages | None = None

    created_at: datetime = Field(default_factory=utcnow)

    @field_validator("extracted_images", mode="before")
    @classmethod
    def _normalize_images(cls, value: Any) -> Any:
        if isinstance(value, dict):
            return normalize_extracted_images(value)
        return value


# === Catalog ===


class DiscountProvenance(BaseModel):
    source_item_id: str
    applied_at: datetime
    confidence: float = Field(ge=0, le=1)
    method: DiscountMethod
    applied_by: Literal["auto-approval", "admin"] = "auto-approval"
    original_price: float
    calculation_details: str = ""


class CatalogEntry(BaseModel):
    id: str
    name: str
    name_mk: str | None = None
    description: str | None = None
    category: str | None = None
    keywords: list[str] = []
    current_price: float = Field(ge=0)
    new_price: float | None = None
    discount_percentage: int = 0
    has_active_discount: bool = False
    discount_provenance: DiscountProvenance | None = None
    valid_from: str | None = None
    valid_to: str | None = None


class FieldCriterion(BaseModel):
    match_percentage: int = Field(ge=0, le=100, default=80)
    is_required: bool = False
    ignore: bool = False


class AutoApprovalRule(BaseModel):
    id: str
    name: str
    prompt: str = ""
    is_active: bool = True
    field_criteria: dict[str, FieldCriterion] = {}


# === Engine bookkeeping ===


class WorkflowRun(BaseModel):
    id: str
    workflow_name: str
    event_id: str
    event_name: str
    triggering_event: dict[str, Any]
    status: RunStatus = "pending"
    error: str | None = None
    deadline_seconds: float | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None


class StepRecord(BaseModel):
    run_id: str
    step_name: str
    status: StepStatus
    attempt: int = Field(ge=1)
    result: Any = None
    error: str | None = None
    started_at: datetime
    completed_at: datetime | None = None
