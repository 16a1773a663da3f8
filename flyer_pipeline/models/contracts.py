"""Event and collaborator contracts.

Each event is an envelope with a ``name`` and a typed ``data`` payload. Each
workflow declares the event model it consumes, and payloads are validated
against it on receipt.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, TypeAdapter, field_validator

from flyer_pipeline.models.entities import utcnow

PARSE_EVENT = "flyer/parse"
MATCH_EVENT = "flyer/match"
EXTRACT_IMAGES_EVENT = "flyer/extract-images"
STATUS_UPDATE_EVENT = "flyer/status-update"


# === Event payloads ===


class ParsePayload(BaseModel):
    flyer_id: str = Field(min_length=1)
    source_url: str = Field(min_length=1)


class MatchMetadata(BaseModel):
    name_mk: str | None = None
    additional_info: list[str] = []
    keywords: list[str] = []


class MatchPayload(BaseModel):
    item_id: str = Field(min_length=1)
    flyer_id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    metadata: MatchMetadata = MatchMetadata()


class ImageTarget(BaseModel):
    item_id: str
    product_name: str
    product_name_mk: str | None = None


class ExtractImagesPayload(BaseModel):
    flyer_id: str = Field(min_length=1)
    source_url: str = Field(min_length=1)
    items: list[ImageTarget]


class StatusUpdatePayload(BaseModel):
    entity_id: str = Field(min_length=1)
    status: Literal["pending", "processing", "completed", "failed"]
    error: str | None = None


# === Event envelopes ===


class _EventBase(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = Field(default_factory=utcnow)


class ParseEvent(_EventBase):
    name: Literal["flyer/parse"] = PARSE_EVENT
    data: ParsePayload


class MatchEvent(_EventBase):
    name: Literal["flyer/match"] = MATCH_EVENT
    data: MatchPayload


class ExtractImagesEvent(_EventBase):
    name: Literal["flyer/extract-images"] = EXTRACT_IMAGES_EVENT
    data: ExtractImagesPayload


class StatusUpdateEvent(_EventBase):
    name: Literal["flyer/status-update"] = STATUS_UPDATE_EVENT
    data: StatusUpdatePayload


InboundEvent = Annotated[
    ParseEvent | MatchEvent | ExtractImagesEvent | StatusUpdateEvent,
    Field(discriminator="name"),
]

inbound_events: TypeAdapter[InboundEvent] = TypeAdapter(InboundEvent)


class EventEnvelope(BaseModel):
    """Transport form of an event: the name plus an unvalidated payload.

    The bus carries envelopes; the engine validates ``data`` against the
    consuming workflow's event model.
    """

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str
    data: dict[str, Any]
    created_at: datetime = Field(default_factory=utcnow)

    @classmethod
    def wrap(cls, event: BaseModel) -> EventEnvelope:
        dumped = event.model_dump(mode="json")
        return cls(
            id=dumped["id"],
            name=dumped["name"],
            data=dumped["data"],
            created_at=dumped["created_at"],
        )


# === Extraction ===


class OfferRecord(BaseModel):
    """One product offer read off a flyer by the extraction model."""

    product_name: str = Field(min_length=1)
    product_name_mk: str | None = None
    old_price: float = Field(gt=0)
    discount_price: float | None = Field(default=None, gt=0)
    discount_text: str | None = None
    currency: str = Field(min_length=3, max_length=3)
    additional_info: list[str] = []
    additional_info_mk: list[str] = []
    discount_start_date: str | None = None
    discount_end_date: str | None = None
    confidence: float = Field(ge=0, le=1, default=0.9)

    @field_validator("product_name")
    @classmethod
    def _name_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("product_name is blank")
        return value

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.strip().upper()

    @field_validator("additional_info", "additional_info_mk", mode="before")
    @classmethod
    def _coerce_info(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        return value


class ExtractionResult(BaseModel):
    offers: list[OfferRecord] = []
    dropped: int = 0
    error: str | None = None
    reason: str | None = None

    @property
    def failed(self) -> bool:
        return self.error is not None


# === Matching ===


class CandidateProduct(BaseModel):
    id: str
    name: str
    name_mk: str | None = None
    description: str | None = None
    category: str | None = None
    current_price: float | None = None


class ScoredMatch(BaseModel):
    candidate_id: str
    relevance_score: float = Field(ge=0, le=1)
    reason: str = ""
    auto_approvable: bool = True


class JudgeVerdict(BaseModel):
    approve: bool
    confidence: float = Field(ge=0, le=1, default=0.0)
    reasoning: str = ""
    matched_fields: list[str] = []


class ApprovalDecision(BaseModel):
    should_auto_approve: bool
    confidence: float = Field(ge=0, le=1, default=0.0)
    reasoning: str
    selected_candidate_id: str | None = None
    matched_fields: list[str] = []
    fallback_used: bool = False


# === Discounts ===


class DiscountInterpretation(BaseModel):
    new_price: float = Field(ge=0)
    discount_percentage: float = Field(ge=0, le=100)
    explanation: str = ""


class DiscountResult(BaseModel):
    success: bool
    applied: bool = False
    product_id: str
    item_id: str
    original_price: float | None = None
    new_price: float | None = None
    discount_percentage: int | None = None
    method: str | None = None
    message: str = ""
    error: str | None = None
    error_kind: Literal["timeout", "error"] | None = None
    elapsed_ms: int = 0

    @property
    def retry_safe(self) -> bool:
        """A timed-out transaction committed nothing or an equal discount; retrying is a no-op at worst."""
        return self.error_kind == "timeout"


class ManualDiscountRequest(BaseModel):
    item_id: str = Field(min_length=1)
    product_id: str = Field(min_length=1)
    discount_percentage: int | None = Field(default=None, gt=0, lt=100)


# === Images ===


class ImageOutcome(BaseModel):
    item_id: str
    status: Literal["completed", "failed"]
    error: str | None = None


# === API ===


class TriggerParseRequest(BaseModel):
    flyer_id: str = Field(min_length=1)
    source_url: str = Field(min_length=1)


class TriggerParseResponse(BaseModel):
    flyer_id: str
    event_id: str


class ErrorResponse(BaseModel):
    error: str
    message: str
    retryable: bool = False
