"""Flyer pipeline endpoints: trigger parsing, read results, ingest events, apply discounts.

Publishing goes through ``app.state.services.bus``: the in-memory bus when
the API runs the pipeline itself, the Temporal bus otherwise.
"""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from flyer_pipeline.errors import NotFoundError, PipelineError, ValidationError, classify_error
from flyer_pipeline.models.contracts import (
    DiscountResult,
    ErrorResponse,
    ManualDiscountRequest,
    ParseEvent,
    ParsePayload,
    StatusUpdateEvent,
    StatusUpdatePayload,
    TriggerParseRequest,
    TriggerParseResponse,
    inbound_events,
)
from flyer_pipeline.models.entities import Flyer, FlyerItem
from flyer_pipeline.services import Services

logger = structlog.get_logger()

router = APIRouter(tags=["flyers"])


def _services(request: Request) -> Services:
    return request.app.state.services


def _error(status: int, code: str, message: str, *, retryable: bool = False) -> JSONResponse:
    return JSONResponse(
        status_code=status,
        content=ErrorResponse(error=code, message=message, retryable=retryable).model_dump(),
    )


def _publish_failed(exc: Exception) -> JSONResponse:
    error = classify_error(exc)
    logger.error("event_publish_rejected", error=error.message)
    return _error(503, "publish_failed", "Event could not be published", retryable=True)


@router.post(
    "/flyers/parse",
    status_code=202,
    response_model=TriggerParseResponse,
    responses={503: {"model": ErrorResponse}},
)
async def trigger_parse(body: TriggerParseRequest, request: Request):
    """Create the flyer if it does not exist yet and publish ``flyer/parse``."""
    services = _services(request)
    created = await services.repo.create_flyer(Flyer(id=body.flyer_id, source_url=body.source_url))
    event = ParseEvent(data=ParsePayload(flyer_id=body.flyer_id, source_url=body.source_url))
    try:
        event_id = await services.bus.publish(event)
    except Exception as exc:
        return _publish_failed(exc)
    logger.info("flyer_parse_triggered", flyer_id=body.flyer_id, event_id=event_id, created=created)
    return TriggerParseResponse(flyer_id=body.flyer_id, event_id=event_id)


@router.get("/flyers/{flyer_id}", response_model=Flyer, responses={404: {"model": ErrorResponse}})
async def get_flyer(flyer_id: str, request: Request):
    flyer = await _services(request).repo.get_flyer(flyer_id)
    if flyer is None:
        return _error(404, "flyer_not_found", f"Flyer {flyer_id} not found")
    return flyer


@router.get(
    "/flyers/{flyer_id}/items",
    response_model=list[FlyerItem],
    responses={404: {"model": ErrorResponse}},
)
async def list_flyer_items(flyer_id: str, request: Request):
    repo = _services(request).repo
    if await repo.get_flyer(flyer_id) is None:
        return _error(404, "flyer_not_found", f"Flyer {flyer_id} not found")
    return await repo.list_items(flyer_id)


@router.post(
    "/events",
    status_code=202,
    responses={422: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
)
async def ingest_event(request: Request):
    """Publish any inbound pipeline event, validated against its tagged schema.

    The ``name`` field selects the event type; a missing or unknown name, or a
    payload missing required fields, is rejected before anything is published.
    """
    try:
        event = inbound_events.validate_python(await request.json())
    except ValueError as exc:  # malformed JSON or pydantic.ValidationError
        return _error(422, "invalid_event", str(exc)[:500])
    try:
        event_id = await _services(request).bus.publish(event)
    except Exception as exc:
        return _publish_failed(exc)
    logger.info("event_ingested", event_name=event.name, event_id=event_id)
    return {"event_id": event_id}


@router.post("/events/status", status_code=202, responses={503: {"model": ErrorResponse}})
async def report_status(body: StatusUpdatePayload, request: Request):
    """Publish ``flyer/status-update`` for an external producer."""
    try:
        event_id = await _services(request).bus.publish(StatusUpdateEvent(data=body))
    except Exception as exc:
        return _publish_failed(exc)
    return {"event_id": event_id}


@router.post(
    "/discounts/apply",
    response_model=DiscountResult,
    responses={404: {"model": ErrorResponse}, 422: {"model": ErrorResponse}},
)
async def apply_manual_discount(body: ManualDiscountRequest, request: Request):
    """Admin override: link the item to a product and move its discount there."""
    try:
        return await _services(request).discounts.apply_manual(body)
    except NotFoundError as exc:
        return _error(404, "not_found", exc.message)
    except ValidationError as exc:
        return _error(422, "validation_error", exc.message)
    except PipelineError as exc:
        logger.error("manual_discount_failed", item_id=body.item_id, error=exc.message)
        status = 503 if exc.retryable else 409
        return _error(status, "discount_failed", exc.message, retryable=exc.retryable)
