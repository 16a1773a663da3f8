"""Parse workflow: flyer image -> persisted FlyerItems -> match and image events.

Steps, in order:
    mark-processing      flyer pending -> processing (refused: run is a no-op)
    fetch-and-extract    download + Gemini extraction, network errors retried
    persist-items        one FlyerItem per valid offer, deterministic ids
    fan-out              one flyer/match per item, one flyer/extract-images
    mark-completed       or mark-failed with the extraction error
"""

from __future__ import annotations

import uuid
from collections.abc import Awaitable, Callable
from typing import Any

import structlog

from flyer_pipeline.activities.extract_offers import OfferExtractor, name_prefixes
from flyer_pipeline.catalog import extract_keywords
from flyer_pipeline.config import settings
from flyer_pipeline.engine.executor import WorkflowContext
from flyer_pipeline.engine.retry import RetryPolicy
from flyer_pipeline.errors import NotFoundError, classify_error, truncate_reason
from flyer_pipeline.models.contracts import (
    PARSE_EVENT,
    ExtractImagesEvent,
    ExtractImagesPayload,
    ExtractionResult,
    ImageTarget,
    MatchEvent,
    MatchMetadata,
    MatchPayload,
    OfferRecord,
    ParseEvent,
)
from flyer_pipeline.models.entities import Flyer, FlyerItem
from flyer_pipeline.store.repository import Repository
from flyer_pipeline.utils.http import DownloadedImage, download_image

logger = structlog.get_logger()

Downloader = Callable[[str, float | None], Awaitable[DownloadedImage]]

# Download/extract: first try plus two retries.
EXTRACT_RETRY_ATTEMPTS = 3


def item_id_for(flyer_id: str, index: int) -> str:
    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"flyer:{flyer_id}/item:{index}"))


def fanout_event_id(run_id: str, kind: str, key: str) -> str:
    """Stable id for an event published by a run, so a re-run republishes the same ids."""
    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"{run_id}/{kind}/{key}"))


def item_from_offer(flyer_id: str, index: int, offer: OfferRecord) -> FlyerItem:
    return FlyerItem(
        id=item_id_for(flyer_id, index),
        parent_flyer_id=flyer_id,
        product_name=offer.product_name,
        product_name_mk=offer.product_name_mk,
        product_name_prefixes=name_prefixes(offer.product_name),
        product_name_prefixes_mk=name_prefixes(offer.product_name_mk),
        old_price=offer.old_price,
        discount_price=offer.discount_price,
        discount_text=offer.discount_text,
        currency=offer.currency,
        additional_info=offer.additional_info,
        additional_info_mk=offer.additional_info_mk,
        discount_start_date=offer.discount_start_date,
        discount_end_date=offer.discount_end_date,
        confidence=offer.confidence,
    )


class ParseFlyerWorkflow:
    name = "parse-flyer"
    event_name = PARSE_EVENT
    event_model = ParseEvent
    deadline_seconds: float | None = None

    def __init__(
        self,
        repo: Repository,
        extractor: OfferExtractor,
        *,
        download: Downloader = download_image,
        download_timeout: float | None = None,
        extraction_timeout: float | None = None,
    ) -> None:
        self._repo = repo
        self._extractor = extractor
        self._download = download
        self._download_timeout = download_timeout or settings.image_download_timeout_seconds
        self._extraction_timeout = extraction_timeout or settings.extraction_timeout_seconds

    async def run(self, ctx: WorkflowContext) -> dict[str, Any]:
        event: ParseEvent = ctx.event
        flyer_id = event.data.flyer_id

        started = await ctx.step.run("mark-processing", lambda: self._mark_processing(event))
        if not started:
            logger.info("flyer_already_processed", flyer_id=flyer_id)
            return {"skipped": True}

        async def _fetch_and_extract() -> ExtractionResult:
            image = await self._download(event.data.source_url, self._download_timeout)
            return await self._extractor.extract(image.data, image.mime_type)

        extraction = ExtractionResult.model_validate(
            await ctx.step.run(
                "fetch-and-extract",
                _fetch_and_extract,
                timeout=self._download_timeout + self._extraction_timeout,
                retry=RetryPolicy.from_settings(EXTRACT_RETRY_ATTEMPTS),
            )
        )
        if extraction.failed:
            reason = extraction.error or "EXTRACTION_FAILED"
            if extraction.reason:
                reason = f"{reason}: {extraction.reason}"
            await ctx.step.run(
                "mark-failed",
                lambda: self._repo.transition_flyer_status(
                    flyer_id, "failed", failure_reason=truncate_reason(reason)
                ),
            )
            logger.warning("flyer_extraction_failed", flyer_id=flyer_id, reason=reason)
            return {"items": 0, "error": extraction.error}

        item_ids: list[str] = await ctx.step.run(
            "persist-items", lambda: self._persist_items(flyer_id, extraction.offers)
        )
        if not item_ids:
            await ctx.step.run(
                "mark-failed",
                lambda: self._repo.transition_flyer_status(
                    flyer_id, "failed", failure_reason="No extracted offer could be persisted"
                ),
            )
            return {"items": 0, "error": "PERSIST_FAILED"}

        offers = {item_id_for(flyer_id, index): offer for index, offer in enumerate(extraction.offers)}
        events = [self._match_event(ctx.run.id, flyer_id, item_id, offers[item_id]) for item_id in item_ids]
        events.append(
            ExtractImagesEvent(
                id=fanout_event_id(ctx.run.id, "extract-images", flyer_id),
                data=ExtractImagesPayload(
                    flyer_id=flyer_id,
                    source_url=event.data.source_url,
                    items=[
                        ImageTarget(
                            item_id=item_id,
                            product_name=offers[item_id].product_name,
                            product_name_mk=offers[item_id].product_name_mk,
                        )
                        for item_id in item_ids
                    ],
                ),
            )
        )
        fan_out = await ctx.step.send_events("fan-out", events)
        if fan_out.failed and not fan_out.published:
            logger.critical("fan_out_failed_completely", flyer_id=flyer_id, failed=len(fan_out.failed))
        elif fan_out.failed:
            logger.error("fan_out_partially_failed", flyer_id=flyer_id, failed=fan_out.failed)

        await ctx.step.run(
            "mark-completed",
            lambda: self._repo.transition_flyer_status(
                flyer_id,
                "completed",
                item_count=len(item_ids),
                image_extraction_status="pending",
            ),
        )
        return {"items": len(item_ids), "fan_out_failed": len(fan_out.failed)}

    async def on_failure(self, event: ParseEvent, reason: str) -> None:
        try:
            await self._repo.transition_flyer_status(event.data.flyer_id, "failed", failure_reason=reason)
        except NotFoundError:
            logger.warning("flyer_missing_on_failure", flyer_id=event.data.flyer_id)

    async def _mark_processing(self, event: ParseEvent) -> bool:
        await self._repo.create_flyer(Flyer(id=event.data.flyer_id, source_url=event.data.source_url))
        return await self._repo.transition_flyer_status(event.data.flyer_id, "processing")

    async def _persist_items(self, flyer_id: str, offers: list[OfferRecord]) -> list[str]:
        persisted: list[str] = []
        for index, offer in enumerate(offers):
            item = item_from_offer(flyer_id, index, offer)
            try:
                created = await self._repo.create_item(item)
            except Exception as exc:
                logger.error(
                    "item_persist_failed",
                    flyer_id=flyer_id,
                    index=index,
                    product_name=offer.product_name,
                    error=classify_error(exc).message,
                )
                continue
            if not created:
                logger.debug("item_already_persisted", item_id=item.id)
            persisted.append(item.id)
        logger.info("items_persisted", flyer_id=flyer_id, count=len(persisted), offers=len(offers))
        return persisted

    @staticmethod
    def _match_event(run_id: str, flyer_id: str, item_id: str, offer: OfferRecord) -> MatchEvent:
        return MatchEvent(
            id=fanout_event_id(run_id, "match", item_id),
            data=MatchPayload(
                item_id=item_id,
                flyer_id=flyer_id,
                name=offer.product_name,
                metadata=MatchMetadata(
                    name_mk=offer.product_name_mk,
                    additional_info=offer.additional_info,
                    keywords=extract_keywords(offer.product_name, *offer.additional_info),
                ),
            ),
        )
