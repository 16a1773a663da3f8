"""Match workflow: one flyer item -> scored catalog candidates -> approval -> discount."""

from __future__ import annotations

from typing import Any

import structlog

from flyer_pipeline.activities.auto_approval import AutoApprovalEvaluator
from flyer_pipeline.activities.discount import DiscountService
from flyer_pipeline.activities.score_matches import (
    MatchScorer,
    fallback_scores,
    filter_matches,
    prepare_candidates,
)
from flyer_pipeline.catalog import CatalogClient, extract_keywords
from flyer_pipeline.config import settings
from flyer_pipeline.engine.executor import WorkflowContext
from flyer_pipeline.engine.retry import call_with_timeout
from flyer_pipeline.errors import NotFoundError, classify_error
from flyer_pipeline.models.contracts import (
    MATCH_EVENT,
    ApprovalDecision,
    CandidateProduct,
    DiscountResult,
    MatchEvent,
    ScoredMatch,
)
from flyer_pipeline.models.entities import FlyerItem, MatchedCandidate
from flyer_pipeline.store.repository import Repository

logger = structlog.get_logger()


class MatchItemWorkflow:
    name = "match-item"
    event_name = MATCH_EVENT
    event_model = MatchEvent
    deadline_seconds: float | None = None

    def __init__(
        self,
        repo: Repository,
        catalog: CatalogClient,
        scorer: MatchScorer,
        evaluator: AutoApprovalEvaluator,
        discounts: DiscountService,
        *,
        scoring_timeout: float | None = None,
        min_score: float | None = None,
        search_limit: int | None = None,
    ) -> None:
        self._repo = repo
        self._catalog = catalog
        self._scorer = scorer
        self._evaluator = evaluator
        self._discounts = discounts
        self._scoring_timeout = scoring_timeout or settings.scoring_timeout_seconds
        self._min_score = settings.min_relevance_score if min_score is None else min_score
        self._search_limit = search_limit or settings.catalog_search_limit

    async def run(self, ctx: WorkflowContext) -> dict[str, Any]:
        event: MatchEvent = ctx.event
        item_id = event.data.item_id

        started = await ctx.step.run(
            "mark-processing", lambda: self._repo.transition_item_status(item_id, "processing")
        )
        if not started:
            logger.info("item_already_matched", item_id=item_id)
            return {"skipped": True}

        item = await self._repo.require_item(item_id)

        candidates = [
            CandidateProduct.model_validate(raw)
            for raw in await ctx.step.run("search", lambda: self._search(event))
        ]
        if not candidates:
            await ctx.step.run("persist-decision", lambda: self._complete_without_matches(item_id))
            logger.info("no_catalog_candidates", item_id=item_id)
            return {"matches": 0}

        scored = [
            ScoredMatch.model_validate(raw)
            for raw in await ctx.step.run("score", lambda: self._score(item, candidates))
        ]

        async def _filter() -> list[ScoredMatch]:
            return filter_matches(scored, self._min_score)

        matches = [ScoredMatch.model_validate(raw) for raw in await ctx.step.run("filter", _filter)]
        if not matches:
            await ctx.step.run("persist-decision", lambda: self._complete_without_matches(item_id))
            logger.info("no_relevant_matches", item_id=item_id, scored=len(scored))
            return {"matches": 0}

        by_id = {candidate.id: candidate for candidate in candidates}
        decision = ApprovalDecision.model_validate(
            await ctx.step.run(
                "evaluate-auto-approval",
                lambda: self._evaluator.evaluate_safely(item, matches, by_id),
            )
        )

        persisted = await ctx.step.run(
            "persist-decision", lambda: self._persist_decision(item_id, matches, decision)
        )
        if not persisted or not decision.should_auto_approve or not decision.selected_candidate_id:
            return {"matches": len(matches), "auto_approved": False}

        selected = decision.selected_candidate_id
        result = DiscountResult.model_validate(
            await ctx.step.run(
                "apply-discount",
                lambda: self._discounts.apply(item_id, selected, decision.confidence),
            )
        )
        if not result.success:
            # The approval stands; the item stays applied_to_product without a discount.
            logger.error(
                "discount_reconciliation_needed",
                item_id=item_id,
                product_id=selected,
                error=result.error,
                error_kind=result.error_kind,
                retry_safe=result.retry_safe,
            )
        return {
            "matches": len(matches),
            "auto_approved": True,
            "discount_applied": result.applied,
        }

    async def on_failure(self, event: MatchEvent, reason: str) -> None:
        try:
            await self._repo.transition_item_status(event.data.item_id, "failed", matching_error=reason)
        except NotFoundError:
            logger.warning("item_missing_on_failure", item_id=event.data.item_id)

    async def _search(self, event: MatchEvent) -> list[CandidateProduct]:
        metadata = event.data.metadata
        keywords = metadata.keywords or extract_keywords(event.data.name, *metadata.additional_info)
        return await self._catalog.search(
            event.data.name,
            alt_names=[metadata.name_mk] if metadata.name_mk else [],
            keywords=keywords,
            limit=self._search_limit,
        )

    async def _score(self, item: FlyerItem, candidates: list[CandidateProduct]) -> list[ScoredMatch]:
        prepared = prepare_candidates(candidates)
        if not prepared:
            return []
        try:
            return await call_with_timeout(
                self._scorer.score(item, prepared), self._scoring_timeout, operation="Match scoring"
            )
        except Exception as exc:
            error = classify_error(exc)
            logger.warning("match_scoring_fallback", item_id=item.id, error=error.message)
            return fallback_scores(prepared)

    async def _complete_without_matches(self, item_id: str) -> bool:
        return await self._repo.transition_item_status(item_id, "completed", matched_candidates=[])

    async def _persist_decision(
        self, item_id: str, matches: list[ScoredMatch], decision: ApprovalDecision
    ) -> bool:
        matched = [MatchedCandidate.model_validate(match.model_dump()) for match in matches]
        if decision.should_auto_approve:
            return await self._repo.transition_item_status(
                item_id,
                "applied_to_product",
                matched_candidates=matched,
                selected_candidate_id=decision.selected_candidate_id,
                auto_approval_status="success",
                auto_approval_reason=decision.reasoning,
                auto_approval_confidence=decision.confidence,
            )
        return await self._repo.transition_item_status(
            item_id,
            "waiting_for_approval",
            matched_candidates=matched,
            auto_approval_status="failed",
            auto_approval_reason=decision.reasoning,
            auto_approval_confidence=decision.confidence,
        )
