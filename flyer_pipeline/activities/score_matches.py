"""Candidate scoring: Claude relevance scores with a deterministic fallback."""

from __future__ import annotations

from typing import Any, Protocol

import anthropic
import structlog

from flyer_pipeline.config import settings
from flyer_pipeline.errors import ValidationError
from flyer_pipeline.models.contracts import CandidateProduct, ScoredMatch
from flyer_pipeline.models.entities import FlyerItem
from flyer_pipeline.utils.llm_output import extract_json, response_text
from flyer_pipeline.utils.prompts import load_prompt

logger = structlog.get_logger()

MAX_TOKENS = 2048


class MatchScorer(Protocol):
    async def score(self, item: FlyerItem, candidates: list[CandidateProduct]) -> list[ScoredMatch]: ...


def prepare_candidates(candidates: list[CandidateProduct]) -> list[CandidateProduct]:
    """Drop candidates without a usable id, then duplicates (first one wins)."""
    seen: set[str] = set()
    prepared: list[CandidateProduct] = []
    for candidate in candidates:
        candidate_id = (candidate.id or "").strip()
        if not candidate_id or candidate_id in seen:
            continue
        seen.add(candidate_id)
        prepared.append(candidate)
    dropped = len(candidates) - len(prepared)
    if dropped:
        logger.info("candidates_deduplicated", dropped=dropped, kept=len(prepared))
    return prepared


def fallback_scores(
    candidates: list[CandidateProduct],
    top_n: int | None = None,
    score: float | None = None,
) -> list[ScoredMatch]:
    """Top-N candidates in search order at a fixed moderate score.

    Used when the scorer times out or fails. The matches are marked
    ``auto_approvable=False`` so they always go to manual review.
    """
    top_n = top_n or settings.fallback_match_count
    score = settings.fallback_match_score if score is None else score
    return [
        ScoredMatch(
            candidate_id=candidate.id,
            relevance_score=score,
            reason="Heuristic fallback: AI scoring unavailable, ranked by catalog search order",
            auto_approvable=False,
        )
        for candidate in candidates[:top_n]
    ]


def filter_matches(matches: list[ScoredMatch], min_score: float | None = None) -> list[ScoredMatch]:
    """Keep matches at or above ``min_score``, best first."""
    threshold = settings.min_relevance_score if min_score is None else min_score
    kept = [match for match in matches if match.relevance_score >= threshold]
    return sorted(kept, key=lambda match: match.relevance_score, reverse=True)


def parse_scores(raw: Any, candidates: list[CandidateProduct]) -> list[ScoredMatch]:
    """Validate Claude's score list against the candidates that were sent."""
    if isinstance(raw, dict):
        raw = raw.get("matches") or raw.get("scores")
    if not isinstance(raw, list):
        raise ValidationError("Scorer output is not a list", raw=str(raw)[:500])

    known = {candidate.id for candidate in candidates}
    scores: dict[str, ScoredMatch] = {}
    for entry in raw:
        if not isinstance(entry, dict):
            continue
        candidate_id = str(entry.get("candidate_id") or entry.get("id") or "")
        if candidate_id not in known:
            logger.debug("scorer_unknown_candidate", candidate_id=candidate_id)
            continue
        try:
            value = float(entry.get("relevance_score", entry.get("score", 0.0)))
        except (TypeError, ValueError):
            continue
        match = ScoredMatch(
            candidate_id=candidate_id,
            relevance_score=min(max(value, 0.0), 1.0),
            reason=str(entry.get("reason") or ""),
        )
        previous = scores.get(candidate_id)
        if previous is None or match.relevance_score > previous.relevance_score:
            scores[candidate_id] = match

    if raw and not scores:
        raise ValidationError("Scorer output matched none of the candidates", raw=str(raw)[:500])
    return list(scores.values())


def _format_candidates(candidates: list[CandidateProduct]) -> str:
    lines = []
    for candidate in candidates:
        parts = [f"- id: {candidate.id}", f"name: {candidate.name}"]
        if candidate.name_mk:
            parts.append(f"local name: {candidate.name_mk}")
        if candidate.category:
            parts.append(f"category: {candidate.category}")
        if candidate.description:
            parts.append(f"description: {candidate.description[:200]}")
        lines.append(" | ".join(parts))
    return "\n".join(lines)


class ClaudeMatchScorer:
    def __init__(self, client: anthropic.AsyncAnthropic | None = None, model: str | None = None) -> None:
        self._client = client
        self._model = model or settings.claude_model

    @property
    def client(self) -> anthropic.AsyncAnthropic:
        if self._client is None:
            self._client = anthropic.AsyncAnthropic(api_key=settings.anthropic_api_key)
        return self._client

    async def score(self, item: FlyerItem, candidates: list[CandidateProduct]) -> list[ScoredMatch]:
        prompt = load_prompt("match_scoring").format(
            item_name=item.product_name,
            item_name_mk=item.product_name_mk or "",
            item_details=", ".join(item.additional_info) or "none",
            candidates=_format_candidates(candidates),
        )
        response = await self.client.messages.create(
            model=self._model,
            max_tokens=MAX_TOKENS,
            messages=[{"role": "user", "content": prompt}],
        )
        scores = parse_scores(extract_json(response_text(response), context="match_scoring"), candidates)
        logger.info(
            "match_scoring_done",
            candidates=len(candidates),
            scored=len(scores),
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
        )
        return scores
