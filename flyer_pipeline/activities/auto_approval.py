"""Auto-approval of product matches.

Policy, applied to matches already filtered by relevance:

1. Take the best-scoring match. If its score reaches the high threshold and
   every active rule's judge approves it with at least that confidence,
   approve it.
2. Otherwise, if fallback is enabled, take the best remaining match with a
   score at or above the fallback threshold and judge it the same way
   against the fallback threshold. An approval here is tagged "[fallback]".
3. Otherwise do not approve.

Heuristic fallback matches (``auto_approvable=False``) never qualify. Each
judge call has its own timeout, and any judge error counts as a rejection.
"""

from __future__ import annotations

from typing import Any, Protocol

import anthropic
import pydantic
import structlog

from flyer_pipeline.config import settings
from flyer_pipeline.engine.retry import call_with_timeout
from flyer_pipeline.errors import ValidationError, classify_error
from flyer_pipeline.models.contracts import ApprovalDecision, CandidateProduct, JudgeVerdict, ScoredMatch
from flyer_pipeline.models.entities import AutoApprovalRule, FlyerItem
from flyer_pipeline.store.repository import Repository
from flyer_pipeline.utils.llm_output import extract_json, response_text
from flyer_pipeline.utils.prompts import load_prompt

logger = structlog.get_logger()

FALLBACK_TAG = "[fallback]"


class RuleJudge(Protocol):
    async def judge(
        self, item: FlyerItem, candidate: CandidateProduct, rule: AutoApprovalRule
    ) -> JudgeVerdict: ...


def criteria_text(rule: AutoApprovalRule) -> str:
    lines = [
        f"- {field}: {criterion.match_percentage}% similarity"
        + (" (REQUIRED)" if criterion.is_required else "")
        for field, criterion in rule.field_criteria.items()
        if not criterion.ignore
    ]
    return "\n".join(lines) if lines else "No specific field criteria defined"


def parse_verdict(raw: Any) -> JudgeVerdict:
    if not isinstance(raw, dict):
        raise ValidationError("Judge output is not an object", raw=str(raw)[:500])
    if "approve" not in raw and "shouldAutoApprove" in raw:
        raw = {**raw, "approve": raw["shouldAutoApprove"], "matched_fields": raw.get("matchedFields", [])}
    if not isinstance(raw.get("approve"), bool):
        raise ValidationError("Judge output has no boolean 'approve'", raw=str(raw)[:500])
    try:
        return JudgeVerdict.model_validate(raw)
    except pydantic.ValidationError as exc:
        raise ValidationError(f"Invalid judge output: {exc.errors()[0]['msg']}", raw=str(raw)[:500]) from exc


class ClaudeRuleJudge:
    def __init__(self, client: anthropic.AsyncAnthropic | None = None, model: str | None = None) -> None:
        self._client = client
        self._model = model or settings.claude_model

    @property
    def client(self) -> anthropic.AsyncAnthropic:
        if self._client is None:
            self._client = anthropic.AsyncAnthropic(api_key=settings.anthropic_api_key)
        return self._client

    async def judge(
        self, item: FlyerItem, candidate: CandidateProduct, rule: AutoApprovalRule
    ) -> JudgeVerdict:
        prompt = load_prompt("auto_approval").format(
            item_name=item.product_name,
            item_name_mk=item.product_name_mk or "",
            item_info=", ".join(item.additional_info),
            item_info_mk=", ".join(item.additional_info_mk),
            product_name=candidate.name,
            product_name_mk=candidate.name_mk or "",
            product_description=candidate.description or "",
            product_category=candidate.category or "",
            criteria=criteria_text(rule),
            instructions=rule.prompt or "None",
        )
        response = await self.client.messages.create(
            model=self._model,
            max_tokens=1024,
            messages=[{"role": "user", "content": prompt}],
        )
        return parse_verdict(extract_json(response_text(response), context="auto_approval"))


def _reject(reasoning: str, confidence: float = 0.0) -> ApprovalDecision:
    return ApprovalDecision(should_auto_approve=False, confidence=confidence, reasoning=reasoning)


class AutoApprovalEvaluator:
    def __init__(
        self,
        repo: Repository,
        judge: RuleJudge,
        *,
        high_threshold: float | None = None,
        fallback_threshold: float | None = None,
        fallback_enabled: bool | None = None,
        require_rule: bool | None = None,
        judge_timeout: float | None = None,
    ) -> None:
        self._repo = repo
        self._judge = judge
        self.high_threshold = high_threshold if high_threshold is not None else settings.auto_approve_threshold
        self.fallback_threshold = (
            fallback_threshold if fallback_threshold is not None else settings.fallback_approve_threshold
        )
        self.fallback_enabled = (
            fallback_enabled if fallback_enabled is not None else settings.fallback_auto_approve_enabled
        )
        self.require_rule = require_rule if require_rule is not None else settings.require_approval_rule
        self.judge_timeout = judge_timeout or settings.judge_timeout_seconds

    async def evaluate_safely(
        self,
        item: FlyerItem,
        matches: list[ScoredMatch],
        candidates: dict[str, CandidateProduct],
        timeout: float | None = None,
    ) -> ApprovalDecision:
        """``evaluate`` bounded by a timeout; any failure means no approval."""
        timeout = timeout or settings.approval_timeout_seconds
        try:
            return await call_with_timeout(
                self.evaluate(item, matches, candidates), timeout, operation="Auto-approval evaluation"
            )
        except Exception as exc:
            error = classify_error(exc)
            logger.warning("auto_approval_failed", item_id=item.id, error=error.message)
            return _reject(f"Auto-approval evaluation failed: {error.message}")

    async def evaluate(
        self,
        item: FlyerItem,
        matches: list[ScoredMatch],
        candidates: dict[str, CandidateProduct],
    ) -> ApprovalDecision:
        if not matches:
            return _reject("No candidate matched above the relevance threshold")

        ranked = sorted(
            (m for m in matches if m.auto_approvable and m.candidate_id in candidates),
            key=lambda m: m.relevance_score,
            reverse=True,
        )
        if not ranked:
            best = max(m.relevance_score for m in matches)
            return _reject(
                "Only heuristic fallback scores are available; manual review required",
                confidence=best,
            )

        rules = await self._repo.active_rules()
        if not rules and self.require_rule:
            return _reject("No active auto-approval rule configured", confidence=ranked[0].relevance_score)

        tried: set[str] = set()
        best = ranked[0]
        rejection = (
            f"Best match scored {best.relevance_score:.2f}, below the "
            f"{self.high_threshold:.2f} auto-approval threshold"
        )
        if best.relevance_score >= self.high_threshold:
            tried.add(best.candidate_id)
            decision = await self._check(item, best, candidates, rules, self.high_threshold)
            if decision.should_auto_approve:
                return decision
            rejection = decision.reasoning

        if self.fallback_enabled:
            runner_up = next(
                (
                    m
                    for m in ranked
                    if m.candidate_id not in tried and m.relevance_score >= self.fallback_threshold
                ),
                None,
            )
            if runner_up is not None:
                decision = await self._check(item, runner_up, candidates, rules, self.fallback_threshold)
                if decision.should_auto_approve:
                    return decision.model_copy(
                        update={
                            "reasoning": f"{FALLBACK_TAG} {decision.reasoning}",
                            "fallback_used": True,
                        }
                    )
                rejection = f"{rejection}; {FALLBACK_TAG} {decision.reasoning}"

        return _reject(rejection, confidence=best.relevance_score)

    async def _check(
        self,
        item: FlyerItem,
        match: ScoredMatch,
        candidates: dict[str, CandidateProduct],
        rules: list[AutoApprovalRule],
        threshold: float,
    ) -> ApprovalDecision:
        candidate = candidates[match.candidate_id]
        if not rules:
            return ApprovalDecision(
                should_auto_approve=True,
                confidence=match.relevance_score,
                reasoning=f"Relevance {match.relevance_score:.2f} meets the {threshold:.2f} threshold",
                selected_candidate_id=match.candidate_id,
            )

        confidences: list[float] = []
        reasons: list[str] = []
        fields: list[str] = []
        for rule in rules:
            verdict = await self._judge_bounded(item, candidate, rule)
            if not verdict.approve or verdict.confidence < threshold:
                logger.info(
                    "auto_approval_rule_rejected",
                    item_id=item.id,
                    candidate_id=match.candidate_id,
                    rule=rule.name,
                    approve=verdict.approve,
                    confidence=verdict.confidence,
                )
                return _reject(
                    f"Rule '{rule.name}' rejected {candidate.name} "
                    f"(confidence {verdict.confidence:.2f}): {verdict.reasoning}",
                    confidence=verdict.confidence,
                )
            confidences.append(verdict.confidence)
            reasons.append(f"{rule.name}: {verdict.reasoning}")
            fields.extend(f for f in verdict.matched_fields if f not in fields)

        return ApprovalDecision(
            should_auto_approve=True,
            confidence=min(confidences),
            reasoning="; ".join(reasons),
            selected_candidate_id=match.candidate_id,
            matched_fields=fields,
        )

    async def _judge_bounded(
        self, item: FlyerItem, candidate: CandidateProduct, rule: AutoApprovalRule
    ) -> JudgeVerdict:
        try:
            return await call_with_timeout(
                self._judge.judge(item, candidate, rule),
                self.judge_timeout,
                operation=f"Judge for rule '{rule.name}'",
            )
        except Exception as exc:
            error = classify_error(exc)
            logger.warning("auto_approval_judge_failed", rule=rule.name, error=error.message)
            return JudgeVerdict(approve=False, reasoning=f"Judge unavailable: {error.message}")
