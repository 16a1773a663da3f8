"""Discount application: one atomic write across a flyer item and a catalog entry.

The discount is taken from the item's free-text discount wording (read by
Claude) when present, otherwise from its structured old/discount prices.
A catalog entry only ever moves to a better discount: if the one already
active is equal or better, the transaction writes nothing and reports a
successful no-op.
"""

from __future__ import annotations

import asyncio
import time
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Protocol

import anthropic
import pydantic
import structlog
from pydantic_core import to_jsonable_python

from flyer_pipeline.config import settings
from flyer_pipeline.engine.retry import call_with_timeout
from flyer_pipeline.errors import (
    NotFoundError,
    TransactionConflict,
    ValidationError,
    classify_error,
)
from flyer_pipeline.models.contracts import DiscountInterpretation, DiscountResult, ManualDiscountRequest
from flyer_pipeline.models.entities import (
    CatalogEntry,
    DiscountProvenance,
    FlyerItem,
    can_transition,
    utcnow,
)
from flyer_pipeline.store.base import CATALOG_ENTRIES, FLYER_ITEMS, DocumentStore, Transaction
from flyer_pipeline.utils.llm_output import extract_json, response_text
from flyer_pipeline.utils.prompts import load_prompt

logger = structlog.get_logger()

_CENT = Decimal("0.01")


def calculate_discount_percentage(old_price: float, new_price: float) -> int:
    """Whole-number percentage off, rounded half up. 0 for non-positive prices."""
    if old_price <= 0 or new_price <= 0:
        return 0
    old = Decimal(str(old_price))
    pct = (old - Decimal(str(new_price))) / old * 100
    return int(pct.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def apply_discount_percentage(price: float, percentage: float) -> float:
    """Price after ``percentage`` off, to the cent. Out-of-range percentages change nothing."""
    if price <= 0 or percentage <= 0 or percentage >= 100:
        return price
    value = Decimal(str(price)) * (100 - Decimal(str(percentage))) / 100
    return float(value.quantize(_CENT, rounding=ROUND_HALF_UP))


class DiscountInterpreter(Protocol):
    async def interpret(self, item: FlyerItem, original_price: float) -> DiscountInterpretation: ...


class ClaudeDiscountInterpreter:
    def __init__(self, client: anthropic.AsyncAnthropic | None = None, model: str | None = None) -> None:
        self._client = client
        self._model = model or settings.claude_model

    @property
    def client(self) -> anthropic.AsyncAnthropic:
        if self._client is None:
            self._client = anthropic.AsyncAnthropic(api_key=settings.anthropic_api_key)
        return self._client

    async def interpret(self, item: FlyerItem, original_price: float) -> DiscountInterpretation:
        prompt = load_prompt("discount_interpretation").format(
            discount_text=item.discount_text or "",
            original_price=f"{original_price:.2f}",
            currency=item.currency,
            discount_price=f"{item.discount_price:.2f}" if item.discount_price else "none",
        )
        response = await self.client.messages.create(
            model=self._model,
            max_tokens=512,
            messages=[{"role": "user", "content": prompt}],
        )
        raw = extract_json(response_text(response), context="discount_interpretation")
        try:
            return DiscountInterpretation.model_validate(raw)
        except pydantic.ValidationError as exc:
            raise ValidationError("Invalid discount interpretation", raw=str(raw)[:500]) from exc


class _Computation:
    def __init__(self, percentage: int, new_price: float, method: str, details: str) -> None:
        self.percentage = percentage
        self.new_price = new_price
        self.method = method
        self.details = details


def _jsonable(fields: dict[str, Any]) -> dict[str, Any]:
    return to_jsonable_python(fields)  # type: ignore[no-any-return]


async def _read_pair(tx: Transaction, item_id: str, product_id: str) -> tuple[FlyerItem, CatalogEntry]:
    item_doc = await tx.get(FLYER_ITEMS, item_id)
    product_doc = await tx.get(CATALOG_ENTRIES, product_id)
    if item_doc is None:
        raise NotFoundError(f"Flyer item {item_id} not found")
    if product_doc is None:
        raise NotFoundError(f"Catalog entry {product_id} not found")
    return FlyerItem.model_validate(item_doc), CatalogEntry.model_validate(product_doc)


class DiscountService:
    def __init__(
        self,
        store: DocumentStore,
        interpreter: DiscountInterpreter | None = None,
        *,
        timeout: float | None = None,
        interpret_timeout: float | None = None,
    ) -> None:
        self._store = store
        self._interpreter = interpreter
        self._timeout = timeout or settings.discount_timeout_seconds
        self._interpret_timeout = interpret_timeout or settings.discount_interpret_timeout_seconds

    async def apply(self, item_id: str, product_id: str, match_confidence: float) -> DiscountResult:
        """Apply the item's discount to the catalog entry. Never raises.

        ``error_kind`` separates timeouts from other failures on the result.
        Free-text discounts are interpreted before the transaction opens, under
        their own timeout, so a slow model call falls back to the structured
        prices instead of exhausting the transaction budget.
        """
        started = time.monotonic()
        interpretations: dict[tuple[str, float], DiscountInterpretation | None] = {}

        async def _transaction(tx: Transaction) -> DiscountResult:
            item, product = await _read_pair(tx, item_id, product_id)
            original_price = product.current_price
            computation = self._compute(item, original_price, interpretations)

            if computation is None or computation.percentage <= 0:
                tx.update(FLYER_ITEMS, item_id, {"selected_candidate_id": product_id, "discount_applied": False})
                return DiscountResult(
                    success=True,
                    item_id=item_id,
                    product_id=product_id,
                    original_price=original_price,
                    message="No discount information on the item; product linked without a discount",
                )

            if product.has_active_discount and product.discount_percentage >= computation.percentage:
                raise TransactionConflict(
                    f"Existing {product.discount_percentage}% discount is equal or better "
                    f"than {computation.percentage}%"
                )

            now = utcnow()
            provenance = DiscountProvenance(
                source_item_id=item_id,
                applied_at=now,
                confidence=max(0.0, min(match_confidence, 1.0)),
                method=computation.method,  # type: ignore[arg-type]
                applied_by="auto-approval",
                original_price=original_price,
                calculation_details=computation.details,
            )
            tx.update(
                CATALOG_ENTRIES,
                product_id,
                _jsonable(
                    {
                        "new_price": computation.new_price,
                        "discount_percentage": computation.percentage,
                        "has_active_discount": True,
                        "discount_provenance": provenance.model_dump(),
                        "valid_from": item.discount_start_date,
                        "valid_to": item.discount_end_date,
                    }
                ),
            )
            tx.update(
                FLYER_ITEMS,
                item_id,
                _jsonable(
                    {
                        "selected_candidate_id": product_id,
                        "discount_applied": True,
                        "discount_percentage": computation.percentage,
                        "discount_applied_at": now,
                    }
                ),
            )
            return DiscountResult(
                success=True,
                applied=True,
                item_id=item_id,
                product_id=product_id,
                original_price=original_price,
                new_price=computation.new_price,
                discount_percentage=computation.percentage,
                method=computation.method,
                message=f"Applied {computation.percentage}% discount",
            )

        try:
            interpretations = await self._prefetch_interpretation(item_id, product_id)
            async with asyncio.timeout(self._timeout):
                result = await self._store.run_transaction(_transaction)
        except TransactionConflict as exc:
            result = DiscountResult(
                success=True, item_id=item_id, product_id=product_id, message=exc.message
            )
        except TimeoutError:
            result = DiscountResult(
                success=False,
                item_id=item_id,
                product_id=product_id,
                error=f"Discount transaction timed out after {self._timeout:g}s",
                error_kind="timeout",
            )
        except Exception as exc:
            error = classify_error(exc)
            result = DiscountResult(
                success=False,
                item_id=item_id,
                product_id=product_id,
                error=error.message,
                error_kind="error",
            )

        result.elapsed_ms = round((time.monotonic() - started) * 1000)
        log = logger.info if result.success else logger.error
        log(
            "discount_transaction",
            item_id=item_id,
            product_id=product_id,
            applied=result.applied,
            percentage=result.discount_percentage,
            error=result.error,
            error_kind=result.error_kind,
            elapsed_ms=result.elapsed_ms,
        )
        return result

    async def apply_manual(self, request: ManualDiscountRequest) -> DiscountResult:
        """Admin override: move the item's discount to ``request.product_id``.

        Any discount this item previously put on another catalog entry is
        cleared in the same transaction. Errors propagate.
        """

        async def _transaction(tx: Transaction) -> DiscountResult:
            item, product = await _read_pair(tx, request.item_id, request.product_id)
            percentage = request.discount_percentage
            if percentage is None and item.discount_price and item.old_price:
                percentage = calculate_discount_percentage(item.old_price, item.discount_price)
            if not percentage or percentage <= 0 or percentage >= 100:
                raise ValidationError("No usable discount percentage for manual apply")

            previous_id = item.selected_candidate_id
            if previous_id and previous_id != request.product_id:
                previous = await tx.get(CATALOG_ENTRIES, previous_id)
                provenance = (previous or {}).get("discount_provenance") or {}
                if provenance.get("source_item_id") == request.item_id:
                    tx.update(
                        CATALOG_ENTRIES,
                        previous_id,
                        {
                            "new_price": None,
                            "discount_percentage": 0,
                            "has_active_discount": False,
                            "discount_provenance": None,
                            "valid_from": None,
                            "valid_to": None,
                        },
                    )
                    logger.info("manual_discount_removed", product_id=previous_id, item_id=request.item_id)

            now = utcnow()
            new_price = apply_discount_percentage(product.current_price, percentage)
            provenance_model = DiscountProvenance(
                source_item_id=request.item_id,
                applied_at=now,
                confidence=1.0,
                method="manual",
                applied_by="admin",
                original_price=product.current_price,
                calculation_details=f"Manual {percentage}% of {product.current_price:.2f}",
            )
            tx.update(
                CATALOG_ENTRIES,
                request.product_id,
                _jsonable(
                    {
                        "new_price": new_price,
                        "discount_percentage": percentage,
                        "has_active_discount": True,
                        "discount_provenance": provenance_model.model_dump(),
                        "valid_from": item.discount_start_date,
                        "valid_to": item.discount_end_date,
                    }
                ),
            )
            item_fields: dict[str, Any] = {
                "selected_candidate_id": request.product_id,
                "discount_applied": True,
                "discount_percentage": percentage,
                "discount_applied_at": now,
            }
            if can_transition(item.matching_status, "applied_to_product"):
                item_fields["matching_status"] = "applied_to_product"
            tx.update(FLYER_ITEMS, request.item_id, _jsonable(item_fields))
            return DiscountResult(
                success=True,
                applied=True,
                item_id=request.item_id,
                product_id=request.product_id,
                original_price=product.current_price,
                new_price=new_price,
                discount_percentage=percentage,
                method="manual",
                message=f"Manually applied {percentage}% discount",
            )

        result = await self._store.run_transaction(_transaction)
        logger.info(
            "manual_discount_applied",
            item_id=request.item_id,
            product_id=request.product_id,
            percentage=result.discount_percentage,
        )
        return result

    async def _prefetch_interpretation(
        self, item_id: str, product_id: str
    ) -> dict[tuple[str, float], DiscountInterpretation | None]:
        """Interpret the item's discount text against the product's current price.

        Keyed by ``(text, price)`` so the transaction can tell whether the
        documents it reads still match what was interpreted.
        """
        if self._interpreter is None:
            return {}
        item_doc = await self._store.get(FLYER_ITEMS, item_id)
        product_doc = await self._store.get(CATALOG_ENTRIES, product_id)
        if item_doc is None or product_doc is None or not item_doc.get("discount_text"):
            return {}
        item = FlyerItem.model_validate(item_doc)
        original_price = CatalogEntry.model_validate(product_doc).current_price
        return {(item.discount_text or "", original_price): await self._interpret(item, original_price)}

    def _compute(
        self,
        item: FlyerItem,
        original_price: float,
        interpretations: dict[tuple[str, float], DiscountInterpretation | None],
    ) -> _Computation | None:
        if item.discount_text:
            key = (item.discount_text, original_price)
            if key not in interpretations and self._interpreter is not None:
                logger.warning("discount_interpretation_stale", item_id=item.id, original_price=original_price)
            interpretation = interpretations.get(key)
            if interpretation is not None and 0 < interpretation.new_price < original_price:
                new_price = round(interpretation.new_price, 2)
                return _Computation(
                    calculate_discount_percentage(original_price, new_price),
                    new_price,
                    "ai_text",
                    f"'{item.discount_text}': {interpretation.explanation}",
                )

        if item.discount_price and item.old_price and 0 < item.discount_price < item.old_price:
            percentage = calculate_discount_percentage(item.old_price, item.discount_price)
            return _Computation(
                percentage,
                apply_discount_percentage(original_price, percentage),
                "structured",
                f"({item.old_price:.2f} - {item.discount_price:.2f}) / {item.old_price:.2f} "
                f"= {percentage}% off {original_price:.2f}",
            )
        return None

    async def _interpret(self, item: FlyerItem, original_price: float) -> DiscountInterpretation | None:
        assert self._interpreter is not None
        try:
            return await call_with_timeout(
                self._interpreter.interpret(item, original_price),
                self._interpret_timeout,
                operation="Discount interpretation",
            )
        except Exception as exc:
            logger.warning(
                "discount_interpretation_failed",
                item_id=item.id,
                discount_text=item.discount_text,
                error=classify_error(exc).message,
            )
            return None
