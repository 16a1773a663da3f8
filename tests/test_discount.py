"""Tests for discount computation and the catalog transaction."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

import pydantic
import pytest

from flyer_pipeline.activities.discount import (
    DiscountService,
    apply_discount_percentage,
    calculate_discount_percentage,
)
from flyer_pipeline.errors import ValidationError
from flyer_pipeline.models.contracts import DiscountInterpretation, ManualDiscountRequest
from flyer_pipeline.models.entities import FlyerItem
from flyer_pipeline.store.base import Transaction
from flyer_pipeline.store.memory import InMemoryDocumentStore
from flyer_pipeline.store.repository import Repository
from tests.fakes import FakeInterpreter, make_entry, make_item


class TestPricing:
    """Percentage helpers round half up to whole percents and cents."""

    @pytest.mark.parametrize(
        ("old", "new", "expected"),
        [
            (2.0, 1.5, 25),
            (3.0, 2.0, 33),
            (2.0, 1.99, 1),
            (1.0, 0.995, 1),
            (0.0, 1.0, 0),
            (2.0, 0.0, 0),
        ],
    )
    def test_calculate(self, old: float, new: float, expected: int) -> None:
        assert calculate_discount_percentage(old, new) == expected

    @pytest.mark.parametrize(
        ("price", "pct", "expected"),
        [
            (2.0, 25, 1.5),
            (0.99, 50, 0.5),
            (4.0, 25, 3.0),
            (2.0, 0, 2.0),
            (2.0, 100, 2.0),
            (0.0, 20, 0.0),
        ],
    )
    def test_apply(self, price: float, pct: float, expected: float) -> None:
        assert apply_discount_percentage(price, pct) == expected


class _SlowInterpreter:
    async def interpret(self, item: FlyerItem, original_price: float) -> DiscountInterpretation:
        await asyncio.sleep(10)
        raise AssertionError("unreachable")


class _DelayedInterpreter:
    def __init__(self, delay: float, interpretation: DiscountInterpretation) -> None:
        self.delay = delay
        self.interpretation = interpretation

    async def interpret(self, item: FlyerItem, original_price: float) -> DiscountInterpretation:
        await asyncio.sleep(self.delay)
        return self.interpretation


class _SlowTransactionStore:
    """Delegates to a real store but stalls inside every transaction."""

    def __init__(self, inner: InMemoryDocumentStore) -> None:
        self.inner = inner

    async def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        return await self.inner.get(collection, doc_id)

    async def run_transaction(self, fn: Callable[[Transaction], Awaitable[Any]], max_attempts: int = 5) -> Any:
        async def _stalled(tx: Transaction) -> Any:
            await asyncio.sleep(10)
            return await fn(tx)

        return await self.inner.run_transaction(_stalled, max_attempts)


@pytest.fixture()
async def milk(repo: Repository) -> Repository:
    await repo.create_item(make_item())
    await repo.save_catalog_entry(make_entry())
    return repo


class TestDiscountService:
    """Automatic application after an approved match."""

    async def test_structured_discount(self, milk: Repository) -> None:
        """Old 2.00 and discount 1.50 give 25% off the catalog price."""
        result = await DiscountService(milk.store).apply("item-1", "prod-milk", 0.95)

        assert result.success and result.applied
        assert result.discount_percentage == 25
        assert result.new_price == 1.5
        assert result.method == "structured"

        product = await milk.get_catalog_entry("prod-milk")
        assert product is not None
        assert product.discount_percentage == 25
        assert product.new_price == 1.5
        assert product.has_active_discount
        assert product.discount_provenance is not None
        assert product.discount_provenance.method == "structured"
        assert product.discount_provenance.confidence == 0.95
        item = await milk.get_item("item-1")
        assert item is not None
        assert item.discount_applied and item.discount_percentage == 25
        assert item.selected_candidate_id == "prod-milk"
        assert item.discount_applied_at is not None

    async def test_percentage_applies_to_catalog_price(self, repo: Repository) -> None:
        """The flyer's percentage is applied to the product's own current price."""
        await repo.create_item(make_item())
        await repo.save_catalog_entry(make_entry(current_price=4.0))

        result = await DiscountService(repo.store).apply("item-1", "prod-milk", 0.9)

        assert result.new_price == 3.0
        assert result.original_price == 4.0

    async def test_validity_dates_copied(self, repo: Repository) -> None:
        await repo.create_item(make_item(discount_start_date="2026-10-01", discount_end_date="2026-10-14"))
        await repo.save_catalog_entry(make_entry())

        await DiscountService(repo.store).apply("item-1", "prod-milk", 0.9)

        product = await repo.get_catalog_entry("prod-milk")
        assert product is not None
        assert (product.valid_from, product.valid_to) == ("2026-10-01", "2026-10-14")

    async def test_reapply_is_noop(self, milk: Repository) -> None:
        """Applying the same discount twice writes nothing the second time."""
        service = DiscountService(milk.store)
        await service.apply("item-1", "prod-milk", 0.95)

        second = await service.apply("item-1", "prod-milk", 0.95)

        assert second.success is True
        assert second.applied is False
        product = await milk.get_catalog_entry("prod-milk")
        assert product is not None and product.discount_percentage == 25

    async def test_better_existing_discount_kept(self, repo: Repository) -> None:
        """A product with a larger active discount is not downgraded."""
        await repo.create_item(make_item())
        await repo.save_catalog_entry(
            make_entry(has_active_discount=True, discount_percentage=40, new_price=1.2)
        )

        result = await DiscountService(repo.store).apply("item-1", "prod-milk", 0.95)

        assert result.success and not result.applied
        product = await repo.get_catalog_entry("prod-milk")
        assert product is not None
        assert product.discount_percentage == 40
        assert product.new_price == 1.2

    async def test_smaller_existing_discount_replaced(self, repo: Repository) -> None:
        await repo.create_item(make_item())
        await repo.save_catalog_entry(make_entry(has_active_discount=True, discount_percentage=10, new_price=1.8))

        result = await DiscountService(repo.store).apply("item-1", "prod-milk", 0.95)

        assert result.applied
        product = await repo.get_catalog_entry("prod-milk")
        assert product is not None and product.discount_percentage == 25

    async def test_ai_text_preferred(self, repo: Repository) -> None:
        """Discount wording read by the interpreter wins over structured prices."""
        await repo.create_item(make_item(discount_text="-30% on the second pack"))
        await repo.save_catalog_entry(make_entry())
        interpreter = FakeInterpreter(
            DiscountInterpretation(new_price=1.4, discount_percentage=30, explanation="30% off")
        )

        result = await DiscountService(repo.store, interpreter).apply("item-1", "prod-milk", 0.9)

        assert result.method == "ai_text"
        assert result.discount_percentage == 30
        assert result.new_price == 1.4
        assert interpreter.calls == 1

    async def test_ai_failure_falls_back_to_structured(self, repo: Repository) -> None:
        await repo.create_item(make_item(discount_text="buy 2 get 1"))
        await repo.save_catalog_entry(make_entry())
        interpreter = FakeInterpreter(error=RuntimeError("model down"))

        result = await DiscountService(repo.store, interpreter).apply("item-1", "prod-milk", 0.9)

        assert result.method == "structured"
        assert result.discount_percentage == 25

    async def test_ai_price_above_original_ignored(self, repo: Repository) -> None:
        """An interpretation that does not lower the price is not used."""
        await repo.create_item(make_item(discount_text="new packaging"))
        await repo.save_catalog_entry(make_entry())
        interpreter = FakeInterpreter(DiscountInterpretation(new_price=2.5, discount_percentage=0))

        result = await DiscountService(repo.store, interpreter).apply("item-1", "prod-milk", 0.9)

        assert result.method == "structured"

    async def test_no_discount_info_links_product(self, repo: Repository) -> None:
        """Without any discount data the item is linked and nothing else changes."""
        await repo.create_item(make_item(discount_price=None))
        await repo.save_catalog_entry(make_entry())

        result = await DiscountService(repo.store).apply("item-1", "prod-milk", 0.9)

        assert result.success and not result.applied
        item = await repo.get_item("item-1")
        assert item is not None
        assert item.selected_candidate_id == "prod-milk"
        assert item.discount_applied is False
        product = await repo.get_catalog_entry("prod-milk")
        assert product is not None and not product.has_active_discount

    async def test_missing_product_reported(self, repo: Repository) -> None:
        """apply never raises; a missing entry comes back as an error result."""
        await repo.create_item(make_item())

        result = await DiscountService(repo.store).apply("item-1", "prod-gone", 0.9)

        assert result.success is False
        assert result.error_kind == "error"
        assert "prod-gone" in (result.error or "")

    async def test_slow_interpreter_falls_back_to_structured(self, repo: Repository) -> None:
        """A model call that overruns its own timeout still applies the structured discount."""
        await repo.create_item(make_item(discount_text="-30%"))
        await repo.save_catalog_entry(make_entry())
        service = DiscountService(repo.store, _SlowInterpreter(), timeout=5, interpret_timeout=0.01)

        result = await service.apply("item-1", "prod-milk", 0.9)

        assert result.success and result.applied
        assert result.method == "structured"
        assert result.discount_percentage == 25
        product = await repo.get_catalog_entry("prod-milk")
        assert product is not None and product.new_price == 1.5

    async def test_interpretation_runs_outside_transaction(self, repo: Repository) -> None:
        """The transaction budget is not spent on the model call."""
        await repo.create_item(make_item(discount_text="-30%"))
        await repo.save_catalog_entry(make_entry())
        interpreter = _DelayedInterpreter(0.05, DiscountInterpretation(new_price=1.4, discount_percentage=30))
        service = DiscountService(repo.store, interpreter, timeout=0.03, interpret_timeout=1)

        result = await service.apply("item-1", "prod-milk", 0.9)

        assert result.applied and result.method == "ai_text"
        assert result.discount_percentage == 30

    async def test_timeout_classified(self, repo: Repository) -> None:
        """A transaction that overruns its budget reports a timeout and writes nothing."""
        await repo.create_item(make_item())
        await repo.save_catalog_entry(make_entry())
        service = DiscountService(_SlowTransactionStore(repo.store), timeout=0.01)

        result = await service.apply("item-1", "prod-milk", 0.9)

        assert result.success is False
        assert result.error_kind == "timeout"
        assert result.retry_safe is True
        item = await repo.get_item("item-1")
        assert item is not None and item.discount_applied is False


class TestManualDiscount:
    """Admin override of an item's discount."""

    async def test_manual_moves_discount(self, repo: Repository) -> None:
        """A manual apply clears the discount this item put on its previous product."""
        await repo.create_item(make_item())
        await repo.save_catalog_entry(make_entry())
        await repo.save_catalog_entry(make_entry(id="prod-milk-2", name="Milk 1L Organic", current_price=3.0))
        service = DiscountService(repo.store)
        await service.apply("item-1", "prod-milk", 0.9)

        result = await service.apply_manual(
            ManualDiscountRequest(item_id="item-1", product_id="prod-milk-2", discount_percentage=20)
        )

        assert result.applied and result.method == "manual"
        assert result.new_price == 2.4
        previous = await repo.get_catalog_entry("prod-milk")
        assert previous is not None
        assert previous.has_active_discount is False
        assert previous.discount_provenance is None
        product = await repo.get_catalog_entry("prod-milk-2")
        assert product is not None
        assert product.discount_percentage == 20
        assert product.discount_provenance is not None
        assert product.discount_provenance.applied_by == "admin"
        item = await repo.get_item("item-1")
        assert item is not None
        assert item.selected_candidate_id == "prod-milk-2"
        assert item.matching_status == "applied_to_product"

    async def test_manual_keeps_other_items_discount(self, repo: Repository) -> None:
        """The previous product is only cleared if this item put the discount there."""
        await repo.create_item(make_item(selected_candidate_id="prod-milk"))
        await repo.save_catalog_entry(make_entry(has_active_discount=True, discount_percentage=15))
        await repo.save_catalog_entry(make_entry(id="prod-milk-2", name="Milk 1L Organic"))

        await DiscountService(repo.store).apply_manual(
            ManualDiscountRequest(item_id="item-1", product_id="prod-milk-2")
        )

        previous = await repo.get_catalog_entry("prod-milk")
        assert previous is not None and previous.discount_percentage == 15
        product = await repo.get_catalog_entry("prod-milk-2")
        assert product is not None and product.discount_percentage == 25

    async def test_manual_without_percentage(self, repo: Repository) -> None:
        await repo.create_item(make_item(discount_price=None))
        await repo.save_catalog_entry(make_entry())

        with pytest.raises(ValidationError):
            await DiscountService(repo.store).apply_manual(
                ManualDiscountRequest(item_id="item-1", product_id="prod-milk")
            )

    def test_request_rejects_out_of_range(self) -> None:
        with pytest.raises(pydantic.ValidationError):
            ManualDiscountRequest(item_id="item-1", product_id="prod-milk", discount_percentage=100)
