"""Tests for the discount ledger."""

import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from grove import discounts, tokens
from grove.errors import (
    ConflictError,
    DiscountAlreadyUsedError,
    DiscountBelowMinimumError,
    DiscountExhaustedError,
    DiscountExpiredError,
    DiscountNotEntitledError,
    DiscountNotFoundError,
    InsufficientBalanceError,
    NotFoundError,
    ValidationError,
)

from conftest import PAST


class TestValidate:
    async def test_valid_code_returns_amount(self, session, add_discount):
        await add_discount("SPRING10", percentage=10, min_order_amount=10)

        terms, amount = await discounts.validate(session, "spring10", Decimal("25.00"), None)

        assert terms.code == "SPRING10"
        assert amount == Decimal("2.50")

    async def test_unknown_code(self, session):
        with pytest.raises(DiscountNotFoundError):
            await discounts.validate(session, "NOPE", Decimal("25"), None)

    async def test_expired_code(self, session, add_discount):
        await add_discount("OLD", expires_at=PAST)
        with pytest.raises(DiscountExpiredError):
            await discounts.validate(session, "OLD", Decimal("25"), None)

    async def test_exhausted_code(self, session, add_discount):
        await add_discount("DONE", max_usage=2, current_usage=2)
        with pytest.raises(DiscountExhaustedError):
            await discounts.validate(session, "DONE", Decimal("25"), None)

    async def test_code_bound_to_other_user(self, session, add_discount):
        await add_discount("ALICEONLY", user_id="alice")
        with pytest.raises(DiscountNotEntitledError):
            await discounts.validate(session, "ALICEONLY", Decimal("25"), "bob")

    async def test_guest_cannot_use_bound_code(self, session, add_discount):
        await add_discount("ALICEONLY", user_id="alice")
        with pytest.raises(DiscountNotEntitledError):
            await discounts.validate(session, "ALICEONLY", Decimal("25"), None)

    async def test_below_minimum_names_the_minimum(self, session, add_discount):
        await add_discount("BIG", min_order_amount=50)
        with pytest.raises(DiscountBelowMinimumError, match=r"\$50\.00"):
            await discounts.validate(session, "BIG", Decimal("49.99"), None)


class TestConsume:
    async def test_single_use_code_is_marked_used(self, session, add_discount):
        await add_discount("ONCE")

        assert await discounts.consume(session, "once", "alice", "order-1") is True
        await session.commit()

        discount = await discounts.get_discount(session, "ONCE")
        assert discount["status"] == "used"
        assert discount["current_usage"] == 1
        assert discount["order_id"] == "order-1"

    async def test_second_order_gets_already_used(self, session, add_discount):
        await add_discount("ONCE")
        await discounts.consume(session, "ONCE", "alice", "order-1")
        await session.commit()

        with pytest.raises(DiscountAlreadyUsedError):
            await discounts.consume(session, "ONCE", "bob", "order-2")

    async def test_same_order_consumes_only_once(self, session, add_discount):
        await add_discount("TWICE", max_usage=2)
        await discounts.consume(session, "TWICE", "alice", "order-1")
        await session.commit()

        assert await discounts.consume(session, "TWICE", "alice", "order-1") is False
        discount = await discounts.get_discount(session, "TWICE")
        assert discount["current_usage"] == 1
        assert discount["status"] == "active"

    async def test_bound_multi_use_code_reusable_by_owner(self, session, add_discount):
        await add_discount("LOYAL", user_id="alice", max_usage=2)

        await discounts.consume(session, "LOYAL", "alice", "order-1")
        await discounts.consume(session, "LOYAL", "alice", "order-2")
        await session.commit()

        assert (await discounts.get_discount(session, "LOYAL"))["status"] == "used"

    async def test_concurrent_consumption_has_one_winner(self, session_factory, add_discount):
        await add_discount("RACE")

        async def spend(order_id):
            async with session_factory() as s:
                try:
                    await discounts.consume(s, "RACE", None, order_id)
                    await s.commit()
                    return "consumed"
                except ConflictError:
                    await s.rollback()
                    return "conflict"

        results = await asyncio.gather(spend("order-a"), spend("order-b"))

        assert sorted(results) == ["conflict", "consumed"]
        async with session_factory() as s:
            discount = await discounts.get_discount(s, "RACE")
        assert discount["current_usage"] == 1


class TestCreateAndRedeem:
    async def test_create_normalizes_code(self, session):
        expires = datetime.now(timezone.utc) + timedelta(days=5)
        created = await discounts.create_discount(session, percentage=15, code=" summer ", expires_at=expires)
        await session.commit()
        assert created["code"] == "SUMMER"

    async def test_duplicate_code_rejected(self, session, add_discount):
        await add_discount("TAKEN")
        with pytest.raises(ConflictError):
            await discounts.create_discount(session, percentage=5, code="taken")

    async def test_invalid_percentage_rejected(self, session):
        with pytest.raises(ValidationError):
            await discounts.create_discount(session, percentage=0)

    async def test_redeem_tokens_issues_bound_code(self, session):
        await tokens.credit(session, "alice", 1000, "Bonus")

        discount = await discounts.redeem_tokens(session, "alice", 750)
        await session.commit()

        assert discount["percentage"] == 7.0
        assert discount["user_id"] == "alice"
        assert discount["max_usage"] == 1
        assert await tokens.get_balance(session, "alice") == Decimal("300.00")

    async def test_redeem_caps_at_fifty_percent(self, session):
        await tokens.credit(session, "alice", 9000, "Bonus")

        discount = await discounts.redeem_tokens(session, "alice", 8000)

        assert discount["percentage"] == 50.0
        assert await tokens.get_balance(session, "alice") == Decimal("4000.00")

    async def test_redeem_requires_balance(self, session):
        with pytest.raises(InsufficientBalanceError):
            await discounts.redeem_tokens(session, "nobody", 200)

    async def test_redeem_requires_minimum(self, session):
        with pytest.raises(ValidationError):
            await discounts.redeem_tokens(session, "alice", 99)


class TestAdmin:
    async def test_list_filters_and_counts_by_status(self, session, add_discount):
        await add_discount("SPRING10")
        await add_discount("SPRING20", percentage=20)
        await add_discount("GONE", status="used", current_usage=1)

        listing = await discounts.list_discounts(session, status="active", search="spring")

        assert sorted(d["code"] for d in listing["discounts"]) == ["SPRING10", "SPRING20"]
        assert listing["total"] == 2
        assert listing["stats"] == {"active": 2, "used": 1}

    async def test_list_paginates(self, session, add_discount):
        for code in ("A1", "A2", "A3"):
            await add_discount(code)

        listing = await discounts.list_discounts(session, limit=2, offset=2)

        assert len(listing["discounts"]) == 1
        assert listing["total"] == 3

    async def test_update_changes_terms(self, session, add_discount):
        await add_discount("EDIT", max_discount_amount=5)

        updated = await discounts.update_discount(
            session, "edit", {"percentage": 25, "max_discount_amount": None, "description": "Quarter off"}
        )

        assert updated["percentage"] == 25.0
        assert updated["max_discount_amount"] is None
        assert updated["description"] == "Quarter off"
        _, amount = await discounts.validate(session, "EDIT", Decimal("100"), None)
        assert amount == Decimal("25.00")

    async def test_update_rejects_usage_history_fields(self, session, add_discount):
        await add_discount("EDIT")
        with pytest.raises(ValidationError):
            await discounts.update_discount(session, "EDIT", {"current_usage": 0, "user_id": "mallory"})

    async def test_max_usage_cannot_drop_below_usage(self, session, add_discount):
        await add_discount("MULTI", max_usage=5, current_usage=3)
        with pytest.raises(ValidationError):
            await discounts.update_discount(session, "MULTI", {"max_usage": 2})

    async def test_raising_max_usage_reopens_used_code(self, session, add_discount):
        await add_discount("AGAIN", status="used", current_usage=1)

        updated = await discounts.update_discount(session, "AGAIN", {"max_usage": 2})

        assert updated["status"] == "active"
        await discounts.validate(session, "AGAIN", Decimal("25"), None)

    async def test_update_unknown_code(self, session):
        with pytest.raises(NotFoundError):
            await discounts.update_discount(session, "NOPE", {"percentage": 5})

    async def test_cancelled_code_can_no_longer_be_used(self, session, add_discount):
        await add_discount("STOP")

        cancelled = await discounts.cancel_discount(session, "stop")

        assert cancelled["status"] == "cancelled"
        with pytest.raises(DiscountExhaustedError):
            await discounts.validate(session, "STOP", Decimal("25"), None)
        with pytest.raises(DiscountExhaustedError):
            await discounts.consume(session, "STOP", None, "order-1")

    async def test_cancel_unknown_code(self, session):
        with pytest.raises(NotFoundError):
            await discounts.cancel_discount(session, "NOPE")
