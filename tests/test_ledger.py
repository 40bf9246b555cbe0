"""
Tests for the append-only wallet ledger.
"""
import asyncio
from decimal import Decimal
from typing import Any

import pytest
from sqlalchemy import delete, select, update

from courierx.core.errors import InsufficientFunds, ValidationError
from courierx.core.ledger import LedgerStore, balance_effect, to_money
from courierx.database.models import ImmutableRecordError, LedgerEntry, LedgerEntryType
from tests.conftest import fund_wallet

USER = "user-ledger"


class TestMoney:
    @pytest.mark.unit
    def test_to_money_keeps_exact_two_places(self) -> None:
        assert to_money("10.1") == Decimal("10.10")
        assert to_money(Decimal("0.30")) == Decimal("0.30")

    @pytest.mark.unit
    def test_to_money_rejects_sub_paisa(self) -> None:
        with pytest.raises(ValidationError):
            to_money("10.005")


class TestBalances:
    @pytest.mark.asyncio
    async def test_balance_is_exact_sum_of_entries(self, session_factory: Any) -> None:
        ledger = LedgerStore()
        async with session_factory() as db:
            async with db.begin():
                for i in range(10):
                    await ledger.credit(db, USER, "0.10", f"pi_{i}", "Top-up")
                await ledger.debit(db, USER, "0.30", "ship-1", "Booking")
                await ledger.refund(db, USER, "0.20", "ship-1", "Partial refund", idempotency_key="r1")

        async with session_factory() as db:
            summary = await ledger.summary(db, USER)
        assert summary.balance == Decimal("0.90")
        assert summary.available == Decimal("0.90")

    @pytest.mark.asyncio
    async def test_holds_reduce_available_not_balance(self, session_factory: Any) -> None:
        ledger = LedgerStore()
        await fund_wallet(session_factory, USER, "1000.00")
        async with session_factory() as db:
            async with db.begin():
                await ledger.hold(db, USER, "400.00", "ship-1", "Extra charge", "hold:1")
            summary = await ledger.summary(db, USER)
        assert summary.balance == Decimal("1000.00")
        assert summary.held == Decimal("400.00")
        assert summary.available == Decimal("600.00")

        async with session_factory() as db:
            async with db.begin():
                released = await ledger.release_holds(db, USER, "ship-1", "Release", "release:1")
            summary = await ledger.summary(db, USER)
        assert released == Decimal("400.00")
        assert summary.available == Decimal("1000.00")

    @pytest.mark.asyncio
    async def test_adjustment_direction_comes_from_details(self, session_factory: Any) -> None:
        ledger = LedgerStore()
        await fund_wallet(session_factory, USER, "100.00")
        async with session_factory() as db:
            async with db.begin():
                await ledger.adjust(db, USER, "30.00", "debit", "Correction", "adj:1")
                await ledger.adjust(db, USER, "5.00", "credit", "Goodwill", "adj:2")
            summary = await ledger.summary(db, USER)
        assert summary.balance == Decimal("75.00")

        with pytest.raises(ValidationError):
            async with session_factory() as db:
                async with db.begin():
                    await ledger.adjust(db, USER, "5.00", "sideways", "Bad", "adj:3")

    @pytest.mark.asyncio
    async def test_same_idempotency_key_appends_once(self, session_factory: Any) -> None:
        ledger = LedgerStore()
        async with session_factory() as db:
            async with db.begin():
                first = await ledger.credit(db, USER, "500.00", "pi_same", "Top-up")
                second = await ledger.credit(db, USER, "500.00", "pi_same", "Top-up")
            summary = await ledger.summary(db, USER)
        assert first.id == second.id
        assert summary.balance == Decimal("500.00")

    @pytest.mark.asyncio
    async def test_reused_key_with_other_amount_rejected(self, session_factory: Any) -> None:
        ledger = LedgerStore()
        await fund_wallet(session_factory, USER, "1000.00")
        async with session_factory() as db:
            async with db.begin():
                await ledger.hold(db, USER, "200.00", "ship-1", "Extra weight", "hold:ship-1:v5")

        with pytest.raises(ValidationError):
            async with session_factory() as db:
                async with db.begin():
                    await ledger.hold(db, USER, "250.00", "ship-1", "Extra weight", "hold:ship-1:v5")

        async with session_factory() as db:
            summary = await ledger.summary(db, USER)
        assert summary.held == Decimal("200.00")

    @pytest.mark.asyncio
    async def test_debit_beyond_available_rejected(self, session_factory: Any) -> None:
        ledger = LedgerStore()
        await fund_wallet(session_factory, USER, "100.00")
        with pytest.raises(InsufficientFunds) as exc_info:
            async with session_factory() as db:
                async with db.begin():
                    await ledger.debit(db, USER, "100.01", "ship-1", "Booking")
        assert exc_info.value.available == Decimal("100.00")

    @pytest.mark.asyncio
    async def test_zero_and_negative_amounts_rejected(self, session_factory: Any) -> None:
        ledger = LedgerStore()
        for amount in ("0", "-5.00"):
            with pytest.raises(ValidationError):
                async with session_factory() as db:
                    async with db.begin():
                        await ledger.credit(db, USER, amount, f"pi_{amount}", "Top-up")


class TestAppendOnly:
    @pytest.mark.asyncio
    async def test_entry_cannot_be_updated(self, session_factory: Any) -> None:
        await fund_wallet(session_factory, USER, "100.00")
        with pytest.raises(ImmutableRecordError):
            async with session_factory() as db:
                async with db.begin():
                    entry = (await db.execute(select(LedgerEntry))).scalar_one()
                    entry.amount = Decimal("1000000.00")
                    await db.flush()

        async with session_factory() as db:
            entry = (await db.execute(select(LedgerEntry))).scalar_one()
        assert entry.amount == Decimal("100.00")

    @pytest.mark.asyncio
    async def test_entry_cannot_be_deleted(self, session_factory: Any) -> None:
        await fund_wallet(session_factory, USER, "100.00")
        with pytest.raises(ImmutableRecordError):
            async with session_factory() as db:
                async with db.begin():
                    entry = (await db.execute(select(LedgerEntry))).scalar_one()
                    await db.delete(entry)
                    await db.flush()

    @pytest.mark.asyncio
    async def test_bulk_statements_blocked(self, session_factory: Any) -> None:
        await fund_wallet(session_factory, USER, "100.00")
        with pytest.raises(ImmutableRecordError):
            async with session_factory() as db:
                async with db.begin():
                    await db.execute(update(LedgerEntry).values(amount=Decimal("1.00")))
        with pytest.raises(ImmutableRecordError):
            async with session_factory() as db:
                async with db.begin():
                    await db.execute(delete(LedgerEntry))

        async with session_factory() as db:
            assert len((await db.execute(select(LedgerEntry))).scalars().all()) == 1


class TestHistory:
    @pytest.mark.asyncio
    async def test_running_balance_stable_under_filters(self, session_factory: Any) -> None:
        ledger = LedgerStore()
        async with session_factory() as db:
            async with db.begin():
                await ledger.credit(db, USER, "1000.00", "pi_a", "Top-up")
                await ledger.debit(db, USER, "400.00", "ship-1", "Booking")
                await ledger.credit(db, USER, "500.00", "pi_b", "Top-up")

        async with session_factory() as db:
            everything = await ledger.history(db, USER)
            credits_only = await ledger.history(db, USER, entry_type=LedgerEntryType.CREDIT)

        assert [row["running_balance"] for row in everything] == ["1100.00", "600.00", "1000.00"]
        assert [row["type"] for row in everything] == ["credit", "debit", "credit"]
        assert [row["running_balance"] for row in credits_only] == ["1100.00", "1000.00"]

        async with session_factory() as db:
            page = await ledger.history(db, USER, limit=1, offset=1)
        assert page == [everything[1]]

    @pytest.mark.unit
    def test_balance_effect_by_type(self) -> None:
        def entry(entry_type: str, details: Any = None) -> LedgerEntry:
            return LedgerEntry(type=entry_type, amount=Decimal("10.00"), details=details)

        assert balance_effect(entry("credit")) == Decimal("10.00")
        assert balance_effect(entry("refund")) == Decimal("10.00")
        assert balance_effect(entry("debit")) == Decimal("-10.00")
        assert balance_effect(entry("hold")) == Decimal("0.00")
        assert balance_effect(entry("adjustment", {"direction": "debit"})) == Decimal("-10.00")


class TestNoDoubleSpend:
    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_deductions_never_exceed_available(
        self, session_factory: Any, wallet_service: Any
    ) -> None:
        await fund_wallet(session_factory, USER, "1000.00")

        results = await asyncio.gather(
            *[
                wallet_service.deduct_funds(USER, "300.00", f"ship-{i}", "Booking")
                for i in range(10)
            ],
            return_exceptions=True,
        )

        successes = [r for r in results if isinstance(r, LedgerEntry)]
        failures = [r for r in results if isinstance(r, InsufficientFunds)]
        assert len(successes) == 3
        assert len(failures) == 7

        summary = await wallet_service.get_summary(USER)
        assert summary.balance == Decimal("100.00")
        assert summary.balance >= Decimal("0.00")
