# tests/test_purchases.py
"""
Purchase ledger: idempotent recording, atomic purchase + ticket creation,
code collision handling and manual issuance.
"""
import pytest
from unittest.mock import AsyncMock, patch

from sqlalchemy import text

from doorpass.model import codes, purchases
from doorpass.model.db import PAID
from doorpass.model.errors import (
    CodeExhaustion, InvalidRequest, TicketCreationFailed
)
from doorpass.model.purchases import (
    Checkout,
    issue_manual_ticket,
    quantity_from_line_items,
    record_paid_checkout,
)


pytestmark = pytest.mark.anyio


async def count(db, table: str) -> int:
    async with db.session.begin():
        return (await db.session.execute(
            text(f"SELECT COUNT(*) FROM {table}")
        )).scalar_one()


def fixed_sampler(*values):
    """code_sampler replacement yielding `values` in order."""
    it = iter(values)
    return AsyncMock(return_value=lambda: next(it))


def checkout(external_id="cs_test_1", quantity=2, **kw):
    return Checkout(
        external_id=external_id,
        customer_email=kw.pop("customer_email", "ada@example.com"),
        customer_name=kw.pop("customer_name", "Ada"),
        currency="eur",
        amount_total=7000,
        line_items=[{"quantity": quantity}],
        **kw,
    )


class TestQuantityFromLineItems:
    def test_sums_quantities(self):
        assert quantity_from_line_items(
            [{"quantity": 2}, {"quantity": 3}]
        ) == 5

    def test_floor_is_one(self):
        assert quantity_from_line_items([]) == 1
        assert quantity_from_line_items(None) == 1
        assert quantity_from_line_items([{"quantity": None}]) == 1

    def test_non_list_line_items_mean_one(self):
        assert Checkout(external_id="x", line_items={"notes": "vip"}).quantity == 1


class TestRecordPaidCheckout:
    async def test_creates_purchase_and_ticket(self, db):
        outcome = await record_paid_checkout(db, checkout(quantity=3))

        assert outcome.created is True
        assert outcome.quantity == 3
        assert len(outcome.code) == codes.CODE_LENGTH
        assert outcome.customer_email == "ada@example.com"

        async with db.session.begin():
            row = (await db.session.execute(text("""
                SELECT p.status, t.quantity, t.redeemed_count, t.code
                FROM purchases p JOIN tickets t ON t.purchase_id = p.id
                WHERE p.external_id = 'cs_test_1'
            """))).one()
        assert tuple(row) == (PAID, 3, 0, outcome.code)

    async def test_replay_is_a_no_op(self, db):
        first = await record_paid_checkout(db, checkout())
        second = await record_paid_checkout(db, checkout())

        assert first.created is True
        assert second.created is False
        assert second.purchase_id == first.purchase_id
        assert second.code is None
        assert await count(db, "purchases") == 1
        assert await count(db, "tickets") == 1

    async def test_code_collision_resamples(self, db):
        with patch.object(codes, "code_sampler", fixed_sampler("AAAAAAAA")):
            await record_paid_checkout(db, checkout("cs_a"))

        sampler = fixed_sampler("AAAAAAAA", "AAAAAAAA", "BBBBBBBB")
        with patch.object(codes, "code_sampler", sampler):
            outcome = await record_paid_checkout(db, checkout("cs_b"))

        assert outcome.created is True
        assert outcome.code == "BBBBBBBB"
        assert await count(db, "tickets") == 2

    async def test_exhaustion_rolls_back_the_purchase(self, db):
        with patch.object(codes, "code_sampler", fixed_sampler("AAAAAAAA")):
            await record_paid_checkout(db, checkout("cs_a"))

        always_taken = AsyncMock(return_value=lambda: "AAAAAAAA")
        with patch.object(codes, "code_sampler", always_taken):
            with pytest.raises(CodeExhaustion) as exc:
                await record_paid_checkout(db, checkout("cs_b"))

        assert exc.value.attempts == codes.MAX_CODE_ATTEMPTS
        assert await count(db, "purchases") == 1
        assert await count(db, "tickets") == 1

    async def test_non_collision_failure_rolls_back(self, db):
        # a NULL code fails NOT NULL; that's not a collision
        broken = AsyncMock(return_value=lambda: None)
        with patch.object(codes, "code_sampler", broken):
            with pytest.raises(TicketCreationFailed):
                await record_paid_checkout(db, checkout("cs_null_code"))

        assert await count(db, "purchases") == 0
        assert await count(db, "tickets") == 0

    async def test_sequential_scheme(self, db):
        with patch.object(codes, "SCHEME", "sequential"):
            outcome = await record_paid_checkout(db, checkout("cs_seq"))
        assert outcome.code.endswith("-001")

    async def test_unknown_scheme_fails_ticket_creation(self, db):
        with patch.object(codes, "SCHEME", "emoji"):
            with pytest.raises(TicketCreationFailed):
                await record_paid_checkout(db, checkout("cs_emoji"))

        assert await count(db, "purchases") == 0
        assert await count(db, "tickets") == 0

    async def test_missing_sequence_row_fails_ticket_creation(self, db):
        async with db.session.begin():
            await db.session.execute(text("DELETE FROM code_sequences"))

        with patch.object(codes, "SCHEME", "sequential"):
            with pytest.raises(TicketCreationFailed):
                await record_paid_checkout(db, checkout("cs_no_seq"))

        assert await count(db, "purchases") == 0

    async def test_concurrent_delivery_loses_insert_race(self, db, new_db):
        first = await record_paid_checkout(db, checkout("cs_race"))

        # the second delivery looked before the first one committed
        real_lookup = purchases._purchase_by_external_id
        calls = []

        async def stale_then_real(session, external_id):
            calls.append(external_id)
            if len(calls) == 1:
                return None
            return await real_lookup(session, external_id)

        late = new_db()
        try:
            with patch.object(
                purchases, "_purchase_by_external_id", stale_then_real
            ):
                async with late.session.begin():
                    existing, created = await purchases.record_purchase(
                        late.session, checkout("cs_race")
                    )
                    existing_id = existing.id
        finally:
            await late.session.close()

        assert created is False
        assert existing_id == first.purchase_id
        assert calls == ["cs_race", "cs_race"]
        assert await count(db, "purchases") == 1
        assert await count(db, "tickets") == 1


class TestIssueManualTicket:
    async def test_issues_ticket(self, db):
        outcome = await issue_manual_ticket(
            db,
            customer_email=" guest@example.com ",
            quantity=4,
            customer_name="Guest",
            notes="press",
        )

        assert outcome.created is True
        assert outcome.quantity == 4
        assert outcome.external_id.startswith("manual_")
        assert outcome.customer_email == "guest@example.com"

        async with db.session.begin():
            row = (await db.session.execute(text("""
                SELECT status, amount_total, currency FROM purchases
                WHERE external_id = :e
            """), {"e": outcome.external_id})).one()
        assert tuple(row) == (PAID, 0, "EUR")

    @pytest.mark.parametrize("quantity", [0, 11, None, "3", 2.5, True])
    async def test_rejects_bad_quantity(self, db, quantity):
        with pytest.raises(InvalidRequest):
            await issue_manual_ticket(
                db, customer_email="guest@example.com", quantity=quantity
            )
        assert await count(db, "purchases") == 0

    @pytest.mark.parametrize("email", [None, "", "not-an-email", "a@b"])
    async def test_rejects_bad_email(self, db, email):
        with pytest.raises(InvalidRequest):
            await issue_manual_ticket(db, customer_email=email, quantity=1)

    async def test_rejects_negative_amount(self, db):
        with pytest.raises(InvalidRequest):
            await issue_manual_ticket(
                db, customer_email="guest@example.com", quantity=1,
                amount_total=-5,
            )

    async def test_rejects_non_string_email(self, db):
        with pytest.raises(InvalidRequest):
            await issue_manual_ticket(db, customer_email=123, quantity=1)
        assert await count(db, "purchases") == 0

    @pytest.mark.parametrize("field,value", [
        ("customer_name", 5),
        ("currency", ["x"]),
        ("notes", {}),
        ("notes", {"vip": True}),
    ])
    async def test_rejects_non_string_fields(self, db, field, value):
        with pytest.raises(InvalidRequest, match=field):
            await issue_manual_ticket(
                db, customer_email="guest@example.com", quantity=1,
                **{field: value},
            )
        assert await count(db, "purchases") == 0
