# model/purchases.py
"""
Purchase ledger and ticket creation.

A purchase is recorded at most once per external transaction id. Recording a
paid checkout and minting its ticket happen in one transaction: if the ticket
can't be created, the purchase row goes away with it.
"""
from __future__ import annotations
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select, text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..helpers import now_ts, is_valid_email
from ..infra.retry import Conflict, retry_on_conflict
from ..infra.sql import GatedAsyncSession
from . import codes
from .db import PAID, Purchase, Ticket
from .errors import (
    CodeExhaustion, InvalidRequest, SequenceExhausted, TicketCreationFailed
)

log = logging.getLogger(__name__)

MANUAL_MIN_QUANTITY = 1
MANUAL_MAX_QUANTITY = 10


@dataclass
class Checkout:
    """The fields of a completed checkout that the ledger consumes."""
    external_id: str
    status: str = PAID
    customer_email: Optional[str] = None
    customer_name: Optional[str] = None
    currency: Optional[str] = None
    amount_total: Optional[int] = None
    payment_intent_id: Optional[str] = None
    customer_id: Optional[str] = None
    # opaque; a list of {"quantity": n, ...} for provider checkouts
    line_items: Any = field(default_factory=list)
    raw: Optional[Dict[str, Any]] = None

    @property
    def quantity(self) -> int:
        if not isinstance(self.line_items, list):
            return 1
        return quantity_from_line_items(self.line_items)


@dataclass
class PurchaseOutcome:
    purchase_id: str
    external_id: str
    created: bool
    ticket_id: Optional[str] = None
    code: Optional[str] = None
    quantity: Optional[int] = None
    customer_email: Optional[str] = None
    customer_name: Optional[str] = None


def quantity_from_line_items(items: Optional[List[Dict[str, Any]]]) -> int:
    total = 0
    for item in items or []:
        total += int(item.get("quantity") or 0)
    return max(1, total)


async def _purchase_by_external_id(
    session: AsyncSession, external_id: str
) -> Optional[Purchase]:
    result = await session.execute(
        select(Purchase).where(Purchase.external_id == external_id)
    )
    return result.scalars().first()


async def _code_taken(session: AsyncSession, code: str) -> bool:
    row = (await session.execute(
        text("SELECT 1 FROM tickets WHERE code = :code"), {"code": code}
    )).first()
    return row is not None


# UN-GATED: runs inside the caller's transaction
async def record_purchase(
    session: AsyncSession, checkout: Checkout
) -> Tuple[Purchase, bool]:
    """
    Returns (purchase, created). created is False when a purchase with the
    same external id already exists, including when a concurrent delivery
    inserted it between our lookup and our insert.
    """
    existing = await _purchase_by_external_id(session, checkout.external_id)
    if existing is not None:
        return existing, False

    purchase = Purchase(
        id=uuid.uuid4().hex,
        external_id=checkout.external_id,
        payment_intent_id=checkout.payment_intent_id,
        customer_id=checkout.customer_id,
        customer_email=checkout.customer_email,
        customer_name=checkout.customer_name,
        amount_total=checkout.amount_total,
        currency=checkout.currency,
        status=checkout.status,
        line_items=checkout.line_items,
        raw_event=checkout.raw,
        created_at=now_ts(),
    )
    try:
        async with session.begin_nested():
            session.add(purchase)
    except IntegrityError:
        existing = await _purchase_by_external_id(
            session, checkout.external_id
        )
        if existing is None:
            raise
        return existing, False
    return purchase, True


# UN-GATED: runs inside the caller's transaction
async def create_ticket_for_purchase(
    session: AsyncSession,
    purchase_id: str,
    quantity: Optional[int],
    *,
    scheme: Optional[str] = None,
) -> Ticket:
    if not quantity or quantity < 1:
        quantity = 1

    async def attempt(code: str) -> Ticket:
        ticket = Ticket(
            id=uuid.uuid4().hex,
            code=code,
            purchase_id=purchase_id,
            quantity=quantity,
            redeemed_count=0,
            created_at=now_ts(),
        )
        try:
            async with session.begin_nested():
                session.add(ticket)
        except IntegrityError as e:
            if await _code_taken(session, code):
                log.info("ticket code collision on %s, resampling", code)
                raise Conflict() from e
            raise TicketCreationFailed(
                f"ticket insert failed for purchase {purchase_id}"
            ) from e
        return ticket

    try:
        sample = await codes.code_sampler(session, scheme or codes.SCHEME)
        return await retry_on_conflict(
            attempt,
            sample,
            max_attempts=codes.MAX_CODE_ATTEMPTS,
            exhausted=CodeExhaustion,
        )
    except (CodeExhaustion, SequenceExhausted, TicketCreationFailed):
        raise
    # unknown scheme, or the sequence row is missing
    except (ValueError, RuntimeError, SQLAlchemyError) as e:
        raise TicketCreationFailed(
            f"ticket creation failed for purchase {purchase_id}"
        ) from e


async def record_paid_checkout(
    db: GatedAsyncSession, checkout: Checkout
) -> PurchaseOutcome:
    """
    Record the checkout and mint its ticket in a single transaction.
    Replays of an already recorded checkout are a no-op (created=False).
    """
    async with db.gated():
        async with db.session.begin():
            purchase, created = await record_purchase(db.session, checkout)
            if not created:
                log.info(
                    "checkout %s already recorded as purchase %s",
                    checkout.external_id, purchase.id,
                )
                return PurchaseOutcome(
                    purchase_id=purchase.id,
                    external_id=purchase.external_id,
                    created=False,
                )
            ticket = await create_ticket_for_purchase(
                db.session, purchase.id, checkout.quantity
            )

    log.info(
        "recorded purchase %s (%s) with ticket %s x%d",
        purchase.id, purchase.external_id, ticket.code, ticket.quantity,
    )
    return PurchaseOutcome(
        purchase_id=purchase.id,
        external_id=purchase.external_id,
        created=True,
        ticket_id=ticket.id,
        code=ticket.code,
        quantity=ticket.quantity,
        customer_email=purchase.customer_email,
        customer_name=purchase.customer_name,
    )


def _validate_manual_quantity(quantity: Any) -> int:
    # bool is an int subclass; True must not pass as 1
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        raise InvalidRequest("quantity is required and must be an integer")
    if not MANUAL_MIN_QUANTITY <= quantity <= MANUAL_MAX_QUANTITY:
        raise InvalidRequest(
            f"quantity must be between {MANUAL_MIN_QUANTITY} and "
            f"{MANUAL_MAX_QUANTITY}"
        )
    return quantity


async def issue_manual_ticket(
    db: GatedAsyncSession,
    *,
    customer_email: Optional[str],
    quantity: Any,
    customer_name: Optional[str] = None,
    amount_total: Optional[int] = None,
    currency: Optional[str] = None,
    notes: Optional[str] = None,
) -> PurchaseOutcome:
    """Admin-issued ticket, bypassing the payment provider."""
    if not is_valid_email(customer_email):
        raise InvalidRequest(
            "customer_email is required and must be a valid email address"
        )
    quantity = _validate_manual_quantity(quantity)
    if amount_total is not None and (
        isinstance(amount_total, bool) or not isinstance(amount_total, int)
        or amount_total < 0
    ):
        raise InvalidRequest("amount_total must be a non-negative integer")
    for field, value in (("customer_name", customer_name),
                         ("currency", currency), ("notes", notes)):
        if value is not None and not isinstance(value, str):
            raise InvalidRequest(f"{field} must be a string")

    checkout = Checkout(
        external_id=f"manual_{uuid.uuid4()}",
        status=PAID,
        customer_email=customer_email.strip(),
        customer_name=(customer_name or None),
        amount_total=amount_total or 0,
        currency=currency or "EUR",
        line_items={"notes": notes} if notes else None,
    )
    async with db.gated():
        async with db.session.begin():
            purchase, _ = await record_purchase(db.session, checkout)
            ticket = await create_ticket_for_purchase(
                db.session, purchase.id, quantity
            )

    log.info(
        "issued manual ticket %s x%d for %s",
        ticket.code, ticket.quantity, purchase.customer_email,
    )
    return PurchaseOutcome(
        purchase_id=purchase.id,
        external_id=purchase.external_id,
        created=True,
        ticket_id=ticket.id,
        code=ticket.code,
        quantity=ticket.quantity,
        customer_email=purchase.customer_email,
        customer_name=purchase.customer_name,
    )
