# intake.py
"""
Webhook intake: turn provider payment events into exactly one purchase and
one ticket per checkout, however often the provider redelivers.

Order of operations for one delivery:
  1) verify signature           (reject -> no side effects)
  2) event log lookup           (seen -> ack, done)
  3) record purchase + ticket   (one transaction)
  4) mail the ticket            (outside the transaction, best effort)
  5) record the event id
A failure in 3) propagates so the provider retries; 4) never does.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError

from .infra.sql import GatedAsyncSession
from .infra.timings import timeit
from .mailer import ResendMailer, SendResult
from .model.eventlog import EventLogStore
from .model.purchases import record_paid_checkout
from .model.tickets import mark_sent
from .payments import PaymentAdapter
from .helpers import to_iso

log = logging.getLogger(__name__)


@dataclass
class IntakeResult:
    event_id: Optional[str]
    event_type: str
    idempotent: bool = False
    handled: bool = False
    created: bool = False
    purchase_id: Optional[str] = None
    code: Optional[str] = None
    emailed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"received": True, "event_type": self.event_type}
        if self.idempotent:
            out["idempotent"] = True
        if self.handled:
            out.update({
                "purchase_id": self.purchase_id,
                "created": self.created,
                "emailed": self.emailed,
            })
        return out


async def send_ticket_email(
    db: GatedAsyncSession,
    mailer: ResendMailer,
    *,
    ticket_id: str,
    to: Optional[str],
    customer_name: Optional[str],
    code: str,
    quantity: int,
) -> SendResult:
    """Mail one ticket and stamp sent_at on success. Never retried here."""
    if not to:
        return SendResult(False, error="no email address on purchase")
    async with timeit("mailer.send_ticket"):
        result = await mailer.send_ticket(to, customer_name, code, quantity)
    if not result.success:
        log.error("ticket email for %s to %s failed: %s",
                  code, to, result.error)
        return result
    try:
        sent_at = await mark_sent(db, ticket_id)
        log.debug("ticket %s sent_at=%s", code, to_iso(sent_at))
    except SQLAlchemyError:
        # the mail is out; a missing sent_at must not fail the caller
        log.exception("could not record sent_at for ticket %s", code)
    return result


async def handle_webhook(
    payload: bytes,
    headers: dict,
    *,
    adapter: PaymentAdapter,
    db: GatedAsyncSession,
    events: EventLogStore,
    mailer: ResendMailer,
) -> IntakeResult:
    event = adapter.verify_webhook(payload, headers)
    evt_id = adapter.event_id(event)
    kind = adapter.event_type(event)
    result = IntakeResult(event_id=evt_id, event_type=kind)

    async with timeit("eventlog.has_seen"):
        seen = await events.has_seen(evt_id)
    if seen:
        log.info("webhook event %s (%s) already processed", evt_id, kind)
        result.idempotent = True
        return result

    if adapter.is_paid_checkout(event):
        checkout = await adapter.checkout_from_event(event)
        async with timeit("purchases.record_paid_checkout"):
            outcome = await record_paid_checkout(db, checkout)
        result.handled = True
        result.created = outcome.created
        result.purchase_id = outcome.purchase_id
        result.code = outcome.code

        if outcome.created:
            if mailer.enabled:
                sent = await send_ticket_email(
                    db, mailer,
                    ticket_id=outcome.ticket_id,
                    to=outcome.customer_email,
                    customer_name=outcome.customer_name,
                    code=outcome.code,
                    quantity=outcome.quantity,
                )
                result.emailed = sent.success
            else:
                log.warning(
                    "mailer disabled; ticket %s not emailed", outcome.code
                )
    else:
        log.info("ignoring webhook event %s (%s)", evt_id, kind)

    async with timeit("eventlog.mark_seen"):
        await events.mark_seen(evt_id, kind)
    return result
