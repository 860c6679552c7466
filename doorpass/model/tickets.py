# model/tickets.py
"""
Ticket store reads and the redemption engine.

A ticket moves UNREDEEMED -> PARTIALLY_REDEEMED -> FULLY_REDEEMED and never
back. Redemption is a compare-and-swap on redeemed_count:

    UPDATE tickets SET redeemed_count = :seen + :n, ...
    WHERE id = :id AND redeemed_count = :seen

so two door scanners racing on the same code can't both spend the same
remaining capacity. The loser re-reads and recomputes. Every lost race means
the count went up, so the loop ends after at most `quantity` rounds.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ..helpers import now_ts, to_iso
from ..infra.sql import GatedAsyncSession
from .codes import normalize_code
from .db import PAID
from .errors import InvalidRequest

log = logging.getLogger(__name__)

# ticket states
UNREDEEMED = "UNREDEEMED"
PARTIALLY_REDEEMED = "PARTIALLY_REDEEMED"
FULLY_REDEEMED = "FULLY_REDEEMED"

# negative outcomes (not errors)
NOT_FOUND = "not_found"
NOT_PAID = "not_paid"
ALREADY_REDEEMED = "already_redeemed"

REASON_MESSAGES = {
    NOT_FOUND: "ticket not found",
    NOT_PAID: "ticket not paid",
    ALREADY_REDEEMED: "ticket already fully redeemed",
}

SQL_TICKET_BY_CODE = """
    SELECT t.id, t.code, t.quantity, t.redeemed_count,
           t.first_redeemed_at, t.last_redeemed_at, t.sent_at, t.created_at,
           p.status, p.customer_email, p.customer_name
    FROM tickets AS t
    JOIN purchases AS p ON p.id = t.purchase_id
    WHERE t.code = :code
"""

SQL_REDEEM_CAS = """
    UPDATE tickets
    SET redeemed_count = :seen + :n,
        first_redeemed_at = COALESCE(first_redeemed_at, :now),
        last_redeemed_at = :now
    WHERE id = :id AND redeemed_count = :seen
    RETURNING quantity, redeemed_count, first_redeemed_at, last_redeemed_at
"""


def ticket_state(quantity: int, redeemed_count: int) -> str:
    if redeemed_count <= 0:
        return UNREDEEMED
    if redeemed_count < quantity:
        return PARTIALLY_REDEEMED
    return FULLY_REDEEMED


def _require_code(code: Any) -> str:
    if code is not None and not isinstance(code, str):
        raise InvalidRequest("ticket code must be a string")
    normalized = normalize_code(code or "")
    if not normalized:
        raise InvalidRequest("missing ticket code")
    return normalized


def _require_count(requested: Any) -> int:
    if isinstance(requested, bool) or not isinstance(requested, int):
        raise InvalidRequest("redeem_count must be an integer")
    if requested < 1:
        raise InvalidRequest("redeem_count must be at least 1")
    return requested


# ----------------------------
# Result types
# ----------------------------
@dataclass
class ValidationResult:
    valid: bool
    code: str
    reason: Optional[str] = None
    ticket_id: Optional[str] = None
    status: Optional[str] = None
    quantity: Optional[int] = None
    redeemed_count: Optional[int] = None
    remaining_quantity: Optional[int] = None
    fully_redeemed: Optional[bool] = None
    customer_email: Optional[str] = None
    customer_name: Optional[str] = None
    first_redeemed_at: Optional[float] = None
    last_redeemed_at: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        if not self.valid:
            out = {
                "valid": False,
                "reason": self.reason,
                "error": REASON_MESSAGES[self.reason],
                "code": self.code,
            }
            if self.status is not None:
                out["status"] = self.status
            return out
        return {
            "valid": True,
            "code": self.code,
            "ticket_id": self.ticket_id,
            "quantity": self.quantity,
            "redeemed_count": self.redeemed_count,
            "remaining_quantity": self.remaining_quantity,
            "fully_redeemed": self.fully_redeemed,
            "state": ticket_state(self.quantity, self.redeemed_count),
            "customer_email": self.customer_email,
            "customer_name": self.customer_name,
            "first_redeemed_at": to_iso(self.first_redeemed_at),
            "last_redeemed_at": to_iso(self.last_redeemed_at),
        }


@dataclass
class RedemptionResult:
    success: bool
    code: str
    reason: Optional[str] = None
    ticket_id: Optional[str] = None
    status: Optional[str] = None
    redeemed_now: int = 0
    quantity: Optional[int] = None
    redeemed_count: Optional[int] = None
    remaining_quantity: Optional[int] = None
    fully_redeemed: Optional[bool] = None
    customer_email: Optional[str] = None
    customer_name: Optional[str] = None
    first_redeemed_at: Optional[float] = None
    last_redeemed_at: Optional[float] = None
    timestamp: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        if not self.success:
            out = {
                "success": False,
                "reason": self.reason,
                "error": REASON_MESSAGES[self.reason],
                "code": self.code,
            }
            if self.status is not None:
                out["status"] = self.status
            if self.reason == ALREADY_REDEEMED:
                out.update({
                    "quantity": self.quantity,
                    "redeemed_count": self.redeemed_count,
                    "remaining_quantity": 0,
                })
            return out
        return {
            "success": True,
            "code": self.code,
            "ticket_id": self.ticket_id,
            "redeemed_now": self.redeemed_now,
            "quantity": self.quantity,
            "redeemed_count": self.redeemed_count,
            "remaining_quantity": self.remaining_quantity,
            "fully_redeemed": self.fully_redeemed,
            "customer_email": self.customer_email,
            "customer_name": self.customer_name,
            "first_redeemed_at": to_iso(self.first_redeemed_at),
            "last_redeemed_at": to_iso(self.last_redeemed_at),
            "timestamp": to_iso(self.timestamp),
        }


# UN-GATED internal function
async def _ticket_by_code(session: AsyncSession, code: str):
    return (await session.execute(
        text(SQL_TICKET_BY_CODE), {"code": code}
    )).mappings().first()


# ----------------------------
# Redemption engine
# ----------------------------
async def validate(db: GatedAsyncSession, code: Optional[str]) -> ValidationResult:
    """Read-only check, safe to call once per camera frame."""
    normalized = _require_code(code)
    async with db.gated():
        async with db.session.begin():
            row = await _ticket_by_code(db.session, normalized)

    if row is None:
        return ValidationResult(valid=False, code=normalized, reason=NOT_FOUND)
    if row["status"] != PAID:
        return ValidationResult(
            valid=False, code=normalized, reason=NOT_PAID,
            status=row["status"],
        )
    remaining = row["quantity"] - row["redeemed_count"]
    return ValidationResult(
        valid=True,
        code=row["code"],
        ticket_id=row["id"],
        status=row["status"],
        quantity=row["quantity"],
        redeemed_count=row["redeemed_count"],
        remaining_quantity=remaining,
        fully_redeemed=remaining <= 0,
        customer_email=row["customer_email"],
        customer_name=row["customer_name"],
        first_redeemed_at=row["first_redeemed_at"],
        last_redeemed_at=row["last_redeemed_at"],
    )


async def redeem(
    db: GatedAsyncSession, code: Optional[str], requested: Any = 1
) -> RedemptionResult:
    """
    Admit up to `requested` guests on `code`. Requests beyond the remaining
    capacity are clamped, and `redeemed_now` reports what was admitted.
    """
    normalized = _require_code(code)
    requested = _require_count(requested)

    while True:
        async with db.gated():
            async with db.session.begin():
                row = await _ticket_by_code(db.session, normalized)
                if row is None:
                    return RedemptionResult(
                        success=False, code=normalized, reason=NOT_FOUND
                    )
                if row["status"] != PAID:
                    return RedemptionResult(
                        success=False, code=normalized, reason=NOT_PAID,
                        status=row["status"],
                    )
                seen = row["redeemed_count"]
                remaining = row["quantity"] - seen
                if remaining <= 0:
                    return RedemptionResult(
                        success=False, code=normalized,
                        reason=ALREADY_REDEEMED,
                        ticket_id=row["id"],
                        quantity=row["quantity"],
                        redeemed_count=seen,
                        remaining_quantity=0,
                        fully_redeemed=True,
                    )

                actual = min(requested, remaining)
                now = now_ts()
                updated = (await db.session.execute(text(SQL_REDEEM_CAS), {
                    "id": row["id"], "seen": seen, "n": actual, "now": now,
                })).mappings().first()

        if updated is None:
            # another scanner got in between; re-read and recompute
            log.debug("redemption race on %s, retrying", normalized)
            continue

        left = updated["quantity"] - updated["redeemed_count"]
        log.info(
            "redeemed %s: +%d -> %d/%d",
            normalized, actual, updated["redeemed_count"], updated["quantity"],
        )
        return RedemptionResult(
            success=True,
            code=row["code"],
            ticket_id=row["id"],
            status=row["status"],
            redeemed_now=actual,
            quantity=updated["quantity"],
            redeemed_count=updated["redeemed_count"],
            remaining_quantity=left,
            fully_redeemed=left <= 0,
            customer_email=row["customer_email"],
            customer_name=row["customer_name"],
            first_redeemed_at=updated["first_redeemed_at"],
            last_redeemed_at=updated["last_redeemed_at"],
            timestamp=now,
        )


# ----------------------------
# Store queries
# ----------------------------
async def get_ticket(
    db: GatedAsyncSession, code: Optional[str]
) -> Optional[Dict[str, Any]]:
    normalized = _require_code(code)
    async with db.gated():
        async with db.session.begin():
            row = await _ticket_by_code(db.session, normalized)
    return dict(row) if row else None


async def mark_sent(
    db: GatedAsyncSession, ticket_id: str, sent_at: Optional[float] = None
) -> float:
    sent_at = now_ts() if sent_at is None else sent_at
    async with db.gated():
        async with db.session.begin():
            await db.session.execute(
                text("UPDATE tickets SET sent_at = :s WHERE id = :id"),
                {"s": sent_at, "id": ticket_id},
            )
    return sent_at


def _percentage(redeemed: int, quantity: int) -> int:
    if quantity <= 0:
        return 0
    # round half up
    return (200 * redeemed + quantity) // (2 * quantity)


async def ticket_stats(db: GatedAsyncSession) -> Dict[str, int]:
    """Totals over tickets of PAID purchases."""
    async with db.gated():
        async with db.session.begin():
            row = (await db.session.execute(text("""
                SELECT COUNT(t.id),
                       COALESCE(SUM(t.quantity), 0),
                       COALESCE(SUM(t.redeemed_count), 0)
                FROM tickets AS t
                JOIN purchases AS p ON p.id = t.purchase_id
                WHERE p.status = :paid
            """), {"paid": PAID})).first()

    total_tickets, total_quantity, total_redeemed = (int(v) for v in row)
    return {
        "total_tickets": total_tickets,
        "total_quantity": total_quantity,
        "total_redeemed": total_redeemed,
        "total_remaining": total_quantity - total_redeemed,
        "percentage_redeemed": _percentage(total_redeemed, total_quantity),
    }


def _row_to_item(r) -> Dict[str, Any]:
    return {
        "id": r["id"],
        "code": r["code"],
        "quantity": r["quantity"],
        "redeemed_count": r["redeemed_count"],
        "first_redeemed_at": to_iso(r["first_redeemed_at"]),
        "last_redeemed_at": to_iso(r["last_redeemed_at"]),
        "sent_at": to_iso(r["sent_at"]),
        "created_at": to_iso(r["created_at"]),
        "purchase": {
            "external_id": r["external_id"],
            "customer_email": r["customer_email"],
            "customer_name": r["customer_name"],
            "amount_total": r["amount_total"],
            "currency": r["currency"],
            "status": r["status"],
            "created_at": to_iso(r["purchase_created_at"]),
        },
    }


async def list_tickets(
    db: GatedAsyncSession, limit: int = 100, cursor: Optional[str] = None
) -> Tuple[List[Dict[str, Any]], Optional[str]]:
    """
    Newest first. `cursor` is the id of the last ticket of the previous page;
    the returned next cursor is None once a short page comes back.
    """
    params: Dict[str, Any] = {"lim": int(limit)}
    where = ""
    async with db.gated():
        async with db.session.begin():
            if cursor:
                anchor = (await db.session.execute(
                    text("SELECT created_at FROM tickets WHERE id = :id"),
                    {"id": cursor},
                )).first()
                if anchor is None:
                    raise InvalidRequest("unknown cursor")
                where = """
                    WHERE t.created_at < :c_at
                       OR (t.created_at = :c_at AND t.id < :c_id)
                """
                params.update({"c_at": anchor[0], "c_id": cursor})

            rows = (await db.session.execute(text(f"""
                SELECT t.id, t.code, t.quantity, t.redeemed_count,
                       t.first_redeemed_at, t.last_redeemed_at, t.sent_at,
                       t.created_at,
                       p.external_id, p.customer_email, p.customer_name,
                       p.amount_total, p.currency, p.status,
                       p.created_at AS purchase_created_at
                FROM tickets AS t
                JOIN purchases AS p ON p.id = t.purchase_id
                {where}
                ORDER BY t.created_at DESC, t.id DESC
                LIMIT :lim
            """), params)).mappings().all()

    items = [_row_to_item(r) for r in rows]
    next_cursor = items[-1]["id"] if len(items) == limit and items else None
    return items, next_cursor
