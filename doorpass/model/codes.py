"""
Ticket code generation.

Two schemes are supported, selected with TICKET_CODE_SCHEME:

- ``random`` (default): a fixed-length token such as ``K7QMZP3A``.
- ``sequential``: a random prefix plus a three-digit sequence number,
  ``K7QMZP3A-042``. The number comes from a counter row that is bumped
  inside the same transaction that inserts the ticket.

Neither scheme guarantees uniqueness on its own; the unique constraint on
``tickets.code`` does, and the creation path resamples on collision.
"""
from __future__ import annotations
import os
import secrets
from typing import Callable

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from .db import TICKET_SEQUENCE
from .errors import SequenceExhausted

# Excluding similar chars like 0/O, 1/I/L
ALPHABET = "ABCDEFGHJKMNPQRSTUVWXYZ23456789"

MIN_CODE_LENGTH = 8
MAX_CODE_LENGTH = 12
MAX_SEQUENCE = 999
MAX_CODE_ATTEMPTS = 5

SCHEME = os.getenv("TICKET_CODE_SCHEME", "random").lower()  # random | sequential
CODE_LENGTH = int(os.getenv("TICKET_CODE_LENGTH", "8"))


def generate_code(length: int = CODE_LENGTH) -> str:
    if not MIN_CODE_LENGTH <= length <= MAX_CODE_LENGTH:
        raise ValueError(
            f"ticket code length must be between {MIN_CODE_LENGTH} and "
            f"{MAX_CODE_LENGTH}, got {length}"
        )
    return "".join(secrets.choice(ALPHABET) for _ in range(length))


def normalize_code(code: str) -> str:
    return code.strip().upper()


def format_sequential(prefix: str, number: int) -> str:
    if number > MAX_SEQUENCE:
        raise SequenceExhausted(number)
    return f"{prefix}-{number:03d}"


async def next_sequence(session: AsyncSession) -> int:
    """
    Bump and return the ticket counter. Must run inside the transaction that
    inserts the ticket: the row stays locked until commit, and a rollback
    gives the number back.
    """
    row = (await session.execute(text("""
        UPDATE code_sequences SET value = value + 1
        WHERE name = :n
        RETURNING value
    """), {"n": TICKET_SEQUENCE})).first()
    if row is None:
        raise RuntimeError("code_sequences row missing; schema not seeded")
    value = int(row[0])
    if value > MAX_SEQUENCE:
        raise SequenceExhausted(value)
    return value


async def code_sampler(
    session: AsyncSession, scheme: str = SCHEME
) -> Callable[[], str]:
    """Return a zero-arg function producing candidate codes for one ticket."""
    if scheme == "sequential":
        number = await next_sequence(session)
        return lambda: format_sequential(generate_code(), number)
    if scheme != "random":
        raise ValueError(f"unknown TICKET_CODE_SCHEME: {scheme}")
    return generate_code
