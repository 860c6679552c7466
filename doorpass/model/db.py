from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy import (
    JSON,
    CheckConstraint,
    Column,
    Float,
    ForeignKey,
    Integer,
    String,
    text,
)
from sqlalchemy.ext.asyncio import AsyncConnection


Base = declarative_base()

# purchase statuses
PENDING = "PENDING"
PAID = "PAID"
FAILED = "FAILED"
EXPIRED = "EXPIRED"
PURCHASE_STATUSES = (PENDING, PAID, FAILED, EXPIRED)


# ----------------------------
# ORM models
# ----------------------------
class Purchase(Base):
    __tablename__ = "purchases"
    id = Column(String, primary_key=True)
    # checkout session id from the provider, or manual_<uuid>
    external_id = Column(String, nullable=False, unique=True)
    payment_intent_id = Column(String, nullable=True)
    customer_id = Column(String, nullable=True)
    customer_email = Column(String, nullable=True)
    customer_name = Column(String, nullable=True)
    amount_total = Column(Integer, nullable=True)  # minor units
    currency = Column(String, nullable=True)

    # PENDING | PAID | FAILED | EXPIRED
    status = Column(String, nullable=False, default=PENDING)
    line_items = Column(JSON, nullable=True)
    raw_event = Column(JSON, nullable=True)
    created_at = Column(Float, nullable=False)

    tickets = relationship("Ticket", back_populates="purchase")


class Ticket(Base):
    __tablename__ = "tickets"
    __table_args__ = (
        CheckConstraint("quantity >= 1", name="ck_tickets_quantity"),
        CheckConstraint(
            "redeemed_count >= 0 AND redeemed_count <= quantity",
            name="ck_tickets_redeemed_count",
        ),
    )
    id = Column(String, primary_key=True)
    code = Column(String, nullable=False, unique=True)
    purchase_id = Column(
        String, ForeignKey("purchases.id"), nullable=False, index=True
    )
    quantity = Column(Integer, nullable=False, default=1)
    redeemed_count = Column(Integer, nullable=False, default=0)
    first_redeemed_at = Column(Float, nullable=True)
    last_redeemed_at = Column(Float, nullable=True)
    sent_at = Column(Float, nullable=True)
    created_at = Column(Float, nullable=False, index=True)

    purchase = relationship("Purchase", back_populates="tickets")


class CodeSequence(Base):
    __tablename__ = "code_sequences"
    name = Column(String, primary_key=True)
    value = Column(Integer, nullable=False, default=0)


class WebhookEvent(Base):
    __tablename__ = "webhook_events"
    id = Column(String, primary_key=True)
    type = Column(String, nullable=False)
    received_at = Column(Float, nullable=False)


TICKET_SEQUENCE = "ticket"


async def create_schema(conn: AsyncConnection) -> None:
    await conn.run_sync(Base.metadata.create_all)
    # seed the counter row used by the sequential code scheme
    await conn.execute(text("""
        INSERT INTO code_sequences(name, value) VALUES (:n, 0)
        ON CONFLICT (name) DO NOTHING
    """), {"n": TICKET_SEQUENCE})
