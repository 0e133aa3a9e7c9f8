import enum
from datetime import datetime, timezone

from sqlalchemy import Column, Integer, String, DateTime, Text, ForeignKey, Boolean, Index
from sqlalchemy.orm import relationship

from orderdesk.database import Base


def utcnow() -> datetime:
    """Naive UTC timestamp, comparable with values read back from any backend."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class OrderStatus(str, enum.Enum):
    PENDING_PAYMENT = "pending_payment"
    PAYMENT_SUBMITTED = "payment_submitted"
    PAYMENT_VERIFIED = "payment_verified"
    PAYMENT_FAILED = "payment_failed"
    QUEUED = "queued"
    PROCESSING = "processing"
    ORDER_PLACED = "order_placed"
    DELIVERED = "delivered"
    FAILED = "failed"
    AUTOMATION_FAILED = "automation_failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = (OrderStatus.DELIVERED.value, OrderStatus.FAILED.value)

# Only ticketed orders being worked by staff can be resolved
RESOLVABLE_STATUSES = (OrderStatus.QUEUED.value, OrderStatus.PROCESSING.value)


class PaymentMethod(str, enum.Enum):
    VENMO = "venmo"
    ZELLE = "zelle"
    CRYPTO = "crypto"


class Outcome(str, enum.Enum):
    """Staff resolution of a ticket: charged-success or no-charge failure."""
    SUCCESS = "success"
    FAILURE = "failure"

    @property
    def terminal_status(self) -> "OrderStatus":
        return OrderStatus.DELIVERED if self is Outcome.SUCCESS else OrderStatus.FAILED


class CardStatus(str, enum.Enum):
    UNUSED = "unused"
    USED = "used"


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, nullable=False)
    full_name = Column(String(200), default="")
    # Minor currency units (cents), never floats
    balance_cents = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime, default=utcnow)

    orders = relationship("Order", back_populates="user")


class Order(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    order_number = Column(String(50), unique=True, index=True, nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True)

    customer_name = Column(String(200), default="")
    group_order_link = Column(Text)
    delivery_address = Column(Text, default="")
    delivery_instructions = Column(Text, default="")

    charge_cents = Column(Integer, nullable=False)
    payment_method = Column(String(20), nullable=False)

    status = Column(String(30), default=OrderStatus.PENDING_PAYMENT.value, index=True, nullable=False)
    charged = Column(Boolean, default=False, nullable=False)

    # Ticket channel on the chat platform, null until the ticket exists
    ticket_channel_id = Column(String(100), nullable=True, index=True)
    ticket_closed_at = Column(DateTime, nullable=True)
    claimed_by = Column(String(100), nullable=True)
    claimed_at = Column(DateTime, nullable=True)
    force_close_requested_at = Column(DateTime, nullable=True)

    assigned_card_id = Column(Integer, ForeignKey("virtual_cards.id"), nullable=True)
    card_string = Column(String(255), nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    completed_at = Column(DateTime, nullable=True)

    user = relationship("User", back_populates="orders")
    assigned_card = relationship("VirtualCard")

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class VirtualCard(Base):
    __tablename__ = "virtual_cards"

    id = Column(Integer, primary_key=True, index=True)
    # Normalized "number,MM/YY,cvv,zip,email" string is the card fingerprint
    card_string = Column(String(255), unique=True, nullable=False)
    card_number = Column(String(32), unique=True, nullable=False)
    status = Column(String(10), default=CardStatus.UNUSED.value, nullable=False)
    used_at = Column(DateTime, nullable=True)
    used_for_order_number = Column(String(50), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_virtual_cards_status_created", "status", "created_at"),
    )


class DailyStats(Base):
    """One row per UTC calendar day, created lazily on the first increment."""
    __tablename__ = "daily_stats"

    date = Column(String(10), primary_key=True)  # YYYY-MM-DD
    success_count = Column(Integer, default=0, nullable=False)
    failure_count = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
