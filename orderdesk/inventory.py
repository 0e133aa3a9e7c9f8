"""
Card inventory: the pool of single-use virtual cards.

Cards are handed out oldest-first. Allocation is a single conditional
UPDATE against the store (compare-and-set on ``status``), so two
concurrent allocators can never walk away with the same card.
"""
from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, aliased

from orderdesk.config import settings
from orderdesk.errors import (
    AlreadyResolved,
    CardAlreadyUsed,
    CardNotFound,
    DuplicateCard,
    MalformedRecord,
    NotFound,
    OperationTimeout,
    OrderDeskError,
    OrderNotFound,
    PoolExhausted,
    StoreFailure,
)
from orderdesk.models import CardStatus, Order, VirtualCard, utcnow
from orderdesk.schemas import InventoryStats

logger = logging.getLogger(__name__)

CARD_FORMAT = "card_number,exp_date,cvv,zip_code,email"
CARD_FIELD_COUNT = 5


def normalize_card_string(raw: str) -> str:
    """Trim whitespace, wrapping quotes and the stray commas card scrapers emit."""
    cleaned = raw.strip().strip("\"', \t")
    return ",".join(part.strip() for part in cleaned.split(","))


def card_number_of(card_string: str) -> str:
    return card_string.split(",", 1)[0]


def iter_numbered_lines(lines: Iterable[str]):
    """Yield (line_number, text) for non-blank lines.

    Numbers are 1-based physical positions: blank lines are skipped but
    still consume their number, so reports match what staff see in the file.
    """
    for line_number, line in enumerate(lines, start=1):
        if line.strip():
            yield line_number, line


# -- single card admission ---------------------------------------------------

def add_card(db: Session, raw: str) -> VirtualCard:
    """Admit one card. Raises MalformedRecord or DuplicateCard."""
    card_string = normalize_card_string(raw)
    parts = card_string.split(",")
    if len(parts) != CARD_FIELD_COUNT or not all(parts):
        raise MalformedRecord(f"Invalid card string format. Expected: {CARD_FORMAT}", card_string=card_string)

    card_number = card_number_of(card_string)
    existing = db.query(VirtualCard).filter(
        or_(VirtualCard.card_string == card_string, VirtualCard.card_number == card_number)
    ).first()
    if existing:
        raise DuplicateCard("This card already exists in the inventory", card_number=card_number)

    card = VirtualCard(card_string=card_string, card_number=card_number)
    db.add(card)
    try:
        db.commit()
    except IntegrityError as e:
        # Admitted concurrently between the check and the write
        db.rollback()
        raise DuplicateCard("This card already exists in the inventory", card_number=card_number) from e
    except SQLAlchemyError as e:
        db.rollback()
        raise StoreFailure(f"Failed to store card: {e}") from e

    db.refresh(card)
    logger.info(f"✓ Added card #{card.id} to inventory")
    return card


@dataclass
class IngestError:
    line_number: int
    card_string: str
    error: str


@dataclass
class BulkIngestResult:
    added: int = 0
    failed: int = 0
    errors: List[IngestError] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return self.added + self.failed


def ingest_batch(db: Session, lines: Iterable[str]) -> BulkIngestResult:
    """Per-line ingestion: each good line is admitted on its own, bad lines are reported."""
    result = BulkIngestResult()
    for line_number, line in iter_numbered_lines(lines):
        try:
            add_card(db, line)
            result.added += 1
        except (MalformedRecord, DuplicateCard) as e:
            result.failed += 1
            result.errors.append(IngestError(line_number=line_number, card_string=line.strip(), error=e.message))

    logger.info(f"📥 Card batch ingested: {result.added} added, {result.failed} failed")
    return result


# -- allocation --------------------------------------------------------------

def get_unused_card(db: Session) -> VirtualCard:
    """Peek at the oldest unused card without consuming it."""
    card = (
        db.query(VirtualCard)
        .filter(VirtualCard.status == CardStatus.UNUSED.value)
        .order_by(VirtualCard.created_at, VirtualCard.id)
        .first()
    )
    if card is None:
        raise PoolExhausted()
    return card


def _count_unused(db: Session) -> int:
    return db.scalar(
        select(func.count()).select_from(VirtualCard).where(VirtualCard.status == CardStatus.UNUSED.value)
    )


def take_oldest_unused(db: Session, order_number: str) -> Tuple[int, str]:
    """Consume the oldest unused card for ``order_number`` inside the caller's transaction.

    Returns (card id, card string). The caller commits or rolls back.
    """
    candidate = aliased(VirtualCard)
    oldest = (
        select(candidate.id)
        .where(candidate.status == CardStatus.UNUSED.value)
        .order_by(candidate.created_at, candidate.id)
        .limit(1)
        .correlate(None)
        .scalar_subquery()
    )
    stmt = (
        update(VirtualCard)
        .where(VirtualCard.id == oldest, VirtualCard.status == CardStatus.UNUSED.value)
        .values(status=CardStatus.USED.value, used_at=utcnow(), used_for_order_number=order_number)
        .returning(VirtualCard.id, VirtualCard.card_string)
        .execution_options(synchronize_session=False)
    )
    while True:
        row = db.execute(stmt).first()
        if row is not None:
            return row[0], row[1]
        # Lost the race for that card; retry while any remain
        if not _count_unused(db):
            raise PoolExhausted()


def mark_used(db: Session, card_id: int, order_number: str) -> VirtualCard:
    stmt = (
        update(VirtualCard)
        .where(VirtualCard.id == card_id, VirtualCard.status == CardStatus.UNUSED.value)
        .values(status=CardStatus.USED.value, used_at=utcnow(), used_for_order_number=order_number)
        .execution_options(synchronize_session=False)
    )
    try:
        updated = db.execute(stmt).rowcount
        if not updated:
            db.rollback()
            if db.get(VirtualCard, card_id) is None:
                raise CardNotFound(card_id)
            raise CardAlreadyUsed(card_id)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise StoreFailure(f"Failed to mark card {card_id} as used: {e}") from e

    card = db.get(VirtualCard, card_id)
    db.refresh(card)
    logger.info(f"✓ Marked card #{card_id} as used for order {order_number}")
    return card


class ConcurrentAssignment(Exception):
    """Another writer stamped a card onto the order first."""


def attach_card(db: Session, order: Order) -> bool:
    """Allocate a card and stamp it onto ``order`` without committing.

    Returns False when the order already holds a card. Raises
    ConcurrentAssignment when another writer stamps one first; the caller
    must roll back so the consumed card is released.
    """
    if order.assigned_card_id is not None:
        return False

    card_id, card_string = take_oldest_unused(db, order.order_number)
    stamped = db.execute(
        update(Order)
        .where(Order.id == order.id, Order.assigned_card_id.is_(None))
        .values(assigned_card_id=card_id, card_string=card_string, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    ).rowcount
    if not stamped:
        raise ConcurrentAssignment()
    return True


def assign_to_order(db: Session, order_number: str) -> Order:
    """Give the order the oldest unused card. Leaves the order untouched on PoolExhausted."""
    order = db.query(Order).filter(Order.order_number == order_number).first()
    if order is None:
        raise OrderNotFound(order_number)
    if order.is_terminal:
        raise AlreadyResolved(order_number, order.status)

    try:
        if attach_card(db, order):
            db.commit()
            logger.info(f"✓ Assigned card to order {order_number}")
    except ConcurrentAssignment:
        db.rollback()
    except OrderDeskError:
        db.rollback()
        raise
    except SQLAlchemyError as e:
        db.rollback()
        raise StoreFailure(f"Failed to assign card to order {order_number}: {e}") from e

    db.refresh(order)
    return order


def get_inventory_stats(db: Session) -> InventoryStats:
    counts: Dict[str, int] = dict(
        db.execute(select(VirtualCard.status, func.count()).group_by(VirtualCard.status)).all()
    )
    unused = counts.get(CardStatus.UNUSED.value, 0)
    used = counts.get(CardStatus.USED.value, 0)
    return InventoryStats(
        unused=unused,
        used=used,
        total=unused + used,
        low=unused <= settings.INVENTORY_LOW_THRESHOLD,
    )


# -- upload sessions ---------------------------------------------------------

class UploadSessions:
    """Pending file uploads waiting for their attachment.

    Nothing touches the store until a session is submitted, so a session
    that times out leaves no partial state behind.
    """

    def __init__(self, timeout_seconds: int = settings.UPLOAD_TIMEOUT_SECONDS,
                 clock: Callable[[], datetime] = utcnow):
        self.timeout = timedelta(seconds=timeout_seconds)
        self.clock = clock
        self._opened: Dict[str, datetime] = {}
        self._lock = threading.Lock()

    def open(self, opened_by: Optional[str] = None) -> str:
        now = self.clock()
        upload_id = uuid.uuid4().hex
        with self._lock:
            self._purge(now)
            self._opened[upload_id] = now
        logger.info(f"📎 Upload {upload_id} opened by {opened_by or 'unknown'}")
        return upload_id

    def consume(self, upload_id: str) -> None:
        """Close the session; raises OperationTimeout if it expired."""
        now = self.clock()
        with self._lock:
            opened_at = self._opened.pop(upload_id, None)
        if opened_at is None:
            raise NotFound(f"Upload {upload_id} not found", upload_id=upload_id)
        if now - opened_at > self.timeout:
            raise OperationTimeout(
                f"Upload {upload_id} expired after {int(self.timeout.total_seconds())}s",
                upload_id=upload_id,
            )

    def _purge(self, now: datetime) -> None:
        # Keep recently expired sessions around so late submissions still report a timeout
        horizon = self.timeout * 10
        expired = [key for key, opened_at in self._opened.items() if now - opened_at > horizon]
        for key in expired:
            del self._opened[key]


upload_sessions = UploadSessions()
