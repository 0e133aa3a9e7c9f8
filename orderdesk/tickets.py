"""
Ticket lifecycle: payment_verified -> queued -> (processing) -> delivered | failed.

Every transition that matters for money or inventory is a conditional
UPDATE guarded on the order's current state, so a transition can only
happen once no matter how many staff clicks or replicas race for it.
Chat-side effects (controls, notices) run after the store transition has
committed and never undo it when they fail.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import List, Optional

from fastapi.concurrency import run_in_threadpool
from sqlalchemy import or_, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from orderdesk import daily_stats
from orderdesk.config import settings
from orderdesk.errors import (
    AlreadyClaimed,
    AlreadyResolved,
    InsufficientFunds,
    NotResolvable,
    OrderDeskError,
    OrderNotFound,
    StoreFailure,
    TicketNotFound,
    TransportFailure,
    UserNotFound,
)
from orderdesk.inventory import ConcurrentAssignment, attach_card
from orderdesk.models import RESOLVABLE_STATUSES, TERMINAL_STATUSES, Order, OrderStatus, Outcome, User, utcnow
from orderdesk.schemas import CloseResponse, ResolveResponse, TicketPollResponse
from orderdesk.transport import ChatTransport, TicketControls, best_effort

logger = logging.getLogger(__name__)


def format_cents(cents: int) -> str:
    return f"${cents / 100:.2f}"


def ticket_channel_name(order_number: str) -> str:
    return f"order-{order_number}"


def get_order(db: Session, order_number: str) -> Order:
    order = db.query(Order).filter(Order.order_number == order_number).first()
    if order is None:
        raise OrderNotFound(order_number)
    return order


def _opening_message(order: Order) -> str:
    lines = [
        f"🧾 **New order #{order.order_number}**",
        f"👤 Customer: {order.customer_name or 'N/A'}",
        f"💰 Charge: {format_cents(order.charge_cents)} via {order.payment_method}",
    ]
    if order.group_order_link:
        lines.append(f"🔗 {order.group_order_link}")
    if order.delivery_address:
        lines.append(f"📍 {order.delivery_address}")
    if order.delivery_instructions:
        lines.append(f"📝 {order.delivery_instructions}")
    lines.append("Click **Claim** to start working this order.")
    return "\n".join(lines)


# -- ticket creation ---------------------------------------------------------

def find_ready_orders(db: Session, limit: int) -> List[Order]:
    return (
        db.query(Order)
        .filter(Order.status == OrderStatus.PAYMENT_VERIFIED.value, Order.ticket_channel_id.is_(None))
        .order_by(Order.created_at, Order.id)
        .limit(limit)
        .all()
    )


def _record_ticket(db: Session, order_id: int, order_number: str, channel_ref: str) -> bool:
    try:
        updated = db.execute(
            update(Order)
            .where(
                Order.id == order_id,
                Order.status == OrderStatus.PAYMENT_VERIFIED.value,
                Order.ticket_channel_id.is_(None),
            )
            .values(ticket_channel_id=channel_ref, status=OrderStatus.QUEUED.value, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        ).rowcount
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise StoreFailure(f"Failed to record ticket for order #{order_number}: {e}") from e
    return bool(updated)


async def create_ticket_for_order(db: Session, order: Order, transport: ChatTransport) -> Optional[str]:
    """Open the ticket channel and move the order to queued.

    Returns the channel reference, or None when another poller ticketed
    the order first (the channel created here is then removed again).
    Raises TransportFailure if the channel cannot be created; the order is
    left untouched and picked up by the next poll.
    """
    order_id, order_number, content = await run_in_threadpool(
        lambda: (order.id, order.order_number, _opening_message(order))
    )
    channel_ref = await transport.create_channel(
        settings.TICKET_CATEGORY_ID,
        ticket_channel_name(order_number),
        content,
        TicketControls.unclaimed(),
    )

    try:
        updated = await run_in_threadpool(_record_ticket, db, order_id, order_number, channel_ref)
    except StoreFailure:
        await best_effort(f"Removing orphaned ticket for order #{order_number}", transport.delete_channel(channel_ref))
        raise

    if not updated:
        logger.info(f"Order #{order_number} was ticketed concurrently, dropping duplicate channel")
        await best_effort(f"Removing duplicate ticket for order #{order_number}", transport.delete_channel(channel_ref))
        return None

    logger.info(f"🎫 Created ticket {channel_ref} for order #{order_number}")
    return channel_ref


async def create_pending_tickets(db: Session, transport: ChatTransport,
                                 batch_size: Optional[int] = None) -> TicketPollResponse:
    """One poll cycle: ticket up to ``batch_size`` verified orders, each in isolation."""
    orders = await run_in_threadpool(find_ready_orders, db, batch_size or settings.TICKET_POLL_BATCH_SIZE)
    created: List[str] = []
    failed: List[str] = []

    for order in orders:
        order_number = await run_in_threadpool(lambda: order.order_number)
        try:
            channel_ref = await create_ticket_for_order(db, order, transport)
        except (TransportFailure, StoreFailure) as e:
            logger.error(f"❌ Could not create ticket for order #{order_number}: {e}")
            failed.append(order_number)
            continue
        if channel_ref:
            created.append(order_number)

    if orders:
        logger.info(f"[Ticket Poller] {len(created)} created, {len(failed)} failed")
    return TicketPollResponse(created=created, failed=failed)


# -- claim -------------------------------------------------------------------

def record_claim(db: Session, order_number: str, staff: str) -> Order:
    order = get_order(db, order_number)
    if order.is_terminal:
        raise AlreadyResolved(order_number, order.status)

    try:
        claimed = db.execute(
            update(Order)
            .where(
                Order.id == order.id,
                Order.status.notin_(TERMINAL_STATUSES),
                or_(Order.claimed_by.is_(None), Order.claimed_by == staff),
            )
            .values(claimed_by=staff, claimed_at=utcnow(), updated_at=utcnow())
            .execution_options(synchronize_session=False)
        ).rowcount
        if not claimed:
            db.rollback()
            db.refresh(order)
            if order.is_terminal:
                raise AlreadyResolved(order_number, order.status)
            raise AlreadyClaimed(order_number, order.claimed_by)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise StoreFailure(f"Failed to claim order #{order_number}: {e}") from e

    db.refresh(order)
    return order


async def claim_ticket(db: Session, order_number: str, staff: str, transport: ChatTransport) -> Order:
    order = await run_in_threadpool(record_claim, db, order_number, staff)
    if order.ticket_channel_id:
        await best_effort(
            f"Updating claim controls for order #{order_number}",
            transport.edit_controls(order.ticket_channel_id, TicketControls.claimed(staff)),
        )
        await best_effort(
            f"Announcing claim for order #{order_number}",
            transport.send_message(order.ticket_channel_id, f"🎫 **{staff}** has claimed this ticket!"),
        )
    logger.info(f"🎫 Order #{order_number} claimed by {staff}")
    return order


# -- resolve -----------------------------------------------------------------

def _already_complete(order: Order, outcome: Outcome) -> ResolveResponse:
    return ResolveResponse(
        order_number=order.order_number,
        outcome=outcome,
        status=order.status,
        charged=order.charged,
        already_complete=True,
        message=f"Order #{order.order_number} is already {order.status}",
    )


def _check_repeat(order: Order, outcome: Outcome) -> Optional[ResolveResponse]:
    """Repeating the same resolution is a no-op; contradicting a terminal one is an error.

    Only queued or processing orders are open for resolution.
    """
    if order.status == outcome.terminal_status.value:
        return _already_complete(order, outcome)
    if order.charged or order.is_terminal:
        raise AlreadyResolved(order.order_number, order.status)
    if order.status not in RESOLVABLE_STATUSES:
        raise NotResolvable(order.order_number, order.status)
    return None


def _resolve_success(db: Session, order: Order, now: datetime) -> ResolveResponse:
    order_number, amount, user_id = order.order_number, order.charge_cents, order.user_id

    # Claim the transition first: a concurrent resolve blocks here and then fails the guard
    transitioned = db.execute(
        update(Order)
        .where(Order.id == order.id, Order.charged.is_(False), Order.status.in_(RESOLVABLE_STATUSES))
        .values(charged=True, status=OrderStatus.DELIVERED.value, completed_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    ).rowcount
    if not transitioned:
        db.rollback()
        db.refresh(order)
        return _check_repeat(order, Outcome.SUCCESS) or _already_complete(order, Outcome.SUCCESS)

    debited = 0
    if user_id is not None:
        debited = db.execute(
            update(User)
            .where(User.id == user_id, User.balance_cents >= amount)
            .values(balance_cents=User.balance_cents - amount)
            .execution_options(synchronize_session=False)
        ).rowcount
    if not debited:
        db.rollback()
        user = db.get(User, user_id, populate_existing=True) if user_id is not None else None
        if user is None:
            raise UserNotFound(user_id, order_number)
        raise InsufficientFunds(order_number, user.balance_cents, amount)

    # A charged order always carries the card it was fulfilled with
    attach_card(db, order)
    daily_stats.increment(db, Outcome.SUCCESS, now, commit=False)
    db.commit()

    balance = db.get(User, user_id, populate_existing=True).balance_cents
    logger.info(f"✅ Charged {format_cents(amount)} for order #{order_number}")
    return ResolveResponse(
        order_number=order_number,
        outcome=Outcome.SUCCESS,
        status=OrderStatus.DELIVERED.value,
        charged=True,
        charged_cents=amount,
        balance_cents=balance,
        message=(
            f"✅ Ticket #{order_number} marked as SUCCESS\n"
            f"💳 Charged: {format_cents(amount)}\n"
            f"👤 Customer balance: {format_cents(balance)}"
        ),
    )


def _resolve_failure(db: Session, order: Order, now: datetime) -> ResolveResponse:
    order_number = order.order_number
    transitioned = db.execute(
        update(Order)
        .where(Order.id == order.id, Order.status.in_(RESOLVABLE_STATUSES))
        .values(charged=False, status=OrderStatus.FAILED.value, completed_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    ).rowcount
    if not transitioned:
        db.rollback()
        db.refresh(order)
        return _check_repeat(order, Outcome.FAILURE) or _already_complete(order, Outcome.FAILURE)

    daily_stats.increment(db, Outcome.FAILURE, now, commit=False)
    db.commit()

    logger.info(f"❌ Order #{order_number} marked as failed, no charge applied")
    return ResolveResponse(
        order_number=order_number,
        outcome=Outcome.FAILURE,
        status=OrderStatus.FAILED.value,
        charged=False,
        message=f"❌ Ticket #{order_number} marked as FAILED\n💰 No charges applied.",
    )


def resolve_order(db: Session, order_number: str, outcome: Outcome, now: Optional[datetime] = None) -> ResolveResponse:
    """Move an order to its terminal state and count it.

    Success debits the owner's wallet exactly once; failure never touches
    money. Raises OrderNotFound, AlreadyResolved, NotResolvable, InsufficientFunds,
    UserNotFound, PoolExhausted or StoreFailure, with nothing written.
    """
    now = now or utcnow()
    for attempt in range(2):
        order = get_order(db, order_number)
        repeat = _check_repeat(order, outcome)
        if repeat is not None:
            return repeat

        try:
            if outcome is Outcome.SUCCESS:
                return _resolve_success(db, order, now)
            return _resolve_failure(db, order, now)
        except ConcurrentAssignment:
            # A card was stamped onto the order while we held one; start over with it
            db.rollback()
            if attempt:
                raise StoreFailure(f"Card assignment for order #{order_number} kept changing")
        except OrderDeskError:
            db.rollback()
            raise
        except SQLAlchemyError as e:
            db.rollback()
            raise StoreFailure(f"Failed to resolve order #{order_number}: {e}") from e


def _resolution_context(db: Session, order_number: str):
    """Ticket channel of the order and the number of orders still queued."""
    order = get_order(db, order_number)
    queued = db.query(Order).filter(Order.status == OrderStatus.QUEUED.value).count()
    return order.ticket_channel_id, queued


async def resolve_ticket(db: Session, order_number: str, outcome: Outcome, transport: ChatTransport,
                         staff: Optional[str] = None) -> ResolveResponse:
    """Staff action: resolve, then lock the ticket's controls and announce the outcome."""
    result = await run_in_threadpool(resolve_order, db, order_number, outcome)
    if result.already_complete:
        return result

    channel_ref, queued = await run_in_threadpool(_resolution_context, db, order_number)
    label = "SUCCESS" if outcome is Outcome.SUCCESS else "FAILED"
    if channel_ref:
        await best_effort(
            f"Disabling controls for order #{order_number}",
            transport.edit_controls(channel_ref, TicketControls.resolved(label)),
        )
        await best_effort(
            f"Posting resolution for order #{order_number}",
            transport.send_message(
                channel_ref,
                f"{result.message}\n\n✅ Click \"Close Ticket\" when ready to close this channel.",
            ),
        )

    if settings.ORDER_NOTIFICATION_CHANNEL_ID:
        icon = "✅" if outcome is Outcome.SUCCESS else "❌"
        by = f" by {staff}" if staff else ""
        await best_effort(
            f"Sending order notification for #{order_number}",
            transport.send_message(
                settings.ORDER_NOTIFICATION_CHANNEL_ID,
                f"{icon} Order #{order_number} {label.lower()}{by} | Queue: {queued} orders remaining",
            ),
        )
    return result


# -- close -------------------------------------------------------------------

def record_close(db: Session, order_number: str, force: bool, now: datetime) -> Order:
    """Store side of a close request.

    Marks the ticket closed, or records a pending force-close request and
    leaves ``ticket_closed_at`` empty when the order is still unresolved.
    """
    order = get_order(db, order_number)
    if not order.ticket_channel_id or order.ticket_closed_at is not None:
        raise TicketNotFound(order_number)

    try:
        window = timedelta(seconds=settings.FORCE_CLOSE_WINDOW_SECONDS)
        requested_at = order.force_close_requested_at
        if not order.is_terminal and not (force and requested_at is not None and now - requested_at <= window):
            order.force_close_requested_at = now
        else:
            order.force_close_requested_at = None
            order.ticket_closed_at = now
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise StoreFailure(f"Failed to close ticket for order #{order_number}: {e}") from e

    db.refresh(order)
    return order


async def close_ticket(db: Session, order_number: str, transport: ChatTransport, force: bool = False,
                       now: Optional[datetime] = None) -> CloseResponse:
    """Close the order's ticket.

    A ticket whose order is not yet resolved is only closed on a forced
    request made within the force-close window of a previous warning.
    Deleting the channel itself is left to the caller (see
    ``transport.delete_channel_later``).
    """
    now = now or utcnow()
    order = await run_in_threadpool(record_close, db, order_number, force, now)
    channel_ref = order.ticket_channel_id

    if order.ticket_closed_at is None:
        warning = (
            f"⚠️ Warning: order #{order_number} has not been marked as success or failure!\n"
            f"Resolve it first, or force close again within "
            f"{settings.FORCE_CLOSE_WINDOW_SECONDS} seconds."
        )
        await best_effort(f"Warning before closing #{order_number}", transport.send_message(channel_ref, warning))
        return CloseResponse(order_number=order_number, closed=False, message=warning)

    delay = settings.TICKET_DELETE_DELAY_SECONDS
    message = f"🔒 Closing ticket #{order_number}... Channel will be deleted in {delay:g} seconds."
    await best_effort(f"Closing notice for #{order_number}", transport.send_message(channel_ref, message))
    logger.info(f"🔒 Ticket for order #{order_number} closed")
    return CloseResponse(
        order_number=order_number,
        closed=True,
        message=message,
        delete_in_seconds=delay,
        ticket_channel_id=channel_ref,
    )
