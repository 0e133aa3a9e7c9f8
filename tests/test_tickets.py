import asyncio
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta

import pytest

from orderdesk import tickets
from orderdesk.config import settings
from orderdesk.daily_stats import get_today_stats
from orderdesk.errors import (
    AlreadyClaimed,
    AlreadyResolved,
    InsufficientFunds,
    NotResolvable,
    OrderNotFound,
    PoolExhausted,
    TicketNotFound,
    UserNotFound,
)
from orderdesk.inventory import assign_to_order, get_inventory_stats
from orderdesk.models import CardStatus, Order, OrderStatus, Outcome, User, VirtualCard


def _order(db, order_number):
    return db.query(Order).filter_by(order_number=order_number).one()


# -- ticket creation ---------------------------------------------------------

def test_poll_tickets_verified_orders(db, make_order, transport, fake_transport):
    make_order("1001", status=OrderStatus.PAYMENT_VERIFIED)
    make_order("1002", status=OrderStatus.PENDING_PAYMENT)

    result = asyncio.run(tickets.create_pending_tickets(db, transport))

    assert result.created == ["1001"]
    assert result.failed == []
    order = _order(db, "1001")
    assert order.status == OrderStatus.QUEUED.value
    assert order.ticket_channel_id == "chan-1"

    name, content, controls = fake_transport.calls_to("create_channel")[0]
    assert name == "order-1001"
    assert "$5.00" in content
    assert controls.claim_enabled

    assert _order(db, "1002").ticket_channel_id is None
    # Already ticketed orders are not picked up again
    assert asyncio.run(tickets.create_pending_tickets(db, transport)).created == []


def test_poll_isolates_failing_orders(db, make_order, transport, fake_transport):
    make_order("1001", status=OrderStatus.PAYMENT_VERIFIED)
    make_order("1002", status=OrderStatus.PAYMENT_VERIFIED)
    fake_transport.fail_channel_names.add("order-1001")

    result = asyncio.run(tickets.create_pending_tickets(db, transport))

    assert result.created == ["1002"]
    assert result.failed == ["1001"]
    failed = _order(db, "1001")
    assert failed.status == OrderStatus.PAYMENT_VERIFIED.value
    assert failed.ticket_channel_id is None

    # The next cycle retries it
    fake_transport.fail_channel_names.clear()
    assert asyncio.run(tickets.create_pending_tickets(db, transport)).created == ["1001"]


def test_poll_respects_batch_size(db, make_order, transport):
    for n in range(3):
        make_order(f"10{n}", status=OrderStatus.PAYMENT_VERIFIED)

    result = asyncio.run(tickets.create_pending_tickets(db, transport, batch_size=2))
    assert len(result.created) == 2


# -- resolve -----------------------------------------------------------------

def test_resolve_success_with_insufficient_funds_changes_nothing(db, make_user, make_order, make_cards):
    make_cards(1)
    user = make_user(balance_cents=300)
    make_order("1001", charge_cents=500, user=user)

    with pytest.raises(InsufficientFunds) as excinfo:
        tickets.resolve_order(db, "1001", Outcome.SUCCESS)

    assert excinfo.value.details["balance_cents"] == 300
    assert excinfo.value.details["required_cents"] == 500
    assert db.get(User, user.id, populate_existing=True).balance_cents == 300
    order = _order(db, "1001")
    assert order.status == OrderStatus.QUEUED.value
    assert order.charged is False
    assert order.assigned_card_id is None
    assert get_inventory_stats(db).unused == 1
    assert get_today_stats(db).success_count == 0


def test_resolve_success_charges_once(db, make_user, make_order, make_cards):
    card, = make_cards(1)
    user = make_user(balance_cents=1000)
    make_order("1002", charge_cents=500, user=user)

    result = tickets.resolve_order(db, "1002", Outcome.SUCCESS)

    assert result.charged is True
    assert result.charged_cents == 500
    assert result.balance_cents == 500
    order = _order(db, "1002")
    assert order.status == OrderStatus.DELIVERED.value
    assert order.charged is True
    assert order.completed_at is not None
    assert order.assigned_card_id == card.id
    assert db.get(VirtualCard, card.id, populate_existing=True).status == CardStatus.USED.value
    assert get_today_stats(db).success_count == 1

    repeat = tickets.resolve_order(db, "1002", Outcome.SUCCESS)
    assert repeat.already_complete is True
    assert db.get(User, user.id, populate_existing=True).balance_cents == 500
    assert get_today_stats(db).success_count == 1


def test_resolve_success_keeps_preassigned_card(db, make_user, make_order, make_cards):
    first, _ = make_cards(2)
    user = make_user(balance_cents=1000)
    make_order("1001", user=user)
    assign_to_order(db, "1001")

    tickets.resolve_order(db, "1001", Outcome.SUCCESS)

    assert _order(db, "1001").assigned_card_id == first.id
    assert get_inventory_stats(db).unused == 1


def test_resolve_success_with_empty_pool_changes_nothing(db, make_user, make_order):
    user = make_user(balance_cents=1000)
    make_order("1001", charge_cents=500, user=user)

    with pytest.raises(PoolExhausted):
        tickets.resolve_order(db, "1001", Outcome.SUCCESS)

    assert db.get(User, user.id, populate_existing=True).balance_cents == 1000
    order = _order(db, "1001")
    assert order.charged is False
    assert order.status == OrderStatus.QUEUED.value


def test_resolve_success_without_owner(db, make_order, make_cards):
    make_cards(1)
    make_order("1001")
    with pytest.raises(UserNotFound):
        tickets.resolve_order(db, "1001", Outcome.SUCCESS)
    assert _order(db, "1001").status == OrderStatus.QUEUED.value


def test_resolve_failure_never_charges(db, make_user, make_order):
    user = make_user(balance_cents=1000)
    make_order("1001", user=user)

    result = tickets.resolve_order(db, "1001", Outcome.FAILURE)

    assert result.status == OrderStatus.FAILED.value
    assert result.charged is False
    assert db.get(User, user.id, populate_existing=True).balance_cents == 1000
    assert get_today_stats(db).failure_count == 1

    assert tickets.resolve_order(db, "1001", Outcome.FAILURE).already_complete is True
    with pytest.raises(AlreadyResolved):
        tickets.resolve_order(db, "1001", Outcome.SUCCESS)
    assert get_today_stats(db).total == 1


def test_resolve_unknown_order(db):
    with pytest.raises(OrderNotFound):
        tickets.resolve_order(db, "404", Outcome.SUCCESS)


def test_resolve_ticket_survives_transport_failures(db, make_user, make_order, make_cards,
                                                    transport, fake_transport, monkeypatch):
    monkeypatch.setattr(settings, "ORDER_NOTIFICATION_CHANNEL_ID", "order-log")
    make_cards(1)
    user = make_user(balance_cents=1000)
    make_order("1001", user=user, ticket_channel_id="chan-9")
    fake_transport.fail.update({"send_message", "edit_controls"})

    result = asyncio.run(tickets.resolve_ticket(db, "1001", Outcome.SUCCESS, transport, staff="alice"))

    assert result.charged is True
    assert _order(db, "1001").charged is True
    sent_to = [call[0] for call in fake_transport.calls_to("send_message")]
    assert sent_to == ["chan-9", "order-log"]


def test_resolve_ticket_locks_controls(db, make_order, transport, fake_transport):
    make_order("1001", ticket_channel_id="chan-9")

    asyncio.run(tickets.resolve_ticket(db, "1001", Outcome.FAILURE, transport))

    channel_ref, controls = fake_transport.calls_to("edit_controls")[0]
    assert channel_ref == "chan-9"
    assert controls.claim_enabled is False
    assert controls.resolve_enabled is False
    assert controls.show_close is True


# -- claim -------------------------------------------------------------------

def test_claim_records_claimant(db, make_order, transport, fake_transport):
    make_order("1001", ticket_channel_id="chan-9")

    order = asyncio.run(tickets.claim_ticket(db, "1001", "alice", transport))

    assert order.claimed_by == "alice"
    assert order.claimed_at is not None
    _, controls = fake_transport.calls_to("edit_controls")[0]
    assert controls.claim_label == "🎫 Claimed by alice"
    assert controls.resolve_enabled is True

    # Re-claiming by the same staff member is harmless, anyone else is refused
    asyncio.run(tickets.claim_ticket(db, "1001", "alice", transport))
    with pytest.raises(AlreadyClaimed) as excinfo:
        asyncio.run(tickets.claim_ticket(db, "1001", "bob", transport))
    assert excinfo.value.details["claimed_by"] == "alice"


def test_claim_resolved_order_is_refused(db, make_order, transport):
    make_order("1001", status=OrderStatus.DELIVERED, ticket_channel_id="chan-9")
    with pytest.raises(AlreadyResolved):
        asyncio.run(tickets.claim_ticket(db, "1001", "alice", transport))


# -- close -------------------------------------------------------------------

def test_close_unresolved_ticket_needs_a_second_forced_request(db, make_order, transport, fake_transport):
    make_order("1001", ticket_channel_id="chan-9")
    t0 = datetime(2024, 5, 1, 12, 0, 0)

    first = asyncio.run(tickets.close_ticket(db, "1001", transport, force=True, now=t0))
    assert first.closed is False
    assert _order(db, "1001").force_close_requested_at == t0

    second = asyncio.run(tickets.close_ticket(db, "1001", transport, force=True, now=t0 + timedelta(seconds=5)))
    assert second.closed is True
    assert second.ticket_channel_id == "chan-9"
    assert second.delete_in_seconds == settings.TICKET_DELETE_DELAY_SECONDS

    order = _order(db, "1001")
    assert order.ticket_closed_at is not None
    assert order.force_close_requested_at is None
    assert order.status == OrderStatus.QUEUED.value
    assert len(fake_transport.calls_to("send_message")) == 2

    with pytest.raises(TicketNotFound):
        asyncio.run(tickets.close_ticket(db, "1001", transport))


def test_force_close_after_window_warns_again(db, make_order, transport):
    make_order("1001", ticket_channel_id="chan-9")
    t0 = datetime(2024, 5, 1, 12, 0, 0)
    late = t0 + timedelta(seconds=settings.FORCE_CLOSE_WINDOW_SECONDS + 1)

    asyncio.run(tickets.close_ticket(db, "1001", transport, now=t0))
    result = asyncio.run(tickets.close_ticket(db, "1001", transport, force=True, now=late))

    assert result.closed is False
    assert _order(db, "1001").force_close_requested_at == late


def test_close_without_force_only_warns(db, make_order, transport):
    make_order("1001", ticket_channel_id="chan-9")
    t0 = datetime(2024, 5, 1, 12, 0, 0)

    asyncio.run(tickets.close_ticket(db, "1001", transport, now=t0))
    result = asyncio.run(tickets.close_ticket(db, "1001", transport, now=t0 + timedelta(seconds=1)))

    assert result.closed is False


def test_close_resolved_ticket_immediately(db, make_order, transport):
    make_order("1001", status=OrderStatus.FAILED, ticket_channel_id="chan-9")

    result = asyncio.run(tickets.close_ticket(db, "1001", transport))

    assert result.closed is True


def test_close_order_without_ticket(db, make_order, transport):
    make_order("1001")
    with pytest.raises(TicketNotFound):
        asyncio.run(tickets.close_ticket(db, "1001", transport))


def test_concurrent_resolves_debit_once(session_factory, db, make_user, make_order, make_cards):
    make_cards(2)
    user = make_user(balance_cents=1000)
    make_order("1001", charge_cents=500, user=user)

    def resolve(_):
        session = session_factory()
        try:
            return tickets.resolve_order(session, "1001", Outcome.SUCCESS).already_complete
        finally:
            session.close()

    with ThreadPoolExecutor(max_workers=4) as pool:
        outcomes = list(pool.map(resolve, range(4)))

    assert outcomes.count(False) == 1
    assert db.get(User, user.id, populate_existing=True).balance_cents == 500
    assert get_inventory_stats(db).unused == 1
    assert get_today_stats(db).success_count == 1


@pytest.mark.parametrize("status", [
    OrderStatus.CANCELLED,
    OrderStatus.PENDING_PAYMENT,
    OrderStatus.PAYMENT_FAILED,
    OrderStatus.PAYMENT_VERIFIED,
])
def test_only_ticketed_orders_can_be_resolved(db, make_user, make_order, make_cards, status):
    make_cards(1)
    user = make_user(balance_cents=1000)
    make_order("1001", charge_cents=500, user=user, status=status)

    for outcome in (Outcome.SUCCESS, Outcome.FAILURE):
        with pytest.raises(NotResolvable) as excinfo:
            tickets.resolve_order(db, "1001", outcome)
        assert excinfo.value.details["status"] == status.value

    assert db.get(User, user.id, populate_existing=True).balance_cents == 1000
    order = _order(db, "1001")
    assert order.status == status.value
    assert order.charged is False
    assert get_inventory_stats(db).unused == 1
    assert get_today_stats(db).total == 0


def test_processing_order_resolves_success(db, make_user, make_order, make_cards):
    card, = make_cards(1)
    user = make_user(balance_cents=1000)
    make_order("1001", charge_cents=500, user=user, status=OrderStatus.PROCESSING)

    result = tickets.resolve_order(db, "1001", Outcome.SUCCESS)

    assert result.status == OrderStatus.DELIVERED.value
    assert db.get(User, user.id, populate_existing=True).balance_cents == 500
    assert _order(db, "1001").assigned_card_id == card.id


def test_processing_order_resolves_failure(db, make_user, make_order):
    user = make_user(balance_cents=1000)
    make_order("1001", user=user, status=OrderStatus.PROCESSING)

    result = tickets.resolve_order(db, "1001", Outcome.FAILURE)

    assert result.status == OrderStatus.FAILED.value
    assert db.get(User, user.id, populate_existing=True).balance_cents == 1000
    assert get_today_stats(db).failure_count == 1


def test_processing_order_can_be_claimed_and_closed(db, make_order, transport):
    make_order("1001", status=OrderStatus.PROCESSING, ticket_channel_id="chan-9")
    t0 = datetime(2024, 5, 1, 12, 0, 0)

    assert asyncio.run(tickets.claim_ticket(db, "1001", "alice", transport)).claimed_by == "alice"
    assert asyncio.run(tickets.close_ticket(db, "1001", transport, now=t0)).closed is False
    closed = asyncio.run(tickets.close_ticket(db, "1001", transport, force=True, now=t0 + timedelta(seconds=1)))

    assert closed.closed is True
    assert _order(db, "1001").status == OrderStatus.PROCESSING.value


def test_outcome_notice_reports_queue_size(db, make_order, transport, fake_transport, monkeypatch):
    monkeypatch.setattr(settings, "ORDER_NOTIFICATION_CHANNEL_ID", "order-log")
    make_order("1001", ticket_channel_id="chan-9")
    make_order("1002")
    make_order("1003")

    asyncio.run(tickets.resolve_ticket(db, "1001", Outcome.FAILURE, transport, staff="alice"))

    notices = [content for channel_ref, content, _ in fake_transport.calls_to("send_message")
               if channel_ref == "order-log"]
    assert notices == ["❌ Order #1001 failed by alice | Queue: 2 orders remaining"]
