import os

# Settings are read at import time, so point them away from PostgreSQL first
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SCHEDULER_ENABLED"] = "false"

from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from orderdesk import models  # noqa: F401  (registers tables on Base)
from orderdesk.alerts import monitor
from orderdesk.database import Base, build_engine, get_db
from orderdesk.inventory import upload_sessions
from orderdesk.models import Order, OrderStatus, User, VirtualCard
from orderdesk.transport import ChatTransport, GuardedTransport, get_transport


class FakeTransport(ChatTransport):
    """Records every call; ``fail`` holds operation names that should raise."""

    def __init__(self):
        self.calls = []
        self.fail = set()
        self.fail_channel_names = set()
        self._next = 0

    def _record(self, operation, *args):
        self.calls.append((operation,) + args)
        if operation in self.fail:
            raise RuntimeError(f"{operation} unavailable")

    async def create_channel(self, category_id, name, content, controls):
        self._record("create_channel", name, content, controls)
        if name in self.fail_channel_names:
            raise RuntimeError(f"cannot create {name}")
        self._next += 1
        return f"chan-{self._next}"

    async def send_message(self, channel_ref, content, fields=None):
        self._record("send_message", channel_ref, content, fields)

    async def delete_channel(self, channel_ref):
        self._record("delete_channel", channel_ref)

    async def edit_controls(self, channel_ref, controls):
        self._record("edit_controls", channel_ref, controls)

    def calls_to(self, operation):
        return [call[1:] for call in self.calls if call[0] == operation]


class FakeClock:
    def __init__(self, start=datetime(2024, 5, 1, 12, 0, 0)):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


def card_line(i, cvv="123"):
    return f"{4000000000000000 + i},12/28,{cvv},10001,buyer{i}@example.com"


@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'orderdesk.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def fake_transport():
    return FakeTransport()


@pytest.fixture
def transport(fake_transport):
    return GuardedTransport(fake_transport, timeout=1)


@pytest.fixture(autouse=True)
def reset_process_state():
    monitor.state.last_sent_at = None
    upload_sessions._opened.clear()
    yield


@pytest.fixture
def make_user(db):
    def _make_user(balance_cents=0, email=None):
        user = User(email=email or f"user{db.query(User).count() + 1}@example.com", balance_cents=balance_cents)
        db.add(user)
        db.commit()
        db.refresh(user)
        return user
    return _make_user


@pytest.fixture
def make_order(db):
    def _make_order(order_number, charge_cents=500, user=None, status=OrderStatus.QUEUED,
                    ticket_channel_id=None):
        order = Order(
            order_number=order_number,
            user_id=user.id if user else None,
            customer_name="Jamie Doe",
            charge_cents=charge_cents,
            payment_method="venmo",
            status=status.value,
            ticket_channel_id=ticket_channel_id,
        )
        db.add(order)
        db.commit()
        db.refresh(order)
        return order
    return _make_order


@pytest.fixture
def make_cards(db):
    def _make_cards(count, start=0):
        cards = []
        for i in range(start, start + count):
            line = card_line(i)
            card = VirtualCard(card_string=line, card_number=line.split(",")[0])
            db.add(card)
            db.commit()
            cards.append(card)
        return cards
    return _make_cards


@pytest.fixture
def client(session_factory, transport):
    from orderdesk.main import app

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_transport] = lambda: transport
    # Not entered as a context manager: the lifespan (schema bootstrap, scheduler) stays off
    yield TestClient(app)
    app.dependency_overrides.clear()
