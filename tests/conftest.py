"""
tests/conftest.py
Shared fixtures.

- SQLite file database (aiosqlite), recreated for every test. Transactions
  start with BEGIN IMMEDIATE so concurrent sessions serialize the way row
  locks do on PostgreSQL.
- In-memory fakes for the payment processor, the side-effect dispatcher
  and Redis.
- HTTPX AsyncClient sharing the test's session with the app.
"""

import os
import tempfile
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import AsyncGenerator, Optional

_DB_PATH = os.path.join(tempfile.gettempdir(), f"escrow_test_{os.getpid()}.db")

os.environ.update({
    "APP_ENV": "test",
    "JWT_SECRET_KEY": "test-jwt-secret",
    "DATABASE_URL": f"sqlite+aiosqlite:///{_DB_PATH}",
    "RAZORPAY_KEY_ID": "rzp_test_key",
    "RAZORPAY_KEY_SECRET": "rzp_test_secret",
    "RAZORPAY_WEBHOOK_SECRET": "rzp_webhook_secret",
})

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import AsyncSessionLocal, Base, engine, get_db, get_session_factory
from config.redis_client import get_redis
from main import app
from services.booking.side_effects import SideEffectDispatcher, get_dispatcher
from services.booking.state_machine import BookingStateMachine
from services.payment.processor import get_payment_processor
from shared.models.models import Booking, Listing, Slot, User, UserRole
from shared.utils.errors import ExternalDependencyError
from shared.utils.security import create_access_token


# ── SQLite transaction control ─────────────────────────────────────────────────

@event.listens_for(engine.sync_engine, "connect")
def _sqlite_connect(dbapi_connection, connection_record):
    # Let SQLAlchemy emit BEGIN itself.
    dbapi_connection.isolation_level = None


@event.listens_for(engine.sync_engine, "begin")
def _sqlite_begin(conn):
    conn.exec_driver_sql("BEGIN IMMEDIATE")


# ── Fakes ──────────────────────────────────────────────────────────────────────

class FakePaymentProcessor:
    """
    Records every call. Set `failures[op] = exc` to make an operation raise
    (once, or every time with `sticky=True`).
    """

    def __init__(self):
        self.calls: list[tuple] = []
        self.failures: dict[str, Exception] = {}
        self.sticky: set[str] = set()
        self._seq = 0

    def _next(self, prefix: str) -> str:
        self._seq += 1
        return f"{prefix}_{self._seq:04d}"

    def _maybe_fail(self, op: str) -> None:
        exc = self.failures.get(op)
        if exc is not None:
            if op not in self.sticky:
                del self.failures[op]
            raise exc

    def fail(self, op: str, detail: str = "processor unavailable", sticky: bool = False) -> None:
        self.failures[op] = ExternalDependencyError(f"razorpay {op} failed: {detail}")
        if sticky:
            self.sticky.add(op)

    def count(self, op: str) -> int:
        return sum(1 for c in self.calls if c[0] == op)

    async def authorize_hold(self, amount, payer_ref, booking_ref):
        self._maybe_fail("authorize_hold")
        self.calls.append(("authorize_hold", Decimal(amount), booking_ref))
        return self._next("order")

    async def capture(self, hold_id, amount):
        self._maybe_fail("capture")
        self.calls.append(("capture", hold_id, Decimal(amount)))

    async def fetch_payment_status(self, hold_id):
        self._maybe_fail("fetch_payment_status")
        self.calls.append(("fetch_payment_status", hold_id))
        if any(c[0] == "capture" and c[1] == hold_id for c in self.calls):
            return "captured"
        return "authorized"

    async def refund(self, hold_id, amount, booking_ref):
        self._maybe_fail("refund")
        self.calls.append(("refund", hold_id, amount, booking_ref))
        return self._next("rfnd")

    async def transfer(self, amount, destination, booking_ref):
        self._maybe_fail("transfer")
        self.calls.append(("transfer", Decimal(amount), destination, booking_ref))
        return self._next("trf")

    async def get_payee_destination(self, payee):
        return payee.payout_account_id or None


class RecordingDispatcher(SideEffectDispatcher):
    def __init__(self):
        self.dispatched = []

    def dispatch(self, intents):
        self.dispatched.extend(intents)

    def templates(self) -> list[str]:
        return [i.template.value for i in self.dispatched if i.template is not None]


class _FakePipeline:
    def __init__(self, redis: "FakeRedis"):
        self.redis = redis
        self.ops = []

    def incr(self, key):
        self.ops.append(("incr", key))

    def expire(self, key, seconds):
        self.ops.append(("expire", key))

    async def execute(self):
        results = []
        for op, key in self.ops:
            if op == "incr":
                self.redis.store[key] = int(self.redis.store.get(key, 0)) + 1
                results.append(self.redis.store[key])
            else:
                results.append(True)
        return results


class FakeRedis:
    def __init__(self):
        self.store: dict = {}

    async def set(self, key, value, ex=None, nx=False):
        if nx and key in self.store:
            return None
        self.store[key] = value
        return True

    async def setex(self, key, ttl, value):
        self.store[key] = value

    async def get(self, key):
        return self.store.get(key)

    async def delete(self, key):
        self.store.pop(key, None)

    async def exists(self, key):
        return 1 if key in self.store else 0

    def pipeline(self):
        return _FakePipeline(self)

    async def ping(self):
        return True


class FakeClock:
    """Callable clock the state machine can be pinned to."""

    def __init__(self, now: Optional[datetime] = None):
        self.now = now or datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def set(self, when: datetime) -> None:
        self.now = when

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


# ── Database ───────────────────────────────────────────────────────────────────

@pytest.fixture(autouse=True)
async def setup_database():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield
    await engine.dispose()


@pytest.fixture
async def db(setup_database) -> AsyncGenerator[AsyncSession, None]:
    async with AsyncSessionLocal() as session:
        yield session
        await session.rollback()


@pytest.fixture
def session_factory():
    return AsyncSessionLocal


# ── Fakes as fixtures ──────────────────────────────────────────────────────────

@pytest.fixture
def processor() -> FakePaymentProcessor:
    return FakePaymentProcessor()


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def machine(db, processor, clock) -> BookingStateMachine:
    return BookingStateMachine(db, processor, clock)


# ── Users & listings ───────────────────────────────────────────────────────────

async def _make_user(db: AsyncSession, name: str, role: UserRole, payout: Optional[str] = None) -> User:
    user = User(
        email=f"{name.lower().replace(' ', '.')}.{uuid.uuid4().hex[:6]}@example.com",
        name=name,
        role=role,
        payout_account_id=payout,
    )
    db.add(user)
    await db.commit()
    return user


@pytest.fixture
async def learner(db: AsyncSession) -> User:
    return await _make_user(db, "Asha Learner", UserRole.LEARNER)


@pytest.fixture
async def other_learner(db: AsyncSession) -> User:
    return await _make_user(db, "Ravi Learner", UserRole.LEARNER)


@pytest.fixture
async def mentor(db: AsyncSession) -> User:
    return await _make_user(db, "Meera Mentor", UserRole.MENTOR, payout="acc_mentor_001")


@pytest.fixture
async def mentor_without_payout(db: AsyncSession) -> User:
    return await _make_user(db, "Nikhil Mentor", UserRole.MENTOR)


@pytest.fixture
async def admin(db: AsyncSession) -> User:
    return await _make_user(db, "Admin User", UserRole.ADMIN)


@pytest.fixture
async def listing(db: AsyncSession, mentor: User) -> Listing:
    listing = Listing(
        mentor_id=mentor.id,
        title="System Design Mock Interview",
        category="career",
        price=Decimal("1000.00"),
    )
    db.add(listing)
    await db.commit()
    return listing


@pytest.fixture
async def slot(db: AsyncSession, listing: Listing) -> Slot:
    slot = Slot(
        listing_id=listing.id,
        starts_at=(datetime.now(timezone.utc) + timedelta(days=2)).replace(microsecond=0),
    )
    db.add(slot)
    await db.commit()
    return slot


# ── Booking lifecycle helpers ──────────────────────────────────────────────────

async def pending_booking(machine: BookingStateMachine, learner: User, listing: Listing, slot: Slot) -> Booking:
    return (await machine.create(learner, listing.id, slot.id)).booking


async def confirmed_booking(machine, learner, listing, slot, payment_id: str = "pay_test_001") -> Booking:
    booking = await pending_booking(machine, learner, listing, slot)
    await machine.initiate_payment(booking.id, learner)
    return (await machine.confirm_payment(booking.id, payment_id, learner)).booking


async def accepted_booking(machine, learner, mentor, listing, slot) -> Booking:
    booking = await confirmed_booking(machine, learner, listing, slot)
    return (await machine.accept(booking.id, mentor)).booking


async def completed_booking(machine, clock: FakeClock, learner, mentor, listing, slot) -> Booking:
    """Accepted, then completed by the mentor one hour after the session started."""
    booking = await accepted_booking(machine, learner, mentor, listing, slot)
    clock.set(booking.session_at + timedelta(hours=1))
    return (await machine.complete(booking.id, mentor)).booking


# ── Auth ───────────────────────────────────────────────────────────────────────

def auth_headers(user: User) -> dict:
    token, _ = create_access_token(str(user.id), user.role.value, user.email)
    return {"Authorization": f"Bearer {token}"}


# ── HTTP client ────────────────────────────────────────────────────────────────

@pytest.fixture
async def client(db, processor, dispatcher, fake_redis) -> AsyncGenerator[AsyncClient, None]:
    async def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_redis] = lambda: fake_redis
    app.dependency_overrides[get_payment_processor] = lambda: processor
    app.dependency_overrides[get_dispatcher] = lambda: dispatcher
    app.dependency_overrides[get_session_factory] = lambda: AsyncSessionLocal

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c

    app.dependency_overrides.clear()
