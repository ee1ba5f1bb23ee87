"""
Pytest configuration and fixtures.
"""
import os

# Settings are read at import time by the API module
os.environ["MIDTRANS_SERVER_KEY"] = "SB-Mid-server-test-key"
os.environ["MIDTRANS_BASE_URL"] = "https://api.sandbox.midtrans.com"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///./payment_reconciliation_test.db"
os.environ["REDIS_URL"] = "redis://localhost:6379/1"
os.environ["APP_ENV"] = "test"

import asyncio  # noqa: E402
import itertools  # noqa: E402
from datetime import datetime, timedelta  # noqa: E402
from typing import Any, AsyncGenerator, Awaitable, Callable, List, Optional  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker  # noqa: E402
from sqlalchemy.pool import NullPool  # noqa: E402

from payment_reconciliation.core.reconciliation import utcnow  # noqa: E402
from payment_reconciliation.core.repository import OrderRepository  # noqa: E402
from payment_reconciliation.database.connection import (  # noqa: E402
    build_engine,
    create_session_factory,
    init_db,
)
from payment_reconciliation.database.models import Order  # noqa: E402
from payment_reconciliation.integrations.midtrans_client import (  # noqa: E402
    GatewayError,
    GatewayStatus,
    map_transaction_status,
)

_order_numbers = itertools.count(1)


class FakeClock:
    """Injectable wall clock that only moves when told to."""

    def __init__(self, now: Optional[datetime] = None) -> None:
        self.now = now or utcnow()

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, minutes: float = 0) -> None:
        self.now += timedelta(seconds=seconds, minutes=minutes)


class FakeGateway:
    """
    Stand-in for MidtransClient.

    Answers every lookup with ``transaction_status``, or raises ``error``.
    When ``release`` is set, lookups block until the event fires.
    """

    def __init__(
        self,
        transaction_status: str = "pending",
        error: Optional[GatewayError] = None,
        fraud_status: Optional[str] = None,
    ) -> None:
        self.transaction_status = transaction_status
        self.error = error
        self.fraud_status = fraud_status
        self.calls: List[str] = []
        self.release: Optional[asyncio.Event] = None

    async def get_transaction_status(self, transaction_id: str) -> GatewayStatus:
        self.calls.append(transaction_id)
        if self.release is not None:
            await self.release.wait()
        if self.error is not None:
            raise self.error
        raw = {
            "status_code": "200",
            "transaction_id": f"mt-{transaction_id}",
            "order_id": transaction_id,
            "transaction_status": self.transaction_status,
            "payment_type": "qris",
            "fraud_status": self.fraud_status,
        }
        return GatewayStatus(
            status=map_transaction_status(self.transaction_status, self.fraud_status),
            transaction_status=self.transaction_status,
            transaction_id=raw["transaction_id"],
            order_id=transaction_id,
            payment_type="qris",
            fraud_status=self.fraud_status,
            raw=raw,
        )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest_asyncio.fixture
async def engine(tmp_path: Any) -> AsyncGenerator[AsyncEngine, Any]:
    """File-backed SQLite engine so concurrent sessions see each other's commits."""
    engine = build_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'reconciliation.db'}",
        poolclass=NullPool,
    )
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(engine)


@pytest_asyncio.fixture
async def test_db(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, Any]:
    """Create test database session."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def make_order(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[..., Awaitable[Order]]:
    """
    Factory for persisted orders in (PENDING, PENDING).

    ``payment_type=None`` creates an order without any payment transaction.
    """

    async def _make(
        order_number: Optional[str] = None,
        payment_type: Optional[str] = "qris",
        provider: Optional[str] = None,
        payment_method: Optional[str] = None,
        transaction_id: Optional[str] = None,
        created_at: Optional[datetime] = None,
        expires_at: Optional[datetime] = None,
        total: int = 150000,
    ) -> Order:
        order_number = order_number or f"ORD-{next(_order_numbers):06d}"
        transaction = None
        if payment_type is not None:
            if provider is None:
                provider = "OFFLINE" if payment_type == "cod" else "MIDTRANS"
            transaction = {
                "provider": provider,
                "payment_type": payment_type,
                "transaction_id": transaction_id,
                "expires_at": expires_at,
            }
        if payment_method is None:
            payment_method = {
                "qris": "QRIS",
                "bank_transfer": "VIRTUAL_ACCOUNT",
            }.get(payment_type or "", "COD")

        async with session_factory() as db:
            order = await OrderRepository(db).create_order(
                order_number,
                total,
                payment_method=payment_method,
                transaction=transaction,
                created_at=created_at,
            )
            await db.commit()
            return order

    return _make
