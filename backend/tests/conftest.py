"""Shared fixtures: a SQLite database per test, a recording gateway and an API client."""
import uuid
from datetime import date, timedelta
from decimal import Decimal

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from medstock.core.security import create_access_token
from medstock.db.base import Base
from medstock.models.inventory import BatchStatus, Product, ProductBatch
from medstock.services.notification_gateway import NotificationGateway
from medstock.services.tier_registry import AlertTierService

TODAY = date(2026, 3, 1)


class RecordingGateway(NotificationGateway):
    """Keeps every event in memory; can be told to fail."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.events: list[tuple[list[str], str, dict]] = []

    async def notify(self, roles, event_type, payload):
        if self.fail:
            raise RuntimeError("gateway unavailable")
        self.events.append((list(roles), event_type, payload))

    def of_type(self, event_type: str) -> list[tuple[list[str], str, dict]]:
        return [e for e in self.events if e[1] == event_type]


class Factory:
    """Row builders for collaborator data and tiers."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self._seq = 0

    async def product(self, name: str = "Paracetamol 500mg") -> Product:
        self._seq += 1
        product = Product(code=f"P-{self._seq:04d}-{uuid.uuid4().hex[:6]}", name=name, unit="box")
        self.db.add(product)
        await self.db.flush()
        return product

    async def batch(
        self,
        days_to_expiry: int,
        quantity: int = 100,
        cost: str | None = "2.50",
        status: BatchStatus = BatchStatus.ACTIVE,
        product: Product | None = None,
        today: date = TODAY,
    ) -> ProductBatch:
        product = product or await self.product()
        self._seq += 1
        batch = ProductBatch(
            product_id=product.id,
            batch_number=f"B{self._seq:05d}",
            quantity=quantity,
            initial_quantity=max(quantity, 1),
            expiry_date=today + timedelta(days=days_to_expiry),
            cost_per_unit=Decimal(cost) if cost is not None else None,
            status=status.value,
        )
        self.db.add(batch)
        await self.db.flush()
        return batch

    async def tier(self, days: int, severity: str = "WARNING", name: str | None = None, **extra):
        data = {
            "tier_name": name or f"{severity.title()} {days}d",
            "days_before_expiry": days,
            "severity": severity,
            "notify_roles": ["PHARMACY_STAFF"],
        }
        data.update(extra)
        return await AlertTierService.create(self.db, data)

    async def standard_tiers(self):
        """CRITICAL@7, WARNING@30, INFO@90."""
        return [
            await self.tier(7, "CRITICAL"),
            await self.tier(30, "WARNING"),
            await self.tier(90, "INFO"),
        ]


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'medstock.db'}")

    # pysqlite's own transaction handling breaks SAVEPOINT; drive BEGIN ourselves
    @event.listens_for(engine.sync_engine, "connect")
    def _connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest.fixture
async def db(session_maker):
    async with session_maker() as session:
        yield session


@pytest.fixture
def factory(db) -> Factory:
    return Factory(db)


@pytest.fixture
def gateway() -> RecordingGateway:
    return RecordingGateway()


def auth_headers(role: str = "ADMIN", username: str = "alice") -> dict:
    token = create_access_token(uuid.uuid4(), username=username, extra_claims={"role": role})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
async def client(session_maker, gateway):
    from medstock.api.deps import get_gateway
    from medstock.db.session import get_db
    from medstock.main import app

    async def _get_db():
        async with session_maker() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_gateway] = lambda: gateway
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture
def today() -> date:
    return TODAY


@pytest.fixture
def auth():
    return auth_headers
