"""
Billforge - Test Configuration

Pytest fixtures and configuration.
"""

from datetime import timedelta
from decimal import Decimal
from typing import AsyncGenerator, Dict
from uuid import uuid4

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import StaticPool

import app.models  # noqa: F401
from app.database import Base, get_async_session
from app.models.client import Client
from app.models.invoice import Invoice
from app.models.user import User, SubscriptionPlan
from app.services.invoice_service import InvoiceService
from app.services.notification_service import NotificationService
from app.utils.time import utcnow
from main import app


# In-memory SQLite shared by every connection of the test engine
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

test_engine = create_async_engine(
    TEST_DATABASE_URL,
    echo=False,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

TestSessionLocal = async_sessionmaker(
    test_engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


@pytest_asyncio.fixture(scope="function")
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    """Create a fresh database session for each test."""
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with TestSessionLocal() as session:
        yield session
        await session.rollback()

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    # Each test runs on its own event loop
    await test_engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def client(db_session: AsyncSession) -> AsyncGenerator[AsyncClient, None]:
    """Create a test client with database session override."""

    async def override_get_session():
        yield db_session

    app.dependency_overrides[get_async_session] = override_get_session

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


# ===========================================
# DATA FIXTURES
# ===========================================

@pytest_asyncio.fixture
async def test_user(db_session: AsyncSession) -> User:
    """Premium user: no invoice quota."""
    user = User(
        id=uuid4(),
        email="owner@example.com",
        full_name="Ada Owner",
        company_name="Owner Studio",
        subscription_plan=SubscriptionPlan.PREMIUM,
        invoice_prefix="INV",
        invoice_start_number=1,
        payment_terms=30,
        default_currency="USD",
    )
    db_session.add(user)
    await db_session.commit()
    await db_session.refresh(user)
    return user


@pytest_asyncio.fixture
async def free_user(db_session: AsyncSession) -> User:
    """Free plan user: five active invoices."""
    user = User(
        id=uuid4(),
        email="free@example.com",
        full_name="Fred Free",
        subscription_plan=SubscriptionPlan.FREE,
    )
    db_session.add(user)
    await db_session.commit()
    await db_session.refresh(user)
    return user


@pytest_asyncio.fixture
async def other_user(db_session: AsyncSession) -> User:
    user = User(
        id=uuid4(),
        email="someone.else@example.com",
        full_name="Someone Else",
        subscription_plan=SubscriptionPlan.PREMIUM,
    )
    db_session.add(user)
    await db_session.commit()
    await db_session.refresh(user)
    return user


@pytest_asyncio.fixture
async def test_client_record(db_session: AsyncSession, test_user: User) -> Client:
    """Billing client with an email address."""
    record = Client(
        id=uuid4(),
        user_id=test_user.id,
        name="Acme Corp",
        email="billing@acme.example",
        company="Acme",
    )
    db_session.add(record)
    await db_session.commit()
    await db_session.refresh(record)
    return record


@pytest_asyncio.fixture
async def client_without_email(db_session: AsyncSession, test_user: User) -> Client:
    record = Client(
        id=uuid4(),
        user_id=test_user.id,
        name="Paper Only Ltd",
        email=None,
    )
    db_session.add(record)
    await db_session.commit()
    await db_session.refresh(record)
    return record


@pytest.fixture
def sample_items() -> list:
    """Subtotal 100.00"""
    return [
        {"description": "Consulting", "quantity": Decimal("2"), "rate": Decimal("40.00")},
        {"description": "Hosting", "quantity": Decimal("1"), "rate": Decimal("20.00")},
    ]


@pytest.fixture
def due_date():
    return utcnow().date() + timedelta(days=30)


@pytest.fixture
def notifications(db_session: AsyncSession) -> NotificationService:
    """Notification service on the mock email provider."""
    return NotificationService(db_session)


@pytest_asyncio.fixture
async def test_invoice(
    db_session: AsyncSession,
    test_user: User,
    test_client_record: Client,
    sample_items: list,
    due_date,
) -> Invoice:
    """DRAFT invoice with total 100.00"""
    return await InvoiceService(db_session).create_invoice(
        test_user.id, test_client_record.id, due_date, sample_items
    )


@pytest_asyncio.fixture
async def sent_invoice(db_session: AsyncSession, test_user: User, test_invoice: Invoice) -> Invoice:
    """SENT invoice with total 100.00"""
    invoice, _ = await InvoiceService(db_session).send_invoice(test_user.id, test_invoice.id)
    return invoice


@pytest.fixture
def auth_headers(test_user: User) -> Dict[str, str]:
    return {"X-User-ID": str(test_user.id)}
