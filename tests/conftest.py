import os

# Settings are read at import time; the app engine is never used because get_db is overridden.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key")

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import AsyncGenerator, Callable, Dict, Optional
from uuid import UUID, uuid4

import pytest
from httpx import ASGITransport, AsyncClient
from jose import jwt
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from app.api.v1.reimbursements import service
from app.api.v1.reimbursements.schemas import RequestCreate, RequestResponse
from app.core.config import settings
from app.core.enums import ExpenseType
from app.core.notifications import NotificationDispatcher, NotificationSender, get_notifier
from app.db.session import Base, get_db
from app.main import app


class RecordingSender(NotificationSender):
    """Collects delivered notifications instead of sending them anywhere."""

    def __init__(self) -> None:
        self.sent = []

    async def send(self, notification) -> None:
        self.sent.append(notification)


@pytest.fixture()
async def db_engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """File-backed SQLite so several sessions can share one database."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'reimbursements.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture()
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(bind=db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture()
async def db_session(session_factory: async_sessionmaker) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture()
def notifier() -> NotificationDispatcher:
    """Dispatcher without a running worker: queued notifications stay inspectable."""
    return NotificationDispatcher(RecordingSender(), max_attempts=1, retry_delay=0)


@pytest.fixture()
async def client(
    session_factory: async_sessionmaker,
    notifier: NotificationDispatcher,
) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client bound to the FastAPI app, one session per call."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_notifier] = lambda: notifier
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


def make_token(user_id: UUID, role: str, name: Optional[str] = None) -> str:
    claims = {"sub": str(user_id), "role": role}
    if name:
        claims["name"] = name
    return jwt.encode(claims, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


@pytest.fixture()
def auth_headers() -> Callable[..., Dict[str, str]]:
    def _headers(user_id: UUID, role: str = "EMPLOYEE", name: Optional[str] = None) -> Dict[str, str]:
        return {"Authorization": f"Bearer {make_token(user_id, role, name)}"}

    return _headers


@pytest.fixture()
def employee_id() -> UUID:
    return uuid4()


@pytest.fixture()
def analyst_id() -> UUID:
    return uuid4()


def days_ago(days: float) -> datetime:
    return datetime.now(timezone.utc) - timedelta(days=days)


@pytest.fixture()
def make_request(db_session: AsyncSession) -> Callable:
    """Create a DRAFT request through the workflow engine."""

    async def _make(
        requester_id: UUID,
        title: str = "Taxi to client office",
        amount: str = "100.00",
        expense_type: ExpenseType = ExpenseType.TRANSPORT,
        expense_date: Optional[datetime] = None,
        description: Optional[str] = None,
        session: Optional[AsyncSession] = None,
    ) -> RequestResponse:
        payload = RequestCreate(
            requester_id=requester_id,
            title=title,
            description=description,
            expense_type=expense_type,
            requested_amount=Decimal(amount),
            expense_date=expense_date or days_ago(3),
        )
        return await service.create_request(session or db_session, payload, requester_id)

    return _make
