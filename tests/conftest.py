"""Shared test fixtures for the royalty statement engine tests.

Uses a SQLite file database so tests run without PostgreSQL, and in-memory
fakes in place of S3 and SES.
"""

from __future__ import annotations

import os

# Override DATABASE_URL before importing anything from app. The Settings
# model reads .env eagerly via pydantic-settings, and the module-level
# ``engine`` in app.core.database would try to connect to PostgreSQL.
os.environ["DATABASE_URL"] = "sqlite:///./test.db"

import threading
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from fastapi.testclient import TestClient

from app.api.dependencies import get_artifact_store, get_email_transport
from app.core.database import Base, get_db, get_session_factory
from app.core.exceptions import ArtifactError
from app.main import app
from app.models import Author, Contract, RateTier, ReturnRecord, SaleRecord, Tenant, Title
from app.services.statements.mailer import EmailMessage, EmailSendResult

# Use SQLite file-based database for tests (no PostgreSQL needed)
TEST_DATABASE_URL = "sqlite:///./test.db"

engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False, "timeout": 30},
)


# Enable foreign keys for SQLite
@event.listens_for(engine, "connect")
def _set_sqlite_pragma(dbapi_conn, connection_record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON;")
    cursor.close()


TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


# ── In-memory adapters ──────────────────────────────────────────────


class FakeArtifactStore:
    """Dict-backed stand-in for S3."""

    def __init__(self, fail_puts: bool = False) -> None:
        self.objects: dict[str, bytes] = {}
        self.fail_puts = fail_puts

    def put(self, key: str, data: bytes) -> str:
        if self.fail_puts:
            raise ArtifactError(f"Failed to store {key}: simulated outage", key=key)
        self.objects[key] = data
        return key

    def get(self, key: str) -> bytes:
        if key not in self.objects:
            raise ArtifactError(f"Failed to fetch {key}: not found", key=key)
        return self.objects[key]

    def presigned_get(self, key: str, filename: str, ttl_seconds: int) -> str:
        return f"https://artifacts.test/{key}?filename={filename}&ttl={ttl_seconds}"


class GatedArtifactStore(FakeArtifactStore):
    """Holds every put until ``gate`` is set (or five seconds pass)."""

    def __init__(self) -> None:
        super().__init__()
        self.gate = threading.Event()

    def put(self, key: str, data: bytes) -> str:
        self.gate.wait(5)
        return super().put(key, data)


class FakeEmailTransport:
    """Records sent messages; fails the first ``failures`` sends."""

    def __init__(self, failures: int = 0) -> None:
        self.failures = failures
        self.calls = 0
        self.sent: list[EmailMessage] = []

    def send(self, message: EmailMessage) -> EmailSendResult:
        self.calls += 1
        if self.calls <= self.failures:
            return EmailSendResult(ok=False, error="simulated provider outage")
        self.sent.append(message)
        return EmailSendResult(ok=True, message_id=f"msg-{self.calls}")


# ── Database fixtures ───────────────────────────────────────────────


@pytest.fixture(scope="function")
def db_session():
    """Create a fresh database for each test."""
    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def session_factory(db_session):
    """Factory handed to the orchestrator; each worker gets its own session."""
    return TestingSessionLocal


@pytest.fixture
def artifact_store():
    return FakeArtifactStore()


@pytest.fixture
def email_transport():
    return FakeEmailTransport()


@pytest.fixture
def flaky_transport():
    """Transport that fails three sends before succeeding."""
    return FakeEmailTransport(failures=3)


@pytest.fixture
def broken_artifact_store():
    return FakeArtifactStore(fail_puts=True)


@pytest.fixture
def gated_artifact_store():
    store = GatedArtifactStore()
    yield store
    store.gate.set()


@pytest.fixture(scope="function")
def client(db_session, artifact_store, email_transport):
    """FastAPI test client with DB and cloud adapters overridden."""

    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: TestingSessionLocal
    app.dependency_overrides[get_artifact_store] = lambda: artifact_store
    app.dependency_overrides[get_email_transport] = lambda: email_transport
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


# ── Data builders ───────────────────────────────────────────────────


class RoyaltyWorld:
    """Seeds tenants, authors, contracts and sales through one session."""

    def __init__(self, db) -> None:
        self.db = db

    def tenant(self, name: str = "Salina Press", currency: str = "USD") -> Tenant:
        tenant = Tenant(id=uuid.uuid4(), name=name, currency=currency)
        self.db.add(tenant)
        self.db.commit()
        return tenant

    def author_with_contract(
        self,
        tenant: Tenant,
        name: str = "Jane Doe",
        email: Optional[str] = "jane@example.com",
        advance_amount: str = "0",
        advance_recouped: str = "0",
        tiers: Optional[list[tuple[str, int, Optional[int], str]]] = None,
        mode: str = "period",
        with_contract: bool = True,
    ) -> tuple[Author, Optional[Contract], Title]:
        """Create an author, a title and (optionally) an active contract.

        ``tiers`` is a list of ``(format, min, max, rate)``; defaults to a
        two-tier physical schedule (10% below 50 units, 15% from 50).
        """
        author = Author(
            id=uuid.uuid4(),
            tenant_id=tenant.id,
            name=name,
            email=email,
            address_line1="1 Main St",
            city="Springfield",
        )
        title = Title(id=uuid.uuid4(), tenant_id=tenant.id, title=f"{name}: A Memoir")
        self.db.add_all([author, title])
        # Contract has no relationships to order the inserts by.
        self.db.flush()

        contract = None
        if with_contract:
            contract = Contract(
                id=uuid.uuid4(),
                tenant_id=tenant.id,
                author_id=author.id,
                title_id=title.id,
                advance_amount=Decimal(advance_amount),
                advance_recouped=Decimal(advance_recouped),
                status="active",
                tier_calculation_mode=mode,
            )
            self.db.add(contract)
            self.db.flush()
            for fmt, low, high, rate in tiers or [
                ("physical", 0, 50, "0.10"),
                ("physical", 50, None, "0.15"),
            ]:
                self.db.add(
                    RateTier(
                        id=uuid.uuid4(),
                        contract_id=contract.id,
                        format=fmt,
                        min_quantity=low,
                        max_quantity=high,
                        rate=Decimal(rate),
                    )
                )
        self.db.commit()
        return author, contract, title

    def sale(
        self,
        tenant: Tenant,
        title: Title,
        quantity: int,
        total: str,
        occurred_at: datetime,
        format: str = "physical",
    ) -> SaleRecord:
        amount = Decimal(total)
        sale = SaleRecord(
            id=uuid.uuid4(),
            tenant_id=tenant.id,
            title_id=title.id,
            format=format,
            quantity=quantity,
            unit_price=amount / quantity,
            total_amount=amount,
            channel="direct",
            occurred_at=occurred_at,
        )
        self.db.add(sale)
        self.db.commit()
        return sale

    def return_(
        self,
        tenant: Tenant,
        title: Title,
        quantity: int,
        total: str,
        occurred_at: datetime,
        status: str = "approved",
        format: str = "physical",
    ) -> ReturnRecord:
        record = ReturnRecord(
            id=uuid.uuid4(),
            tenant_id=tenant.id,
            title_id=title.id,
            format=format,
            quantity=quantity,
            unit_price=Decimal(total) / quantity,
            total_amount=Decimal(total),
            status=status,
            occurred_at=occurred_at,
        )
        self.db.add(record)
        self.db.commit()
        return record


@pytest.fixture
def world(db_session):
    return RoyaltyWorld(db_session)
