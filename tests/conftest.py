"""
Pytest Configuration and Fixtures

Provides fixtures for:
- Database (async SQLite file per test)
- API client with the dispatch queue replaced by an in-memory one
- Fake Redis, fake connectors
- Test data factories (project, API key, connector, template, message)
"""
# settings are validated at import time; configure the environment before importing app
import os
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("VAULT_ENCRYPTION_KEY", "MDEyMzQ1Njc4OWFiY2RlZjAxMjM0NTY3ODlhYmNkZWY=")
os.environ.setdefault("WEBHOOK_VERIFY_TOKEN", "test-verify-token")
os.environ.setdefault("LOG_JSON", "false")

import pytest
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator
from unittest.mock import patch

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool
from sqlalchemy import event

from app.core.api_keys import generate_api_key
from app.core.vault import Vault
from app.db.database import Base, get_db, get_session_factory, new_id, utcnow
from app.db.models.api_key import ApiKey
from app.db.models.connector import Connector
from app.db.models.message import Message, MessageStatus
from app.db.models.project import Project
from app.db.models.template import Template
from app.domain.services.connectors import SendResult
from app.workers.dispatch_queue import InMemoryDispatchQueue
from app.main import app


TEST_VAULT_KEY = os.environ["VAULT_ENCRYPTION_KEY"]

# הערה: לא מגדירים event_loop fixture מותאם אישית כי pytest-asyncio 0.23+
# מטפל בזה אוטומטית עם asyncio_mode=auto ו-asyncio_default_fixture_loop_scope=function


@pytest.fixture(scope="function")
async def async_engine(tmp_path):
    """
    Create async test database engine.

    קובץ SQLite לכל בדיקה (ולא :memory: + StaticPool) - admission פותח שני
    sessions במקביל, וכל session צריך חיבור משלו.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        poolclass=NullPool,
        echo=False
    )

    # WAL: the fixtures' session may read while request sessions write
    @event.listens_for(engine.sync_engine, "connect")
    def _set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture(scope="function")
def session_factory(async_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )


@pytest.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests"""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def dispatch_queue() -> InMemoryDispatchQueue:
    return InMemoryDispatchQueue()


@pytest.fixture(scope="function")
async def test_client(session_factory, dispatch_queue):
    """Create test client with database and dispatch queue overrides"""
    from httpx import AsyncClient, ASGITransport

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    original_queue = app.state.dispatch_queue
    app.state.dispatch_queue = dispatch_queue

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.state.dispatch_queue = original_queue
    app.dependency_overrides.clear()


@pytest.fixture
def vault() -> Vault:
    return Vault(TEST_VAULT_KEY)


# ============================================================================
# Fake connectors
# ============================================================================


class FakeConnector:
    """Connector כפול - מחזיר תוצאות מתוסרטות ומתעד קריאות."""

    def __init__(self, results: list[SendResult]) -> None:
        self._results = list(results)
        self.calls: list[tuple[str, str]] = []

    async def send_message(self, to: str, body: str) -> SendResult:
        self.calls.append((to, body))
        if len(self._results) > 1:
            return self._results.pop(0)
        return self._results[0]


class FakeConnectorFactory:
    """ConnectorFactory כפול - מחזיר את אותו FakeConnector לכל סוג ספק."""

    def __init__(self, *results: SendResult) -> None:
        self.connector = FakeConnector(list(results) or [SendResult.ok("ext-1")])
        self.created: list[tuple[str, dict[str, Any], str | None]] = []

    def create(self, provider_type: str, credentials: dict[str, Any], *, connector_id: str | None = None):
        self.created.append((provider_type, credentials, connector_id))
        return self.connector


@pytest.fixture
def fake_connector_factory():
    """מחזיר בנאי ל-FakeConnectorFactory עם תוצאות מתוסרטות"""
    return FakeConnectorFactory


# ============================================================================
# Test Data Factories
# ============================================================================

WHATSAPP_CREDENTIALS = {"accessToken": "wa-token", "phoneNumberId": "1234567890"}
TELEGRAM_CREDENTIALS = {"botToken": "123456:ABC-DEF"}
TWILIO_CREDENTIALS = {
    "accountSid": "AC00000000000000000000000000000000",
    "authToken": "twilio-auth-token",
    "fromNumber": "+15005550006",
}


@pytest.fixture
def project_factory(db_session: AsyncSession):
    """Factory for creating test projects"""
    async def _create_project(name: str = "Test Project") -> Project:
        project = Project(id=new_id(), name=name)
        db_session.add(project)
        await db_session.commit()
        return project

    return _create_project


@pytest.fixture
def api_key_factory(db_session: AsyncSession):
    """Factory for API keys - מחזיר (ApiKey, full_key)"""
    async def _create_api_key(project_id: str, *, revoked: bool = False) -> tuple[ApiKey, str]:
        generated = generate_api_key()
        api_key = ApiKey(
            id=new_id(),
            project_id=project_id,
            public_key=generated.public_key,
            secret_hash=generated.secret_hash,
            revoked_at=utcnow() if revoked else None,
        )
        db_session.add(api_key)
        await db_session.commit()
        return api_key, generated.full_key

    return _create_api_key


@pytest.fixture
def connector_factory(db_session: AsyncSession, vault: Vault):
    """Factory for connectors - credentials מוצפנים עם מפתח הבדיקות"""
    async def _create_connector(
        project_id: str,
        type: str = "whatsapp",
        credentials: dict[str, Any] | None = None,
        name: str = "Test Connector",
        credentials_encrypted: str | None = None,
    ) -> Connector:
        if credentials is None:
            credentials = {
                "whatsapp": WHATSAPP_CREDENTIALS,
                "telegram": TELEGRAM_CREDENTIALS,
                "twilio_sms": TWILIO_CREDENTIALS,
            }.get(type, {})
        connector = Connector(
            id=new_id(),
            project_id=project_id,
            type=type,
            name=name,
            credentials_encrypted=(
                credentials_encrypted if credentials_encrypted is not None
                else vault.encrypt(credentials)
            ),
        )
        db_session.add(connector)
        await db_session.commit()
        return connector

    return _create_connector


@pytest.fixture
def template_factory(db_session: AsyncSession):
    """Factory for templates"""
    async def _create_template(
        project_id: str,
        body: str = "Hi {{name}}, your code is {{code}}",
        provider_type: str = "whatsapp",
        name: str = "welcome",
    ) -> Template:
        template = Template(
            id=new_id(),
            project_id=project_id,
            provider_type=provider_type,
            name=name,
            body=body,
            variables=["name", "code"],
        )
        db_session.add(template)
        await db_session.commit()
        return template

    return _create_template


@pytest.fixture
def message_factory(db_session: AsyncSession):
    """Factory for messages (bypasses admission)"""
    async def _create_message(
        project_id: str,
        connector_id: str,
        template_id: str,
        *,
        recipient: str = "+972501234567",
        variables: dict[str, Any] | None = None,
        status: MessageStatus = MessageStatus.QUEUED,
        external_message_id: str | None = None,
        attempts: int = 0,
        idempotency_key: str | None = None,
        **extra: Any,
    ) -> Message:
        message = Message(
            id=new_id(),
            project_id=project_id,
            connector_id=connector_id,
            template_id=template_id,
            recipient=recipient,
            variables=variables if variables is not None else {"name": "John", "code": "1234"},
            status=status,
            external_message_id=external_message_id,
            attempts=attempts,
            idempotency_key=idempotency_key,
            **extra,
        )
        db_session.add(message)
        await db_session.commit()
        return message

    return _create_message


@pytest.fixture
async def project_setup(project_factory, api_key_factory, connector_factory, template_factory) -> dict:
    """פרויקט מלא: API key, connector של WhatsApp ותבנית"""
    project = await project_factory()
    api_key, full_key = await api_key_factory(project.id)
    connector = await connector_factory(project.id)
    template = await template_factory(project.id)
    return {
        "project": project,
        "api_key": api_key,
        "full_key": full_key,
        "headers": {"Authorization": f"Bearer {full_key}"},
        "connector": connector,
        "template": template,
    }


@pytest.fixture
def fetch_message(session_factory):
    """קריאה טרייה של הודעה (session חדש - לא מה-cache של db_session)"""
    async def _fetch(message_id: str) -> Message | None:
        async with session_factory() as session:
            return await session.get(Message, message_id)

    return _fetch


# ============================================================================
# Circuit Breaker Reset
# ============================================================================

@pytest.fixture(autouse=True)
def reset_circuit_breakers():
    """Reset circuit breakers between tests"""
    from app.core.circuit_breaker import CircuitBreaker
    CircuitBreaker.reset_all()
    yield
    CircuitBreaker.reset_all()


class FakeRedis:
    """תחליף ל-Redis לבדיקות - in-memory dict עם ממשק תואם ומעקב TTL."""

    def __init__(self) -> None:
        self._store: dict[str, str] = {}
        self._ttls: dict[str, int] = {}

    async def ping(self) -> bool:
        return True

    async def get(self, key: str) -> str | None:
        return self._store.get(key)

    async def incr(self, key: str) -> int:
        """INCR אטומי - מגדיל ב-1, מאתחל ל-1 אם לא קיים"""
        current = self._store.get(key)
        new_val = int(current) + 1 if current is not None else 1
        self._store[key] = str(new_val)
        return new_val

    async def expire(self, key: str, ttl: int) -> None:
        """הגדרת TTL למפתח קיים"""
        if key in self._store:
            self._ttls[key] = ttl

    async def delete(self, *keys: str) -> None:
        for key in keys:
            self._store.pop(key, None)
            self._ttls.pop(key, None)

    async def aclose(self) -> None:
        self._store.clear()
        self._ttls.clear()


@pytest.fixture(autouse=True)
def fake_redis():
    """מחליף את get_redis ב-FakeRedis לכל הבדיקות."""
    _fake = FakeRedis()

    async def _get_fake_redis():
        return _fake

    with patch("app.core.redis_client.get_redis", _get_fake_redis):
        yield _fake


@pytest.fixture
def patch_task_sessions(session_factory):
    """מחליף את task_session_factory של ה-worker ב-DB של הבדיקה"""
    @asynccontextmanager
    async def _task_session_factory():
        yield session_factory

    with patch("app.workers.tasks.task_session_factory", _task_session_factory):
        yield
