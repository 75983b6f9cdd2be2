"""
Database Connection and Session Management
"""
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base

from app.core.config import settings

engine = create_async_engine(
    settings.DATABASE_URL,
    echo=settings.DEBUG,
    pool_pre_ping=True
)

AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False
)

Base = declarative_base()

SessionFactory = async_sessionmaker[AsyncSession]


def utcnow() -> datetime:
    """Naive UTC timestamp - all DateTime columns store UTC without tzinfo"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


async def get_db() -> AsyncIterator[AsyncSession]:
    """Dependency for getting database session"""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


def get_session_factory() -> SessionFactory:
    """Dependency for services that open their own sessions (admission, webhooks)"""
    return AsyncSessionLocal


@asynccontextmanager
async def task_session_factory() -> AsyncIterator[SessionFactory]:
    """
    Session factory bound to a fresh engine for one Celery task.

    Each task runs on its own event loop, so the module-level engine (bound to
    whichever loop created its connections) cannot be reused there.
    """
    task_engine = create_async_engine(
        settings.DATABASE_URL,
        echo=settings.DEBUG,
        pool_pre_ping=True,
        pool_size=5,
        max_overflow=10
    )
    try:
        yield async_sessionmaker(
            bind=task_engine,
            class_=AsyncSession,
            expire_on_commit=False
        )
    finally:
        await task_engine.dispose()


def new_id() -> str:
    """Opaque primary key (uuid4 hex)"""
    return uuid.uuid4().hex
