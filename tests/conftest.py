"""Pytest configuration and fixtures for Codified tests.

Provides an in-memory database per test plus seed data helpers.
"""

from __future__ import annotations

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from codified.config import reset_config
from codified.db.models import Base, DocumentModel, ProjectModel


@pytest.fixture(autouse=True)
def setup_test_env(monkeypatch):
    """Set up test environment variables."""
    monkeypatch.setenv("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
    monkeypatch.setenv("MERGE_DISPATCH", "deferred")
    monkeypatch.setenv("LOG_LEVEL", "DEBUG")
    reset_config()
    yield
    reset_config()


@pytest_asyncio.fixture()
async def session_factory() -> sessionmaker:
    """Session factory over a fresh in-memory database.

    StaticPool keeps every session on the same connection so separate
    sessions (merge tasks run in their own) see the same database.
    """
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    try:
        yield sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    finally:
        await engine.dispose()


@pytest_asyncio.fixture()
async def db_session(session_factory: sessionmaker) -> AsyncSession:
    session = session_factory()
    try:
        yield session
    finally:
        await session.close()


@pytest_asyncio.fixture()
async def project(db_session: AsyncSession) -> ProjectModel:
    project = ProjectModel(name="Riverside Apartments")
    db_session.add(project)
    await db_session.flush()
    return project


@pytest_asyncio.fixture()
async def document(db_session: AsyncSession, project: ProjectModel) -> DocumentModel:
    """A document linked to the test project."""
    document = DocumentModel(file_name="appraisal-v1.xlsx", project_id=project.id)
    db_session.add(document)
    await db_session.commit()
    return document
