"""
Shared pytest fixtures for the permission engine tests.

Provides:
- Database fixtures (temporary SQLite file, session factory, session)
- A fresh catalog cache per test
- User and permission factories
- An HTTP client with the database dependencies overridden
"""
import os
import tempfile

# Configure before any app module reads the environment
os.environ["RATE_LIMIT_ENABLED"] = "0"
os.environ["SWEEP_INTERVAL_SECONDS"] = "0"
os.environ["JWT_SECRET"] = "test-secret"
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{tempfile.gettempdir()}/permission-engine-unused.db"

from typing import AsyncGenerator, Callable, List, Optional

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database.engine import build_engine, build_session_factory, get_db, get_session_factory, init_db
from app.core.notifications import RecordingNotifier
from app.features.grants.store import GrantStore
from app.features.permissions.catalog import CatalogCache, PermissionCatalog, PermissionDefinition, catalog_cache
from app.features.permissions.models import RiskLevel
from app.features.permissions.schemas import PermissionCreate
from app.features.users.models import Role, User, UserStatus


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture
async def engine(tmp_path):
    """Engine on a temporary SQLite file with all tables created."""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
async def db(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture(autouse=True)
def fresh_catalog_cache():
    """The process-wide cache must not leak snapshots between test databases."""
    catalog_cache.invalidate()
    yield
    catalog_cache.invalidate()


@pytest.fixture
def cache() -> CatalogCache:
    """Shared with the API so catalog writes in tests are seen by requests."""
    return catalog_cache


@pytest.fixture
def catalog(db, cache) -> PermissionCatalog:
    return PermissionCatalog(db, cache)


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def store(db, catalog, notifier) -> GrantStore:
    return GrantStore(db, catalog=catalog, notifier=notifier)


# ============================================================================
# Factories
# ============================================================================

@pytest.fixture
def make_user(db) -> Callable:
    counter = {"n": 0}

    async def factory(
        role: Role = Role.SALES_MANAGER,
        access_level: int = 1,
        two_factor_enabled: bool = False,
        status: UserStatus = UserStatus.ACTIVE,
        name: Optional[str] = None,
    ) -> User:
        counter["n"] += 1
        user = User(
            email=f"user{counter['n']}@example.com",
            name=name or f"User {counter['n']}",
            role=role,
            access_level=access_level,
            two_factor_enabled=two_factor_enabled,
            status=status,
        )
        db.add(user)
        await db.commit()
        return user

    return factory


@pytest.fixture
def make_permission(catalog) -> Callable:

    async def factory(
        code: str,
        category: str = "General",
        default_for_roles: Optional[List[Role]] = None,
        excluded_from_roles: Optional[List[Role]] = None,
        min_access_level: int = 1,
        requires_2fa: bool = False,
        requires_approval: bool = False,
        dependencies: Optional[List[str]] = None,
        conflicts: Optional[List[str]] = None,
        parent_code: Optional[str] = None,
        risk_level: RiskLevel = RiskLevel.LOW,
        is_system: bool = False,
    ) -> PermissionDefinition:
        return await catalog.create(
            PermissionCreate(
                code=code,
                name=code.replace(".", " ").title(),
                category=category,
                module=code.split(".")[0],
                risk_level=risk_level,
                requires_2fa=requires_2fa,
                requires_approval=requires_approval,
                default_for_roles=default_for_roles or [],
                excluded_from_roles=excluded_from_roles or [],
                min_access_level=min_access_level,
                dependencies=dependencies or [],
                conflicts=conflicts or [],
                parent_code=parent_code,
            ),
            is_system=is_system,
        )

    return factory


# ============================================================================
# API Client Fixtures
# ============================================================================

@pytest.fixture
async def client(session_factory, notifier) -> AsyncGenerator[AsyncClient, None]:
    from app.features.grants.dependencies import get_notifier
    from app.main import app

    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_notifier] = lambda: notifier

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
