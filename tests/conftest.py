import sys
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine


def _configure_path() -> None:
    src_path = Path(__file__).resolve().parents[1] / "src"
    if src_path.exists():
        sys.path.insert(0, str(src_path))


_configure_path()

from couponhub_api import models  # noqa: E402,F401
from couponhub_api.app import create_app  # noqa: E402
from couponhub_api.core.settings import settings  # noqa: E402
from couponhub_api.db.base import Base  # noqa: E402
from couponhub_api.db.session import get_session  # noqa: E402
from couponhub_api.observability.entitlements import get_entitlement_store  # noqa: E402
from couponhub_api.services.entitlements import AccountLockRegistry, EntitlementEngine  # noqa: E402

WEBHOOK_SECRET = "whsec_test_secret"


@pytest.fixture(autouse=True)
def _test_settings(monkeypatch):
    monkeypatch.setenv("OTEL_TRACES_EXPORTER", "none")
    monkeypatch.setattr(settings, "internal_api_key", "")
    monkeypatch.setattr(settings, "stripe_webhook_secret", WEBHOOK_SECRET)
    monkeypatch.setattr(settings, "webhook_retention_worker_enabled", False)
    get_entitlement_store().reset()
    yield
    get_entitlement_store().reset()


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    # A file database gives every session its own connection; the in-memory
    # variant shares one, so a rollback in one session would end another's transaction.
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'couponhub-test.db'}", future=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        yield factory
    finally:
        await engine.dispose()


@pytest.fixture
def account_locks():
    return AccountLockRegistry()


@pytest.fixture
def engine_for(session_factory, account_locks):
    """Build an engine bound to a caller-owned session sharing one lock registry."""

    def _build(session: AsyncSession) -> EntitlementEngine:
        return EntitlementEngine(session, locks=account_locks, session_factory=session_factory)

    return _build


@pytest_asyncio.fixture
async def app_with_db(session_factory):
    app = create_app()

    async def override_get_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session

    try:
        yield app, session_factory
    finally:
        app.dependency_overrides.clear()
