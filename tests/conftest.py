"""
Shared pytest fixtures available to every test file automatically.
No imports needed in test files, pytest discovers this by convention.
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from app.db import create_schema, dispose_engine, init_engine
from app.deps import (
    can_admin_read_booking,
    can_admin_write_booking,
    can_cancel_booking,
    can_manage_booking,
    can_moderate_reviews,
    can_pay_booking,
    can_read_booking,
    can_review_booking,
    can_write_booking,
    get_catalog_client,
    get_current_provider_id,
    get_current_user,
    get_users_client,
)
from app.errors import register_exception_handlers
from app.lifecycle import ReservationManager
from app.payments import PaymentCoordinator
from app.routers import admin, appointments, bookings, provider, webhooks

from .factories import PROVIDER_ID, FakeProcessor, make_admin, make_customer, make_provider

SCOPE_DEPS = (
    can_read_booking,
    can_write_booking,
    can_cancel_booking,
    can_review_booking,
    can_pay_booking,
    can_manage_booking,
    can_admin_read_booking,
    can_admin_write_booking,
    can_moderate_reviews,
    get_current_user,
)

# ---------------------------------------------------------------------------
# Default no-op client mocks, prevent real HTTP calls in tests
# ---------------------------------------------------------------------------


def _noop_catalog_client():
    mock = MagicMock()
    mock.get_listing = AsyncMock(return_value=None)
    mock.get_provider_id = AsyncMock(return_value=PROVIDER_ID)
    mock.update_listing_rating = AsyncMock(return_value=True)
    mock.update_provider_rating = AsyncMock(return_value=True)
    return mock


def _noop_users_client():
    mock = MagicMock()
    mock.get_by_ids = AsyncMock(return_value=[])
    return mock


@pytest.fixture(autouse=True)
def redis_mock():
    """Slots cache talks to this mock instead of a real redis."""
    mock = MagicMock()
    mock.get = AsyncMock(return_value=None)
    mock.setex = AsyncMock(return_value=True)
    mock.delete = AsyncMock(return_value=1)
    with patch("app.cache.get_redis", return_value=mock):
        yield mock


# ---------------------------------------------------------------------------
# App builder, used by all client fixtures
# ---------------------------------------------------------------------------


def _bare_app() -> FastAPI:
    app = FastAPI()
    register_exception_handlers(app)
    for module in (bookings, appointments, provider, admin, webhooks):
        app.include_router(module.router)
    return app


def build_app(current_user, catalog_client=None, users_client=None) -> FastAPI:
    """
    Fresh FastAPI app with auth/scope dependencies overridden to return
    `current_user` unconditionally.

    Pass `catalog_client` / `users_client` to inject custom mocks.
    Defaults to no-op mocks, avoiding real HTTP calls.
    """
    app = _bare_app()

    async def _user():
        return current_user

    for dep in SCOPE_DEPS:
        app.dependency_overrides[dep] = _user

    cc = catalog_client if catalog_client is not None else _noop_catalog_client()
    uc = users_client if users_client is not None else _noop_users_client()
    app.dependency_overrides[get_catalog_client] = lambda: cc
    app.dependency_overrides[get_users_client] = lambda: uc
    app.dependency_overrides[get_current_provider_id] = lambda: PROVIDER_ID

    return app


# ---------------------------------------------------------------------------
# Reusable client fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def customer_client():
    return TestClient(build_app(make_customer()), raise_server_exceptions=True)


@pytest.fixture()
def provider_client():
    return TestClient(build_app(make_provider()), raise_server_exceptions=True)


@pytest.fixture()
def admin_client():
    return TestClient(build_app(make_admin()), raise_server_exceptions=True)


@pytest.fixture()
def anon_app():
    """
    Bare app with NO dependency overrides.
    Use this when you want real scope/auth deps to run so you can assert 401/403/422.
    """
    return _bare_app()


@pytest.fixture()
def client_factory():
    def _make(current_user, catalog_client=None, users_client=None) -> TestClient:
        return TestClient(
            build_app(
                current_user,
                catalog_client=catalog_client,
                users_client=users_client,
            ),
            raise_server_exceptions=True,
        )

    return _make


# ---------------------------------------------------------------------------
# Engine fixtures: the real manager against a throwaway sqlite file
# ---------------------------------------------------------------------------


@pytest.fixture()
def anyio_backend():
    return "asyncio"


@pytest.fixture()
async def store(tmp_path):
    init_engine(f"sqlite+aiosqlite:///{tmp_path / 'bookings.db'}")
    await create_schema()
    yield
    await dispose_engine()


@pytest.fixture()
def processor():
    return FakeProcessor()


@pytest.fixture()
def manager(store, processor):
    return ReservationManager(PaymentCoordinator(processor))


@pytest.fixture()
def catalog():
    return _noop_catalog_client()
