"""
Shared pytest fixtures available to every test file automatically.
No imports needed in test files; pytest discovers this by convention.
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from tortoise import Tortoise

from dispatch.acceptance import get_acceptance_coordinator
from dispatch.deps import (
    can_admin_delete_booking,
    can_admin_write_booking,
    can_cancel_booking,
    can_fulfil_booking,
    can_pay_booking,
    can_raise_dispute,
    can_read_booking,
    can_request_booking,
    can_resolve_disputes,
    can_see_offers,
    get_catalog_client,
    get_current_user,
    get_notifications_client,
)
from dispatch.dispatcher import get_dispatcher
from dispatch.disputes import get_dispute_resolver
from dispatch.lifecycle import get_lifecycle_manager
from dispatch.routers.booking import router
from dispatch.routers.disputes import router as disputes_router

from .factories import make_admin, make_catalog, make_farmer, make_notifier, make_supplier

# ---------------------------------------------------------------------------
# App builder: used by all client fixtures
# ---------------------------------------------------------------------------

_SCOPE_DEPS = (
    can_admin_delete_booking,
    can_admin_write_booking,
    can_cancel_booking,
    can_fulfil_booking,
    can_pay_booking,
    can_raise_dispute,
    can_read_booking,
    can_request_booking,
    can_resolve_disputes,
    can_see_offers,
    get_current_user,
)


def _provide(service):
    """Zero-argument override returning `service` itself, never a copy."""

    def _dep():
        return service

    return _dep


def build_app(
    current_user,
    catalog=None,
    notifier=None,
    dispatcher=None,
    coordinator=None,
    lifecycle=None,
    resolver=None,
) -> FastAPI:
    """
    Fresh FastAPI app with auth/scope dependencies overridden to return
    `current_user` unconditionally.

    Upstream clients default to in-memory mocks. Pass a service mock
    (dispatcher, coordinator, lifecycle, resolver) to take the engine
    out of the picture for that endpoint.
    """
    app = FastAPI()
    app.include_router(router)
    app.include_router(disputes_router)

    async def _user():
        return current_user

    for dep in _SCOPE_DEPS:
        app.dependency_overrides[dep] = _user

    cc = catalog if catalog is not None else make_catalog()
    nc = notifier if notifier is not None else make_notifier()
    app.dependency_overrides[get_catalog_client] = lambda: cc
    app.dependency_overrides[get_notifications_client] = lambda: nc

    for dep, service in (
        (get_dispatcher, dispatcher),
        (get_acceptance_coordinator, coordinator),
        (get_lifecycle_manager, lifecycle),
        (get_dispute_resolver, resolver),
    ):
        if service is not None:
            app.dependency_overrides[dep] = _provide(service)

    return app


# ---------------------------------------------------------------------------
# Reusable client fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def farmer_client():
    return TestClient(build_app(make_farmer()), raise_server_exceptions=True)


@pytest.fixture()
def supplier_client():
    return TestClient(build_app(make_supplier()), raise_server_exceptions=True)


@pytest.fixture()
def admin_client():
    return TestClient(build_app(make_admin()), raise_server_exceptions=True)


@pytest.fixture()
def anon_app():
    """
    Bare app with NO dependency overrides.
    Use this when you want real scope/auth deps to run so you can assert 401/403/422.
    """
    app = FastAPI()
    app.include_router(router)
    app.include_router(disputes_router)
    return app


@pytest.fixture()
def client_factory():
    def _make(current_user, **services) -> TestClient:
        return TestClient(build_app(current_user, **services), raise_server_exceptions=True)

    return _make


# ---------------------------------------------------------------------------
# Engine fixtures: in-memory database, no Redis
# ---------------------------------------------------------------------------


@pytest.fixture()
def anyio_backend():
    return "asyncio"


@pytest.fixture()
async def db():
    await Tortoise.init(
        db_url="sqlite://:memory:",
        modules={"models": ["dispatch.models"]},
        use_tz=True,
        timezone="UTC",
    )
    await Tortoise.generate_schemas()
    yield
    await Tortoise.close_connections()


@pytest.fixture(autouse=True)
def redis_mock():
    """Every cache call hits this mock instead of a real Redis."""
    mock = MagicMock()
    mock.get = AsyncMock(return_value=None)
    mock.setex = AsyncMock(return_value=True)
    mock.delete = AsyncMock(return_value=1)
    with patch("dispatch.cache.get_redis", return_value=mock):
        yield mock


@pytest.fixture()
def notifier():
    return make_notifier()
