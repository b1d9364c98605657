"""
Tests for dispatch/deps.py: get_current_user, scope deps and the upstream clients.
These tests use the real dep functions (no overrides) to get coverage.
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch
from uuid import uuid4

import httpx
import pytest
from fastapi import Depends, FastAPI, HTTPException
from fastapi.testclient import TestClient

from dispatch.deps import (
    CatalogClient,
    CurrentUser,
    NotificationsClient,
    can_read_booking,
    get_catalog_client,
    get_current_user,
    get_notifications_client,
)
from dispatch.routers.booking import router
from dispatch.scopes import DispatchScope

from .factories import (
    BOOKING_ID,
    FARMER_ID,
    TRACTOR_ID,
    make_admin,
    make_farmer,
    make_supplier,
    resource_dict,
)

CRUD_PATH = "dispatch.routers.booking.booking_crud"


def _make_anon_app_with_scope_passthrough() -> FastAPI:
    app = FastAPI()
    app.include_router(router)

    async def _passthrough(user=Depends(get_current_user)):
        return user

    app.dependency_overrides[can_read_booking] = _passthrough
    app.dependency_overrides[get_catalog_client] = lambda: MagicMock(
        get_by_ids=AsyncMock(return_value=[])
    )
    return app


class TestGetCurrentUser:
    def test_valid_headers_authenticate(self):
        app = _make_anon_app_with_scope_passthrough()
        with patch(CRUD_PATH) as mock_crud:
            mock_crud.list_bookings = AsyncMock(return_value=[])
            with TestClient(app) as c:
                resp = c.get(
                    "/bookings",
                    headers={
                        "X-User-Id": str(FARMER_ID),
                        "X-Username": "farmer1",
                        "X-User-Scopes": "bookings:read",
                    },
                )
        assert resp.status_code == 200

    def test_invalid_user_id_returns_401(self):
        app = _make_anon_app_with_scope_passthrough()
        with TestClient(app) as c:
            resp = c.get(
                "/bookings",
                headers={
                    "X-User-Id": "not-a-uuid",
                    "X-Username": "farmer1",
                    "X-User-Scopes": "",
                },
            )
        assert resp.status_code == 401

    def test_scopes_and_username_are_decoded(self):
        app = _make_anon_app_with_scope_passthrough()
        captured = {}

        async def _capture(user=Depends(get_current_user)):
            captured["user"] = user
            return user

        app.dependency_overrides[can_read_booking] = _capture
        with patch(CRUD_PATH) as mock_crud:
            mock_crud.list_bookings = AsyncMock(return_value=[])
            with TestClient(app) as c:
                c.get(
                    "/bookings",
                    headers={
                        "X-User-Id": str(FARMER_ID),
                        "X-Username": "ram%20lal",
                        "X-User-Scopes": "bookings:read bookings:write",
                    },
                )
        assert captured["user"].username == "ram lal"
        assert captured["user"].scopes == ["bookings:read", "bookings:write"]


class TestCanReadBooking:
    def _app_for(self, current_user) -> FastAPI:
        app = FastAPI()
        app.include_router(router)

        async def _user():
            return current_user

        app.dependency_overrides[get_current_user] = _user
        app.dependency_overrides[get_catalog_client] = lambda: MagicMock(
            get_by_ids=AsyncMock(return_value=[])
        )
        return app

    @pytest.mark.parametrize(
        "user", [make_farmer(), make_supplier(), make_admin()], ids=["farmer", "supplier", "admin"]
    )
    def test_party_scopes_pass(self, user):
        app = self._app_for(user)
        with patch(CRUD_PATH) as mock_crud:
            mock_crud.list_bookings = AsyncMock(return_value=[])
            with TestClient(app) as c:
                resp = c.get("/bookings")
        assert resp.status_code == 200

    def test_user_with_no_relevant_scope_gets_403(self):
        app = self._app_for(make_farmer(scopes=["catalog:read"]))
        with TestClient(app) as c:
            resp = c.get("/bookings")
        assert resp.status_code == 403


class TestCurrentUserRole:
    def test_admin_scope_makes_admin(self):
        user = CurrentUser(id=uuid4(), username="a", scopes=[DispatchScope.ADMIN])
        assert user.is_admin is True
        assert user.role == "admin"

    def test_legacy_admin_scope_makes_admin(self):
        user = CurrentUser(id=uuid4(), username="a", scopes=["admin:scopes"])
        assert user.is_admin is True

    def test_supplier_role(self):
        assert make_supplier().role == "supplier"
        assert make_supplier().is_admin is False

    def test_farmer_role(self):
        assert make_farmer().role == "farmer"


class TestRequireScopesHappyPath:
    def test_delete_endpoint_passes_with_admin_delete_scope(self, anon_app):
        async def _admin():
            return make_admin()

        anon_app.dependency_overrides[get_current_user] = _admin
        with patch(CRUD_PATH) as mock_crud:
            mock_crud.delete_booking = AsyncMock(return_value=True)
            with TestClient(anon_app) as c:
                resp = c.delete(f"/bookings/{BOOKING_ID}")
        assert resp.status_code == 204

    def test_delete_endpoint_rejects_farmer(self, anon_app):
        async def _farmer():
            return make_farmer()

        anon_app.dependency_overrides[get_current_user] = _farmer
        with TestClient(anon_app) as c:
            resp = c.delete(f"/bookings/{BOOKING_ID}")
        assert resp.status_code == 403


# ---------------------------------------------------------------------------
# CatalogClient
# ---------------------------------------------------------------------------


def _http_response(status_code: int, payload=None) -> httpx.Response:
    request = httpx.Request("GET", "http://catalog")
    if payload is None:
        return httpx.Response(status_code, request=request)
    return httpx.Response(status_code, json=payload, request=request)


class TestCatalogClient:
    def test_get_catalog_client_is_singleton(self):
        assert isinstance(get_catalog_client(), CatalogClient)
        assert get_catalog_client() is get_catalog_client()

    def test_headers_built_from_current_user(self):
        user = make_farmer()
        headers = CatalogClient()._headers(user)
        assert headers["X-User-Id"] == str(user.id)
        assert headers["X-Username"] == user.username
        assert "bookings:read" in headers["X-User-Scopes"]

    def test_client_property_returns_async_client(self):
        assert isinstance(CatalogClient()._client, httpx.AsyncClient)

    @pytest.mark.anyio
    async def test_get_resource_parses_item(self):
        client = CatalogClient()
        http = MagicMock(get=AsyncMock(return_value=_http_response(200, resource_dict())))
        with patch.object(CatalogClient, "_client", http):
            resource = await client.get_resource(TRACTOR_ID)
        assert resource.id == TRACTOR_ID
        assert resource.is_dispatchable
        assert resource.supports("Ploughing")

    @pytest.mark.anyio
    async def test_get_resource_404_returns_none(self):
        http = MagicMock(get=AsyncMock(return_value=_http_response(404)))
        with patch.object(CatalogClient, "_client", http):
            assert await CatalogClient().get_resource("missing") is None

    @pytest.mark.anyio
    async def test_get_resource_upstream_error_is_502(self):
        http = MagicMock(get=AsyncMock(side_effect=httpx.ConnectError("down")))
        with patch.object(CatalogClient, "_client", http):
            with pytest.raises(HTTPException) as exc_info:
                await CatalogClient().get_resource(TRACTOR_ID)
        assert exc_info.value.status_code == 502

    @pytest.mark.anyio
    async def test_list_approved_filters_unapproved(self):
        items = [resource_dict(), resource_dict(id="x", status="pending")]
        http = MagicMock(get=AsyncMock(return_value=_http_response(200, items)))
        with patch.object(CatalogClient, "_client", http):
            resources = await CatalogClient().list_approved_resources("Tractors")
        assert [r.id for r in resources] == [TRACTOR_ID]
        _, kwargs = http.get.call_args
        assert kwargs["params"] == {"status": "approved", "category": "Tractors"}

    @pytest.mark.anyio
    async def test_get_by_ids_fails_silently(self):
        http = MagicMock(get=AsyncMock(side_effect=httpx.ConnectError("down")))
        with patch.object(CatalogClient, "_client", http):
            assert await CatalogClient().get_by_ids({TRACTOR_ID}) == []


# ---------------------------------------------------------------------------
# NotificationsClient
# ---------------------------------------------------------------------------


class TestNotificationsClient:
    def test_get_notifications_client_is_singleton(self):
        assert isinstance(get_notifications_client(), NotificationsClient)
        assert get_notifications_client() is get_notifications_client()

    @pytest.mark.anyio
    async def test_notify_posts_message(self):
        http = MagicMock(post=AsyncMock(return_value=_http_response(201, {})))
        with patch.object(NotificationsClient, "_client", http):
            ok = await NotificationsClient().notify(FARMER_ID, "hello")
        assert ok is True
        _, kwargs = http.post.call_args
        assert kwargs["json"] == {
            "target": str(FARMER_ID),
            "message": "hello",
            "category": "booking",
        }

    @pytest.mark.anyio
    async def test_notify_swallows_failures(self):
        http = MagicMock(post=AsyncMock(side_effect=httpx.ConnectError("down")))
        with patch.object(NotificationsClient, "_client", http):
            assert await NotificationsClient().notify(FARMER_ID, "hello") is False

    @pytest.mark.anyio
    async def test_notify_many_fans_out(self):
        http = MagicMock(post=AsyncMock(return_value=_http_response(201, {})))
        with patch.object(NotificationsClient, "_client", http):
            await NotificationsClient().notify_many([uuid4(), uuid4(), "admin"], "hi")
        assert http.post.await_count == 3
