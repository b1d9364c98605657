import asyncio
from dataclasses import dataclass, field
from functools import lru_cache
from urllib.parse import quote, unquote
from uuid import UUID

import httpx
from fastapi import Depends, Header, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from loguru import logger
from pydantic import ValidationError

from dispatch import settings
from dispatch.schemas import Resource
from dispatch.scopes import DISPATCH_SCOPE_DESCRIPTIONS, DispatchScope

ADMIN_TARGET = "admin"

oauth2_scheme = OAuth2PasswordBearer(
    tokenUrl=f"{settings.users_ms_url}/auth/token",
    scopes=dict(DISPATCH_SCOPE_DESCRIPTIONS),
)


@dataclass
class CurrentUser:
    id: UUID
    username: str
    scopes: list[str] = field(default_factory=list)

    @property
    def is_admin(self) -> bool:
        return "admin:scopes" in self.scopes or DispatchScope.ADMIN in self.scopes

    @property
    def role(self) -> str:
        """Coarse actor role used to authorize booking actions."""
        if self.is_admin:
            return "admin"
        if DispatchScope.FULFIL in self.scopes or DispatchScope.OFFERS in self.scopes:
            return "supplier"
        return "farmer"

    def has_any(self, *scopes: str) -> bool:
        return any(s in self.scopes for s in scopes)


def get_current_user(
    x_user_id: str = Header(...),
    x_username: str = Header(...),
    x_user_scopes: str = Header(default=""),
) -> CurrentUser:
    """
    Reads the headers injected by Traefik after forwardAuth validation.
    The JWT has already been verified upstream; these headers are trusted as-is.
    """
    try:
        user_id = UUID(x_user_id)
    except (ValueError, TypeError):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid user identity from gateway",
        ) from None

    scopes = x_user_scopes.split(" ") if x_user_scopes else []

    return CurrentUser(id=user_id, username=unquote(x_username), scopes=scopes)


def require_scopes(*required: str):
    """Dependency factory: all of `required` must be present."""

    async def _dep(
        current_user: CurrentUser = Depends(get_current_user),
    ) -> CurrentUser:
        missing = [s for s in required if s not in current_user.scopes]
        if missing:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Missing required scopes: {', '.join(missing)}",
            )
        return current_user

    return _dep


def require_any_scope(*accepted: str):
    """Dependency factory: at least one of `accepted` must be present."""

    async def _dep(
        current_user: CurrentUser = Depends(get_current_user),
    ) -> CurrentUser:
        if not current_user.has_any(*accepted):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Requires one of: {', '.join(accepted)}",
            )
        return current_user

    return _dep


# ---------------------------------------------------------------------------
# Pre-built scope dependencies
# ---------------------------------------------------------------------------

can_request_booking = require_scopes(DispatchScope.WRITE)
can_fulfil_booking = require_scopes(DispatchScope.FULFIL)
can_see_offers = require_scopes(DispatchScope.OFFERS)
can_pay_booking = require_scopes(DispatchScope.PAY)
can_admin_delete_booking = require_scopes(DispatchScope.ADMIN_DELETE)
can_admin_write_booking = require_any_scope(DispatchScope.ADMIN, DispatchScope.ADMIN_WRITE)
can_resolve_disputes = require_any_scope(DispatchScope.ADMIN, DispatchScope.ADMIN_DISPUTES)
can_raise_dispute = require_scopes(DispatchScope.DISPUTE)
can_cancel_booking = require_any_scope(
    DispatchScope.CANCEL, DispatchScope.ADMIN, DispatchScope.ADMIN_WRITE
)
can_read_booking = require_any_scope(
    DispatchScope.READ,
    DispatchScope.OFFERS,
    DispatchScope.FULFIL,
    DispatchScope.ADMIN,
    DispatchScope.ADMIN_READ,
)


def _identity_headers(user: CurrentUser | None) -> dict[str, str]:
    if user is None:
        return {}
    return {
        "X-User-Id": str(user.id),
        "X-Username": quote(user.username),
        "X-User-Scopes": " ".join(user.scopes),
    }


# ---------------------------------------------------------------------------
# CatalogClient: async wrapper around the catalog-ms internal API
# ---------------------------------------------------------------------------


@lru_cache(maxsize=1)
def _get_catalog_http_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(
        base_url=settings.catalog_ms_url,
        timeout=httpx.Timeout(5.0),
        follow_redirects=True,
    )


class CatalogClient:
    """
    Read-only view of catalog-ms items. Dispatch never writes to the catalog;
    stock and availability are owned upstream.
    """

    @property
    def _client(self) -> httpx.AsyncClient:
        return _get_catalog_http_client()

    def _headers(self, user: CurrentUser | None) -> dict[str, str]:
        return _identity_headers(user)

    async def get_resource(
        self, resource_id: str, user: CurrentUser | None = None
    ) -> Resource | None:
        """Returns the resource or None if 404. Raises HTTPException on other errors."""
        try:
            resp = await self._client.get(
                f"/items/{resource_id}", headers=self._headers(user)
            )
        except httpx.RequestError as exc:
            raise HTTPException(
                status_code=status.HTTP_502_BAD_GATEWAY,
                detail=f"catalog-ms unreachable: {exc.__class__.__name__}",
            ) from exc
        if resp.status_code == 404:
            return None
        if resp.status_code >= 400:
            raise HTTPException(
                status_code=status.HTTP_502_BAD_GATEWAY,
                detail=f"catalog-ms returned {resp.status_code}",
            )
        return Resource.model_validate(resp.json())

    async def list_approved_resources(
        self, category: str | None = None, user: CurrentUser | None = None
    ) -> list[Resource]:
        """Approved items, optionally narrowed to one category."""
        params = {"status": "approved"}
        if category is not None:
            params["category"] = category
        try:
            resp = await self._client.get(
                "/items", params=params, headers=self._headers(user)
            )
        except httpx.RequestError as exc:
            raise HTTPException(
                status_code=status.HTTP_502_BAD_GATEWAY,
                detail=f"catalog-ms unreachable: {exc.__class__.__name__}",
            ) from exc
        if resp.status_code >= 400:
            raise HTTPException(
                status_code=status.HTTP_502_BAD_GATEWAY,
                detail=f"catalog-ms returned {resp.status_code} for item listing",
            )
        return [
            r
            for r in (Resource.model_validate(raw) for raw in resp.json())
            if r.status == "approved"
        ]

    async def get_by_ids(
        self, resource_ids: set[str], user: CurrentUser | None = None
    ) -> list[Resource]:
        """Bulk-fetch items by ID for name enrichment. Fails silently."""
        if not resource_ids:
            return []
        try:
            params = [("ids", rid) for rid in resource_ids]
            resp = await self._client.get(
                "/items/bulk", params=params, headers=self._headers(user)
            )
            if resp.status_code >= 400 or not resp.content:
                return []
            return [Resource.model_validate(raw) for raw in resp.json()]
        except (httpx.RequestError, ValueError, ValidationError):
            return []


_catalog_client = CatalogClient()


def get_catalog_client() -> CatalogClient:
    return _catalog_client


# ---------------------------------------------------------------------------
# NotificationsClient: fire-and-forget wrapper around notifications-ms
# ---------------------------------------------------------------------------


@lru_cache(maxsize=1)
def _get_notifications_http_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(
        base_url=settings.notifications_ms_url,
        timeout=httpx.Timeout(5.0),
        follow_redirects=True,
    )


class NotificationsClient:
    """
    Hands messages to notifications-ms. Delivery failures are logged and
    swallowed. A lost notification never undoes a booking transition.
    Pass ADMIN_TARGET as the target to reach the oversight role.
    """

    @property
    def _client(self) -> httpx.AsyncClient:
        return _get_notifications_http_client()

    async def notify(
        self, target: UUID | str, message: str, category: str = "booking"
    ) -> bool:
        payload = {"target": str(target), "message": message, "category": category}
        try:
            resp = await self._client.post("/notifications", json=payload)
            if resp.status_code >= 400:
                logger.warning(
                    "notifications-ms returned {} for target={}",
                    resp.status_code,
                    target,
                )
                return False
            return True
        except Exception:
            logger.warning("Notification to {} failed", target, exc_info=True)
            return False

    async def notify_many(
        self, targets: list[UUID | str], message: str, category: str = "booking"
    ) -> None:
        if targets:
            await asyncio.gather(*(self.notify(t, message, category) for t in targets))


_notifications_client = NotificationsClient()


def get_notifications_client() -> NotificationsClient:
    return _notifications_client
