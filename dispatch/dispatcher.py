from __future__ import annotations

from datetime import datetime
from uuid import UUID

from fastapi import Depends
from loguru import logger

from dispatch import settings
from dispatch.conflicts import has_conflict
from dispatch.crud import booking_crud
from dispatch.deps import (
    CatalogClient,
    CurrentUser,
    NotificationsClient,
    get_catalog_client,
    get_notifications_client,
)
from dispatch.errors import InvalidTransition, ResourceUnavailable
from dispatch.lifecycle import transition
from dispatch.models import Booking, BookingOffer, BookingStatus, OfferState
from dispatch.schemas import BookingCreate, Resource


class Dispatcher:
    """
    Decides who gets to see a new request.

    A request naming a dispatchable resource (or a supplier that owns one) is
    a direct request: `Pending Confirmation`, offered to that supplier only.
    Anything else is broadcast: `Searching`, offered to every supplier owning
    an approved, available resource of the category that lists the purpose.
    Offers are rows in `booking_offers`; a supplier's inbox reads only those.
    """

    def __init__(self, catalog: CatalogClient, notifier: NotificationsClient) -> None:
        self.catalog = catalog
        self.notifier = notifier

    # ------------------------------------------------------------------
    # Eligibility
    # ------------------------------------------------------------------

    async def eligible_resources(
        self,
        category: str,
        purpose: str | None,
        exclude_suppliers: set[UUID] | frozenset[UUID] = frozenset(),
    ) -> dict[UUID, Resource]:
        """One matching resource per eligible supplier (first listed wins)."""
        resources = await self.catalog.list_approved_resources(category)
        eligible: dict[UUID, Resource] = {}
        for r in resources:
            if not r.is_dispatchable or r.category != category:
                continue
            if purpose is not None and not r.supports(purpose):
                continue
            if r.owner_id in exclude_suppliers:
                continue
            eligible.setdefault(r.owner_id, r)
        return eligible

    async def _recipients(
        self, booking: Booking, eligible: dict[UUID, Resource]
    ) -> list[tuple[UUID, str | None, bool]]:
        recipients = []
        for supplier_id, resource in eligible.items():
            # Speculative only; the authoritative check runs at accept time.
            conflict = await has_conflict(
                supplier_id,
                booking.date,
                booking.window_start.time(),
                booking.duration_hours,
                exclude_booking_id=booking.id,
            )
            recipients.append((supplier_id, resource.id, conflict))
        return recipients

    async def _direct_target(self, payload: BookingCreate) -> Resource | None:
        if payload.allow_multiple_suppliers:
            return None
        if payload.item_id is not None:
            resource = await self.catalog.get_resource(payload.item_id)
            if (
                resource is not None
                and resource.is_dispatchable
                and resource.category == payload.item_category
                and resource.supports(payload.work_purpose)
                and (payload.supplier_id is None or resource.owner_id == payload.supplier_id)
            ):
                return resource
            return None
        if payload.supplier_id is not None:
            eligible = await self.eligible_resources(
                payload.item_category, payload.work_purpose
            )
            return eligible.get(payload.supplier_id)
        return None

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def dispatch_booking(self, payload: BookingCreate, requester: CurrentUser) -> Booking:
        farmer_id = payload.farmer_id or requester.id
        agent_id = requester.id if farmer_id != requester.id else None

        fields = dict(
            farmer_id=farmer_id,
            booked_by_agent_id=agent_id,
            item_category=payload.item_category,
            work_purpose=payload.work_purpose,
            quantity=payload.quantity,
            allow_multiple_suppliers=payload.allow_multiple_suppliers,
            preferred_model=payload.preferred_model,
            operator_required=payload.operator_required,
            location=payload.location,
            additional_instructions=payload.additional_instructions,
            date=payload.date,
            start_time=payload.start_time.strftime("%H:%M"),
            estimated_duration=payload.estimated_duration,
            end_time=payload.end_time.strftime("%H:%M") if payload.end_time else None,
        )

        target = await self._direct_target(payload)
        if target is not None:
            booking = await booking_crud.create_booking(
                **fields,
                status=BookingStatus.PENDING_CONFIRMATION,
                supplier_id=target.owner_id,
                item_id=target.id,
            )
            conflict = await has_conflict(
                target.owner_id,
                booking.date,
                booking.window_start.time(),
                booking.duration_hours,
                exclude_booking_id=booking.id,
            )
            await booking_crud.open_offers(
                booking, [(target.owner_id, target.id, conflict)], is_direct=True
            )
            logger.info(
                "Booking {} sent directly to supplier {}", booking.id, target.owner_id
            )
            await self.notifier.notify(
                target.owner_id,
                f"New direct request for your {target.name or target.category} "
                f"({booking.work_purpose}) on {booking.date} at {booking.start_time}.",
            )
            return booking

        booking = await booking_crud.create_booking(**fields, status=BookingStatus.SEARCHING)
        await self.broadcast(booking)
        return booking

    async def dispatch_many(
        self, payloads: list[BookingCreate], requester: CurrentUser
    ) -> list[Booking]:
        return [await self.dispatch_booking(p, requester) for p in payloads]

    async def broadcast(
        self, booking: Booking, exclude_suppliers: set[UUID] | frozenset[UUID] = frozenset()
    ) -> list[UUID]:
        """Offer `booking` to every eligible supplier; returns who got it."""
        eligible = await self.eligible_resources(
            booking.item_category, booking.work_purpose, exclude_suppliers
        )
        recipients = await self._recipients(booking, eligible)
        await booking_crud.open_offers(booking, recipients)
        logger.info("Booking {} broadcast to {} suppliers", booking.id, len(recipients))
        await self.notifier.notify_many(
            list(eligible),
            f"New {booking.item_category} request for {booking.work_purpose} "
            f"on {booking.date} at {booking.start_time}.",
        )
        return list(eligible)

    async def redispatch(self, booking: Booking, rejected_by: UUID) -> list[UUID]:
        """Rebroadcast after a direct reject, skipping everyone who declined it."""
        declined = await booking_crud.list_offer_suppliers(booking.id, (OfferState.REJECTED,))
        return await self.broadcast(booking, exclude_suppliers={rejected_by, *declined})

    async def dispatch_operator_request(self, booking: Booking) -> list[UUID]:
        """Secondary cycle: find a driver for a machine whose owner won't operate it."""
        exclude = {booking.supplier_id} if booking.supplier_id else set()
        eligible = await self.eligible_resources(
            settings.OPERATOR_CATEGORY, None, exclude
        )
        recipients = await self._recipients(booking, eligible)
        await booking_crud.open_offers(booking, recipients)
        logger.info(
            "Booking {} needs an operator; offered to {} drivers",
            booking.id,
            len(recipients),
        )
        await self.notifier.notify_many(
            list(eligible),
            f"Operator needed for a {booking.item_category} job on {booking.date} "
            f"at {booking.start_time}.",
        )
        return list(eligible)

    # ------------------------------------------------------------------
    # Supplier inbox
    # ------------------------------------------------------------------

    async def list_offers(self, supplier_id: UUID, now: datetime | None = None) -> list[BookingOffer]:
        """Open offers, minus any whose scheduled window is already over."""
        now = now or datetime.now()
        offers = await booking_crud.list_open_offers(supplier_id)
        return [o for o in offers if not o.booking.window_elapsed(now)]

    # ------------------------------------------------------------------
    # Admin manual allotment
    # ------------------------------------------------------------------

    async def allot(
        self,
        booking: Booking,
        supplier_id: UUID,
        item_id: str | None,
        admin: CurrentUser,
    ) -> Booking:
        """Turn a stalled broadcast into a direct request to a chosen supplier."""
        if booking.status != BookingStatus.SEARCHING:
            raise InvalidTransition("Only searching bookings can be allotted")
        if booking.is_splittable:
            raise InvalidTransition("Split bookings cannot be allotted to one supplier")

        if item_id is not None:
            resource = await self.catalog.get_resource(item_id, admin)
            if resource is None or resource.owner_id != supplier_id or not resource.is_dispatchable:
                raise ResourceUnavailable("Item is not an available resource of that supplier")
        else:
            eligible = await self.eligible_resources(booking.item_category, booking.work_purpose)
            resource = eligible.get(supplier_id)
            if resource is None:
                raise ResourceUnavailable("Supplier has no available matching resource")

        await transition(
            booking,
            BookingStatus.PENDING_CONFIRMATION,
            supplier_id=supplier_id,
            item_id=resource.id,
            manually_allotted_by=admin.id,
        )
        withdrawn = await booking_crud.withdraw_open_offers(
            booking.id, exclude_supplier_id=supplier_id
        )
        await booking_crud.open_offers(booking, [(supplier_id, resource.id, False)], is_direct=True)
        await self.notifier.notify(
            supplier_id,
            f"An administrator allotted booking {booking.id} to you. Please confirm.",
        )
        await self.notifier.notify_many(
            withdrawn, f"Request {booking.id} is no longer available."
        )
        return booking


def get_dispatcher(
    catalog: CatalogClient = Depends(get_catalog_client),
    notifier: NotificationsClient = Depends(get_notifications_client),
) -> Dispatcher:
    return Dispatcher(catalog, notifier)
