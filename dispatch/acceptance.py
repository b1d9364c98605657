"""
Acceptance: the single point where competing suppliers are serialised.

Every commit is a compare-and-set against the version the supplier read, so
of two suppliers racing for an exclusive booking exactly one wins and the
other is told the booking is gone. Split bookings decrement a remaining
counter the same way; a loser simply retries against the fresh remainder.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from fastapi import Depends
from loguru import logger

from dispatch import settings
from dispatch.cache import invalidate_schedule_cache
from dispatch.conflicts import describe_conflict, find_booking_conflicts
from dispatch.crud import booking_crud
from dispatch.deps import (
    ADMIN_TARGET,
    CatalogClient,
    CurrentUser,
    NotificationsClient,
    get_catalog_client,
    get_notifications_client,
)
from dispatch.dispatcher import Dispatcher
from dispatch.errors import (
    BookingNotFound,
    ConcurrentModification,
    ConflictDetected,
    InvalidTransition,
    PermissionDenied,
    QuantityExceeded,
    ResourceUnavailable,
)
from dispatch.lifecycle import LifecycleManager, assert_transition, transition
from dispatch.models import (
    ACCEPTABLE_STATUSES,
    EXPIRABLE_STATUSES,
    Allocation,
    Booking,
    BookingStatus,
    OfferState,
)
from dispatch.schemas import AcceptOptions, Resource


@dataclass
class AcceptOutcome:
    booking: Booking
    allocation: Allocation | None = None
    overridden_conflicts: list[str] = field(default_factory=list)


class AcceptanceCoordinator:
    def __init__(
        self,
        catalog: CatalogClient,
        notifier: NotificationsClient,
        dispatcher: Dispatcher | None = None,
    ) -> None:
        self.catalog = catalog
        self.notifier = notifier
        self.dispatcher = dispatcher or Dispatcher(catalog, notifier)

    async def _load(self, booking_id: str) -> Booking:
        booking = await booking_crud.get_booking(booking_id)
        if booking is None:
            raise BookingNotFound()
        return booking

    async def _load_actionable(self, booking_id: str, now: datetime | None) -> Booking:
        """Load the booking, expiring it first if its window passed unanswered."""
        booking = await self._load(booking_id)
        if booking.status in EXPIRABLE_STATUSES and booking.window_elapsed(
            now or datetime.now()
        ):
            try:
                await LifecycleManager(self.notifier).expire(booking)
            except ConcurrentModification:
                logger.debug("Booking {} changed while expiring it", booking_id)
            raise InvalidTransition("Booking window has passed; the request expired")
        return booking

    # ------------------------------------------------------------------
    # Accept
    # ------------------------------------------------------------------

    async def accept(
        self,
        booking_id: str,
        supplier: CurrentUser,
        options: AcceptOptions,
        now: datetime | None = None,
    ) -> AcceptOutcome:
        booking = await self._load_actionable(booking_id, now)
        resource = await self.catalog.get_resource(options.resource_id, supplier)
        self._check_resource(resource, supplier)

        attempt = 0
        while True:
            attempt += 1
            self._check_acceptable(booking, supplier, resource)

            conflicts = await find_booking_conflicts(supplier.id, booking)
            if conflicts and not options.confirm_conflicts:
                raise ConflictDetected([describe_conflict(b) for b in conflicts])

            if booking.status == BookingStatus.AWAITING_OPERATOR:
                outcome = await self._commit_operator(booking, supplier, resource)
            elif booking.is_splittable:
                outcome = await self._commit_allocation(booking, supplier, resource, options)
            else:
                outcome = await self._commit_exclusive(booking, supplier, resource, options)

            if outcome is not None:
                break

            fresh = await self._load(booking_id)
            if fresh.status not in ACCEPTABLE_STATUSES:
                logger.warning(
                    "Supplier {} lost the race for booking {} (now {})",
                    supplier.id,
                    booking_id,
                    fresh.status,
                )
                raise ResourceUnavailable("Booking is no longer available")
            if attempt >= settings.CAS_MAX_ATTEMPTS:
                raise ConcurrentModification()
            booking = fresh

        if conflicts:
            outcome.overridden_conflicts = [b.id for b in conflicts]
            await self._report_override(booking, supplier, conflicts)
        return outcome

    @staticmethod
    def _check_resource(resource: Resource | None, supplier: CurrentUser) -> None:
        if resource is None:
            raise ResourceUnavailable("Resource not found")
        if resource.owner_id != supplier.id:
            raise ResourceUnavailable("Resource does not belong to you")
        if not resource.is_dispatchable:
            raise ResourceUnavailable("Resource is not approved or not available")

    @staticmethod
    def _check_acceptable(
        booking: Booking, supplier: CurrentUser, resource: Resource
    ) -> None:
        if booking.status not in ACCEPTABLE_STATUSES:
            if booking.status == BookingStatus.CONFIRMED and booking.supplier_id != supplier.id:
                raise ResourceUnavailable("Booking is no longer available")
            raise InvalidTransition(f"Booking is {booking.status} and cannot be accepted")

        if booking.status == BookingStatus.PENDING_CONFIRMATION:
            if booking.supplier_id != supplier.id:
                raise PermissionDenied("This request was sent to another supplier")

        if booking.status == BookingStatus.AWAITING_OPERATOR:
            if resource.category != settings.OPERATOR_CATEGORY:
                raise ResourceUnavailable("Booking is waiting for an operator")
            return

        if resource.category != booking.item_category or not resource.supports(
            booking.work_purpose
        ):
            raise ResourceUnavailable(
                f"Resource does not offer {booking.work_purpose} ({booking.item_category})"
            )

    # -- commit paths --------------------------------------------------

    async def _commit_exclusive(
        self,
        booking: Booking,
        supplier: CurrentUser,
        resource: Resource,
        options: AcceptOptions,
    ) -> AcceptOutcome | None:
        quantity = booking.quantity or 1
        if (
            booking.quantity
            and resource.quantity_available is not None
            and resource.quantity_available < booking.quantity
        ):
            raise ResourceUnavailable(
                f"Resource has {resource.quantity_available} available, "
                f"{booking.quantity} requested"
            )

        needs_operator = booking.operator_required and resource.is_machine
        if needs_operator and options.operate_self is False:
            new_status = BookingStatus.AWAITING_OPERATOR
            operator_id = None
            price = resource.quote(booking.work_purpose, booking.duration_hours, quantity)
        else:
            new_status = BookingStatus.CONFIRMED
            operator_id = supplier.id if needs_operator else None
            price = resource.quote(
                booking.work_purpose,
                booking.duration_hours,
                quantity,
                with_operator=booking.operator_required,
            )

        try:
            await transition(
                booking,
                new_status,
                supplier_id=supplier.id,
                item_id=resource.id,
                operator_id=operator_id,
                final_price=price,
            )
        except ConcurrentModification:
            return None

        await booking_crud.record_offer_state(
            booking.id, supplier.id, OfferState.ACCEPTED, resource.id
        )
        await self._withdraw_others(booking, supplier)
        await invalidate_schedule_cache([supplier.id], booking.date)

        if new_status == BookingStatus.AWAITING_OPERATOR:
            await self.notifier.notify(
                booking.farmer_id,
                f"Your {booking.item_category} for {booking.date} is secured. "
                f"We are now finding an operator.",
            )
            await self.dispatcher.dispatch_operator_request(booking)
        else:
            await self.notifier.notify(
                booking.farmer_id,
                f"Your booking {booking.id} for {booking.date} at {booking.start_time} "
                f"was confirmed. Price: {price}",
            )
        return AcceptOutcome(booking=booking)

    async def _commit_operator(
        self, booking: Booking, supplier: CurrentUser, resource: Resource
    ) -> AcceptOutcome | None:
        driver_price = resource.quote(booking.work_purpose, booking.duration_hours)
        try:
            await transition(
                booking,
                BookingStatus.CONFIRMED,
                operator_id=supplier.id,
                final_price=(booking.final_price or Decimal("0")) + driver_price,
            )
        except ConcurrentModification:
            return None

        await booking_crud.record_offer_state(
            booking.id, supplier.id, OfferState.ACCEPTED, resource.id
        )
        await self._withdraw_others(booking, supplier)
        await invalidate_schedule_cache([supplier.id], booking.date)
        await self.notifier.notify_many(
            [booking.farmer_id, booking.supplier_id],
            f"An operator has been assigned to booking {booking.id}; it is now confirmed.",
        )
        return AcceptOutcome(booking=booking)

    async def _commit_allocation(
        self,
        booking: Booking,
        supplier: CurrentUser,
        resource: Resource,
        options: AcceptOptions,
    ) -> AcceptOutcome | None:
        remaining = booking.remaining_quantity or 0
        stock = (
            resource.quantity_available
            if resource.quantity_available is not None
            else remaining
        )

        requested = options.quantity
        if requested is None:
            requested = min(remaining, stock)
        elif requested > remaining:
            if not options.accept_remainder:
                raise QuantityExceeded(
                    f"Only {remaining} of {booking.quantity} remain to be allocated"
                )
            requested = remaining
        if requested > stock:
            raise QuantityExceeded(f"Resource has only {stock} available")
        if requested <= 0:
            raise QuantityExceeded("Nothing left to allocate")

        price = resource.quote(booking.work_purpose, booking.duration_hours, requested)
        changes: dict = {"final_price": (booking.final_price or Decimal("0")) + price}
        if booking.supplier_id is None:
            # First allocator leads the booking
            changes["supplier_id"] = supplier.id
            changes["item_id"] = resource.id
        filled = requested == remaining
        if filled:
            assert_transition(booking.status, BookingStatus.CONFIRMED)
            changes["status"] = BookingStatus.CONFIRMED

        allocation = await booking_crud.allocate(
            booking, supplier.id, resource.id, requested, price, changes
        )
        if allocation is None:
            return None

        logger.info(
            "Booking {}: supplier {} allocated {} ({} left)",
            booking.id,
            supplier.id,
            requested,
            booking.remaining_quantity,
        )
        await booking_crud.record_offer_state(
            booking.id, supplier.id, OfferState.ACCEPTED, resource.id
        )
        await invalidate_schedule_cache([supplier.id], booking.date)
        if filled:
            await self._withdraw_others(booking, supplier)
            await self.notifier.notify(
                booking.farmer_id,
                f"Your booking {booking.id} is fully allocated and confirmed.",
            )
        else:
            await self.notifier.notify(
                booking.farmer_id,
                f"{requested} of {booking.quantity} {booking.item_category} confirmed "
                f"for booking {booking.id}; still searching for {booking.remaining_quantity}.",
            )
        return AcceptOutcome(booking=booking, allocation=allocation)

    # -- side effects --------------------------------------------------

    async def _withdraw_others(self, booking: Booking, winner: CurrentUser) -> None:
        withdrawn = await booking_crud.withdraw_open_offers(
            booking.id, exclude_supplier_id=winner.id
        )
        await self.notifier.notify_many(
            withdrawn,
            f"Request {booking.id} ({booking.item_category} on {booking.date}) "
            f"was taken by another supplier.",
        )

    async def _report_override(
        self, booking: Booking, supplier: CurrentUser, conflicts: list[Booking]
    ) -> None:
        clashes = ", ".join(
            f"{b.id} ({b.start_time}-{b.window_end.strftime('%H:%M')})" for b in conflicts
        )
        logger.warning(
            "Supplier {} accepted booking {} despite conflicts: {}",
            supplier.id,
            booking.id,
            clashes,
        )
        await self.notifier.notify(
            ADMIN_TARGET,
            f"Supplier {supplier.username or supplier.id} accepted booking {booking.id} "
            f"on {booking.date} at {booking.start_time} despite overlapping bookings: "
            f"{clashes}",
            "admin",
        )

    # ------------------------------------------------------------------
    # Reject
    # ------------------------------------------------------------------

    async def reject(
        self, booking_id: str, supplier: CurrentUser, now: datetime | None = None
    ) -> Booking:
        """
        A direct request goes back to Searching and is rebroadcast to everyone
        else; a broadcast offer is just closed for this supplier.
        """
        booking = await self._load_actionable(booking_id, now)

        if booking.status == BookingStatus.PENDING_CONFIRMATION:
            if booking.supplier_id != supplier.id:
                raise PermissionDenied("This request was sent to another supplier")
            await transition(
                booking,
                BookingStatus.SEARCHING,
                supplier_id=None,
                item_id=None,
                is_rebroadcast=True,
            )
            await booking_crud.record_offer_state(
                booking.id, supplier.id, OfferState.REJECTED
            )
            recipients = await self.dispatcher.redispatch(booking, supplier.id)
            if recipients:
                message = (
                    f"Your request {booking.id} was declined by the selected supplier "
                    f"and has been sent to all nearby suppliers. Prices may vary."
                )
            else:
                message = (
                    f"Your request {booking.id} was declined by the selected supplier. "
                    f"No other supplier is available right now; it stays open."
                )
            await self.notifier.notify(booking.farmer_id, message)
            await self._check_reject_rate(supplier)
            return booking

        if booking.status in (BookingStatus.SEARCHING, BookingStatus.AWAITING_OPERATOR):
            offer = await booking_crud.get_offer(booking.id, supplier.id)
            if offer is None or offer.state != OfferState.OPEN:
                raise InvalidTransition("No open offer to reject")
            await booking_crud.record_offer_state(
                booking.id, supplier.id, OfferState.REJECTED
            )
            logger.info("Supplier {} declined broadcast {}", supplier.id, booking.id)
            return booking

        raise InvalidTransition(f"Booking is {booking.status} and cannot be rejected")

    async def _check_reject_rate(self, supplier: CurrentUser) -> None:
        since = datetime.now(timezone.utc) - timedelta(
            hours=settings.REJECT_ALERT_WINDOW_HOURS
        )
        count = await booking_crud.count_direct_rejections(supplier.id, since)
        if count >= settings.REJECT_ALERT_THRESHOLD:
            logger.warning(
                "Supplier {} rejected {} direct requests in {}h",
                supplier.id,
                count,
                settings.REJECT_ALERT_WINDOW_HOURS,
            )
            await self.notifier.notify(
                ADMIN_TARGET,
                f"Supplier {supplier.username or supplier.id} has rejected {count} "
                f"direct requests in the last {settings.REJECT_ALERT_WINDOW_HOURS} hours.",
                "admin",
            )


def get_acceptance_coordinator(
    catalog: CatalogClient = Depends(get_catalog_client),
    notifier: NotificationsClient = Depends(get_notifications_client),
) -> AcceptanceCoordinator:
    return AcceptanceCoordinator(catalog, notifier)
