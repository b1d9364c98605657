from __future__ import annotations

from fastapi import Depends
from loguru import logger
from tortoise.exceptions import IntegrityError
from tortoise.transactions import in_transaction

from dispatch.crud import booking_crud
from dispatch.deps import (
    ADMIN_TARGET,
    CurrentUser,
    NotificationsClient,
    get_notifications_client,
)
from dispatch.errors import (
    BookingNotFound,
    DamageReportNotFound,
    InvalidTransition,
    PermissionDenied,
)
from dispatch.lifecycle import involved_suppliers
from dispatch.models import Booking, BookingStatus, DamageReport

S = BookingStatus

# Both need the booking past Confirmed: the resource has reached the field.
DISPUTABLE_STATUSES = frozenset({S.ARRIVED, S.IN_PROCESS, S.PENDING_PAYMENT, S.COMPLETED})
DAMAGE_STATUSES = DISPUTABLE_STATUSES


class DisputeResolver:
    """Disputes and damage claims ride alongside the lifecycle without moving it."""

    def __init__(self, notifier: NotificationsClient) -> None:
        self.notifier = notifier

    async def _load_for_party(self, booking_id: str, actor: CurrentUser) -> Booking:
        booking = await booking_crud.get_booking(booking_id)
        if booking is None:
            raise BookingNotFound()
        if actor.is_admin or actor.id == booking.farmer_id:
            return booking
        if actor.id in await involved_suppliers(booking):
            return booking
        raise PermissionDenied("Only parties to the booking can do this")

    # -- disputes ------------------------------------------------------

    async def raise_dispute(self, booking_id: str, actor: CurrentUser) -> Booking:
        booking = await self._load_for_party(booking_id, actor)
        if booking.status not in DISPUTABLE_STATUSES:
            raise InvalidTransition(f"Cannot dispute a booking that is {booking.status}")
        if booking.dispute_raised:
            return booking

        if await booking_crud.update_if(booking, {"dispute_raised": False}, dispute_raised=True):
            logger.info("Dispute raised on booking {} by {}", booking.id, actor.id)
            await self.notifier.notify(
                ADMIN_TARGET,
                f"Dispute raised on booking {booking.id} by {actor.role} "
                f"{actor.username or actor.id}.",
                "admin",
            )
        else:
            await booking.refresh_from_db()
        return booking

    async def resolve_dispute(self, booking_id: str, admin: CurrentUser) -> Booking:
        """Idempotent: resolving twice leaves the booking resolved."""
        booking = await booking_crud.get_booking(booking_id)
        if booking is None:
            raise BookingNotFound()
        if not booking.dispute_raised:
            raise InvalidTransition("No dispute has been raised on this booking")
        if booking.dispute_resolved:
            return booking

        resolved = await booking_crud.update_if(
            booking,
            {"dispute_raised": True, "dispute_resolved": False},
            dispute_resolved=True,
        )
        if resolved:
            logger.info("Dispute on booking {} resolved by {}", booking.id, admin.id)
            await self.notifier.notify_many(
                [booking.farmer_id, *await involved_suppliers(booking)],
                f"The dispute on booking {booking.id} has been resolved.",
            )
        else:
            await booking.refresh_from_db()
        return booking

    # -- damage --------------------------------------------------------

    async def report_damage(
        self, booking_id: str, reporter: CurrentUser, description: str
    ) -> DamageReport:
        booking = await self._load_for_party(booking_id, reporter)
        if booking.status not in DAMAGE_STATUSES:
            raise InvalidTransition(
                f"Damage can only be reported once work has started, booking is {booking.status}"
            )
        if await booking_crud.get_damage_report_for_booking(booking.id) is not None:
            raise InvalidTransition("Damage has already been reported for this booking")

        try:
            async with in_transaction():
                report = await booking_crud.create_damage_report(
                    booking_id=booking.id,
                    item_id=booking.item_id,
                    reporter_id=reporter.id,
                    description=description,
                )
                await booking_crud.update_if(booking, {}, damage_reported=True)
        except IntegrityError:
            raise InvalidTransition("Damage has already been reported for this booking")

        logger.info("Damage reported on booking {} by {}", booking.id, reporter.id)
        await self.notifier.notify(
            ADMIN_TARGET,
            f"Damage reported on booking {booking.id} (item {booking.item_id}): {description}",
            "admin",
        )
        return report

    async def resolve_damage_claim(self, report_id: int, admin: CurrentUser) -> DamageReport:
        report = await booking_crud.get_damage_report(report_id)
        if report is None:
            raise DamageReportNotFound()
        if await booking_crud.resolve_damage_report(report):
            logger.info("Damage report {} resolved by {}", report.id, admin.id)
            await self.notifier.notify(
                report.reporter_id,
                f"Your damage report for booking {report.booking_id} has been resolved.",
            )
        else:
            await report.refresh_from_db()
        return report


def get_dispute_resolver(
    notifier: NotificationsClient = Depends(get_notifications_client),
) -> DisputeResolver:
    return DisputeResolver(notifier)
