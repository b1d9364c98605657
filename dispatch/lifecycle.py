from __future__ import annotations

import secrets
from datetime import datetime, timezone

from fastapi import Depends
from loguru import logger

from dispatch.cache import invalidate_schedule_cache
from dispatch.crud import booking_crud
from dispatch.deps import (
    ADMIN_TARGET,
    CurrentUser,
    NotificationsClient,
    get_notifications_client,
)
from dispatch.errors import (
    ConcurrentModification,
    InvalidOtp,
    InvalidTransition,
    PermissionDenied,
)
from dispatch.models import (
    Booking,
    BookingStatus,
    CancellationKind,
    PaymentMethod,
)

S = BookingStatus

VALID_TRANSITIONS: dict[BookingStatus, set[BookingStatus]] = {
    S.SEARCHING: {
        S.PENDING_CONFIRMATION,  # admin allots to a trusted supplier
        S.AWAITING_OPERATOR,
        S.CONFIRMED,
        S.CANCELLED,
        S.EXPIRED,
    },
    S.PENDING_CONFIRMATION: {
        S.SEARCHING,  # supplier rejected, rebroadcast
        S.AWAITING_OPERATOR,
        S.CONFIRMED,
        S.CANCELLED,
        S.EXPIRED,
    },
    S.AWAITING_OPERATOR: {S.CONFIRMED, S.CANCELLED},
    S.CONFIRMED: {S.ARRIVED, S.CANCELLED},
    S.ARRIVED: {S.IN_PROCESS, S.CANCELLED},
    S.IN_PROCESS: {S.PENDING_PAYMENT, S.CANCELLED},
    S.PENDING_PAYMENT: {S.COMPLETED, S.CANCELLED},
    S.COMPLETED: set(),
    S.CANCELLED: set(),
    S.EXPIRED: set(),
}

TERMINAL_STATUSES = frozenset(s for s, nxt in VALID_TRANSITIONS.items() if not nxt)

# Cancelling from these means a supplier had already committed
_COMMITTED_STATUSES = frozenset(
    {S.AWAITING_OPERATOR, S.CONFIRMED, S.ARRIVED, S.IN_PROCESS, S.PENDING_PAYMENT}
)


def assert_transition(old_status: BookingStatus, new_status: BookingStatus) -> None:
    allowed = VALID_TRANSITIONS.get(old_status, set())
    if new_status not in allowed:
        raise InvalidTransition(
            f"Cannot transition from '{old_status}' to '{new_status}'. "
            f"Allowed: {sorted(s.value for s in allowed)}"
        )


async def transition(booking: Booking, new_status: BookingStatus, **changes) -> Booking:
    """
    Validate the edge and apply it with compare-and-set against the status
    and version the caller read. Every status change goes through here.
    """
    old_status = booking.status
    assert_transition(old_status, new_status)
    ok = await booking_crud.compare_and_set(
        booking, (old_status,), status=new_status, **changes
    )
    if not ok:
        logger.warning(
            "Lost update on booking {} ({} -> {})", booking.id, old_status, new_status
        )
        raise ConcurrentModification()
    logger.info("Booking {}: {} -> {}", booking.id, old_status, new_status)
    return booking


def generate_otp() -> str:
    return f"{secrets.randbelow(900000) + 100000}"


async def involved_suppliers(booking: Booking) -> list:
    suppliers = {booking.supplier_id, booking.operator_id}
    if booking.is_splittable:
        suppliers.update(a.supplier_id for a in await booking_crud.list_allocations(booking.id))
    return [s for s in suppliers if s is not None]


class LifecycleManager:
    """Actor-driven moves through the booking lifecycle."""

    def __init__(self, notifier: NotificationsClient) -> None:
        self.notifier = notifier

    # -- helpers -------------------------------------------------------

    @staticmethod
    async def _assert_supplier(booking: Booking, actor: CurrentUser) -> None:
        if actor.is_admin:
            return
        if actor.id not in await involved_suppliers(booking):
            raise PermissionDenied("Only the assigned supplier can update this booking")

    @staticmethod
    def _assert_farmer(booking: Booking, actor: CurrentUser) -> None:
        if actor.is_admin:
            return
        if actor.id != booking.farmer_id:
            raise PermissionDenied("Only the requesting farmer can do this")

    # -- cancellation --------------------------------------------------

    async def cancel(self, booking: Booking, actor: CurrentUser, reason: str) -> Booking:
        """
        Immediate and irrevocable. Cancelling before anyone committed is a
        withdrawal; afterwards it is a call-off and the suppliers and the
        admin are told.
        """
        self._assert_farmer(booking, actor)
        if not reason or not reason.strip():
            raise InvalidTransition("A cancellation reason is required")

        had_allocations = booking.is_splittable and (
            booking.remaining_quantity or 0
        ) < (booking.quantity or 0)
        kind = (
            CancellationKind.CALLED_OFF
            if booking.status in _COMMITTED_STATUSES or had_allocations
            else CancellationKind.WITHDRAWN
        )
        suppliers = await involved_suppliers(booking)

        await transition(
            booking,
            S.CANCELLED,
            cancellation_reason=reason.strip(),
            cancellation_kind=kind,
        )
        await booking_crud.release_allocations(booking.id)
        offered = await booking_crud.withdraw_open_offers(booking.id)
        await invalidate_schedule_cache(suppliers, booking.date)

        if kind == CancellationKind.CALLED_OFF:
            await self.notifier.notify_many(
                suppliers,
                f"Booking {booking.id} ({booking.item_category} on {booking.date}) "
                f"was cancelled by the farmer: {booking.cancellation_reason}",
            )
            await self.notifier.notify(
                ADMIN_TARGET,
                f"Confirmed booking {booking.id} was cancelled after acceptance. "
                f"Reason: {booking.cancellation_reason}",
                "admin",
            )
        else:
            await self.notifier.notify_many(
                offered,
                f"Request {booking.id} for {booking.item_category} is no longer available.",
            )
        if actor.is_admin:
            await self.notifier.notify(
                booking.farmer_id,
                f"Your booking {booking.id} was cancelled by an administrator: "
                f"{booking.cancellation_reason}",
            )
        return booking

    # -- supplier-driven advancement -----------------------------------

    async def mark_arrived(self, booking: Booking, actor: CurrentUser) -> Booking:
        await self._assert_supplier(booking, actor)
        otp = generate_otp()
        await transition(booking, S.ARRIVED, otp_code=otp, otp_verified=False)
        await self.notifier.notify(
            booking.farmer_id,
            f"Your service has arrived. Share this OTP with the supplier to start work: {otp}",
        )
        return booking

    async def start_work(self, booking: Booking, actor: CurrentUser, otp: str) -> Booking:
        await self._assert_supplier(booking, actor)
        if booking.status != S.ARRIVED or not booking.otp_code:
            raise InvalidTransition("Cannot start work before arriving")
        if not secrets.compare_digest(booking.otp_code, otp):
            raise InvalidOtp()
        await transition(
            booking,
            S.IN_PROCESS,
            otp_verified=True,
            work_start_time=datetime.now(timezone.utc),
        )
        return booking

    async def complete(self, booking: Booking, actor: CurrentUser) -> Booking:
        """Explicit; elapsed time alone never completes a booking."""
        await self._assert_supplier(booking, actor)
        await transition(
            booking, S.PENDING_PAYMENT, work_end_time=datetime.now(timezone.utc)
        )
        await self.notifier.notify(
            booking.farmer_id,
            f"Work on booking {booking.id} is complete. "
            f"Please settle the final payment of {booking.final_price}.",
        )
        await invalidate_schedule_cache(await involved_suppliers(booking), booking.date)
        return booking

    async def finalize_payment(
        self, booking: Booking, actor: CurrentUser, method: PaymentMethod
    ) -> Booking:
        self._assert_farmer(booking, actor)
        await transition(booking, S.COMPLETED, payment_method=method)
        await self.notifier.notify_many(
            await involved_suppliers(booking),
            f"{method} payment received for booking {booking.id}.",
        )
        return booking

    # -- time-driven ---------------------------------------------------

    async def expire(self, booking: Booking) -> Booking:
        """Only a split booking can hold anything here: its partial allocations."""
        await transition(booking, S.EXPIRED)
        await booking_crud.withdraw_open_offers(booking.id)
        released = await booking_crud.release_allocations(booking.id)
        await invalidate_schedule_cache([booking.supplier_id, *released], booking.date)
        await self.notifier.notify(
            booking.farmer_id,
            f"No supplier accepted your {booking.item_category} request for "
            f"{booking.date} before its scheduled time; the request has expired.",
        )
        return booking


def get_lifecycle_manager(
    notifier: NotificationsClient = Depends(get_notifications_client),
) -> LifecycleManager:
    return LifecycleManager(notifier)
