from __future__ import annotations

from datetime import date, datetime, timezone
from uuid import UUID

from tortoise.expressions import F, Q
from tortoise.transactions import in_transaction

from dispatch.models import (
    ACCEPTABLE_STATUSES,
    EXPIRABLE_STATUSES,
    INACTIVE_STATUSES,
    Allocation,
    AllocationStatus,
    Booking,
    BookingOffer,
    BookingStatus,
    DamageReport,
    DamageStatus,
    OfferState,
)
from dispatch.schemas import BookingFilters


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BookingCRUD:
    """
    Every query the dispatch engine runs. Writes that race with other actors
    go through `compare_and_set`, which only lands if the booking still has
    the version the caller read.
    """

    # ------------------------------------------------------------------
    # Bookings
    # ------------------------------------------------------------------

    async def create_booking(self, **fields) -> Booking:
        if fields.get("quantity") and fields.get("remaining_quantity") is None:
            fields["remaining_quantity"] = fields["quantity"]
        return await Booking.create(**fields)

    async def get_booking(
        self,
        booking_id: str,
        farmer_id: UUID | None = None,
        party_id: UUID | None = None,
    ) -> Booking | None:
        qs = Booking.filter(id=booking_id)
        if farmer_id is not None:
            qs = qs.filter(farmer_id=farmer_id)
        if party_id is not None:
            qs = qs.filter(
                Q(farmer_id=party_id)
                | Q(supplier_id=party_id)
                | Q(operator_id=party_id)
                | Q(allocations__supplier_id=party_id)
            ).distinct()
        return await qs.first()

    async def list_bookings(
        self,
        filters: BookingFilters,
        farmer_id: UUID | None = None,
        supplier_id: UUID | None = None,
    ) -> list[Booking]:
        qs = Booking.all()

        if farmer_id is not None:
            qs = qs.filter(farmer_id=farmer_id)
        if supplier_id is not None:
            qs = qs.filter(
                Q(supplier_id=supplier_id)
                | Q(operator_id=supplier_id)
                | Q(allocations__supplier_id=supplier_id)
            ).distinct()
        if filters.status is not None:
            qs = qs.filter(status=filters.status)
        if filters.item_category is not None:
            qs = qs.filter(item_category=filters.item_category)
        if filters.date is not None:
            qs = qs.filter(date=filters.date)

        offset = (filters.page - 1) * filters.page_size
        return await qs.offset(offset).limit(filters.page_size)

    async def compare_and_set(
        self,
        booking: Booking,
        expected_statuses: tuple[BookingStatus, ...] | None = None,
        **changes,
    ) -> bool:
        """
        Atomically apply `changes` iff the row still carries `booking.version`
        (and, optionally, one of `expected_statuses`). On success the in-memory
        instance is brought up to date and the version bumped.
        """
        qs = Booking.filter(id=booking.id, version=booking.version)
        if expected_statuses:
            qs = qs.filter(status__in=list(expected_statuses))
        new_version = booking.version + 1
        now = _utcnow()
        updated = await qs.update(version=new_version, updated_at=now, **changes)
        if updated != 1:
            return False
        for name, value in changes.items():
            setattr(booking, name, value)
        booking.version = new_version
        booking.updated_at = now
        return True

    async def update_if(self, booking: Booking, conditions: dict, **changes) -> bool:
        """
        Apply `changes` iff the row matches `conditions`, regardless of version.
        For flags owned by a single writer (dispute, damage) that must not
        clobber concurrent lifecycle moves.
        """
        updated = await Booking.filter(id=booking.id, **conditions).update(
            version=F("version") + 1, updated_at=_utcnow(), **changes
        )
        if updated != 1:
            return False
        await booking.refresh_from_db()
        return True

    async def allocate(
        self,
        booking: Booking,
        supplier_id: UUID,
        resource_id: str,
        quantity: int,
        final_price,
        booking_changes: dict | None = None,
    ) -> Allocation | None:
        """
        Commit a sub-quantity: decrement the remaining counter via CAS and
        insert the allocation in the same transaction. `booking_changes` are
        extra booking columns written by the same CAS. None if the CAS lost.
        """
        async with in_transaction():
            ok = await self.compare_and_set(
                booking,
                (BookingStatus.SEARCHING,),
                remaining_quantity=booking.remaining_quantity - quantity,
                **(booking_changes or {}),
            )
            if not ok:
                return None
            return await Allocation.create(
                booking_id=booking.id,
                supplier_id=supplier_id,
                resource_id=resource_id,
                quantity=quantity,
                final_price=final_price,
            )

    async def list_allocations(self, booking_id: str, active_only: bool = True) -> list[Allocation]:
        qs = Allocation.filter(booking_id=booking_id)
        if active_only:
            qs = qs.filter(status=AllocationStatus.ACTIVE)
        return await qs.order_by("id")

    async def release_allocations(self, booking_id: str) -> list[UUID]:
        allocations = await self.list_allocations(booking_id)
        await Allocation.filter(
            booking_id=booking_id, status=AllocationStatus.ACTIVE
        ).update(status=AllocationStatus.CANCELLED, updated_at=_utcnow())
        return [a.supplier_id for a in allocations]

    async def list_supplier_commitments(
        self,
        supplier_id: UUID,
        day: date,
        exclude_booking_id: str | None = None,
    ) -> list[Booking]:
        """Active bookings on `day` that hold some of the supplier's time."""
        held = await Booking.filter(
            Q(supplier_id=supplier_id) | Q(operator_id=supplier_id),
            date=day,
        ).exclude(status__in=list(INACTIVE_STATUSES))
        allocated = await Booking.filter(
            date=day,
            allocations__supplier_id=supplier_id,
            allocations__status=AllocationStatus.ACTIVE,
        ).exclude(status__in=list(INACTIVE_STATUSES)).distinct()

        seen: dict[str, Booking] = {}
        for b in [*held, *allocated]:
            if b.id != exclude_booking_id:
                seen.setdefault(b.id, b)
        return sorted(seen.values(), key=lambda b: b.start_time)

    async def list_expiry_candidates(self, today: date) -> list[Booking]:
        return await Booking.filter(
            status__in=list(EXPIRABLE_STATUSES),
            date__lte=today,
        )

    async def list_search_timeouts(self, created_before: datetime) -> list[Booking]:
        return await Booking.filter(
            status=BookingStatus.SEARCHING,
            search_timeout_notified=False,
            created_at__lte=created_before,
        )

    async def delete_booking(self, booking_id: str) -> bool:
        deleted = await Booking.filter(id=booking_id).delete()
        return deleted > 0

    # ------------------------------------------------------------------
    # Offers (broadcast visibility index)
    # ------------------------------------------------------------------

    async def open_offers(
        self,
        booking: Booking,
        recipients: list[tuple[UUID, str | None, bool]],
        is_direct: bool = False,
    ) -> list[BookingOffer]:
        """
        Make `booking` visible to each (supplier_id, resource_id, conflict)
        recipient. Re-opening a previously closed offer reuses its row.
        """
        offers = []
        for supplier_id, resource_id, conflict_warning in recipients:
            offer, _ = await BookingOffer.update_or_create(
                defaults={
                    "resource_id": resource_id,
                    "state": OfferState.OPEN,
                    "conflict_warning": conflict_warning,
                    "is_direct": is_direct,
                },
                booking_id=booking.id,
                supplier_id=supplier_id,
            )
            offers.append(offer)
        return offers

    async def get_offer(self, booking_id: str, supplier_id: UUID) -> BookingOffer | None:
        return await BookingOffer.get_or_none(booking_id=booking_id, supplier_id=supplier_id)

    async def list_open_offers(self, supplier_id: UUID) -> list[BookingOffer]:
        return await BookingOffer.filter(
            supplier_id=supplier_id,
            state=OfferState.OPEN,
            booking__status__in=list(ACCEPTABLE_STATUSES),
        ).prefetch_related("booking")

    async def list_offer_suppliers(
        self, booking_id: str, states: tuple[OfferState, ...]
    ) -> list[UUID]:
        suppliers = await BookingOffer.filter(
            booking_id=booking_id, state__in=list(states)
        ).values_list("supplier_id", flat=True)
        return [UUID(str(s)) for s in suppliers]

    async def record_offer_state(
        self,
        booking_id: str,
        supplier_id: UUID,
        state: OfferState,
        resource_id: str | None = None,
    ) -> BookingOffer:
        """Close a supplier's offer with `state`, creating the row if the
        supplier answered without one (e.g. a resource listed after dispatch)."""
        defaults: dict = {"state": state}
        if resource_id is not None:
            defaults["resource_id"] = resource_id
        offer, _ = await BookingOffer.update_or_create(
            defaults=defaults, booking_id=booking_id, supplier_id=supplier_id
        )
        return offer

    async def withdraw_open_offers(
        self, booking_id: str, exclude_supplier_id: UUID | None = None
    ) -> list[UUID]:
        """Close every still-open offer; returns the suppliers that lost one."""
        qs = BookingOffer.filter(booking_id=booking_id, state=OfferState.OPEN)
        if exclude_supplier_id is not None:
            qs = qs.exclude(supplier_id=exclude_supplier_id)
        suppliers = await qs.values_list("supplier_id", flat=True)
        if suppliers:
            await BookingOffer.filter(
                booking_id=booking_id, state=OfferState.OPEN, supplier_id__in=suppliers
            ).update(state=OfferState.WITHDRAWN, updated_at=_utcnow())
        return [UUID(str(s)) for s in suppliers]

    async def count_direct_rejections(self, supplier_id: UUID, since: datetime) -> int:
        return await BookingOffer.filter(
            supplier_id=supplier_id,
            is_direct=True,
            state=OfferState.REJECTED,
            updated_at__gte=since,
        ).count()

    # ------------------------------------------------------------------
    # Damage reports
    # ------------------------------------------------------------------

    async def create_damage_report(self, **fields) -> DamageReport:
        return await DamageReport.create(**fields)

    async def get_damage_report(self, report_id: int) -> DamageReport | None:
        return await DamageReport.get_or_none(id=report_id)

    async def get_damage_report_for_booking(self, booking_id: str) -> DamageReport | None:
        return await DamageReport.get_or_none(booking_id=booking_id)

    async def list_damage_reports(self, status: DamageStatus | None = None) -> list[DamageReport]:
        qs = DamageReport.all()
        if status is not None:
            qs = qs.filter(status=status)
        return await qs

    async def resolve_damage_report(self, report: DamageReport) -> bool:
        """pending -> resolved; False when someone already resolved it."""
        now = _utcnow()
        updated = await DamageReport.filter(
            id=report.id, status=DamageStatus.PENDING
        ).update(status=DamageStatus.RESOLVED, resolved_at=now, updated_at=now)
        if updated:
            report.status = DamageStatus.RESOLVED
            report.resolved_at = now
        return bool(updated)


booking_crud = BookingCRUD()
