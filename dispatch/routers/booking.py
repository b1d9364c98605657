from datetime import date
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from loguru import logger

from dispatch.acceptance import AcceptanceCoordinator, get_acceptance_coordinator
from dispatch.cache import get_schedule_cache, set_schedule_cache
from dispatch.crud import booking_crud
from dispatch.deps import (
    CatalogClient,
    CurrentUser,
    can_admin_delete_booking,
    can_admin_write_booking,
    can_cancel_booking,
    can_fulfil_booking,
    can_pay_booking,
    can_read_booking,
    can_request_booking,
    can_see_offers,
    get_catalog_client,
    get_current_user,
)
from dispatch.dispatcher import Dispatcher, get_dispatcher
from dispatch.errors import call_service
from dispatch.lifecycle import LifecycleManager, get_lifecycle_manager
from dispatch.models import Booking
from dispatch.schemas import (
    AcceptOptions,
    AcceptResult,
    AllocationResponse,
    AllotRequest,
    BookingCreate,
    BookingEnriched,
    BookingFilters,
    BookingResponse,
    CancelRequest,
    OfferResponse,
    PaymentRequest,
    ScheduleSlot,
    StartWorkRequest,
)
from dispatch.scopes import DispatchScope

router = APIRouter(prefix="/bookings", tags=["bookings"])


async def _load(booking_id: str) -> Booking:
    booking = await booking_crud.get_booking(booking_id)
    if not booking:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Booking not found"
        )
    return booking


def _is_admin_reader(user: CurrentUser) -> bool:
    return user.is_admin or DispatchScope.ADMIN_READ in user.scopes


def _is_supplier_reader(user: CurrentUser) -> bool:
    return DispatchScope.READ not in user.scopes and user.has_any(
        DispatchScope.FULFIL, DispatchScope.OFFERS
    )


# ---------------------------------------------------------------------------
# Enrichment helper
# ---------------------------------------------------------------------------


async def _enrich(
    bookings: list, current_user: CurrentUser, catalog: CatalogClient
) -> list[BookingEnriched]:
    """Attach catalog item names. Degrades to None when catalog-ms is down."""
    if not bookings:
        return []

    parsed = [BookingResponse.model_validate(b, from_attributes=True) for b in bookings]
    item_ids = {b.item_id for b in parsed if b.item_id}
    resources = await catalog.get_by_ids(item_ids, current_user)
    names = {r.id: r.name for r in resources}

    return [
        BookingEnriched(**b.model_dump(), item_name=names.get(b.item_id))
        for b in parsed
    ]


# ---------------------------------------------------------------------------
# Read endpoints
# ---------------------------------------------------------------------------


@router.get("/schedule", response_model=list[ScheduleSlot])
async def get_supplier_schedule(
    supplier_id: UUID,
    date: date,
    _: CurrentUser = Depends(get_current_user),
) -> list[ScheduleSlot]:
    """
    Occupied windows of a supplier on one day.
    Any authenticated user can call this; no farmer identity is exposed.
    """
    cached = await get_schedule_cache(supplier_id, date)
    if cached is not None:
        logger.debug("Cache hit for schedule: supplier_id={} date={}", supplier_id, date)
        return [ScheduleSlot(**s) for s in cached]

    logger.debug("Cache miss for schedule: supplier_id={} date={}", supplier_id, date)
    commitments = await booking_crud.list_supplier_commitments(supplier_id, date)
    slots = [
        ScheduleSlot(booking_id=b.id, date=b.date, start=b.window_start, end=b.window_end)
        for b in commitments
    ]
    await set_schedule_cache(supplier_id, date, [s.model_dump(mode="json") for s in slots])
    return slots


@router.get("/offers", response_model=list[OfferResponse])
async def list_offers(
    current_user: CurrentUser = Depends(can_see_offers),
    dispatcher: Dispatcher = Depends(get_dispatcher),
) -> list[OfferResponse]:
    """Requests currently visible to the calling supplier."""
    offers = await dispatcher.list_offers(current_user.id)
    return [
        OfferResponse(
            id=o.id,
            booking=BookingResponse.model_validate(o.booking, from_attributes=True),
            resource_id=o.resource_id,
            state=o.state,
            conflict_warning=o.conflict_warning,
            is_direct=o.is_direct,
        )
        for o in offers
    ]


@router.get("/", response_model=list[BookingEnriched])
async def list_bookings(
    filters: BookingFilters = Depends(),
    current_user: CurrentUser = Depends(can_read_booking),
    catalog: CatalogClient = Depends(get_catalog_client),
) -> list[BookingEnriched]:
    if _is_admin_reader(current_user):
        bookings = await booking_crud.list_bookings(filters=filters)
    elif _is_supplier_reader(current_user):
        bookings = await booking_crud.list_bookings(
            filters=filters, supplier_id=current_user.id
        )
    else:
        bookings = await booking_crud.list_bookings(
            filters=filters, farmer_id=current_user.id
        )

    return await _enrich(bookings, current_user, catalog)


@router.get("/{booking_id}", response_model=BookingEnriched)
async def get_booking(
    booking_id: str,
    current_user: CurrentUser = Depends(can_read_booking),
    catalog: CatalogClient = Depends(get_catalog_client),
) -> BookingEnriched:
    if _is_admin_reader(current_user):
        booking = await booking_crud.get_booking(booking_id)
    else:
        booking = await booking_crud.get_booking(booking_id, party_id=current_user.id)

    if not booking:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Booking not found"
        )

    results = await _enrich([booking], current_user, catalog)
    return results[0]


# ---------------------------------------------------------------------------
# Creation and dispatch
# ---------------------------------------------------------------------------


@router.post(
    "/",
    response_model=BookingResponse | list[BookingResponse],
    status_code=status.HTTP_201_CREATED,
)
async def create_booking(
    payload: BookingCreate | list[BookingCreate],
    current_user: CurrentUser = Depends(can_request_booking),
    dispatcher: Dispatcher = Depends(get_dispatcher),
):
    """A single request, or a batch of requests created in one call."""
    if isinstance(payload, list):
        if not payload:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="Batch must contain at least one request",
            )
        return await call_service(dispatcher.dispatch_many(payload, current_user))
    return await call_service(dispatcher.dispatch_booking(payload, current_user))


@router.post("/{booking_id}/accept", response_model=AcceptResult)
async def accept_booking(
    booking_id: str,
    options: AcceptOptions,
    current_user: CurrentUser = Depends(can_fulfil_booking),
    coordinator: AcceptanceCoordinator = Depends(get_acceptance_coordinator),
) -> AcceptResult:
    outcome = await call_service(coordinator.accept(booking_id, current_user, options))
    return AcceptResult(
        booking=BookingResponse.model_validate(outcome.booking, from_attributes=True),
        allocation=(
            AllocationResponse.model_validate(outcome.allocation, from_attributes=True)
            if outcome.allocation is not None
            else None
        ),
        overridden_conflicts=outcome.overridden_conflicts,
    )


@router.post("/{booking_id}/reject", response_model=BookingResponse)
async def reject_booking(
    booking_id: str,
    current_user: CurrentUser = Depends(can_fulfil_booking),
    coordinator: AcceptanceCoordinator = Depends(get_acceptance_coordinator),
) -> BookingResponse:
    return await call_service(coordinator.reject(booking_id, current_user))


@router.post("/{booking_id}/allot", response_model=BookingResponse)
async def allot_booking(
    booking_id: str,
    payload: AllotRequest,
    current_user: CurrentUser = Depends(can_admin_write_booking),
    dispatcher: Dispatcher = Depends(get_dispatcher),
) -> BookingResponse:
    booking = await _load(booking_id)
    return await call_service(
        dispatcher.allot(booking, payload.supplier_id, payload.item_id, current_user)
    )


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


@router.post("/{booking_id}/cancel", response_model=BookingResponse)
async def cancel_booking(
    booking_id: str,
    payload: CancelRequest,
    current_user: CurrentUser = Depends(can_cancel_booking),
    lifecycle: LifecycleManager = Depends(get_lifecycle_manager),
) -> BookingResponse:
    booking = await _load(booking_id)
    return await call_service(lifecycle.cancel(booking, current_user, payload.reason))


@router.post("/{booking_id}/arrive", response_model=BookingResponse)
async def mark_arrived(
    booking_id: str,
    current_user: CurrentUser = Depends(can_fulfil_booking),
    lifecycle: LifecycleManager = Depends(get_lifecycle_manager),
) -> BookingResponse:
    booking = await _load(booking_id)
    return await call_service(lifecycle.mark_arrived(booking, current_user))


@router.post("/{booking_id}/start", response_model=BookingResponse)
async def start_work(
    booking_id: str,
    payload: StartWorkRequest,
    current_user: CurrentUser = Depends(can_fulfil_booking),
    lifecycle: LifecycleManager = Depends(get_lifecycle_manager),
) -> BookingResponse:
    booking = await _load(booking_id)
    return await call_service(lifecycle.start_work(booking, current_user, payload.otp))


@router.post("/{booking_id}/complete", response_model=BookingResponse)
async def complete_work(
    booking_id: str,
    current_user: CurrentUser = Depends(can_fulfil_booking),
    lifecycle: LifecycleManager = Depends(get_lifecycle_manager),
) -> BookingResponse:
    booking = await _load(booking_id)
    return await call_service(lifecycle.complete(booking, current_user))


@router.post("/{booking_id}/pay", response_model=BookingResponse)
async def finalize_payment(
    booking_id: str,
    payload: PaymentRequest,
    current_user: CurrentUser = Depends(can_pay_booking),
    lifecycle: LifecycleManager = Depends(get_lifecycle_manager),
) -> BookingResponse:
    booking = await _load(booking_id)
    return await call_service(
        lifecycle.finalize_payment(booking, current_user, payload.method)
    )


@router.delete(
    "/{booking_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=[Depends(can_admin_delete_booking)],
)
async def delete_booking(booking_id: str) -> None:
    deleted = await booking_crud.delete_booking(booking_id)
    if not deleted:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Booking not found"
        )
