from fastapi import APIRouter, Depends

from dispatch.crud import booking_crud
from dispatch.deps import (
    CurrentUser,
    can_raise_dispute,
    can_resolve_disputes,
)
from dispatch.disputes import DisputeResolver, get_dispute_resolver
from dispatch.errors import call_service
from dispatch.models import DamageStatus
from dispatch.schemas import BookingResponse, DamageReportCreate, DamageReportResponse

router = APIRouter(tags=["disputes"])


@router.post("/bookings/{booking_id}/dispute", response_model=BookingResponse)
async def raise_dispute(
    booking_id: str,
    current_user: CurrentUser = Depends(can_raise_dispute),
    resolver: DisputeResolver = Depends(get_dispute_resolver),
) -> BookingResponse:
    return await call_service(resolver.raise_dispute(booking_id, current_user))


@router.post("/bookings/{booking_id}/dispute/resolve", response_model=BookingResponse)
async def resolve_dispute(
    booking_id: str,
    current_user: CurrentUser = Depends(can_resolve_disputes),
    resolver: DisputeResolver = Depends(get_dispute_resolver),
) -> BookingResponse:
    return await call_service(resolver.resolve_dispute(booking_id, current_user))


@router.post(
    "/bookings/{booking_id}/damage",
    response_model=DamageReportResponse,
    status_code=201,
)
async def report_damage(
    booking_id: str,
    payload: DamageReportCreate,
    current_user: CurrentUser = Depends(can_raise_dispute),
    resolver: DisputeResolver = Depends(get_dispute_resolver),
) -> DamageReportResponse:
    return await call_service(
        resolver.report_damage(booking_id, current_user, payload.description)
    )


@router.get("/damage-reports", response_model=list[DamageReportResponse])
async def list_damage_reports(
    status: DamageStatus | None = None,
    _: CurrentUser = Depends(can_resolve_disputes),
) -> list[DamageReportResponse]:
    return await booking_crud.list_damage_reports(status)


@router.post("/damage-reports/{report_id}/resolve", response_model=DamageReportResponse)
async def resolve_damage_report(
    report_id: int,
    current_user: CurrentUser = Depends(can_resolve_disputes),
    resolver: DisputeResolver = Depends(get_dispute_resolver),
) -> DamageReportResponse:
    return await call_service(resolver.resolve_damage_claim(report_id, current_user))
