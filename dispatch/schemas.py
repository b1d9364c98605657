from __future__ import annotations

import datetime as dt
from datetime import datetime, time
from decimal import ROUND_HALF_UP, Decimal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from dispatch.models import (
    BookingStatus,
    CancellationKind,
    DamageStatus,
    OfferState,
    PaymentMethod,
)

MACHINE_CATEGORIES = frozenset({"Tractors", "Harvesters", "JCB", "Borewell"})


# ---------------------------------------------------------------------------
# Catalog view (read-only, owned by catalog-ms)
# ---------------------------------------------------------------------------


class PurposePrice(BaseModel):
    name: str
    price: Decimal


class Resource(BaseModel):
    """An item or labour offering as the catalog service describes it."""

    id: str
    name: str | None = None
    category: str
    owner_id: UUID
    purposes: list[PurposePrice] = Field(default_factory=list)
    available: bool = True
    status: str = "pending"
    quantity_available: int | None = None
    operator_charge: Decimal | None = None
    model: str | None = None

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, v):
        return str(v)

    @property
    def is_dispatchable(self) -> bool:
        return self.status == "approved" and self.available

    @property
    def is_machine(self) -> bool:
        return self.category in MACHINE_CATEGORIES

    def supports(self, purpose: str) -> bool:
        return any(p.name == purpose for p in self.purposes)

    def price_for(self, purpose: str) -> Decimal | None:
        for p in self.purposes:
            if p.name == purpose:
                return p.price
        return None

    def quote(
        self,
        purpose: str,
        duration_hours: float,
        quantity: int = 1,
        with_operator: bool = False,
    ) -> Decimal:
        """Hourly purpose price x quantity x hours, plus the operator charge."""
        hours = Decimal(str(duration_hours))
        unit = self.price_for(purpose)
        if unit is None:
            # Operators are priced on their first listed purpose
            unit = self.purposes[0].price if self.purposes else Decimal("0")
        total = unit * quantity * hours
        if with_operator and self.operator_charge:
            total += self.operator_charge * hours
        return total.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


# ---------------------------------------------------------------------------
# Booking requests
# ---------------------------------------------------------------------------


class BookingCreate(BaseModel):
    item_category: str = Field(min_length=1, max_length=64)
    work_purpose: str = Field(min_length=1, max_length=128)
    date: dt.date
    start_time: time
    estimated_duration: float | None = Field(default=None, gt=0, le=24)
    end_time: time | None = None

    item_id: str | None = None  # direct request for a specific resource
    supplier_id: UUID | None = None  # direct request for a specific supplier

    quantity: int | None = Field(default=None, ge=1)
    allow_multiple_suppliers: bool = False
    preferred_model: str | None = Field(default=None, max_length=128)
    operator_required: bool = False
    location: str | None = Field(default=None, max_length=255)
    additional_instructions: str | None = Field(default=None, max_length=1000)

    # Agents book on behalf of a farmer
    farmer_id: UUID | None = None

    @model_validator(mode="after")
    def validate_window(self) -> BookingCreate:
        if self.end_time is not None and self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        if self.allow_multiple_suppliers and not self.quantity:
            raise ValueError("allow_multiple_suppliers requires a quantity")
        return self


class AcceptOptions(BaseModel):
    resource_id: str
    operate_self: bool | None = None
    quantity: int | None = Field(default=None, ge=1)
    accept_remainder: bool = False
    confirm_conflicts: bool = False


class CancelRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=1000)

    @field_validator("reason")
    @classmethod
    def not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("reason must not be blank")
        return v.strip()


class AllotRequest(BaseModel):
    supplier_id: UUID
    item_id: str | None = None


class StartWorkRequest(BaseModel):
    otp: str = Field(min_length=6, max_length=6)


class PaymentRequest(BaseModel):
    method: PaymentMethod = PaymentMethod.CASH


class DamageReportCreate(BaseModel):
    description: str = Field(min_length=1, max_length=4000)


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------


class BookingResponse(BaseModel):
    id: str
    farmer_id: UUID
    supplier_id: UUID | None
    item_id: str | None
    operator_id: UUID | None
    booked_by_agent_id: UUID | None = None
    item_category: str
    work_purpose: str
    quantity: int | None
    remaining_quantity: int | None
    allow_multiple_suppliers: bool
    preferred_model: str | None
    operator_required: bool
    location: str | None
    additional_instructions: str | None = None
    date: dt.date
    start_time: time
    estimated_duration: float | None
    end_time: time | None
    status: BookingStatus
    version: int
    final_price: Decimal | None
    otp_verified: bool = False
    payment_method: PaymentMethod | None = None
    dispute_raised: bool
    dispute_resolved: bool
    damage_reported: bool
    cancellation_reason: str | None = None
    cancellation_kind: CancellationKind | None = None
    is_rebroadcast: bool = False
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class BookingEnriched(BookingResponse):
    item_name: str | None = None


class AllocationResponse(BaseModel):
    id: int
    booking_id: str
    supplier_id: UUID
    resource_id: str
    quantity: int
    final_price: Decimal | None

    model_config = ConfigDict(from_attributes=True)


class AcceptResult(BaseModel):
    booking: BookingResponse
    allocation: AllocationResponse | None = None
    overridden_conflicts: list[str] = Field(default_factory=list)


class OfferResponse(BaseModel):
    id: int
    booking: BookingResponse
    resource_id: str | None
    state: OfferState
    conflict_warning: bool
    is_direct: bool


class ScheduleSlot(BaseModel):
    """Occupied window for a supplier; no farmer identity exposed."""

    booking_id: str
    date: dt.date
    start: datetime
    end: datetime


class DamageReportResponse(BaseModel):
    id: int
    booking_id: str
    item_id: str | None
    reporter_id: UUID
    description: str
    status: DamageStatus
    created_at: datetime
    resolved_at: datetime | None

    model_config = ConfigDict(from_attributes=True)


class BookingFilters(BaseModel):
    """Bind to a FastAPI route via Depends(BookingFilters)."""

    status: BookingStatus | None = None
    item_category: str | None = None
    date: dt.date | None = None

    # Pagination
    page: int = Field(default=1, ge=1)
    page_size: int = Field(default=20, ge=1, le=100)
