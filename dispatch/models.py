import secrets
import string
from datetime import date, datetime, time, timedelta
from enum import StrEnum

from tortoise import fields
from tortoise.models import Model

DEFAULT_DURATION_HOURS = 3.0

_ID_ALPHABET = string.ascii_uppercase + string.digits


def _id_part() -> str:
    return "".join(secrets.choice(_ID_ALPHABET) for _ in range(5))


def generate_booking_id() -> str:
    return f"AGB-{_id_part()}-{_id_part()}"


class BookingStatus(StrEnum):
    SEARCHING = "Searching"  # broadcast, visible to every eligible supplier
    PENDING_CONFIRMATION = "Pending Confirmation"  # direct request to one supplier
    AWAITING_OPERATOR = "Awaiting Operator"  # machine secured, looking for a driver
    CONFIRMED = "Confirmed"
    ARRIVED = "Arrived"
    IN_PROCESS = "In Process"
    PENDING_PAYMENT = "Pending Payment"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"
    EXPIRED = "Expired"


# Statuses that no longer hold any supplier time
INACTIVE_STATUSES = (
    BookingStatus.CANCELLED,
    BookingStatus.EXPIRED,
    BookingStatus.COMPLETED,
)
ACCEPTABLE_STATUSES = (
    BookingStatus.SEARCHING,
    BookingStatus.PENDING_CONFIRMATION,
    BookingStatus.AWAITING_OPERATOR,
)
# Unanswered requests; these lapse once their window has passed
EXPIRABLE_STATUSES = (BookingStatus.SEARCHING, BookingStatus.PENDING_CONFIRMATION)


class CancellationKind(StrEnum):
    WITHDRAWN = "withdrawn"  # farmer withdrew before anyone accepted
    CALLED_OFF = "called_off"  # cancelled after a supplier committed


class AllocationStatus(StrEnum):
    ACTIVE = "active"
    CANCELLED = "cancelled"


class OfferState(StrEnum):
    OPEN = "open"
    ACCEPTED = "accepted"
    REJECTED = "rejected"  # supplier declined
    WITHDRAWN = "withdrawn"  # booking taken elsewhere, cancelled or expired


class DamageStatus(StrEnum):
    PENDING = "pending"
    RESOLVED = "resolved"


class PaymentMethod(StrEnum):
    CASH = "Cash"
    ONLINE = "Online"


class TimestampedModel(Model):
    created_at = fields.DatetimeField(auto_now_add=True)
    updated_at = fields.DatetimeField(auto_now=True)

    class Meta:  # type: ignore
        abstract = True


class Booking(TimestampedModel):
    id = fields.CharField(primary_key=True, max_length=15, default=generate_booking_id)

    farmer_id = fields.UUIDField()
    supplier_id = fields.UUIDField(null=True)  # set once accepted or directly addressed
    item_id = fields.CharField(max_length=64, null=True)
    operator_id = fields.UUIDField(null=True)
    booked_by_agent_id = fields.UUIDField(null=True)

    item_category = fields.CharField(max_length=64)
    work_purpose = fields.CharField(max_length=128)
    quantity = fields.IntField(null=True)
    remaining_quantity = fields.IntField(null=True)
    allow_multiple_suppliers = fields.BooleanField(default=False)
    preferred_model = fields.CharField(max_length=128, null=True)
    operator_required = fields.BooleanField(default=False)
    location = fields.CharField(max_length=255, null=True)
    additional_instructions = fields.TextField(null=True)

    date = fields.DateField()
    start_time = fields.CharField(max_length=5)  # "HH:MM", farm-local wall clock
    estimated_duration = fields.FloatField(null=True)  # hours
    end_time = fields.CharField(max_length=5, null=True)

    status = fields.CharEnumField(BookingStatus, default=BookingStatus.SEARCHING)
    version = fields.IntField(default=1)  # optimistic concurrency token

    final_price = fields.DecimalField(max_digits=12, decimal_places=2, null=True)
    otp_code = fields.CharField(max_length=6, null=True)
    otp_verified = fields.BooleanField(default=False)
    work_start_time = fields.DatetimeField(null=True)
    work_end_time = fields.DatetimeField(null=True)
    payment_method = fields.CharEnumField(PaymentMethod, null=True)

    dispute_raised = fields.BooleanField(default=False)
    dispute_resolved = fields.BooleanField(default=False)
    damage_reported = fields.BooleanField(default=False)

    cancellation_reason = fields.TextField(null=True)
    cancellation_kind = fields.CharEnumField(CancellationKind, null=True)
    is_rebroadcast = fields.BooleanField(default=False)
    search_timeout_notified = fields.BooleanField(default=False)
    manually_allotted_by = fields.UUIDField(null=True)

    class Meta:  # type: ignore
        table = "bookings"
        ordering = ["-created_at"]
        indexes = (("item_category", "work_purpose", "date"),)

    @property
    def is_splittable(self) -> bool:
        return bool(self.allow_multiple_suppliers and self.quantity)

    @property
    def duration_hours(self) -> float:
        return booking_duration_hours(self.start_time, self.end_time, self.estimated_duration)

    @property
    def window_start(self) -> datetime:
        return datetime.combine(self.date, parse_hhmm(self.start_time))

    @property
    def window_end(self) -> datetime:
        return self.window_start + timedelta(hours=self.duration_hours)

    def window_elapsed(self, now: datetime) -> bool:
        return now >= self.window_end


class Allocation(TimestampedModel):
    """A committed sub-quantity of a splittable booking held by one supplier."""

    id = fields.IntField(primary_key=True)
    booking: fields.ForeignKeyRelation[Booking] = fields.ForeignKeyField(
        "models.Booking", related_name="allocations", on_delete=fields.CASCADE
    )
    supplier_id = fields.UUIDField()
    resource_id = fields.CharField(max_length=64)
    quantity = fields.IntField()
    final_price = fields.DecimalField(max_digits=12, decimal_places=2, null=True)
    status = fields.CharEnumField(AllocationStatus, default=AllocationStatus.ACTIVE)

    class Meta:  # type: ignore
        table = "allocations"


class BookingOffer(TimestampedModel):
    """Visibility of one booking to one supplier (the supplier's inbox row)."""

    id = fields.IntField(primary_key=True)
    booking: fields.ForeignKeyRelation[Booking] = fields.ForeignKeyField(
        "models.Booking", related_name="offers", on_delete=fields.CASCADE
    )
    supplier_id = fields.UUIDField(db_index=True)
    resource_id = fields.CharField(max_length=64, null=True)
    state = fields.CharEnumField(OfferState, default=OfferState.OPEN)
    conflict_warning = fields.BooleanField(default=False)
    is_direct = fields.BooleanField(default=False)

    class Meta:  # type: ignore
        table = "booking_offers"
        unique_together = (("booking", "supplier_id"),)


class DamageReport(TimestampedModel):
    id = fields.IntField(primary_key=True)
    booking: fields.OneToOneRelation[Booking] = fields.OneToOneField(
        "models.Booking", related_name="damage_report", on_delete=fields.CASCADE
    )
    item_id = fields.CharField(max_length=64, null=True)
    reporter_id = fields.UUIDField()
    description = fields.TextField()
    status = fields.CharEnumField(DamageStatus, default=DamageStatus.PENDING)
    resolved_at = fields.DatetimeField(null=True)

    class Meta:  # type: ignore
        table = "damage_reports"
        ordering = ["-created_at"]


# ---------------------------------------------------------------------------
# Scheduling helpers shared by models, schemas and the conflict detector
# ---------------------------------------------------------------------------


def parse_hhmm(value: str) -> time:
    hours, minutes = value.split(":")[:2]
    return time(int(hours), int(minutes))


def booking_duration_hours(
    start_time: str, end_time: str | None, estimated_duration: float | None
) -> float:
    """estimated_duration wins; else end - start; else the 3h default."""
    if estimated_duration:
        return float(estimated_duration)
    if not end_time:
        return DEFAULT_DURATION_HOURS
    start = datetime.combine(date.min, parse_hhmm(start_time))
    end = datetime.combine(date.min, parse_hhmm(end_time))
    hours = (end - start).total_seconds() / 3600
    return hours if hours > 0 else DEFAULT_DURATION_HOURS
