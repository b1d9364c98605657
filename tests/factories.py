"""
All test-data builders in one place.
Import from here in every test file; never define dummy data inline.
"""

from __future__ import annotations

from datetime import UTC, date, datetime
from unittest.mock import AsyncMock, MagicMock
from uuid import UUID, uuid4

from dispatch.crud import booking_crud
from dispatch.deps import CurrentUser
from dispatch.models import Booking, BookingStatus
from dispatch.schemas import Resource
from dispatch.scopes import DispatchScope

# ---------------------------------------------------------------------------
# Stable IDs: use these when a specific, repeatable UUID is needed.
# Call uuid4() inline when you need a fresh one per test.
# ---------------------------------------------------------------------------

FARMER_ID: UUID = uuid4()
AGENT_ID: UUID = uuid4()
SUPPLIER_ID: UUID = uuid4()
OTHER_SUPPLIER_ID: UUID = uuid4()
DRIVER_ID: UUID = uuid4()
ADMIN_ID: UUID = uuid4()

BOOKING_ID = "AGB-TEST1-00001"
TRACTOR_ID = "item-tractor-1"
OTHER_TRACTOR_ID = "item-tractor-2"
DRIVER_ITEM_ID = "item-driver-1"

DAY = date(2030, 6, 1)
NOW = datetime(2030, 5, 30, 9, 0, 0, tzinfo=UTC)


# ---------------------------------------------------------------------------
# User factories
# ---------------------------------------------------------------------------


def make_farmer(
    user_id: UUID = FARMER_ID,
    scopes: list[str] | None = None,
) -> CurrentUser:
    """Farmer with read/write/cancel/pay booking scopes and disputes:raise."""
    if scopes is None:
        scopes = [
            DispatchScope.READ,
            DispatchScope.WRITE,
            DispatchScope.CANCEL,
            DispatchScope.PAY,
            DispatchScope.DISPUTE,
        ]
    return CurrentUser(id=user_id, username=f"farmer_{user_id}", scopes=scopes)


def make_supplier(
    user_id: UUID = SUPPLIER_ID,
    scopes: list[str] | None = None,
) -> CurrentUser:
    """Supplier who sees offers and fulfils bookings."""
    if scopes is None:
        scopes = [DispatchScope.OFFERS, DispatchScope.FULFIL, DispatchScope.DISPUTE]
    return CurrentUser(id=user_id, username=f"supplier_{user_id}", scopes=scopes)


def make_admin() -> CurrentUser:
    """Admin with every admin:bookings:* scope."""
    return CurrentUser(
        id=ADMIN_ID,
        username="admin",
        scopes=[
            "admin:scopes",
            DispatchScope.READ,
            DispatchScope.ADMIN,
            DispatchScope.ADMIN_READ,
            DispatchScope.ADMIN_WRITE,
            DispatchScope.ADMIN_DELETE,
            DispatchScope.ADMIN_DISPUTES,
        ],
    )


# ---------------------------------------------------------------------------
# Catalog resources
# ---------------------------------------------------------------------------


def resource_dict(**overrides) -> dict:
    """catalog-ms item as returned over HTTP."""
    base = dict(
        id=TRACTOR_ID,
        name="Mahindra 575",
        category="Tractors",
        owner_id=str(SUPPLIER_ID),
        purposes=[{"name": "Ploughing", "price": "500"}],
        available=True,
        status="approved",
        quantity_available=None,
        operator_charge="100",
        model="575 DI",
    )
    return {**base, **overrides}


def make_resource(**overrides) -> Resource:
    return Resource.model_validate(resource_dict(**overrides))


def make_driver_resource(**overrides) -> Resource:
    base = dict(
        id=DRIVER_ITEM_ID,
        name="Driver Ramesh",
        category="Drivers",
        owner_id=str(DRIVER_ID),
        purposes=[{"name": "Driving", "price": "150"}],
        operator_charge=None,
        model=None,
    )
    return make_resource(**{**base, **overrides})


def make_labour_resource(**overrides) -> Resource:
    base = dict(
        id="item-labour-1",
        name="Harvest crew",
        category="Labour",
        purposes=[{"name": "Harvesting", "price": "80"}],
        quantity_available=6,
        operator_charge=None,
    )
    return make_resource(**{**base, **overrides})


def make_catalog(*resources: Resource) -> MagicMock:
    """CatalogClient mock serving `resources` from memory."""
    by_id = {r.id: r for r in resources}

    async def _get_resource(resource_id, user=None):
        return by_id.get(str(resource_id))

    async def _list_approved(category=None, user=None):
        return [
            r
            for r in resources
            if r.status == "approved" and (category is None or r.category == category)
        ]

    mock = MagicMock()
    mock.get_resource = AsyncMock(side_effect=_get_resource)
    mock.list_approved_resources = AsyncMock(side_effect=_list_approved)
    mock.get_by_ids = AsyncMock(return_value=list(resources))
    return mock


def make_notifier() -> MagicMock:
    mock = MagicMock()
    mock.notify = AsyncMock(return_value=True)
    mock.notify_many = AsyncMock(return_value=None)
    return mock


def notified_messages(notifier: MagicMock) -> list[tuple]:
    """Flatten notify/notify_many calls into (targets, message) pairs."""
    sent = [([c.args[0]], c.args[1]) for c in notifier.notify.await_args_list]
    sent += [(list(c.args[0]), c.args[1]) for c in notifier.notify_many.await_args_list]
    return sent


# ---------------------------------------------------------------------------
# Response dict factories (mirror what the CRUD layer returns)
# ---------------------------------------------------------------------------


def booking_response(**overrides) -> dict:
    base = dict(
        id=BOOKING_ID,
        farmer_id=str(FARMER_ID),
        supplier_id=None,
        item_id=None,
        operator_id=None,
        booked_by_agent_id=None,
        item_category="Tractors",
        work_purpose="Ploughing",
        quantity=None,
        remaining_quantity=None,
        allow_multiple_suppliers=False,
        preferred_model=None,
        operator_required=False,
        location="Village road 4",
        additional_instructions=None,
        date=DAY.isoformat(),
        start_time="08:00",
        estimated_duration=3.0,
        end_time=None,
        status=BookingStatus.SEARCHING.value,
        version=1,
        final_price=None,
        dispute_raised=False,
        dispute_resolved=False,
        damage_reported=False,
        updated_at=NOW.isoformat(),
    )
    return {**base, **overrides}


def damage_report_response(**overrides) -> dict:
    base = dict(
        id=1,
        booking_id=BOOKING_ID,
        item_id=TRACTOR_ID,
        reporter_id=str(SUPPLIER_ID),
        description="Rear tyre punctured",
        status="pending",
        created_at=NOW.isoformat(),
        resolved_at=None,
    )
    return {**base, **overrides}


# ---------------------------------------------------------------------------
# Request payload factories
# ---------------------------------------------------------------------------


def booking_create_payload(**overrides) -> dict:
    base = dict(
        item_category="Tractors",
        work_purpose="Ploughing",
        date=DAY.isoformat(),
        start_time="08:00",
        estimated_duration=3,
        location="Village road 4",
    )
    return {**base, **overrides}


# ---------------------------------------------------------------------------
# Database rows (engine tests)
# ---------------------------------------------------------------------------


async def create_booking(**overrides) -> Booking:
    base = dict(
        farmer_id=FARMER_ID,
        item_category="Tractors",
        work_purpose="Ploughing",
        date=DAY,
        start_time="08:00",
        estimated_duration=3.0,
        status=BookingStatus.SEARCHING,
    )
    return await booking_crud.create_booking(**{**base, **overrides})
