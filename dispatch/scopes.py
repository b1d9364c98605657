from enum import StrEnum


class DispatchScope(StrEnum):
    # Farmer (requester) scopes
    READ = "bookings:read"  # view own bookings
    WRITE = "bookings:write"  # request equipment or labour
    CANCEL = "bookings:cancel"  # cancel own booking
    PAY = "bookings:pay"  # finalize payment on own booking

    # Supplier scopes
    OFFERS = "bookings:offers"  # see requests offered to you
    FULFIL = "bookings:fulfil"  # accept / reject / advance bookings you serve

    # Shared by both parties
    DISPUTE = "disputes:raise"

    # Admin scopes
    ADMIN = "admin:bookings"
    ADMIN_READ = "admin:bookings:read"
    ADMIN_WRITE = "admin:bookings:write"
    ADMIN_DELETE = "admin:bookings:delete"
    ADMIN_DISPUTES = "admin:disputes"


DISPATCH_SCOPE_DESCRIPTIONS: dict[str, str] = {
    DispatchScope.READ: "View your own booking requests.",
    DispatchScope.WRITE: "Request equipment or labour for your farm.",
    DispatchScope.CANCEL: "Cancel your own booking request.",
    DispatchScope.PAY: "Record the final payment on your booking.",
    DispatchScope.OFFERS: "See booking requests offered to you as a supplier.",
    DispatchScope.FULFIL: "Accept, reject and advance bookings you supply.",
    DispatchScope.DISPUTE: "Raise a dispute or report damage on your booking.",
    DispatchScope.ADMIN_READ: "Read any booking regardless of party (admin).",
    DispatchScope.ADMIN_WRITE: "Cancel or allot any booking (admin).",
    DispatchScope.ADMIN_DELETE: "Hard-delete any booking (admin).",
    DispatchScope.ADMIN_DISPUTES: "Resolve disputes and damage claims (admin).",
}
