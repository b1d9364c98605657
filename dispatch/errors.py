"""
Typed outcomes of the dispatch engine.

Services raise these; routers translate them into HTTP responses with
`to_http`. None of them is fatal: each one concerns a single booking and the
caller can re-read the booking and decide what to do next.
"""

from __future__ import annotations

from typing import Any, Awaitable, TypeVar

from fastapi import HTTPException, status

T = TypeVar("T")


class DispatchError(Exception):
    status_code: int = status.HTTP_400_BAD_REQUEST
    default_detail: str = "Dispatch error"

    def __init__(self, detail: Any = None) -> None:
        self.detail = detail if detail is not None else self.default_detail
        super().__init__(str(self.detail))

    def to_http(self) -> HTTPException:
        return HTTPException(status_code=self.status_code, detail=self.detail)


class BookingNotFound(DispatchError):
    status_code = status.HTTP_404_NOT_FOUND
    default_detail = "Booking not found"


class DamageReportNotFound(DispatchError):
    status_code = status.HTTP_404_NOT_FOUND
    default_detail = "Damage report not found"


class InvalidTransition(DispatchError):
    status_code = status.HTTP_409_CONFLICT
    default_detail = "Action not permitted in the booking's current state"


class ResourceUnavailable(DispatchError):
    status_code = status.HTTP_409_CONFLICT
    default_detail = "Resource is not available"


class QuantityExceeded(DispatchError):
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    default_detail = "Requested quantity exceeds what is remaining"


class ConcurrentModification(DispatchError):
    status_code = status.HTTP_409_CONFLICT
    default_detail = "Booking was modified concurrently, re-fetch and retry"


class InvalidOtp(DispatchError):
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = "Invalid OTP"


class PermissionDenied(DispatchError):
    status_code = status.HTTP_403_FORBIDDEN
    default_detail = "Not allowed to act on this booking"


class ConflictDetected(DispatchError):
    """
    A warning, not a failure: the supplier already has overlapping work.
    Retrying with `confirm_conflicts=true` commits anyway.
    """

    status_code = status.HTTP_409_CONFLICT

    def __init__(self, conflicts: list[dict]) -> None:
        self.conflicts = conflicts
        super().__init__(
            {
                "message": "Booking overlaps existing commitments; "
                "resubmit with confirm_conflicts=true to accept anyway",
                "conflicts": conflicts,
            }
        )


async def call_service(call: Awaitable[T]) -> T:
    """Await a service call, turning dispatch errors into HTTP responses."""
    try:
        return await call
    except DispatchError as exc:
        raise exc.to_http() from exc
