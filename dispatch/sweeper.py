"""
Background sweep: expires requests whose scheduled time passed with nobody
accepting them, and nudges farmers whose broadcast has gone unanswered.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

from loguru import logger

from dispatch import settings
from dispatch.crud import booking_crud
from dispatch.deps import ADMIN_TARGET, NotificationsClient, get_notifications_client
from dispatch.errors import DispatchError
from dispatch.lifecycle import LifecycleManager


async def expire_elapsed(notifier: NotificationsClient, now: datetime | None = None) -> list[str]:
    """Expire Searching / Pending Confirmation bookings whose window has elapsed."""
    now = now or datetime.now()
    lifecycle = LifecycleManager(notifier)
    expired = []
    for booking in await booking_crud.list_expiry_candidates(now.date()):
        if not booking.window_elapsed(now):
            continue
        try:
            await lifecycle.expire(booking)
        except DispatchError as exc:
            # Accepted or cancelled since we read it
            logger.debug("Skipping expiry of {}: {}", booking.id, exc.detail)
            continue
        except Exception:
            logger.exception("Failed to expire booking {}", booking.id)
            continue
        expired.append(booking.id)
    if expired:
        logger.info("Expired {} bookings", len(expired))
    return expired


async def notify_search_timeouts(
    notifier: NotificationsClient, now: datetime | None = None
) -> list[str]:
    """Tell the farmer (and admin) once when a broadcast has waited too long."""
    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(hours=settings.SEARCH_TIMEOUT_HOURS)
    notified = []
    for booking in await booking_crud.list_search_timeouts(cutoff):
        if not await booking_crud.update_if(
            booking, {"search_timeout_notified": False}, search_timeout_notified=True
        ):
            continue
        await notifier.notify(
            booking.farmer_id,
            f"No supplier has accepted your {booking.item_category} request "
            f"{booking.id} yet. We are still searching.",
        )
        await notifier.notify(
            ADMIN_TARGET,
            f"Booking {booking.id} has been searching for over "
            f"{settings.SEARCH_TIMEOUT_HOURS:g} hours.",
            "admin",
        )
        notified.append(booking.id)
    return notified


async def sweep_once(notifier: NotificationsClient) -> None:
    await expire_elapsed(notifier)
    await notify_search_timeouts(notifier)


async def sweep_loop(stop_event: asyncio.Event, notifier: NotificationsClient | None = None):
    notifier = notifier or get_notifications_client()
    logger.info("Sweeper started (every {}s)", settings.SWEEP_INTERVAL_SECONDS)
    while not stop_event.is_set():
        try:
            await sweep_once(notifier)
        except Exception:
            logger.exception("Sweep failed")
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=settings.SWEEP_INTERVAL_SECONDS)
        except asyncio.TimeoutError:
            continue
    logger.info("Sweeper stopped")
