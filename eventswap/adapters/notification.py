"""
EventSwap Platform - Notification Adapter
Fire-and-forget delivery of user notifications (e-mail, in-app).
Delivery never blocks, and never fails, the state transition that caused it.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Set
from uuid import UUID

logger = logging.getLogger("eventswap.notifications")


class NotificationAdapter(ABC):
    @abstractmethod
    async def notify(self, user_id: UUID, category: str, payload: Dict[str, Any]) -> None:
        ...


class LoggingNotificationAdapter(NotificationAdapter):
    """Default sink: writes each notification to the log."""

    async def notify(self, user_id: UUID, category: str, payload: Dict[str, Any]) -> None:
        logger.info("🔔 Notify %s [%s]: %s", user_id, category, payload)


# Strong references to in-flight deliveries so they are not garbage-collected.
_pending: Set[asyncio.Task] = set()


async def _deliver(
    adapter: NotificationAdapter,
    user_id: UUID,
    category: str,
    payload: Dict[str, Any],
) -> None:
    try:
        await adapter.notify(user_id, category, payload)
    except Exception as exc:
        logger.error("Notification %s to %s failed: %s", category, user_id, exc)


def dispatch_notification(
    adapter: NotificationAdapter,
    user_id: UUID,
    category: str,
    payload: Dict[str, Any],
) -> None:
    """Schedule a delivery attempt on the running loop and return immediately."""
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        logger.warning("No running loop, notification %s to %s dropped", category, user_id)
        return
    task = loop.create_task(_deliver(adapter, user_id, category, payload))
    _pending.add(task)
    task.add_done_callback(_pending.discard)


async def drain_notifications() -> None:
    """Wait for in-flight deliveries (shutdown and tests)."""
    if _pending:
        await asyncio.gather(*list(_pending), return_exceptions=True)
