"""
EventSwap Platform - Audit Event Listeners
Automatically logs every state change to transactions, offers, disputes
and payments into an immutable AuditLog table using SQLAlchemy event
listeners.
"""
import asyncio
import json
import logging
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import event, inspect
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from eventswap.models import AuditLog, Dispute, Offer, Payment, Transaction

logger = logging.getLogger("eventswap.audit")

AUDITED_MODELS = (Transaction, Offer, Dispute, Payment)

_session_factory: Optional[async_sessionmaker[AsyncSession]] = None
_pending = set()


def _serialize_value(value):
    """Convert a value to a JSON-serializable format."""
    if value is None:
        return None
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if hasattr(value, "value"):  # Enum
        return value.value
    if isinstance(value, (list, dict, int, float, bool)):
        return value
    return str(value)


def _get_changes(instance) -> dict:
    """
    Inspect a SQLAlchemy instance and return a dict of changed attributes.
    Each key maps to {"old": ..., "new": ...}.
    """
    insp = inspect(instance)
    changes = {}

    for attr in insp.attrs:
        hist = attr.history
        if hist.has_changes():
            old_val = hist.deleted[0] if hist.deleted else None
            new_val = hist.added[0] if hist.added else None
            changes[attr.key] = {
                "old": _serialize_value(old_val),
                "new": _serialize_value(new_val),
            }

    return changes


def _get_snapshot(instance) -> dict:
    insp = inspect(instance)
    return {
        attr.key: _serialize_value(getattr(instance, attr.key, None))
        for attr in insp.mapper.column_attrs
    }


async def _write_audit_log(
    action: str,
    table_name: str,
    record_id: str,
    changes: dict,
    snapshot: dict,
):
    """Write an audit log entry in its own unit of work."""
    try:
        async with _session_factory() as session:
            async with session.begin():
                session.add(AuditLog(
                    action=action,
                    table_name=table_name,
                    record_id=record_id,
                    changes=json.dumps(changes, default=str),
                    snapshot=json.dumps(snapshot, default=str),
                ))

        logger.debug(
            "📝 Audit: %s on %s [%s], %d field(s) changed",
            action, table_name, record_id, len(changes),
        )
    except Exception as exc:
        logger.error("Failed to write audit log for %s [%s]: %s", table_name, record_id, exc)


def _schedule(action: str, target, changes: dict) -> None:
    table_name = target.__tablename__
    snapshot = _get_snapshot(target)
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        logger.info("📝 Audit (sync): %s %s [%s] %s", action, table_name, target.id, list(changes.keys()))
        return
    task = loop.create_task(_write_audit_log(action, table_name, str(target.id), changes, snapshot))
    _pending.add(task)
    task.add_done_callback(_pending.discard)


def _after_insert(mapper, connection, target):
    _schedule("INSERT", target, {})


def _after_update(mapper, connection, target):
    changes = _get_changes(target)
    if changes:
        _schedule("UPDATE", target, changes)


def register_audit_listeners(sessions: async_sessionmaker[AsyncSession]) -> None:
    """
    Register after_insert / after_update listeners on every audited model.
    Audit rows are written through ``sessions``; calling this again only
    swaps the session factory.
    """
    global _session_factory
    _session_factory = sessions

    for model in AUDITED_MODELS:
        if not event.contains(model, "after_insert", _after_insert):
            event.listen(model, "after_insert", _after_insert)
        if not event.contains(model, "after_update", _after_update):
            event.listen(model, "after_update", _after_update)

    logger.info("✅ Audit event listeners registered for %s",
                ", ".join(m.__name__ for m in AUDITED_MODELS))


async def drain_audit() -> None:
    """Wait for in-flight audit writes (shutdown and tests)."""
    if _pending:
        await asyncio.gather(*list(_pending), return_exceptions=True)
