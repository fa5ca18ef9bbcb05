import json

import pytest
import pytest_asyncio
from sqlalchemy import event, select

from conftest import held_transaction
from eventswap import audit
from eventswap.models import AuditLog


@pytest_asyncio.fixture
async def audited(sessions):
    audit.register_audit_listeners(sessions)
    yield
    await audit.drain_audit()
    for model in audit.AUDITED_MODELS:
        event.remove(model, "after_insert", audit._after_insert)
        event.remove(model, "after_update", audit._after_update)


class TestAuditTrail:
    @pytest.mark.asyncio
    async def test_status_changes_are_recorded(self, audited, sessions, escrow, listing, buyer):
        txn, _ = await held_transaction(escrow, listing, buyer)
        await audit.drain_audit()

        async with sessions() as session:
            rows = list(await session.scalars(select(AuditLog).where(AuditLog.record_id == str(txn.id))))

        assert [row.action for row in rows].count("INSERT") == 1
        updates = [json.loads(row.changes) for row in rows if row.action == "UPDATE"]
        new_statuses = [change["status"]["new"] for change in updates if "status" in change]
        assert sorted(new_statuses) == ["AWAITING_PAYMENT", "ESCROW_HELD", "PAYMENT_CONFIRMED"]
        assert all(json.loads(row.snapshot)["buyer_total"] == "1050.00" for row in rows)

    @pytest.mark.asyncio
    async def test_registration_is_idempotent(self, sessions):
        audit.register_audit_listeners(sessions)
        audit.register_audit_listeners(sessions)
        try:
            for model in audit.AUDITED_MODELS:
                assert event.contains(model, "after_insert", audit._after_insert)
        finally:
            for model in audit.AUDITED_MODELS:
                event.remove(model, "after_insert", audit._after_insert)
                event.remove(model, "after_update", audit._after_update)
