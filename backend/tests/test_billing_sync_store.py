"""
Tests for the billing reconciliation store with a mocked AsyncSession.

``db.execute`` is queued with results whose ``scalar_one_or_none`` /
``scalars().all()`` return the rows each lookup should see.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from app.models.billing_sync import BillingSyncRecord
from app.services import billing_sync_store as store


def _result(row=None, rows=None) -> MagicMock:
    result = MagicMock()
    result.scalar_one_or_none.return_value = row
    result.scalars.return_value.all.return_value = rows or []
    return result


def _db(*results) -> MagicMock:
    db = MagicMock()
    db.execute = AsyncMock(side_effect=list(results))
    db.add = MagicMock()
    db.flush = AsyncMock()
    db.refresh = AsyncMock()
    db.commit = AsyncMock()
    return db


def _record(**values) -> BillingSyncRecord:
    defaults = dict(event_id="evt_1", payment_intent_id="pi_1", status="received", customer_email="a@b.com")
    defaults.update(values)
    return BillingSyncRecord(**defaults)


# ---------------------------------------------------------------------------
# Patch validation and merge
# ---------------------------------------------------------------------------

class TestPatchRules:

    def test_unknown_field_rejected(self):
        with pytest.raises(ValueError, match="Unknown billing sync field"):
            store._validate_patch({"colour": "red"})

    def test_unknown_status_rejected(self):
        with pytest.raises(ValueError, match="Invalid billing sync status"):
            store._validate_patch({"status": "done"})

    def test_merge_preserves_unspecified_and_none(self):
        record = _record(patient_id="P1", charge_id="C1")
        store._merge(record, {"status": "synced", "charge_id": None})
        assert record.status == "synced"
        assert record.charge_id == "C1"
        assert record.patient_id == "P1"

    def test_merge_never_overwrites_event_id(self):
        record = _record(event_id="evt_original")
        store._merge(record, {"event_id": "evt_other"})
        assert record.event_id == "evt_original"

    def test_synthetic_event_id_shape(self):
        assert store.synthetic_event_id("pi_9").startswith("evt_sync_pi_9_")

    def test_merge_never_reopens_synced_row(self):
        record = _record(status="synced", charge_id="C1")
        store._merge(record, {"status": "received", "amount_cents": 900})
        assert record.status == "synced"
        assert record.amount_cents == 900

    def test_merge_allows_stored_to_synced(self):
        record = _record(status="stored")
        store._merge(record, {"status": "synced"})
        assert record.status == "synced"


# ---------------------------------------------------------------------------
# Upserts
# ---------------------------------------------------------------------------

class TestUpsertByEventId:

    @pytest.mark.asyncio
    async def test_inserts_with_received_default(self):
        db = _db(_result(None))
        record = await store.upsert_by_event_id(db, "evt_new", {"customer_email": "x@y.com", "amount_cents": 500})

        db.add.assert_called_once()
        assert record.event_id == "evt_new"
        assert record.status == "received"
        assert record.amount_cents == 500
        db.flush.assert_awaited()
        db.commit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_merges_into_existing(self):
        existing = _record(event_id="evt_1")
        db = _db(_result(existing))
        record = await store.upsert_by_event_id(db, "evt_1", {"status": "synced", "charge_id": "C9"})

        assert record is existing
        assert existing.status == "synced"
        assert existing.charge_id == "C9"
        db.add.assert_not_called()

    @pytest.mark.asyncio
    async def test_falls_back_to_payment_intent(self):
        existing = _record(event_id="evt_first", payment_intent_id="pi_1")
        db = _db(_result(None), _result(existing))
        record = await store.upsert_by_event_id(db, "evt_second", {"payment_intent_id": "pi_1", "status": "stored"})

        assert record is existing
        assert existing.event_id == "evt_first"
        assert existing.status == "stored"
        db.add.assert_not_called()

    @pytest.mark.asyncio
    async def test_requires_event_id(self):
        with pytest.raises(ValueError):
            await store.upsert_by_event_id(_db(), "", {})


class TestUpsertByPaymentIntentId:

    @pytest.mark.asyncio
    async def test_insert_uses_supplied_event_id(self):
        db = _db(_result(None), _result(None))
        record = await store.upsert_by_payment_intent_id(db, "pi_5", {"event_id": "evt_5", "amount_cents": 100})

        assert record.event_id == "evt_5"
        assert record.payment_intent_id == "pi_5"
        assert record.status == "received"

    @pytest.mark.asyncio
    async def test_insert_without_event_id_is_synthetic(self):
        db = _db(_result(None))
        record = await store.upsert_by_payment_intent_id(db, "pi_6", {"amount_cents": 100})
        assert record.event_id.startswith("evt_sync_pi_6_")

    @pytest.mark.asyncio
    async def test_second_delivery_for_same_intent_merges(self):
        existing = _record(event_id="evt_a", payment_intent_id="pi_7")
        db = _db(_result(existing))
        record = await store.upsert_by_payment_intent_id(db, "pi_7", {"event_id": "evt_b", "status": "received"})

        assert record is existing
        assert existing.event_id == "evt_a"
        db.add.assert_not_called()


# ---------------------------------------------------------------------------
# Update and listing
# ---------------------------------------------------------------------------

class TestUpdateByEventId:

    @pytest.mark.asyncio
    async def test_missing_row_returns_none_and_inserts_nothing(self):
        db = _db(_result(None))
        assert await store.update_by_event_id(db, "evt_missing", {"status": "synced"}) is None
        db.add.assert_not_called()
        db.flush.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_existing_row_is_patched(self):
        existing = _record()
        db = _db(_result(existing))
        record = await store.update_by_event_id(db, "evt_1", {"status": "synced", "payment_id": "PMT1"})
        assert record.payment_id == "PMT1"
        assert record.status == "synced"

    @pytest.mark.asyncio
    async def test_invalid_status_rejected_before_lookup(self):
        db = _db()
        with pytest.raises(ValueError):
            await store.update_by_event_id(db, "evt_1", {"status": "bogus"})
        db.execute.assert_not_awaited()


@pytest.mark.asyncio
async def test_list_recent_for_email_dedupes_by_payment_intent():
    rows = [
        _record(event_id="evt_3", payment_intent_id="pi_b"),
        _record(event_id="evt_2", payment_intent_id="pi_a"),
        _record(event_id="evt_1", payment_intent_id="pi_a"),
    ]
    db = _db(_result(rows=rows))
    records = await store.list_recent_for_email(db, "a@b.com", limit=10)
    assert [r.event_id for r in records] == ["evt_3", "evt_2"]


@pytest.mark.asyncio
async def test_get_by_event_id_empty_key_skips_query():
    db = _db()
    assert await store.get_by_event_id(db, "") is None
    db.execute.assert_not_awaited()


# ---------------------------------------------------------------------------
# Sync claims
# ---------------------------------------------------------------------------

class TestSyncClaim:

    @pytest.mark.asyncio
    async def test_claim_won_when_one_row_updated(self):
        db = _db(MagicMock(rowcount=1))
        assert await store.claim_for_sync(db, 5) is True

    @pytest.mark.asyncio
    async def test_claim_lost_when_no_row_updated(self):
        db = _db(MagicMock(rowcount=0))
        assert await store.claim_for_sync(db, 5) is False

    @pytest.mark.asyncio
    async def test_claim_is_a_single_conditional_update(self):
        db = _db(MagicMock(rowcount=1))
        await store.claim_for_sync(db, 5)

        db.execute.assert_awaited_once()
        sql = str(db.execute.await_args.args[0])
        assert sql.startswith("UPDATE billing_sync")
        assert "sync_claimed_at IS NULL" in sql
        assert "sync_claimed_at <" in sql
        assert "NOT IN" in sql

    @pytest.mark.asyncio
    async def test_release_clears_claim(self):
        db = _db(MagicMock())
        await store.release_claim(db, 5)

        stmt = db.execute.await_args.args[0]
        assert str(stmt).startswith("UPDATE billing_sync SET sync_claimed_at")
        assert stmt.compile().params["sync_claimed_at"] is None
