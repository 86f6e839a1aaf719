"""Tests for the attribution store: compiled PostgreSQL upserts and row mapping."""

import asyncio
import datetime
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock
from uuid import UUID

import pytest
from sqlalchemy.dialects import postgresql

from app.core.identity_hash import hash_email
from app.core.registry import RefcodeOwnership, RefcodeTarget
from app.models.store import (
    AttributionStore,
    _org,
    attribution_upsert,
    identity_link_upsert,
    refcode_history_upsert,
    refcode_mapping_upsert,
)

ORG = "6f1c2a9e-3d4b-4c5a-9e8f-1a2b3c4d5e6f"
NOW = datetime.datetime(2026, 3, 15, 12, 0, tzinfo=datetime.timezone.utc)


def _sql(stmt) -> str:
    return str(stmt.compile(dialect=postgresql.dialect()))


def _row(transaction_id="txn-1", method="refcode"):
    return {
        "transaction_id": transaction_id,
        "organization_id": ORG,
        "donor_email": "donor@example.org",
        "first_touch_channel": "meta",
        "first_touch_campaign": "spring-drive",
        "first_touch_weight": 0.0,
        "last_touch_channel": "meta",
        "last_touch_campaign": "spring-drive",
        "last_touch_weight": 0.6,
        "middle_touches": [],
        "total_touchpoints": 1,
        "attribution_method": method,
        "attribution_confidence": 1.0,
        "attribution_calculated_at": NOW,
    }


def _db(rows=(), rowcount=1):
    db = MagicMock()
    result = MagicMock()
    result.scalars.return_value.all.return_value = list(rows)
    result.rowcount = rowcount
    db.execute = AsyncMock(return_value=result)
    db.commit = AsyncMock()
    db.rollback = AsyncMock()
    return db


class TestUpsertStatements:
    def test_attribution_upsert_on_transaction_id(self):
        sql = _sql(attribution_upsert([_row("txn-1"), _row("txn-2")]))
        assert "INSERT INTO transaction_attribution" in sql
        assert "ON CONFLICT (transaction_id) DO UPDATE SET" in sql
        assert "attribution_method = excluded.attribution_method" in sql
        assert "WHERE" not in sql

    def test_guarded_upsert_only_replaces_matching_method(self):
        sql = _sql(attribution_upsert([_row(method="probabilistic_timing")], only_if_method="organic"))
        assert "WHERE transaction_attribution.attribution_method =" in sql

    def test_refcode_mapping_upsert(self):
        sql = _sql(refcode_mapping_upsert(ORG, [RefcodeTarget(refcode="promo42", ad_id="200")]))
        assert "ON CONFLICT (organization_id, refcode) DO UPDATE SET" in sql
        assert "ad_id = excluded.ad_id" in sql

    def test_history_upsert_widens_tenure(self):
        row = RefcodeOwnership("promo42", "100", datetime.date(2026, 1, 1), datetime.date(2026, 2, 1))
        sql = _sql(refcode_history_upsert(ORG, [row]))
        assert "ON CONFLICT (organization_id, refcode, ad_id) DO UPDATE SET" in sql
        assert "least(refcode_mapping_history.first_seen_at, excluded.first_seen_at)" in sql
        assert "greatest(refcode_mapping_history.last_seen_at, excluded.last_seen_at)" in sql

    def test_identity_link_upsert(self):
        link = {
            "email_hash": hash_email("a@b.com"),
            "phone_hash": "ph_abc",
            "donor_email": "a@b.com",
            "source": "transaction",
            "confidence": 1.0,
        }
        sql = _sql(identity_link_upsert(ORG, [link]))
        assert "ON CONFLICT (organization_id, email_hash, phone_hash) DO UPDATE SET" in sql


class TestOrgId:
    def test_string_converted(self):
        assert _org(ORG) == UUID(ORG)

    def test_uuid_passthrough(self):
        value = UUID(ORG)
        assert _org(value) is value

    def test_garbage_rejected(self):
        with pytest.raises(ValueError):
            _org("not-a-uuid")


class TestAttributionStore:
    def test_write_commits(self):
        db = _db()
        assert asyncio.run(AttributionStore(db).upsert_attributions([_row()])) == 1
        db.execute.assert_awaited_once()
        db.commit.assert_awaited_once()

    def test_guarded_write_reports_affected_rows(self):
        db = _db(rowcount=1)
        rows = [_row("txn-1", "probabilistic_timing"), _row("txn-2", "probabilistic_timing")]
        count = asyncio.run(AttributionStore(db).upsert_attributions(rows, only_if_method="organic"))
        assert count == 1

    def test_write_failure_rolls_back_and_raises(self):
        db = _db()
        db.execute = AsyncMock(side_effect=RuntimeError("deadlock"))
        with pytest.raises(RuntimeError):
            asyncio.run(AttributionStore(db).upsert_attributions([_row()]))
        db.rollback.assert_awaited_once()
        db.commit.assert_not_awaited()

    def test_empty_writes_skip_database(self):
        db = _db()
        store = AttributionStore(db)
        assert asyncio.run(store.upsert_attributions([])) == 0
        asyncio.run(store.upsert_refcode_targets(ORG, []))
        assert asyncio.run(store.existing_attribution_ids(ORG, [])) == set()
        db.execute.assert_not_awaited()

    def test_fetch_transactions_maps_rows(self):
        row = SimpleNamespace(
            organization_id=UUID(ORG),
            transaction_id="txn-1",
            transaction_date=NOW,
            transaction_type=None,
            amount=None,
            net_amount=None,
            donor_email="a@b.com",
            donor_phone=None,
            refcode="promo42",
            refcode2=None,
            refcode_custom=None,
            click_id=None,
            source_campaign=None,
        )
        records = asyncio.run(
            AttributionStore(_db([row])).fetch_transactions(ORG, NOW - datetime.timedelta(days=30), NOW, None, 200)
        )
        assert records[0].organization_id == ORG
        assert records[0].transaction_type == "donation"
        assert records[0].refcode == "promo42"

    def test_touchpoints_hashed_and_channelled(self):
        row = SimpleNamespace(
            id=UUID(int=1),
            occurred_at=NOW,
            touchpoint_type="sms_send",
            donor_email=" A@B.com",
            donor_phone_hash="ph_123",
            campaign_id=None,
            campaign_name=None,
            ad_id=None,
            refcode=None,
            utm_source=None,
            utm_medium=None,
            utm_campaign=None,
            metadata_=None,
        )
        touches = asyncio.run(AttributionStore(_db([row])).load_touchpoints(ORG, NOW, NOW))
        touch = touches[0]
        assert touch.channel == "sms"
        assert touch.email_hash == hash_email("a@b.com")
        assert touch.phone_hash == "ph_123"
        assert touch.metadata == {}
        assert touch.full_click_id is None
