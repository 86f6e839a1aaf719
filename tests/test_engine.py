"""Tests for the attribution engine: end-to-end runs against an in-memory store."""

import asyncio
import datetime

import pytest

from app.core.engine import AttributionEngine
from app.core.errors import AttributionInputError, TransactionSourceError
from app.core.identity_hash import hash_email
from app.core.probabilistic import CampaignFlight
from app.core.registry import RefcodeTarget
from app.core.touchpoints import ObservedTouchpoint

EMAIL = "donor@example.org"


def _engine(store, now):
    return AttributionEngine(store, clock=lambda: now)


def _run(store, now, org_id, **kwargs):
    return asyncio.run(_engine(store, now).run(org_id, **kwargs))


def _touch(at, channel, campaign_id=None, touchpoint_id=None):
    return ObservedTouchpoint(
        occurred_at=at,
        channel=channel,
        campaign_id=campaign_id,
        touchpoint_id=touchpoint_id,
        email_hash=hash_email(EMAIL),
    )


@pytest.fixture
def spring_drive(store):
    store.targets.append(RefcodeTarget(
        refcode="promo42",
        platform="meta",
        campaign_id="c-42",
        campaign_name="spring-drive",
        ad_id="ad-1",
    ))
    return store


# ---------------------------------------------------------------------------
# Matching scenarios
# ---------------------------------------------------------------------------

class TestScenarios:
    def test_refcode_match(self, spring_drive, make_txn, now, org_id):
        spring_drive.transactions.append(make_txn("txn-1", refcode="promo42"))

        summary = _run(spring_drive, now, org_id)

        row = spring_drive.attributions["txn-1"]
        assert row["attribution_method"] == "refcode"
        assert row["attribution_confidence"] == 1.0
        assert row["last_touch_channel"] == "meta"
        assert row["last_touch_campaign"] == "spring-drive"
        assert row["last_touch_weight"] == 0.6
        assert row["first_touch_weight"] == 0.0
        assert row["total_touchpoints"] == 1
        assert summary.by_method["refcode"] == 1
        assert summary.created == 1

    def test_refcode_beats_touchpoints(self, spring_drive, make_txn, now, org_id):
        spring_drive.touchpoints.append(_touch(now - datetime.timedelta(days=2), "email"))
        spring_drive.transactions.append(make_txn("txn-1", days_ago=1, refcode="PROMO42", donor_email=EMAIL))

        _run(spring_drive, now, org_id)

        assert spring_drive.attributions["txn-1"]["attribution_method"] == "refcode"

    def test_touchpoint_chain(self, store, make_txn, now, org_id):
        day6 = now
        store.touchpoints.extend([
            _touch(day6 - datetime.timedelta(days=5), "email", touchpoint_id="tp-1"),
            _touch(day6 - datetime.timedelta(days=1), "sms", touchpoint_id="tp-5"),
        ])
        store.transactions.append(make_txn("txn-1", days_ago=0, donor_email=EMAIL))

        summary = _run(store, now, org_id)

        row = store.attributions["txn-1"]
        assert row["attribution_method"] == "touchpoint"
        assert row["total_touchpoints"] == 2
        assert row["first_touch_channel"] == "email"
        assert row["last_touch_channel"] == "sms"
        assert row["first_touch_weight"] == 0.4
        assert row["last_touch_weight"] == 0.4
        assert row["middle_touches"] == []
        assert row["attribution_confidence"] == pytest.approx(0.7)
        assert summary.by_method["touchpoint"] == 1

    def test_middle_touches_carry_weights(self, store, make_txn, now, org_id):
        store.touchpoints.extend(
            _touch(now - datetime.timedelta(days=d), "email", touchpoint_id=f"tp-{d}") for d in (6, 5, 4, 3)
        )
        store.transactions.append(make_txn("txn-1", days_ago=0, donor_email=EMAIL))

        _run(store, now, org_id)

        row = store.attributions["txn-1"]
        assert [m["weight"] for m in row["middle_touches"]] == [0.1, 0.1]
        total = row["first_touch_weight"] + row["last_touch_weight"] + sum(
            m["weight"] for m in row["middle_touches"]
        )
        assert total == pytest.approx(1.0, abs=1e-6)

    def test_source_campaign_fallback(self, store, make_txn, now, org_id):
        store.transactions.append(make_txn("txn-1", source_campaign="email_march_match"))

        _run(store, now, org_id)

        row = store.attributions["txn-1"]
        assert row["attribution_method"] == "source_campaign"
        assert row["last_touch_channel"] == "email"
        assert row["attribution_confidence"] == 0.5

    def test_organic(self, store, make_txn, now, org_id):
        store.transactions.append(make_txn("txn-1"))

        summary = _run(store, now, org_id)

        row = store.attributions["txn-1"]
        assert row["attribution_method"] == "organic"
        assert row["first_touch_weight"] == 1.0
        assert row["last_touch_weight"] == 0.0
        assert row["total_touchpoints"] == 0
        assert row["attribution_confidence"] is None
        assert summary.by_method["organic"] == 1

    def test_refunds_never_attributed(self, spring_drive, make_txn, now, org_id):
        spring_drive.transactions.extend([
            make_txn("txn-1", refcode="promo42"),
            make_txn("txn-2", refcode="promo42", transaction_type="Refund"),
        ])

        summary = _run(spring_drive, now, org_id)

        assert "txn-2" not in spring_drive.attributions
        assert summary.refunds_excluded == 1
        assert summary.total_transactions == 2
        assert summary.created == 1

    def test_transactions_outside_window_ignored(self, store, make_txn, now, org_id):
        store.transactions.append(make_txn("txn-old", days_ago=45))

        summary = _run(store, now, org_id, days_back=30)

        assert summary.total_transactions == 0
        assert store.attributions == {}


# ---------------------------------------------------------------------------
# Idempotence and recompute
# ---------------------------------------------------------------------------

class TestRerun:
    def test_second_run_skips_everything(self, spring_drive, make_txn, now, org_id):
        spring_drive.transactions.extend([
            make_txn("txn-1", refcode="promo42"),
            make_txn("txn-2"),
            make_txn("txn-3", source_campaign="sms_gotv"),
        ])

        first = _run(spring_drive, now, org_id)
        snapshot = {k: dict(v) for k, v in spring_drive.attributions.items()}
        second = _run(spring_drive, now, org_id)

        assert second.skipped == first.created == 3
        assert second.created == 0
        assert spring_drive.attributions == snapshot

    def test_force_recompute_overwrites(self, spring_drive, make_txn, now, org_id):
        spring_drive.transactions.append(make_txn("txn-1", refcode="promo42"))
        spring_drive.attributions["txn-1"] = {"transaction_id": "txn-1", "attribution_method": "organic"}

        summary = _run(spring_drive, now, org_id, force_recompute=True)

        assert summary.skipped == 0
        assert summary.created == 1
        assert len(spring_drive.attributions) == 1
        assert spring_drive.attributions["txn-1"]["attribution_method"] == "refcode"

    def test_dry_run_writes_nothing(self, spring_drive, make_txn, now, org_id):
        spring_drive.transactions.append(make_txn("txn-1", refcode="promo42"))

        summary = _run(spring_drive, now, org_id, dry_run=True)

        assert summary.dry_run is True
        assert summary.created == 1
        assert spring_drive.attributions == {}
        assert spring_drive.write_calls == 0

    def test_pages_through_all_transactions(self, store, make_txn, now, org_id):
        store.transactions.extend(make_txn(f"txn-{i}") for i in range(7))

        summary = _run(store, now, org_id, batch_size=2)

        assert summary.total_transactions == 7
        assert len(store.attributions) == 7


# ---------------------------------------------------------------------------
# Failure handling
# ---------------------------------------------------------------------------

class TestFailures:
    def test_single_bad_record_does_not_abort_batch(self, store, make_txn, now, org_id):
        store.transactions.extend(make_txn(f"txn-{i}") for i in range(1, 4))
        store.fail_batch_writes = True
        store.fail_transaction_ids = {"txn-2"}

        summary = _run(store, now, org_id)

        assert summary.errors == 1
        assert summary.created == 2
        assert set(store.attributions) == {"txn-1", "txn-3"}

    def test_failed_record_not_counted_by_method(self, store, make_txn, now, org_id):
        store.transactions.extend(make_txn(f"txn-{i}") for i in range(1, 4))
        store.fail_batch_writes = True
        store.fail_transaction_ids = {"txn-2"}

        summary = _run(store, now, org_id)

        assert summary.by_method["organic"] == 2
        assert sum(summary.by_method.values()) == summary.created

    def test_registry_outage_degrades(self, spring_drive, make_txn, now, org_id):
        spring_drive.fail_registry = True
        spring_drive.transactions.append(make_txn("txn-1", refcode="promo42", source_campaign="spring"))

        summary = _run(spring_drive, now, org_id)

        assert summary.created == 1
        assert spring_drive.attributions["txn-1"]["attribution_method"] == "source_campaign"

    def test_identity_outage_degrades(self, store, make_txn, now, org_id):
        store.fail_identities = True
        store.transactions.append(make_txn("txn-1"))

        summary = _run(store, now, org_id)

        assert summary.by_method["organic"] == 1

    def test_unreadable_transactions_raise(self, store, make_txn, now, org_id):
        store.fail_transactions = True
        store.transactions.append(make_txn("txn-1"))

        with pytest.raises(TransactionSourceError):
            _run(store, now, org_id)
        assert store.attributions == {}

    @pytest.mark.parametrize("kwargs", [
        {"days_back": 0},
        {"days_back": 10_000},
        {"batch_size": 0},
        {"batch_size": 501},
        {"lookback_days": -1},
    ])
    def test_bad_parameters_rejected(self, store, now, org_id, kwargs):
        with pytest.raises(AttributionInputError):
            _run(store, now, org_id, **kwargs)
        assert store.write_calls == 0

    @pytest.mark.parametrize("bad_org", [None, "", "   "])
    def test_organization_required(self, store, now, bad_org):
        with pytest.raises(AttributionInputError):
            _run(store, now, bad_org)

    def test_malformed_organization_is_input_error(self, store, now):
        with pytest.raises(AttributionInputError):
            _run(store, now, "acme-corp")
        with pytest.raises(AttributionInputError):
            asyncio.run(_engine(store, now).recompute_organic("acme-corp"))
        assert store.write_calls == 0


# ---------------------------------------------------------------------------
# Organic recompute by timing
# ---------------------------------------------------------------------------

class TestRecomputeOrganic:
    def _flights(self, now):
        today = now.date()
        return [
            CampaignFlight(
                "c-match",
                today - datetime.timedelta(days=10),
                today,
                impressions=12000,
                campaign_name="March Match",
                platform="meta",
            ),
        ]

    def test_upgrades_organic_rows(self, store, make_txn, now, org_id):
        store.transactions.append(make_txn("txn-1"))
        _run(store, now, org_id)
        store.flights = self._flights(now)

        summary = asyncio.run(_engine(store, now).recompute_organic(org_id))

        row = store.attributions["txn-1"]
        assert row["attribution_method"] == "probabilistic_timing"
        assert row["attribution_confidence"] == 0.3
        assert row["last_touch_campaign"] == "March Match"
        assert summary.upgraded == 1
        assert summary.considered == 1

    def test_no_active_campaign_leaves_organic(self, store, make_txn, now, org_id):
        store.transactions.append(make_txn("txn-1"))
        _run(store, now, org_id)

        summary = asyncio.run(_engine(store, now).recompute_organic(org_id))

        assert summary.unmatched == 1
        assert store.attributions["txn-1"]["attribution_method"] == "organic"

    def test_never_overrides_stronger_match(self, spring_drive, make_txn, now, org_id):
        spring_drive.transactions.append(make_txn("txn-1", refcode="promo42"))
        _run(spring_drive, now, org_id)
        spring_drive.flights = self._flights(now)

        # Stale read: the record was organic when listed, refcode by write time
        async def stale_organic(organization_id, since, until):
            return list(spring_drive.transactions)

        spring_drive.load_organic_transactions = stale_organic

        summary = asyncio.run(_engine(spring_drive, now).recompute_organic(org_id))

        assert spring_drive.attributions["txn-1"]["attribution_method"] == "refcode"
        assert summary.considered == 1
        assert summary.upgraded == 0

    def test_unreadable_organic_raises(self, store, now, org_id):
        store.fail_transactions = True
        with pytest.raises(TransactionSourceError):
            asyncio.run(_engine(store, now).recompute_organic(org_id))
