"""Tests for the deterministic matcher: candidate order, exact lookups, synthesis."""

from app.core.deterministic import DeterministicMatcher, candidate_codes, synthesize_touch
from app.core.registry import RefcodeRegistry, RefcodeTarget
from app.core.touchpoints import SyntheticTouchpoint


def _matcher(*targets):
    return DeterministicMatcher(RefcodeRegistry(targets))


class TestCandidateCodes:
    def test_order(self, make_txn):
        txn = make_txn(refcode="a", refcode2="b", refcode_custom="c", click_id="xyz")
        assert candidate_codes(txn) == [
            ("refcode", "a"),
            ("refcode2", "b"),
            ("refcode_custom", "c"),
            ("click_id", "clk_xyz"),
        ]

    def test_blank_fields_skipped(self, make_txn):
        txn = make_txn(refcode="  ", refcode2=None, refcode_custom="c")
        assert candidate_codes(txn) == [("refcode_custom", "c")]


class TestDeterministicMatcher:
    def test_primary_wins(self, make_txn):
        matcher = _matcher(
            RefcodeTarget(refcode="a", campaign_name="first"),
            RefcodeTarget(refcode="b", campaign_name="second"),
        )
        found = matcher.match(make_txn(refcode="a", refcode2="b"))
        assert found.matched_field == "refcode"
        assert found.target.campaign_name == "first"

    def test_falls_through_to_secondary(self, make_txn):
        matcher = _matcher(RefcodeTarget(refcode="b", campaign_name="second"))
        found = matcher.match(make_txn(refcode="unknown", refcode2="B"))
        assert found.matched_field == "refcode2"

    def test_custom_refcode(self, make_txn):
        matcher = _matcher(RefcodeTarget(refcode="vip", campaign_name="major-donors"))
        found = matcher.match(make_txn(refcode_custom="VIP"))
        assert found.matched_field == "refcode_custom"

    def test_click_id_needs_backfilled_key(self, make_txn):
        txn = make_txn(click_id="IwAR0abc")
        assert _matcher().match(txn) is None

        matcher = _matcher(RefcodeTarget(refcode="clk_IwAR0abc", campaign_id="c-1", source="click_backfill"))
        found = matcher.match(txn)
        assert found.matched_field == "click_id"
        assert found.target.campaign_id == "c-1"

    def test_no_codes(self, make_txn):
        assert _matcher(RefcodeTarget(refcode="a")).match(make_txn()) is None

    def test_chain_is_single_synthetic_touch(self, make_txn):
        txn = make_txn(refcode="promo42")
        matcher = _matcher(RefcodeTarget(refcode="promo42", platform="meta", campaign_name="spring-drive"))
        match, chain = matcher.chain_for(txn)
        assert len(chain) == 1
        touch = chain[0]
        assert isinstance(touch, SyntheticTouchpoint)
        assert touch.provenance == "synthetic"
        assert touch.occurred_at == txn.transaction_date
        assert touch.channel == "meta"
        assert touch.campaign_label == "spring-drive"


class TestSynthesizeTouch:
    def test_channel_from_utm_when_platform_unknown(self, make_txn):
        target = RefcodeTarget(refcode="x", utm_source="newsletter", utm_medium="email")
        assert synthesize_touch(target, make_txn()).channel == "email"

    def test_direct_when_nothing_known(self, make_txn):
        assert synthesize_touch(RefcodeTarget(refcode="x"), make_txn()).channel == "direct"
