"""
Deterministic matcher: exact code lookups against the refcode registry.

Candidate order: refcode → refcode2 → refcode_custom → click id.
First hit wins. A click id only resolves if a backfill pass already
registered its synthetic `clk_` code; nothing fuzzy happens here.
"""

from dataclasses import dataclass

from app.core.registry import RefcodeRegistry, RefcodeTarget, click_refcode
from app.core.touchpoints import SyntheticTouchpoint, infer_channel
from app.core.transactions import TransactionRecord

REFCODE_FIELDS = ("refcode", "refcode2", "refcode_custom")
DETERMINISTIC_CONFIDENCE = 1.0


@dataclass(frozen=True)
class DeterministicMatch:
    target: RefcodeTarget
    matched_field: str
    matched_code: str


def candidate_codes(txn: TransactionRecord) -> list[tuple[str, str]]:
    candidates = []
    for name in REFCODE_FIELDS:
        value = getattr(txn, name)
        if value and isinstance(value, str) and value.strip():
            candidates.append((name, value))
    click_code = click_refcode(txn.click_id)
    if click_code:
        candidates.append(("click_id", click_code))
    return candidates


def synthesize_touch(target: RefcodeTarget, txn: TransactionRecord) -> SyntheticTouchpoint:
    return SyntheticTouchpoint(
        occurred_at=txn.transaction_date,
        channel=infer_channel(target.platform, target.utm_source, target.utm_medium),
        campaign_id=target.campaign_id,
        campaign_name=target.campaign_name,
        ad_id=target.ad_id,
        refcode=target.refcode,
        utm_source=target.utm_source,
        utm_medium=target.utm_medium,
        utm_campaign=target.utm_campaign,
        origin="refcode",
    )


class DeterministicMatcher:
    def __init__(self, registry: RefcodeRegistry):
        self.registry = registry

    def match(self, txn: TransactionRecord) -> DeterministicMatch | None:
        day = txn.transaction_date.date()
        for name, code in candidate_codes(txn):
            target = self.registry.resolve(code, on=day)
            if target is not None:
                return DeterministicMatch(target=target, matched_field=name, matched_code=code)
        return None

    def chain_for(self, txn: TransactionRecord) -> tuple[DeterministicMatch, tuple[SyntheticTouchpoint]] | None:
        found = self.match(txn)
        if found is None:
            return None
        return found, (synthesize_touch(found.target, txn),)
