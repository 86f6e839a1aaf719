"""
Reconciliation jobs: keep the refcode registry and identity index fresh.

Run at a lower frequency than attribution. All writes are upserts on the
natural keys, so racing jobs converge (newest ad wins, history is a union).

  - reconcile_refcodes      → creatives + delivery metrics → mappings + history
  - rebuild_identity_links  → transactions with email AND phone → identity links
  - backfill_click_codes    → truncated click ids → registry keys the
                              deterministic matcher can look up exactly
"""

import datetime
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from urllib.parse import parse_qs, urlparse

from app.core.identity_hash import INVALID_HASH, hash_email, hash_phone, normalize_email
from app.core.registry import (
    FB_REFCODE_PREFIX,
    RefcodeOwnership,
    RefcodeTarget,
    ad_sort_key,
    click_refcode,
    is_active,
    normalize_refcode,
)
from app.core.touchpoints import ObservedTouchpoint
from app.core.transactions import TransactionRecord

import structlog

logger = structlog.get_logger()

FULL_CLICK_ID_MIN_LENGTH = 50
AEM_MARKER = "_aem_"


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


# ---------------------------------------------------------------------------
# Refcode registry
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Creative:
    ad_id: str
    platform: str | None = None
    campaign_id: str | None = None
    campaign_name: str | None = None
    ad_name: str | None = None
    creative_id: str | None = None
    refcode: str | None = None
    destination_url: str | None = None
    utm_source: str | None = None
    utm_medium: str | None = None
    utm_campaign: str | None = None


def _query_params(url: str | None) -> dict[str, str]:
    if not url:
        return {}
    try:
        parsed = urlparse(url)
    except ValueError:
        return {}
    params = {}
    for key, values in parse_qs(parsed.query).items():
        if values and values[0].strip():
            params[key.lower()] = values[0].strip()
    return params


def extract_refcode(url: str | None) -> str | None:
    """`refcode` query parameter of an ad's destination URL."""
    return _query_params(url).get("refcode")


def creative_refcode(creative: Creative) -> str | None:
    return normalize_refcode(creative.refcode) or normalize_refcode(extract_refcode(creative.destination_url))


def build_refcode_rows(
    creatives: Iterable[Creative],
    delivery: dict[str, tuple[datetime.date, datetime.date]],
    as_of: datetime.date,
    window_days: int,
) -> tuple[list[RefcodeTarget], list[RefcodeOwnership]]:
    """Pointer rows (newest ad per code) and per-ad history rows."""
    by_code: dict[str, dict[str, Creative]] = {}
    for creative in creatives:
        code = creative_refcode(creative)
        if not code or not creative.ad_id:
            continue
        by_code.setdefault(code, {}).setdefault(creative.ad_id, creative)

    targets: list[RefcodeTarget] = []
    history: list[RefcodeOwnership] = []

    for code, ads in sorted(by_code.items()):
        newest = None
        newest_key = None
        for ad_id, creative in ads.items():
            seen = delivery.get(ad_id)
            if seen is not None:
                first_seen, last_seen = seen
                history.append(RefcodeOwnership(
                    refcode=code,
                    ad_id=ad_id,
                    first_seen=first_seen,
                    last_seen=last_seen,
                    is_active=is_active(last_seen, as_of, window_days),
                    campaign_id=creative.campaign_id,
                    campaign_name=creative.campaign_name,
                    ad_name=creative.ad_name,
                ))
            key = (seen[0] if seen else datetime.date.min, ad_sort_key(ad_id))
            if newest_key is None or key > newest_key:
                newest, newest_key = creative, key

        params = _query_params(newest.destination_url)
        targets.append(RefcodeTarget(
            refcode=code,
            platform=newest.platform,
            campaign_id=newest.campaign_id,
            campaign_name=newest.campaign_name,
            ad_id=newest.ad_id,
            ad_name=newest.ad_name,
            creative_id=newest.creative_id,
            utm_source=newest.utm_source or params.get("utm_source"),
            utm_medium=newest.utm_medium or params.get("utm_medium"),
            utm_campaign=newest.utm_campaign or params.get("utm_campaign"),
            source="creative_url",
        ))

    return targets, history


async def reconcile_refcodes(store, organization_id: str, window_days: int = 14) -> dict:
    creatives = await store.load_ad_creatives(organization_id)
    delivery = await store.load_ad_delivery(organization_id)

    # Recency is measured against the org's own latest delivery, not wall-clock
    as_of = max((last for _, last in delivery.values()), default=None) or _utcnow().date()

    targets, history = build_refcode_rows(creatives, delivery, as_of, window_days)
    await store.upsert_refcode_targets(organization_id, targets)
    await store.upsert_refcode_history(organization_id, history)

    summary = {
        "organization_id": organization_id,
        "creatives_scanned": len(creatives),
        "refcodes_mapped": len(targets),
        "history_rows": len(history),
        "active_ads": sum(1 for row in history if row.is_active),
        "as_of": as_of.isoformat(),
    }
    logger.info("refcode_reconciliation_complete", **summary)
    return summary


# ---------------------------------------------------------------------------
# Identity index
# ---------------------------------------------------------------------------

def build_identity_links(transactions: Iterable[TransactionRecord]) -> tuple[list[dict], int]:
    """One link per distinct (email_hash, phone_hash). Returns (links, skipped)."""
    links: dict[tuple[str, str], dict] = {}
    skipped = 0
    for txn in transactions:
        if txn.is_refund:
            continue
        email_hash = hash_email(txn.donor_email)
        phone_hash = hash_phone(txn.donor_phone)
        if email_hash == INVALID_HASH or phone_hash == INVALID_HASH:
            skipped += 1
            continue
        links.setdefault((email_hash, phone_hash), {
            "email_hash": email_hash,
            "phone_hash": phone_hash,
            "donor_email": normalize_email(txn.donor_email),
            "source": "transaction",
            "confidence": 1.0,
        })
    return list(links.values()), skipped


async def rebuild_identity_links(
    store,
    organization_id: str,
    days_back: int = 90,
    until: datetime.datetime | None = None,
) -> dict:
    until = until or _utcnow()
    since = until - datetime.timedelta(days=days_back)
    transactions = await store.fetch_identity_candidates(organization_id, since, until)

    links, skipped = build_identity_links(transactions)
    if links:
        await store.upsert_identity_links(organization_id, links)

    summary = {
        "organization_id": organization_id,
        "transactions_scanned": len(transactions),
        "links_upserted": len(links),
        "skipped_invalid": skipped,
    }
    logger.info("identity_index_rebuilt", **summary)
    return summary


# ---------------------------------------------------------------------------
# Click-id backfill
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ClickBackfillMatch:
    touchpoint: ObservedTouchpoint
    full_click_id: str
    confidence: str  # high | medium | low
    method: str      # email_time | refcode_time | prefix_time


def truncated_click_fragment(txn: TransactionRecord) -> str | None:
    if txn.click_id and txn.click_id.strip():
        value = txn.click_id.strip()
        return value if len(value) < FULL_CLICK_ID_MIN_LENGTH else None
    refcode2 = (txn.refcode2 or "").strip()
    if refcode2.lower().startswith(FB_REFCODE_PREFIX) and len(refcode2) > len(FB_REFCODE_PREFIX):
        return refcode2[len(FB_REFCODE_PREFIX):]
    return None


def backfill_key(txn: TransactionRecord) -> str | None:
    """Registry key the deterministic matcher will try for this transaction."""
    if txn.click_id and txn.click_id.strip():
        return click_refcode(txn.click_id)
    return normalize_refcode(txn.refcode2)


def fragment_matches(fragment: str, full_click_id: str) -> bool:
    if full_click_id.startswith(fragment):
        return True
    marker = full_click_id.rfind(AEM_MARKER)
    if marker != -1 and full_click_id[marker + len(AEM_MARKER):] == fragment:
        return True
    return full_click_id.endswith(fragment)


def _closest(txn_date: datetime.datetime, touches: Sequence[ObservedTouchpoint]) -> ObservedTouchpoint:
    return min(touches, key=lambda tp: abs(txn_date - tp.occurred_at))


def find_full_click_id(
    txn: TransactionRecord,
    touchpoints: Sequence[ObservedTouchpoint],
    window: datetime.timedelta,
) -> ClickBackfillMatch | None:
    txn_date = txn.transaction_date
    in_window = [
        tp for tp in touchpoints
        if tp.full_click_id
        and len(tp.full_click_id) >= FULL_CLICK_ID_MIN_LENGTH
        and txn_date - window <= tp.occurred_at <= txn_date
    ]
    if not in_window:
        return None

    tiers = []
    email_hash = hash_email(txn.donor_email)
    if email_hash != INVALID_HASH:
        tiers.append(("high", "email_time", lambda tp: tp.email_hash == email_hash))

    refcode = normalize_refcode(txn.refcode)
    if refcode:
        tiers.append(("medium", "refcode_time", lambda tp: normalize_refcode(tp.refcode) == refcode))

    fragment = truncated_click_fragment(txn)
    if fragment:
        tiers.append(("low", "prefix_time", lambda tp: fragment_matches(fragment, tp.full_click_id)))

    for confidence, method, predicate in tiers:
        hits = [tp for tp in in_window if predicate(tp)]
        if hits:
            best = _closest(txn_date, hits)
            return ClickBackfillMatch(
                touchpoint=best,
                full_click_id=best.full_click_id,
                confidence=confidence,
                method=method,
            )
    return None


async def backfill_click_codes(
    store,
    organization_id: str,
    limit: int = 500,
    window_minutes: int = 30,
    dry_run: bool = False,
) -> dict:
    candidates = await store.load_click_backfill_candidates(organization_id, limit)
    summary = {
        "organization_id": organization_id,
        "total_processed": len(candidates),
        "matched_high": 0,
        "matched_medium": 0,
        "matched_low": 0,
        "unmatched": 0,
        "mappings_registered": 0,
        "dry_run": dry_run,
    }
    if not candidates:
        logger.info("click_backfill_nothing_to_do", organization_id=organization_id)
        return summary

    window = datetime.timedelta(minutes=window_minutes)
    since = min(txn.transaction_date for txn in candidates) - window
    until = max(txn.transaction_date for txn in candidates)
    touchpoints = await store.load_touchpoints(organization_id, since, until)

    targets: dict[str, RefcodeTarget] = {}
    for txn in candidates:
        key = backfill_key(txn)
        found = find_full_click_id(txn, touchpoints, window) if key else None
        if found is None:
            summary["unmatched"] += 1
            continue
        summary[f"matched_{found.confidence}"] += 1

        tp = found.touchpoint
        if not tp.campaign_id:
            continue
        targets[key] = RefcodeTarget(
            refcode=key,
            platform=tp.touchpoint_type or tp.channel,
            campaign_id=tp.campaign_id,
            campaign_name=tp.campaign_name,
            ad_id=tp.ad_id,
            utm_source=tp.utm_source,
            utm_medium=tp.utm_medium,
            utm_campaign=tp.utm_campaign,
            source="click_backfill",
        )

    summary["mappings_registered"] = len(targets)
    if targets and not dry_run:
        await store.upsert_refcode_targets(organization_id, list(targets.values()))

    logger.info("click_backfill_complete", **summary)
    return summary
