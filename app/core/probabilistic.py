"""
Probabilistic matcher: inferred chains for transactions with no usable code.

Tiers, tried in order:
  1. Touchpoint correlation → the donor's touchpoints inside the lookback
     window ending at the transaction. Touches keyed by the donor's own
     hashed email/phone give method "touchpoint"; touches reachable only
     through an identity link give "probabilistic_touchpoint".
  2. Source campaign       → one synthetic touch from the free-text field.
  3. Timing correlation    → campaign active on the transaction date with
     the most impressions. Lowest confidence; only used by the organic
     recomputation path.

Confidence for touchpoint chains starts at 0.5:
  last touch ≤ 1h before → +0.3, ≤ 24h → +0.2, ≤ 72h → +0.1
  ≥ 3 touches             → +0.1
  last touch has campaign → +0.1
  capped at 0.95
"""

import datetime
from collections.abc import Iterable, Sequence
from dataclasses import dataclass

from app.core.identity_index import IdentityIndex
from app.core.touchpoints import (
    KIND_CHANNELS,
    ObservedTouchpoint,
    SyntheticTouchpoint,
    Touch,
    infer_channel,
)
from app.core.transactions import TransactionRecord

METHOD_TOUCHPOINT = "touchpoint"
METHOD_LINKED_TOUCHPOINT = "probabilistic_touchpoint"
METHOD_SOURCE_CAMPAIGN = "source_campaign"
METHOD_TIMING = "probabilistic_timing"

BASE_CONFIDENCE = 0.5
MAX_CONFIDENCE = 0.95
RECENCY_BONUSES: tuple[tuple[datetime.timedelta, float], ...] = (
    (datetime.timedelta(hours=1), 0.3),
    (datetime.timedelta(hours=24), 0.2),
    (datetime.timedelta(hours=72), 0.1),
)
MULTI_TOUCH_THRESHOLD = 3
MULTI_TOUCH_BONUS = 0.1
CAMPAIGN_BONUS = 0.1


@dataclass(frozen=True)
class ProbabilisticMatch:
    method: str
    chain: tuple[Touch, ...]
    confidence: float


@dataclass(frozen=True)
class CampaignFlight:
    """A campaign's delivery date range and exposure."""
    campaign_id: str
    start_date: datetime.date
    end_date: datetime.date
    impressions: int = 0
    campaign_name: str | None = None
    platform: str | None = None

    def covers(self, day: datetime.date) -> bool:
        return self.start_date <= day <= self.end_date


def touchpoint_confidence(chain: Sequence[Touch], transaction_date: datetime.datetime) -> float:
    if not chain:
        return 0.0
    confidence = BASE_CONFIDENCE
    last = chain[-1]

    gap = transaction_date - last.occurred_at
    for limit, bonus in RECENCY_BONUSES:
        if gap <= limit:
            confidence += bonus
            break

    if len(chain) >= MULTI_TOUCH_THRESHOLD:
        confidence += MULTI_TOUCH_BONUS
    if last.campaign_id:
        confidence += CAMPAIGN_BONUS

    return round(min(confidence, MAX_CONFIDENCE), 4)


def _touch_key(touch: ObservedTouchpoint) -> tuple:
    if touch.touchpoint_id:
        return ("id", touch.touchpoint_id)
    return ("fields", touch.occurred_at, touch.channel, touch.campaign_id, touch.refcode)


class TouchpointIndex:
    """Observed touchpoints grouped by hashed identifier, oldest first."""

    def __init__(self, touchpoints: Iterable[ObservedTouchpoint] = ()):
        self._by_key: dict[str, list[ObservedTouchpoint]] = {}
        count = 0
        for tp in touchpoints:
            count += 1
            for key in (tp.email_hash, tp.phone_hash):
                if key:
                    self._by_key.setdefault(key, []).append(tp)
        for rows in self._by_key.values():
            rows.sort(key=lambda tp: tp.occurred_at)
        self._count = count

    @classmethod
    def empty(cls) -> "TouchpointIndex":
        return cls()

    def __len__(self) -> int:
        return self._count

    def window(
        self,
        keys: Iterable[str],
        since: datetime.datetime,
        until: datetime.datetime,
    ) -> list[ObservedTouchpoint]:
        seen: set[tuple] = set()
        found: list[ObservedTouchpoint] = []
        for key in keys:
            for tp in self._by_key.get(key, ()):
                if since <= tp.occurred_at <= until:
                    marker = _touch_key(tp)
                    if marker not in seen:
                        seen.add(marker)
                        found.append(tp)
        found.sort(key=lambda tp: tp.occurred_at)
        return found


class ProbabilisticMatcher:
    def __init__(
        self,
        touchpoints: TouchpointIndex,
        identities: IdentityIndex,
        lookback_days: int = 30,
        source_campaign_confidence: float = BASE_CONFIDENCE,
    ):
        self.touchpoints = touchpoints
        self.identities = identities
        self.lookback = datetime.timedelta(days=lookback_days)
        self.source_campaign_confidence = source_campaign_confidence

    def match(self, txn: TransactionRecord) -> ProbabilisticMatch | None:
        correlated = self.correlate_touchpoints(txn)
        if correlated is not None:
            return correlated
        return self.from_source_campaign(txn)

    def correlate_touchpoints(self, txn: TransactionRecord) -> ProbabilisticMatch | None:
        keys = self.identities.keys_for(txn)
        if not keys.direct:
            return None

        since = txn.transaction_date - self.lookback
        until = txn.transaction_date
        direct = self.touchpoints.window(keys.direct, since, until)
        linked = self.touchpoints.window(keys.linked, since, until) if keys.linked else []

        if not direct and not linked:
            return None

        chain = self.touchpoints_merged(direct, linked)
        method = METHOD_TOUCHPOINT if direct else METHOD_LINKED_TOUCHPOINT
        return ProbabilisticMatch(
            method=method,
            chain=tuple(chain),
            confidence=touchpoint_confidence(chain, txn.transaction_date),
        )

    @staticmethod
    def touchpoints_merged(
        direct: list[ObservedTouchpoint],
        linked: list[ObservedTouchpoint],
    ) -> list[ObservedTouchpoint]:
        seen = {_touch_key(tp) for tp in direct}
        merged = list(direct)
        for tp in linked:
            if _touch_key(tp) not in seen:
                seen.add(_touch_key(tp))
                merged.append(tp)
        merged.sort(key=lambda tp: tp.occurred_at)
        return merged

    def from_source_campaign(self, txn: TransactionRecord) -> ProbabilisticMatch | None:
        label = (txn.source_campaign or "").strip()
        if not label:
            return None
        touch = SyntheticTouchpoint(
            occurred_at=txn.transaction_date,
            channel=source_campaign_channel(label),
            campaign_name=label,
            utm_campaign=label,
            origin="source_campaign",
        )
        return ProbabilisticMatch(
            method=METHOD_SOURCE_CAMPAIGN,
            chain=(touch,),
            confidence=self.source_campaign_confidence,
        )


def source_campaign_channel(label: str) -> str:
    """Free-text source campaigns often lead with the platform ("sms_gotv")."""
    head = label.strip().lower().replace("-", "_").split("_", 1)[0]
    return KIND_CHANNELS.get(head, "source_campaign")


def pick_active_campaign(
    flights: Iterable[CampaignFlight],
    day: datetime.date,
) -> CampaignFlight | None:
    """Campaign active on `day` with the highest impressions."""
    best = None
    for flight in flights:
        if not flight.covers(day) or flight.impressions <= 0:
            continue
        if best is None or (flight.impressions, flight.campaign_id) > (best.impressions, best.campaign_id):
            best = flight
    return best


def timing_match(
    flight: CampaignFlight,
    transaction_date: datetime.datetime,
    confidence: float = 0.3,
) -> ProbabilisticMatch:
    touch = SyntheticTouchpoint(
        occurred_at=transaction_date,
        channel=infer_channel(flight.platform or "ad_impression"),
        campaign_id=flight.campaign_id,
        campaign_name=flight.campaign_name,
        origin="timing",
    )
    return ProbabilisticMatch(method=METHOD_TIMING, chain=(touch,), confidence=confidence)
