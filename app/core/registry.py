"""
Refcode registry: in-memory lookup over refcode_mappings + history.

Two layers:
  - pointer  → (org, refcode) → the NEWEST ad's campaign/ad/platform/UTM
  - history  → (org, refcode, ad) → first_seen / last_seen / is_active,
               so older ads that shared a code are not lost

Loaded once per run and treated as read-only. Lookups are exact on the
normalized code (trimmed, lowercased); no fuzzy matching happens here.
Click-derived keys (clk_..., fb_...) keep the case of the click id.
"""

import dataclasses
import datetime
from collections.abc import Iterable
from dataclasses import dataclass

CLICK_CODE_PREFIX = "clk_"
FB_REFCODE_PREFIX = "fb_"

# Click ids are case-sensitive tokens; only their prefix is folded
CASE_SENSITIVE_PREFIXES = (CLICK_CODE_PREFIX, FB_REFCODE_PREFIX)


def normalize_refcode(code: str | None) -> str | None:
    if not code or not isinstance(code, str):
        return None
    value = code.strip()
    if not value:
        return None
    for prefix in CASE_SENSITIVE_PREFIXES:
        if len(value) > len(prefix) and value[:len(prefix)].lower() == prefix:
            return prefix + value[len(prefix):]
    return value.lower()


def click_refcode(click_id: str | None) -> str | None:
    """Synthetic registry key for a (possibly truncated) click id."""
    if not click_id or not isinstance(click_id, str) or not click_id.strip():
        return None
    return normalize_refcode(CLICK_CODE_PREFIX + click_id.strip())


def ad_sort_key(ad_id: str | None) -> tuple:
    """Numeric ad ids compare numerically; anything else sorts below them."""
    if not ad_id:
        return (-1, 0, "")
    if ad_id.isdigit():
        return (1, int(ad_id), "")
    return (0, 0, ad_id)


def is_active(last_seen: datetime.date, as_of: datetime.date, window_days: int) -> bool:
    return last_seen >= as_of - datetime.timedelta(days=window_days)


@dataclass(frozen=True)
class RefcodeTarget:
    """What a refcode resolves to."""
    refcode: str
    platform: str | None = None
    campaign_id: str | None = None
    campaign_name: str | None = None
    ad_id: str | None = None
    ad_name: str | None = None
    creative_id: str | None = None
    utm_source: str | None = None
    utm_medium: str | None = None
    utm_campaign: str | None = None
    source: str = "creative_url"


@dataclass(frozen=True)
class RefcodeOwnership:
    """One ad's tenure on a refcode."""
    refcode: str
    ad_id: str
    first_seen: datetime.date
    last_seen: datetime.date
    is_active: bool = False
    campaign_id: str | None = None
    campaign_name: str | None = None
    ad_name: str | None = None

    def covers(self, day: datetime.date) -> bool:
        return self.first_seen <= day <= self.last_seen


def newer_owner(a: RefcodeOwnership, b: RefcodeOwnership) -> RefcodeOwnership:
    """Newest ad wins: later first_seen, ties broken by the higher ad id."""
    if (b.first_seen, ad_sort_key(b.ad_id)) > (a.first_seen, ad_sort_key(a.ad_id)):
        return b
    return a


class RefcodeRegistry:
    def __init__(
        self,
        mappings: Iterable[RefcodeTarget] = (),
        history: Iterable[RefcodeOwnership] = (),
    ):
        self._targets: dict[str, RefcodeTarget] = {}
        self._history: dict[str, list[RefcodeOwnership]] = {}

        for target in mappings:
            key = normalize_refcode(target.refcode)
            if key:
                # Last writer wins, same as the upsert that produced the rows
                self._targets[key] = target

        for row in history:
            key = normalize_refcode(row.refcode)
            if key:
                self._history.setdefault(key, []).append(row)

    @classmethod
    def empty(cls) -> "RefcodeRegistry":
        return cls()

    def __len__(self) -> int:
        return len(self._targets)

    def __contains__(self, code: str) -> bool:
        key = normalize_refcode(code)
        return key is not None and key in self._targets

    def lookup(self, code: str | None) -> RefcodeTarget | None:
        key = normalize_refcode(code)
        if key is None:
            return None
        return self._targets.get(key)

    def owner_on(self, code: str | None, day: datetime.date) -> RefcodeOwnership | None:
        key = normalize_refcode(code)
        if key is None:
            return None
        owner = None
        for row in self._history.get(key, ()):
            if row.covers(day):
                owner = row if owner is None else newer_owner(owner, row)
        return owner

    def resolve(self, code: str | None, on: datetime.date | None = None) -> RefcodeTarget | None:
        """Pointer lookup, narrowed to the ad that owned the code on `on`."""
        target = self.lookup(code)
        if target is None or on is None:
            return target

        owner = self.owner_on(code, on)
        if owner is None or owner.ad_id == target.ad_id:
            return target

        return dataclasses.replace(
            target,
            ad_id=owner.ad_id,
            ad_name=owner.ad_name,
            campaign_id=owner.campaign_id or target.campaign_id,
            campaign_name=owner.campaign_name or target.campaign_name,
        )
