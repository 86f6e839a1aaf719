"""
Touches: the units a touchpoint chain is made of.

Two variants, never mixed up downstream:
  - ObservedTouchpoint   → a real exposure recorded by an upstream collector
  - SyntheticTouchpoint  → built from a resolved identity (refcode mapping,
                           source-campaign text, timing guess); the touch
                           itself was never observed, so it is stamped with
                           the transaction time

Chains are ordered oldest first; position defines first/middle/last.
"""

import datetime
from dataclasses import dataclass, field

# Touchpoint type / platform → channel
KIND_CHANNELS: dict[str, str] = {
    "meta": "meta",
    "facebook": "meta",
    "instagram": "meta",
    "meta_ad_click": "meta",
    "meta_ad_impression": "meta",
    "google": "google",
    "google_ads": "google",
    "google_ad_click": "google",
    "sms": "sms",
    "sms_send": "sms",
    "sms_click": "sms",
    "switchboard": "sms",
    "email": "email",
    "email_click": "email",
    "email_open": "email",
    "ad_click": "paid_ad",
    "ad_impression": "paid_ad",
    "landing_page": "landing_page",
}

UNKNOWN_KINDS = {"", "other", "unknown", "unknown_touchpoint"}


def infer_channel(
    kind: str | None,
    utm_source: str | None = None,
    utm_medium: str | None = None,
) -> str:
    """Map a touchpoint type or platform to a channel.

    Unknown kinds fall back to UTM inference.
    """
    key = (kind or "").strip().lower()
    if key in KIND_CHANNELS:
        return KIND_CHANNELS[key]
    if key and key not in UNKNOWN_KINDS:
        return key

    medium = (utm_medium or "").lower()
    source = (utm_source or "").lower()

    if "cpc" in medium or "paid" in medium or "facebook" in source or "meta" in source:
        return "paid_ad"
    if "email" in medium or "email" in source:
        return "email"
    if "sms" in medium or "sms" in source:
        return "sms"
    if "social" in medium or "twitter" in source or "instagram" in source:
        return "social"
    if "organic" in medium or "google" in source:
        return "organic_search"
    if not utm_source and not utm_medium:
        return "direct"
    return "landing_page"


@dataclass(frozen=True)
class _Touch:
    occurred_at: datetime.datetime
    channel: str
    campaign_id: str | None = None
    campaign_name: str | None = None
    ad_id: str | None = None
    refcode: str | None = None
    utm_source: str | None = None
    utm_medium: str | None = None
    utm_campaign: str | None = None

    @property
    def campaign_label(self) -> str | None:
        return self.campaign_name or self.campaign_id or self.utm_campaign or self.refcode


@dataclass(frozen=True)
class ObservedTouchpoint(_Touch):
    touchpoint_id: str | None = None
    touchpoint_type: str | None = None
    email_hash: str | None = None
    phone_hash: str | None = None
    metadata: dict = field(default_factory=dict, compare=False, hash=False)

    provenance = "observed"

    @property
    def full_click_id(self) -> str | None:
        """Full platform click id carried in metadata, if any."""
        for key in ("fbclid", "click_id", "gclid"):
            value = self.metadata.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
        return None


@dataclass(frozen=True)
class SyntheticTouchpoint(_Touch):
    origin: str = "refcode"  # refcode | source_campaign | timing

    provenance = "synthetic"


Touch = ObservedTouchpoint | SyntheticTouchpoint
