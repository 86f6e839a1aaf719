"""
Database models: the attribution "truth layer."

Design principles:
  - Transactions and touchpoints are read-only inputs (written upstream)
  - Registry, identity links and attribution records are upserted on their
    natural keys, never deleted here
  - Raw phone numbers are never stored; identity links carry hashes only
    (plus one trusted donor_email convenience field)
"""

from uuid import uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# Entity tables
# ---------------------------------------------------------------------------

class Organization(Base):
    __tablename__ = "organizations"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    name = Column(String(255), nullable=False)
    slug = Column(String(100), nullable=False, unique=True, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class AdCreative(Base):
    """One ad's creative as synced from the ad platform."""
    __tablename__ = "ad_creatives"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    organization_id = Column(UUID(as_uuid=True), ForeignKey("organizations.id"), nullable=False, index=True)
    platform = Column(String(50), nullable=True)              # meta, google, ...
    campaign_id = Column(String(100), nullable=True)
    campaign_name = Column(Text, nullable=True)
    ad_id = Column(String(100), nullable=False)
    ad_name = Column(Text, nullable=True)
    creative_id = Column(String(100), nullable=True)
    refcode = Column(String(255), nullable=True)              # explicit, wins over the URL param
    destination_url = Column(Text, nullable=True)
    utm_source = Column(String(255), nullable=True)
    utm_medium = Column(String(255), nullable=True)
    utm_campaign = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index("ix_ad_creatives_org_ad", "organization_id", "ad_id"),
    )


# ---------------------------------------------------------------------------
# Input tables (read-only here)
# ---------------------------------------------------------------------------

class Transaction(Base):
    __tablename__ = "transactions"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    organization_id = Column(UUID(as_uuid=True), ForeignKey("organizations.id"), nullable=False)
    transaction_id = Column(String(255), nullable=False, unique=True)
    transaction_date = Column(DateTime(timezone=True), nullable=False)
    transaction_type = Column(String(30), nullable=False, default="donation")  # donation, refund, ...
    amount = Column(Numeric(12, 2), nullable=True)
    net_amount = Column(Numeric(12, 2), nullable=True)
    donor_email = Column(String(320), nullable=True)
    donor_phone = Column(String(50), nullable=True)

    # --- Referral codes, in matcher priority order ---
    refcode = Column(String(255), nullable=True)
    refcode2 = Column(String(255), nullable=True)
    refcode_custom = Column(String(255), nullable=True)
    click_id = Column(String(255), nullable=True)             # often truncated upstream
    source_campaign = Column(Text, nullable=True)             # free text

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index("ix_transactions_org_date", "organization_id", "transaction_date"),
        Index("ix_transactions_org_txn", "organization_id", "transaction_id"),
    )


class Touchpoint(Base):
    """An observed exposure, recorded by upstream collectors."""
    __tablename__ = "attribution_touchpoints"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    organization_id = Column(UUID(as_uuid=True), ForeignKey("organizations.id"), nullable=False)
    touchpoint_type = Column(String(50), nullable=False)      # meta_ad_click, sms_send, email_open, ...
    occurred_at = Column(DateTime(timezone=True), nullable=False)

    donor_email = Column(String(320), nullable=True)
    donor_phone_hash = Column(String(64), nullable=True)      # ph_... (never the raw number)

    campaign_id = Column(String(100), nullable=True)
    campaign_name = Column(Text, nullable=True)
    ad_id = Column(String(100), nullable=True)
    refcode = Column(String(255), nullable=True)
    utm_source = Column(String(255), nullable=True)
    utm_medium = Column(String(255), nullable=True)
    utm_campaign = Column(String(255), nullable=True)

    metadata_ = Column("metadata", JSONB, nullable=True)      # fbclid / click_id / gclid (full length)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index("ix_touchpoints_org_occurred", "organization_id", "occurred_at"),
        Index("ix_touchpoints_org_email", "organization_id", "donor_email"),
        Index("ix_touchpoints_org_phone", "organization_id", "donor_phone_hash"),
    )


class AdDailyMetric(Base):
    """Per-ad daily delivery. First/last date with delivery bound an ad's tenure on its refcode."""
    __tablename__ = "ad_daily_metrics"

    id = Column(Integer, primary_key=True, autoincrement=True)
    organization_id = Column(UUID(as_uuid=True), ForeignKey("organizations.id"), nullable=False)
    campaign_id = Column(String(100), nullable=True)
    ad_id = Column(String(100), nullable=False)
    date = Column(Date, nullable=False)
    impressions = Column(Integer, default=0)
    clicks = Column(Integer, default=0)
    spend = Column(Numeric(12, 2), default=0)

    __table_args__ = (
        UniqueConstraint("organization_id", "ad_id", "date", name="uq_ad_daily_metrics_org_ad_date"),
        Index("ix_ad_daily_metrics_org_date", "organization_id", "date"),
    )


# ---------------------------------------------------------------------------
# Refcode registry
# ---------------------------------------------------------------------------

class RefcodeMapping(Base):
    """(org, refcode) → the newest ad using that code."""
    __tablename__ = "refcode_mappings"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    organization_id = Column(UUID(as_uuid=True), ForeignKey("organizations.id"), nullable=False)
    refcode = Column(String(255), nullable=False)
    platform = Column(String(50), nullable=True)
    campaign_id = Column(String(100), nullable=True)
    campaign_name = Column(Text, nullable=True)
    ad_id = Column(String(100), nullable=True)
    ad_name = Column(Text, nullable=True)
    creative_id = Column(String(100), nullable=True)
    utm_source = Column(String(255), nullable=True)
    utm_medium = Column(String(255), nullable=True)
    utm_campaign = Column(String(255), nullable=True)
    source = Column(String(30), nullable=False, default="creative_url")  # creative_url, click_backfill
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("organization_id", "refcode", name="uq_refcode_mappings_org_refcode"),
    )


class RefcodeMappingHistory(Base):
    """(org, refcode, ad) → tenure. Keeps older ads that shared a code."""
    __tablename__ = "refcode_mapping_history"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    organization_id = Column(UUID(as_uuid=True), ForeignKey("organizations.id"), nullable=False)
    refcode = Column(String(255), nullable=False)
    ad_id = Column(String(100), nullable=False)
    campaign_id = Column(String(100), nullable=True)
    campaign_name = Column(Text, nullable=True)
    ad_name = Column(Text, nullable=True)
    first_seen_at = Column(Date, nullable=False)
    last_seen_at = Column(Date, nullable=False)
    is_active = Column(Boolean, default=False)                # recomputed on every reconciliation
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("organization_id", "refcode", "ad_id", name="uq_refcode_history_org_refcode_ad"),
        CheckConstraint("first_seen_at <= last_seen_at", name="ck_refcode_history_seen_order"),
    )


# ---------------------------------------------------------------------------
# Identity resolution
# ---------------------------------------------------------------------------

class IdentityLink(Base):
    __tablename__ = "donor_identity_links"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    organization_id = Column(UUID(as_uuid=True), ForeignKey("organizations.id"), nullable=False)
    email_hash = Column(String(64), nullable=False)
    phone_hash = Column(String(64), nullable=False)
    donor_email = Column(String(320), nullable=True)          # normalized, from a trusted join
    source = Column(String(30), nullable=False, default="transaction")
    confidence = Column(Float, nullable=False, default=1.0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint("organization_id", "email_hash", "phone_hash", name="uq_identity_links_org_email_phone"),
        Index("ix_identity_links_org_phone", "organization_id", "phone_hash"),
    )


# ---------------------------------------------------------------------------
# Output
# ---------------------------------------------------------------------------

class AttributionRecord(Base):
    """One row per transaction id. Overwritten on recompute, never deleted here."""
    __tablename__ = "transaction_attribution"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    organization_id = Column(UUID(as_uuid=True), ForeignKey("organizations.id"), nullable=False)
    transaction_id = Column(String(255), nullable=False, unique=True)
    donor_email = Column(String(320), nullable=True)

    first_touch_channel = Column(String(50), nullable=True)
    first_touch_campaign = Column(Text, nullable=True)
    first_touch_weight = Column(Float, nullable=False, default=0.0)
    last_touch_channel = Column(String(50), nullable=True)
    last_touch_campaign = Column(Text, nullable=True)
    last_touch_weight = Column(Float, nullable=False, default=0.0)
    middle_touches = Column(JSONB, nullable=False, default=list)  # [{channel, campaign, weight, ...}]
    total_touchpoints = Column(Integer, nullable=False, default=0)

    attribution_method = Column(String(30), nullable=False)
    attribution_confidence = Column(Float, nullable=True)     # null for organic
    attribution_calculated_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index("ix_transaction_attribution_org_method", "organization_id", "attribution_method"),
    )
