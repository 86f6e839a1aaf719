"""
Attribution store: the only SQL-aware component.

Reads hand the core plain records (TransactionRecord, ObservedTouchpoint,
RefcodeTarget, ...); writes are PostgreSQL upserts on the natural keys:

  transaction_attribution   → transaction_id
  refcode_mappings          → (organization_id, refcode)
  refcode_mapping_history   → (organization_id, refcode, ad_id)
  donor_identity_links      → (organization_id, email_hash, phone_hash)

Each write commits on success and rolls back before re-raising.
"""

import datetime
from collections.abc import Iterable, Sequence
from uuid import UUID

from sqlalchemy import func, or_, select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.identity_hash import hash_email
from app.core.probabilistic import CampaignFlight
from app.core.reconciliation import FB_REFCODE_PREFIX, FULL_CLICK_ID_MIN_LENGTH, Creative
from app.core.registry import RefcodeOwnership, RefcodeTarget
from app.core.touchpoints import ObservedTouchpoint, infer_channel
from app.core.transactions import TransactionRecord
from app.core.writer import METHOD_ORGANIC
from app.models.tables import (
    AdCreative,
    AdDailyMetric,
    AttributionRecord,
    IdentityLink,
    RefcodeMapping,
    RefcodeMappingHistory,
    Touchpoint,
    Transaction,
)

ATTRIBUTION_UPDATE_COLUMNS = (
    "organization_id",
    "donor_email",
    "first_touch_channel",
    "first_touch_campaign",
    "first_touch_weight",
    "last_touch_channel",
    "last_touch_campaign",
    "last_touch_weight",
    "middle_touches",
    "total_touchpoints",
    "attribution_method",
    "attribution_confidence",
    "attribution_calculated_at",
)

TARGET_COLUMNS = (
    "platform",
    "campaign_id",
    "campaign_name",
    "ad_id",
    "ad_name",
    "creative_id",
    "utm_source",
    "utm_medium",
    "utm_campaign",
    "source",
)


def _org(organization_id) -> UUID:
    if isinstance(organization_id, UUID):
        return organization_id
    return UUID(str(organization_id))


# ---------------------------------------------------------------------------
# Upsert statements
# ---------------------------------------------------------------------------

def attribution_upsert(rows: Sequence[dict], only_if_method: str | None = None):
    values = [{**row, "organization_id": _org(row["organization_id"])} for row in rows]
    stmt = insert(AttributionRecord).values(values)
    return stmt.on_conflict_do_update(
        index_elements=[AttributionRecord.transaction_id],
        set_={name: stmt.excluded[name] for name in ATTRIBUTION_UPDATE_COLUMNS},
        # Guarded recompute: leave rows another method already claimed
        where=(AttributionRecord.attribution_method == only_if_method) if only_if_method else None,
    )


def refcode_mapping_upsert(organization_id, targets: Sequence[RefcodeTarget]):
    org = _org(organization_id)
    values = [
        {"organization_id": org, "refcode": t.refcode, **{name: getattr(t, name) for name in TARGET_COLUMNS}}
        for t in targets
    ]
    stmt = insert(RefcodeMapping).values(values)
    return stmt.on_conflict_do_update(
        index_elements=[RefcodeMapping.organization_id, RefcodeMapping.refcode],
        set_={**{name: stmt.excluded[name] for name in TARGET_COLUMNS}, "updated_at": func.now()},
    )


def refcode_history_upsert(organization_id, rows: Sequence[RefcodeOwnership]):
    org = _org(organization_id)
    values = [
        {
            "organization_id": org,
            "refcode": row.refcode,
            "ad_id": row.ad_id,
            "campaign_id": row.campaign_id,
            "campaign_name": row.campaign_name,
            "ad_name": row.ad_name,
            "first_seen_at": row.first_seen,
            "last_seen_at": row.last_seen,
            "is_active": row.is_active,
        }
        for row in rows
    ]
    stmt = insert(RefcodeMappingHistory).values(values)
    return stmt.on_conflict_do_update(
        index_elements=[
            RefcodeMappingHistory.organization_id,
            RefcodeMappingHistory.refcode,
            RefcodeMappingHistory.ad_id,
        ],
        set_={
            "campaign_id": stmt.excluded.campaign_id,
            "campaign_name": stmt.excluded.campaign_name,
            "ad_name": stmt.excluded.ad_name,
            # Tenure only ever widens
            "first_seen_at": func.least(RefcodeMappingHistory.first_seen_at, stmt.excluded.first_seen_at),
            "last_seen_at": func.greatest(RefcodeMappingHistory.last_seen_at, stmt.excluded.last_seen_at),
            "is_active": stmt.excluded.is_active,
            "updated_at": func.now(),
        },
    )


def identity_link_upsert(organization_id, links: Sequence[dict]):
    org = _org(organization_id)
    stmt = insert(IdentityLink).values([{**link, "organization_id": org} for link in links])
    return stmt.on_conflict_do_update(
        index_elements=[IdentityLink.organization_id, IdentityLink.email_hash, IdentityLink.phone_hash],
        set_={
            "donor_email": stmt.excluded.donor_email,
            "source": stmt.excluded.source,
            "confidence": stmt.excluded.confidence,
            "updated_at": func.now(),
        },
    )


# ---------------------------------------------------------------------------
# Row → record
# ---------------------------------------------------------------------------

def _transaction_record(row: Transaction) -> TransactionRecord:
    return TransactionRecord(
        organization_id=str(row.organization_id),
        transaction_id=row.transaction_id,
        transaction_date=row.transaction_date,
        transaction_type=row.transaction_type or "donation",
        amount=row.amount,
        net_amount=row.net_amount,
        donor_email=row.donor_email,
        donor_phone=row.donor_phone,
        refcode=row.refcode,
        refcode2=row.refcode2,
        refcode_custom=row.refcode_custom,
        click_id=row.click_id,
        source_campaign=row.source_campaign,
    )


def _observed_touchpoint(row: Touchpoint) -> ObservedTouchpoint:
    email_hash = hash_email(row.donor_email)
    return ObservedTouchpoint(
        occurred_at=row.occurred_at,
        channel=infer_channel(row.touchpoint_type, row.utm_source, row.utm_medium),
        campaign_id=row.campaign_id,
        campaign_name=row.campaign_name,
        ad_id=row.ad_id,
        refcode=row.refcode,
        utm_source=row.utm_source,
        utm_medium=row.utm_medium,
        utm_campaign=row.utm_campaign,
        touchpoint_id=str(row.id),
        touchpoint_type=row.touchpoint_type,
        email_hash=email_hash or None,
        phone_hash=row.donor_phone_hash or None,
        metadata=row.metadata_ or {},
    )


class AttributionStore:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def _write(self, stmt) -> int:
        """Execute and commit; returns the number of rows inserted or updated."""
        try:
            result = await self.db.execute(stmt)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        return result.rowcount

    # --- Attribution run ----------------------------------------------

    async def load_refcode_targets(self, organization_id) -> list[RefcodeTarget]:
        stmt = select(RefcodeMapping).where(RefcodeMapping.organization_id == _org(organization_id))
        result = await self.db.execute(stmt)
        return [
            RefcodeTarget(refcode=row.refcode, **{name: getattr(row, name) for name in TARGET_COLUMNS})
            for row in result.scalars().all()
        ]

    async def load_refcode_history(self, organization_id) -> list[RefcodeOwnership]:
        stmt = select(RefcodeMappingHistory).where(
            RefcodeMappingHistory.organization_id == _org(organization_id)
        )
        result = await self.db.execute(stmt)
        return [
            RefcodeOwnership(
                refcode=row.refcode,
                ad_id=row.ad_id,
                first_seen=row.first_seen_at,
                last_seen=row.last_seen_at,
                is_active=bool(row.is_active),
                campaign_id=row.campaign_id,
                campaign_name=row.campaign_name,
                ad_name=row.ad_name,
            )
            for row in result.scalars().all()
        ]

    async def load_identity_links(self, organization_id) -> list[tuple[str, str]]:
        stmt = select(IdentityLink.email_hash, IdentityLink.phone_hash).where(
            IdentityLink.organization_id == _org(organization_id)
        )
        result = await self.db.execute(stmt)
        return [(email_hash, phone_hash) for email_hash, phone_hash in result.all()]

    async def load_touchpoints(self, organization_id, since, until) -> list[ObservedTouchpoint]:
        stmt = (
            select(Touchpoint)
            .where(
                Touchpoint.organization_id == _org(organization_id),
                Touchpoint.occurred_at >= since,
                Touchpoint.occurred_at <= until,
            )
            .order_by(Touchpoint.occurred_at)
        )
        result = await self.db.execute(stmt)
        return [_observed_touchpoint(row) for row in result.scalars().all()]

    async def fetch_transactions(
        self,
        organization_id,
        since: datetime.datetime,
        until: datetime.datetime,
        after_id: str | None,
        limit: int,
    ) -> list[TransactionRecord]:
        """One keyset page, ordered by transaction_id."""
        stmt = select(Transaction).where(
            Transaction.organization_id == _org(organization_id),
            Transaction.transaction_date >= since,
            Transaction.transaction_date <= until,
        )
        if after_id is not None:
            stmt = stmt.where(Transaction.transaction_id > after_id)
        stmt = stmt.order_by(Transaction.transaction_id).limit(limit)
        result = await self.db.execute(stmt)
        return [_transaction_record(row) for row in result.scalars().all()]

    async def existing_attribution_ids(self, organization_id, transaction_ids: Iterable[str]) -> set[str]:
        ids = list(transaction_ids)
        if not ids:
            return set()
        stmt = select(AttributionRecord.transaction_id).where(
            AttributionRecord.organization_id == _org(organization_id),
            AttributionRecord.transaction_id.in_(ids),
        )
        result = await self.db.execute(stmt)
        return set(result.scalars().all())

    async def upsert_attributions(self, rows: Sequence[dict], only_if_method: str | None = None) -> int:
        """Upsert attribution rows. Rows held back by the method guard are not counted."""
        if not rows:
            return 0
        return await self._write(attribution_upsert(rows, only_if_method))

    # --- Organic recompute --------------------------------------------

    async def load_organic_transactions(self, organization_id, since, until) -> list[TransactionRecord]:
        stmt = (
            select(Transaction)
            .join(AttributionRecord, AttributionRecord.transaction_id == Transaction.transaction_id)
            .where(
                Transaction.organization_id == _org(organization_id),
                Transaction.transaction_date >= since,
                Transaction.transaction_date <= until,
                AttributionRecord.attribution_method == METHOD_ORGANIC,
            )
            .order_by(Transaction.transaction_date)
        )
        result = await self.db.execute(stmt)
        return [_transaction_record(row) for row in result.scalars().all()]

    async def load_campaign_flights(
        self,
        organization_id,
        since: datetime.date,
        until: datetime.date,
    ) -> list[CampaignFlight]:
        org = _org(organization_id)
        stmt = (
            select(
                AdDailyMetric.campaign_id,
                func.min(AdDailyMetric.date),
                func.max(AdDailyMetric.date),
                func.coalesce(func.sum(AdDailyMetric.impressions), 0),
            )
            .where(
                AdDailyMetric.organization_id == org,
                AdDailyMetric.campaign_id.is_not(None),
                AdDailyMetric.date >= since,
                AdDailyMetric.date <= until,
                AdDailyMetric.impressions > 0,
            )
            .group_by(AdDailyMetric.campaign_id)
        )
        result = await self.db.execute(stmt)
        rows = result.all()
        if not rows:
            return []

        names_stmt = (
            select(AdCreative.campaign_id, AdCreative.campaign_name, AdCreative.platform)
            .where(
                AdCreative.organization_id == org,
                AdCreative.campaign_id.in_([row[0] for row in rows]),
            )
        )
        names = {}
        for campaign_id, campaign_name, platform in (await self.db.execute(names_stmt)).all():
            names.setdefault(campaign_id, (campaign_name, platform))

        return [
            CampaignFlight(
                campaign_id=campaign_id,
                start_date=start_date,
                end_date=end_date,
                impressions=int(impressions),
                campaign_name=names.get(campaign_id, (None, None))[0],
                platform=names.get(campaign_id, (None, None))[1],
            )
            for campaign_id, start_date, end_date, impressions in rows
        ]

    # --- Refcode reconciliation ---------------------------------------

    async def load_ad_creatives(self, organization_id) -> list[Creative]:
        stmt = select(AdCreative).where(AdCreative.organization_id == _org(organization_id))
        result = await self.db.execute(stmt)
        return [
            Creative(
                ad_id=row.ad_id,
                platform=row.platform,
                campaign_id=row.campaign_id,
                campaign_name=row.campaign_name,
                ad_name=row.ad_name,
                creative_id=row.creative_id,
                refcode=row.refcode,
                destination_url=row.destination_url,
                utm_source=row.utm_source,
                utm_medium=row.utm_medium,
                utm_campaign=row.utm_campaign,
            )
            for row in result.scalars().all()
        ]

    async def load_ad_delivery(self, organization_id) -> dict[str, tuple[datetime.date, datetime.date]]:
        """ad_id → (first, last) date with impressions."""
        stmt = (
            select(AdDailyMetric.ad_id, func.min(AdDailyMetric.date), func.max(AdDailyMetric.date))
            .where(
                AdDailyMetric.organization_id == _org(organization_id),
                AdDailyMetric.impressions > 0,
            )
            .group_by(AdDailyMetric.ad_id)
        )
        result = await self.db.execute(stmt)
        return {ad_id: (first, last) for ad_id, first, last in result.all()}

    async def upsert_refcode_targets(self, organization_id, targets: Sequence[RefcodeTarget]):
        if targets:
            await self._write(refcode_mapping_upsert(organization_id, targets))

    async def upsert_refcode_history(self, organization_id, rows: Sequence[RefcodeOwnership]):
        if rows:
            await self._write(refcode_history_upsert(organization_id, rows))

    # --- Identity index -----------------------------------------------

    async def fetch_identity_candidates(self, organization_id, since, until) -> list[TransactionRecord]:
        stmt = select(Transaction).where(
            Transaction.organization_id == _org(organization_id),
            Transaction.transaction_date >= since,
            Transaction.transaction_date <= until,
            Transaction.donor_email.is_not(None),
            Transaction.donor_phone.is_not(None),
        )
        result = await self.db.execute(stmt)
        return [_transaction_record(row) for row in result.scalars().all()]

    async def upsert_identity_links(self, organization_id, links: Sequence[dict]):
        if links:
            await self._write(identity_link_upsert(organization_id, links))

    # --- Click-id backfill --------------------------------------------

    async def load_click_backfill_candidates(self, organization_id, limit: int) -> list[TransactionRecord]:
        """Most recent transactions carrying only a truncated click id."""
        stmt = (
            select(Transaction)
            .where(
                Transaction.organization_id == _org(organization_id),
                or_(
                    Transaction.click_id.is_not(None)
                    & (func.length(Transaction.click_id) < FULL_CLICK_ID_MIN_LENGTH),
                    Transaction.click_id.is_(None)
                    & Transaction.refcode2.istartswith(FB_REFCODE_PREFIX, autoescape=True),
                ),
            )
            .order_by(Transaction.transaction_date.desc())
            .limit(limit)
        )
        result = await self.db.execute(stmt)
        return [_transaction_record(row) for row in result.scalars().all()]
