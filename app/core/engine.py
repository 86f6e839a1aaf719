"""
Attribution engine: batch reconciliation of transactions to touchpoints.

One run:
  1. Load the refcode registry, identity index and touchpoints once
     (read-only for the rest of the run; load failures degrade to empty)
  2. Page through the window's transactions (keyset on transaction_id)
  3. Per transaction: refunds excluded → already attributed skipped
     (unless force_recompute) → deterministic → probabilistic → organic
  4. Weight the chain, buffer the row, upsert in batches

Records are independent: no cross-record transaction, no locks. A separate
path (recompute_organic) upgrades organic records by timing correlation.
"""

import datetime
import time
from dataclasses import dataclass, field
from uuid import UUID

from app.config import Settings, get_settings
from app.core.deterministic import DETERMINISTIC_CONFIDENCE, DeterministicMatcher
from app.core.errors import AttributionInputError, TransactionSourceError
from app.core.identity_index import IdentityIndex
from app.core.probabilistic import (
    METHOD_LINKED_TOUCHPOINT,
    METHOD_SOURCE_CAMPAIGN,
    METHOD_TIMING,
    METHOD_TOUCHPOINT,
    ProbabilisticMatcher,
    TouchpointIndex,
    pick_active_campaign,
    timing_match,
)
from app.core.registry import RefcodeRegistry
from app.core.transactions import TransactionRecord
from app.core.writer import METHOD_ORGANIC, AttributionWriter, build_attribution_row

import structlog

logger = structlog.get_logger()

METHOD_REFCODE = "refcode"

ATTRIBUTION_METHODS = (
    METHOD_REFCODE,
    METHOD_TOUCHPOINT,
    METHOD_SOURCE_CAMPAIGN,
    METHOD_LINKED_TOUCHPOINT,
    METHOD_TIMING,
    METHOD_ORGANIC,
)


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


@dataclass
class RunSummary:
    organization_id: str
    total_transactions: int = 0
    created: int = 0
    skipped: int = 0
    errors: int = 0
    refunds_excluded: int = 0
    by_method: dict[str, int] = field(default_factory=lambda: {m: 0 for m in ATTRIBUTION_METHODS})
    dry_run: bool = False
    duration_ms: int = 0

    def to_dict(self) -> dict:
        return {
            "organization_id": self.organization_id,
            "total_transactions": self.total_transactions,
            "created": self.created,
            "skipped": self.skipped,
            "errors": self.errors,
            "refunds_excluded": self.refunds_excluded,
            "by_method": dict(self.by_method),
            "dry_run": self.dry_run,
            "duration_ms": self.duration_ms,
        }


@dataclass
class TimingSummary:
    organization_id: str
    considered: int = 0
    upgraded: int = 0
    unmatched: int = 0
    errors: int = 0
    dry_run: bool = False

    def to_dict(self) -> dict:
        return {
            "organization_id": self.organization_id,
            "considered": self.considered,
            "upgraded": self.upgraded,
            "unmatched": self.unmatched,
            "errors": self.errors,
            "dry_run": self.dry_run,
        }


class AttributionEngine:
    def __init__(self, store, settings: Settings | None = None, clock=_utcnow):
        self.store = store
        self.settings = settings or get_settings()
        self.clock = clock

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _validate(self, organization_id, days_back: int, batch_size: int, lookback_days: int):
        if not organization_id or not str(organization_id).strip():
            raise AttributionInputError("organization_id is required.")
        try:
            UUID(str(organization_id))
        except ValueError:
            raise AttributionInputError("organization_id must be a UUID.")
        if not 1 <= days_back <= self.settings.max_days_back:
            raise AttributionInputError(
                f"days_back must be between 1 and {self.settings.max_days_back}."
            )
        if not 1 <= lookback_days <= self.settings.max_days_back:
            raise AttributionInputError(
                f"lookback_days must be between 1 and {self.settings.max_days_back}."
            )
        if not 1 <= batch_size <= self.settings.max_batch_size:
            raise AttributionInputError(
                f"batch_size must be between 1 and {self.settings.max_batch_size}."
            )

    # ------------------------------------------------------------------
    # Lookup loading (degrades, never aborts)
    # ------------------------------------------------------------------

    async def _load_registry(self, organization_id: str) -> RefcodeRegistry:
        try:
            targets = await self.store.load_refcode_targets(organization_id)
            history = await self.store.load_refcode_history(organization_id)
        except Exception as e:
            logger.error("refcode_registry_unavailable", organization_id=organization_id, error=str(e))
            return RefcodeRegistry.empty()
        return RefcodeRegistry(targets, history)

    async def _load_identities(self, organization_id: str) -> IdentityIndex:
        try:
            links = await self.store.load_identity_links(organization_id)
        except Exception as e:
            logger.error("identity_index_unavailable", organization_id=organization_id, error=str(e))
            return IdentityIndex.empty()
        return IdentityIndex(links)

    async def _load_touchpoints(self, organization_id: str, since, until) -> TouchpointIndex:
        try:
            rows = await self.store.load_touchpoints(organization_id, since, until)
        except Exception as e:
            logger.error("touchpoints_unavailable", organization_id=organization_id, error=str(e))
            return TouchpointIndex.empty()
        return TouchpointIndex(rows)

    async def _existing_ids(self, organization_id: str, transaction_ids: list[str]) -> set[str]:
        try:
            return set(await self.store.existing_attribution_ids(organization_id, transaction_ids))
        except Exception as e:
            # Writes are idempotent; losing the skip set only costs rework
            logger.warning("existing_attributions_unavailable", organization_id=organization_id, error=str(e))
            return set()

    async def _fetch_page(self, organization_id, since, until, after_id, limit) -> list[TransactionRecord]:
        try:
            return await self.store.fetch_transactions(organization_id, since, until, after_id, limit)
        except Exception as e:
            logger.error(
                "transactions_unreadable",
                organization_id=organization_id,
                after_id=after_id,
                error=str(e),
            )
            raise TransactionSourceError(f"Cannot read transactions: {e}") from e

    # ------------------------------------------------------------------
    # Per-transaction classification
    # ------------------------------------------------------------------

    def attribute(
        self,
        txn: TransactionRecord,
        deterministic: DeterministicMatcher,
        probabilistic: ProbabilisticMatcher,
        calculated_at: datetime.datetime,
    ) -> dict:
        found = deterministic.chain_for(txn)
        if found is not None:
            _, chain = found
            return build_attribution_row(txn, METHOD_REFCODE, chain, DETERMINISTIC_CONFIDENCE, calculated_at)

        inferred = probabilistic.match(txn)
        if inferred is not None:
            return build_attribution_row(txn, inferred.method, inferred.chain, inferred.confidence, calculated_at)

        return build_attribution_row(txn, METHOD_ORGANIC, (), None, calculated_at)

    # ------------------------------------------------------------------
    # Batch run
    # ------------------------------------------------------------------

    async def run(
        self,
        organization_id: str,
        days_back: int | None = None,
        batch_size: int | None = None,
        force_recompute: bool = False,
        dry_run: bool = False,
        lookback_days: int | None = None,
    ) -> RunSummary:
        days_back = days_back if days_back is not None else self.settings.default_lookback_days
        batch_size = batch_size if batch_size is not None else self.settings.default_batch_size
        lookback_days = lookback_days if lookback_days is not None else self.settings.default_lookback_days
        self._validate(organization_id, days_back, batch_size, lookback_days)
        organization_id = str(organization_id)

        started = time.monotonic()
        until = self.clock()
        since = until - datetime.timedelta(days=days_back)
        summary = RunSummary(organization_id=organization_id, dry_run=dry_run)

        logger.info(
            "attribution_run_started",
            organization_id=organization_id,
            days_back=days_back,
            batch_size=batch_size,
            force_recompute=force_recompute,
            dry_run=dry_run,
        )

        registry = await self._load_registry(organization_id)
        identities = await self._load_identities(organization_id)
        touchpoints = await self._load_touchpoints(
            organization_id, since - datetime.timedelta(days=lookback_days), until
        )
        logger.info(
            "attribution_lookups_loaded",
            organization_id=organization_id,
            refcodes=len(registry),
            identity_links=len(identities),
            touchpoints=len(touchpoints),
        )

        deterministic = DeterministicMatcher(registry)
        probabilistic = ProbabilisticMatcher(
            touchpoints,
            identities,
            lookback_days=lookback_days,
            source_campaign_confidence=self.settings.source_campaign_confidence,
        )
        writer = AttributionWriter(self.store, batch_size=batch_size, dry_run=dry_run)

        after_id = None
        while True:
            page = await self._fetch_page(organization_id, since, until, after_id, batch_size)
            if not page:
                break
            after_id = page[-1].transaction_id

            existing = set() if force_recompute else await self._existing_ids(
                organization_id, [t.transaction_id for t in page]
            )

            for txn in page:
                summary.total_transactions += 1
                if txn.is_refund:
                    summary.refunds_excluded += 1
                    continue
                if txn.transaction_id in existing:
                    summary.skipped += 1
                    continue

                row = self.attribute(txn, deterministic, probabilistic, self.clock())
                await writer.add(row)

            await writer.flush()
            if len(page) < batch_size:
                break

        await writer.flush()
        summary.created = writer.written
        summary.errors = writer.errors
        for method, count in writer.by_method.items():
            summary.by_method[method] = summary.by_method.get(method, 0) + count
        summary.duration_ms = int((time.monotonic() - started) * 1000)

        logger.info("attribution_run_complete", **summary.to_dict())
        return summary

    # ------------------------------------------------------------------
    # Organic recomputation by timing correlation
    # ------------------------------------------------------------------

    async def recompute_organic(
        self,
        organization_id: str,
        days_back: int | None = None,
        batch_size: int | None = None,
        dry_run: bool = False,
    ) -> TimingSummary:
        days_back = days_back if days_back is not None else self.settings.default_lookback_days
        batch_size = batch_size if batch_size is not None else self.settings.default_batch_size
        self._validate(organization_id, days_back, batch_size, self.settings.default_lookback_days)
        organization_id = str(organization_id)

        until = self.clock()
        since = until - datetime.timedelta(days=days_back)
        summary = TimingSummary(organization_id=organization_id, dry_run=dry_run)

        try:
            organic = await self.store.load_organic_transactions(organization_id, since, until)
        except Exception as e:
            logger.error("organic_transactions_unreadable", organization_id=organization_id, error=str(e))
            raise TransactionSourceError(f"Cannot read organic transactions: {e}") from e

        try:
            flights = await self.store.load_campaign_flights(organization_id, since.date(), until.date())
        except Exception as e:
            logger.error("campaign_flights_unavailable", organization_id=organization_id, error=str(e))
            flights = []

        # Only rows still organic at write time are replaced
        writer = AttributionWriter(
            self.store, batch_size=batch_size, dry_run=dry_run, only_if_method=METHOD_ORGANIC
        )
        for txn in organic:
            if txn.is_refund:
                continue
            summary.considered += 1
            flight = pick_active_campaign(flights, txn.transaction_date.date())
            if flight is None:
                summary.unmatched += 1
                continue
            match = timing_match(flight, txn.transaction_date, confidence=self.settings.timing_confidence)
            await writer.add(
                build_attribution_row(txn, match.method, match.chain, match.confidence, self.clock())
            )

        await writer.flush()
        summary.upgraded = writer.written
        summary.errors = writer.errors

        logger.info("organic_recompute_complete", **summary.to_dict())
        return summary
