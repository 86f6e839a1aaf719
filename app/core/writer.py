"""
Attribution writer: one row per transaction id, upserted in batches.

Writes are idempotent (upsert on transaction_id), so a re-run converges
and a killed run is finished by the next one. A failing batch is retried
record by record; a failing record is logged, counted, and skipped.
"""

import datetime
from collections import Counter
from collections.abc import Sequence

from app.core.touchpoints import Touch
from app.core.transactions import TransactionRecord
from app.core.weighting import allocate_weights

import structlog

logger = structlog.get_logger()

METHOD_ORGANIC = "organic"


def _touch_entry(touch: Touch, weight: float) -> dict:
    return {
        "channel": touch.channel,
        "campaign": touch.campaign_label,
        "campaign_id": touch.campaign_id,
        "ad_id": touch.ad_id,
        "occurred_at": touch.occurred_at.isoformat(),
        "provenance": touch.provenance,
        "weight": round(weight, 6),
    }


def build_attribution_row(
    txn: TransactionRecord,
    method: str,
    chain: Sequence[Touch],
    confidence: float | None,
    calculated_at: datetime.datetime,
) -> dict:
    weights = allocate_weights(chain)
    first = chain[0] if chain else None
    last = chain[-1] if chain else None

    return {
        "transaction_id": txn.transaction_id,
        "organization_id": txn.organization_id,
        "donor_email": (txn.donor_email or "").strip() or None,
        "first_touch_channel": first.channel if first else None,
        "first_touch_campaign": first.campaign_label if first else None,
        "first_touch_weight": weights.first,
        "last_touch_channel": last.channel if last else None,
        "last_touch_campaign": last.campaign_label if last else None,
        "last_touch_weight": weights.last,
        "middle_touches": [
            _touch_entry(touch, weight)
            for touch, weight in zip(chain[1:-1], weights.middles)
        ],
        "total_touchpoints": len(chain),
        "attribution_method": method if chain else METHOD_ORGANIC,
        "attribution_confidence": confidence if chain else None,
        "attribution_calculated_at": calculated_at,
    }


class AttributionWriter:
    """Buffers rows and upserts them in batches.

    `written` and `by_method` count rows the store actually inserted or
    updated, so rows held back by `only_if_method` or lost to a failed
    write are not reported.
    """

    def __init__(self, store, batch_size: int, dry_run: bool = False, only_if_method: str | None = None):
        self.store = store
        self.batch_size = batch_size
        self.dry_run = dry_run
        self.only_if_method = only_if_method
        self.written = 0
        self.errors = 0
        self.by_method: Counter[str] = Counter()
        self._pending: list[dict] = []

    async def add(self, row: dict):
        self._pending.append(row)
        if len(self._pending) >= self.batch_size:
            await self.flush()

    def _record(self, rows: Sequence[dict], count: int):
        self.written += count
        methods = Counter(row["attribution_method"] for row in rows)
        if count == len(rows):
            self.by_method.update(methods)
        elif count and len(methods) == 1:
            # Guard skipped some rows; which ones is unknown unless all share a method
            self.by_method[next(iter(methods))] += count

    async def flush(self):
        rows, self._pending = self._pending, []
        if not rows:
            return
        if self.dry_run:
            self._record(rows, len(rows))
            return

        try:
            count = await self.store.upsert_attributions(rows, only_if_method=self.only_if_method)
            self._record(rows, count)
            return
        except Exception as e:
            logger.warning("attribution_batch_write_failed", rows=len(rows), error=str(e))

        for row in rows:
            try:
                count = await self.store.upsert_attributions([row], only_if_method=self.only_if_method)
                self._record([row], count)
            except Exception as e:
                self.errors += 1
                logger.error(
                    "attribution_write_failed",
                    transaction_id=row["transaction_id"],
                    organization_id=str(row["organization_id"]),
                    error=str(e),
                )
