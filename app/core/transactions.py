"""Read-only view of a fundraising transaction as the engine consumes it."""

import datetime
from dataclasses import dataclass
from decimal import Decimal

REFUND_TYPES = {"refund", "chargeback", "cancellation"}


@dataclass(frozen=True)
class TransactionRecord:
    organization_id: str
    transaction_id: str
    transaction_date: datetime.datetime
    transaction_type: str = "donation"
    amount: Decimal | None = None
    net_amount: Decimal | None = None
    donor_email: str | None = None
    donor_phone: str | None = None
    refcode: str | None = None
    refcode2: str | None = None
    refcode_custom: str | None = None
    click_id: str | None = None
    source_campaign: str | None = None

    @property
    def is_refund(self) -> bool:
        return (self.transaction_type or "").strip().lower() in REFUND_TYPES
