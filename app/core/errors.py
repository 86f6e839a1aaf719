"""Attribution error taxonomy.

Only failures that abort an invocation are exceptions. Lookup failures and
per-record write failures degrade and are counted instead.
"""


class AttributionError(Exception):
    """Base class for errors that abort an attribution invocation."""


class AttributionInputError(AttributionError):
    """Invocation parameters are missing or out of range. Nothing was written."""


class TransactionSourceError(AttributionError):
    """Transactions could not be read for the requested window."""
