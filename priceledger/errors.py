"""Error taxonomy for the price ledger.

Every failure leaves the ledger and the cached aggregate mutually consistent:
writes only happen inside a single transaction, so a raised error means
nothing was committed for that operation.
"""

from __future__ import annotations


class LedgerError(Exception):
    """Base class for all price ledger errors."""


class ValidationError(LedgerError):
    """Price or request parameter is malformed (negative, non-numeric, ...).

    Raised before any write happens.
    """


class NotFoundError(LedgerError):
    """Referenced product or variant does not exist."""


class ConcurrencyConflict(LedgerError):
    """Another writer committed to the same entity first.

    The recorder retries these automatically; callers only see one when the
    retry budget is exhausted.
    """


class NoHistoryError(LedgerError):
    """Lowest-price calculation was asked about an entity with no ledger entries.

    A well-formed entity always has its creation entry, so this signals an
    invariant violation rather than a user error.
    """
