"""priceledger - price-change audit ledger with rolling 30-day lowest-price disclosure."""

__version__ = "1.0.0"
