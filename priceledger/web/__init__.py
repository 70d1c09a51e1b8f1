"""priceledger REST API (FastAPI)."""
