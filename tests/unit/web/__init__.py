"""Unit tests for priceledger web route modules.

Structure:
    tests/unit/web/
    ├── test_auth.py                  # Session auth and admin guard
    └── test_routes_price_history.py  # Price history and audit routes

Testing pattern:
    - Router-only FastAPI app with TestClient
    - Ledger replaced through dependency_overrides
    - Error taxonomy mapped to HTTP status codes
"""
