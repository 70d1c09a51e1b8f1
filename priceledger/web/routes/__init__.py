"""priceledger web route modules.

Each module exports a `router` (APIRouter) that `priceledger.web.app`
includes.

Usage:
    from priceledger.web.routes import price_history
    app.include_router(price_history.router)
"""

from priceledger.web.routes import auth, health, price_history

__all__ = ["auth", "health", "price_history"]
