"""Database layer for priceledger with async SQLAlchemy."""

from priceledger.db.connection import close_db, get_session, get_session_factory, init_db
from priceledger.db.models import Base, PriceHistoryModel, ProductModel, VariantModel

__all__ = [
    "Base",
    "ProductModel",
    "VariantModel",
    "PriceHistoryModel",
    "get_session",
    "get_session_factory",
    "init_db",
    "close_db",
]
