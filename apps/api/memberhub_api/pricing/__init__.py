"""
Price catalog: provider price → tier / billing cycle
"""

from .catalog_loader import (
    PriceCatalogLoader,
    get_catalog_loader,
    get_price_catalog,
    reset_catalog_loader,
)
from .models import CatalogPriceModel, PriceCatalogModel

__all__ = [
    "CatalogPriceModel",
    "PriceCatalogModel",
    "PriceCatalogLoader",
    "get_catalog_loader",
    "get_price_catalog",
    "reset_catalog_loader",
]
