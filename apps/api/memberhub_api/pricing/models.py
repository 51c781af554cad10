"""
Pydantic models for the provider price catalog
"""

from typing import List, Literal, Optional

from pydantic import BaseModel, Field


class CatalogPriceModel(BaseModel):
    """One provider price and the entitlement it sells"""
    price_ref: str
    tier: Literal["collective", "insider"]
    billing_cycle: Literal["MONTHLY", "ANNUAL"]
    amount_minor: int = Field(ge=0)
    currency: str = "usd"
    lookup_key: Optional[str] = None


class PriceCatalogModel(BaseModel):
    """Price catalog document (fixtures/price_catalog.json)"""
    catalog_version: str
    default_tier: Literal["collective", "insider"]
    default_billing_cycle: Literal["MONTHLY", "ANNUAL"] = "MONTHLY"
    prices: List[CatalogPriceModel]

    def find(self, price_ref: Optional[str] = None, lookup_key: Optional[str] = None) -> Optional[CatalogPriceModel]:
        """Match by provider price id first, then by lookup key"""
        for price in self.prices:
            if price_ref and price.price_ref == price_ref:
                return price
        for price in self.prices:
            if lookup_key and price.lookup_key == lookup_key:
                return price
        return None
