"""
Price catalog loader with JSON Schema validation

The catalog is the fallback that maps a provider price to a tier and billing
cycle when neither the subscription nor the price carries tier metadata.
"""

import json
import os
from pathlib import Path
from typing import Optional

from jsonschema import ValidationError as JsonSchemaValidationError
from jsonschema import validate

from .models import PriceCatalogModel


class PriceCatalogLoader:
    """
    Load and validate the price catalog JSON against its JSON Schema
    """

    def __init__(self, catalog_path: Path, schema_path: Path):
        self.catalog_path = catalog_path
        self.schema_path = schema_path
        self._catalog: Optional[PriceCatalogModel] = None

    def load(self) -> PriceCatalogModel:
        """
        Load catalog JSON and validate against JSON Schema

        Raises:
            FileNotFoundError: catalog or schema file not found
            ValueError: JSON Schema or pydantic validation failed
        """
        with open(self.schema_path, "r", encoding="utf-8") as f:
            schema = json.load(f)

        with open(self.catalog_path, "r", encoding="utf-8") as f:
            catalog_json = json.load(f)

        try:
            validate(instance=catalog_json, schema=schema)
        except JsonSchemaValidationError as e:
            raise ValueError(f"JSON Schema validation failed: {e.message}") from e

        catalog = PriceCatalogModel(**catalog_json)
        self._catalog = catalog
        return catalog

    def get_catalog(self) -> PriceCatalogModel:
        """Loaded catalog (loads lazily on first access)"""
        if self._catalog is None:
            return self.load()
        return self._catalog


_catalog_loader: Optional[PriceCatalogLoader] = None


def get_catalog_loader() -> PriceCatalogLoader:
    """Singleton loader; PRICE_CATALOG_PATH overrides the bundled fixture"""
    global _catalog_loader
    if _catalog_loader is None:
        fixtures_dir = Path(__file__).parent / "fixtures"
        catalog_path = Path(os.getenv("PRICE_CATALOG_PATH") or fixtures_dir / "price_catalog.json")
        schema_path = fixtures_dir / "price_catalog_schema.json"
        _catalog_loader = PriceCatalogLoader(catalog_path, schema_path)
    return _catalog_loader


def get_price_catalog() -> PriceCatalogModel:
    return get_catalog_loader().get_catalog()


def reset_catalog_loader() -> None:
    """Forget the cached loader (tests, PRICE_CATALOG_PATH changes)"""
    global _catalog_loader
    _catalog_loader = None
