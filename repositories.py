"""
Catalog Search Service — Catalog Repository

The catalog is owned by an external store; the search core only needs
three read operations:
  1. find_all            — full scan (vocabulary mining, reindexing)
  2. find_by_id          — resolve vector-search hits back to products
  3. search_text_contains — case-insensitive OR match on name/description
"""
from __future__ import annotations
import json
import logging
from pathlib import Path
from typing import Iterable, Optional

from models import Page, PageRequest, Product

logger = logging.getLogger(__name__)


# ============================================================
# Repository Interface
# ============================================================

class CatalogRepository:
    """
    Abstract catalog access. In production, backed by asyncpg
    (see asyncpg_repository.AsyncPGCatalogRepository).
    """

    async def find_all(self) -> list[Product]:
        raise NotImplementedError

    async def find_by_id(self, product_id: int) -> Optional[Product]:
        raise NotImplementedError

    async def search_text_contains(
        self,
        name_term: str,
        description_term: str,
        page: PageRequest,
    ) -> Page:
        """
        Products whose name contains name_term OR whose description
        contains description_term (case-insensitive), in id order.
        Page.total is the full match count, not the page length.
        """
        raise NotImplementedError


# ============================================================
# In-Memory Repository (for testing / local dev)
# ============================================================

class InMemoryCatalogRepository(CatalogRepository):
    """In-memory implementation for running without a database."""

    def __init__(self, products: Optional[Iterable[Product]] = None):
        self.products: dict[int, Product] = {}
        for p in products or []:
            self.products[p.id] = p

    def add(self, product: Product) -> Product:
        self.products[product.id] = product
        return product

    async def find_all(self) -> list[Product]:
        return [self.products[k] for k in sorted(self.products)]

    async def find_by_id(self, product_id: int) -> Optional[Product]:
        return self.products.get(product_id)

    async def search_text_contains(
        self,
        name_term: str,
        description_term: str,
        page: PageRequest,
    ) -> Page:
        name_term = (name_term or "").lower()
        description_term = (description_term or "").lower()
        matches = [
            p for _, p in sorted(self.products.items())
            if name_term in p.name.lower()
            or description_term in (p.description or "").lower()
        ]
        items = matches[page.offset:page.offset + page.size]
        return Page(items=items, total=len(matches))


def load_seed_products(path: str | Path) -> list[Product]:
    """Read a JSON array of product objects."""
    raw = json.loads(Path(path).read_text(encoding="utf-8"))
    products = [Product(**item) for item in raw]
    logger.info(f"Loaded {len(products)} seed products from {path}")
    return products
