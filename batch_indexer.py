"""
Catalog Search Service — Batch Indexer

Pushes catalog products into the vector store:
  1. Product -> document conversion (name, description, category + lower-cased recall text)
  2. Fixed-size batching
  3. Per-batch retry with exponential backoff and jitter
  4. Quota detection: a quota error aborts the whole run
  5. Single-product indexing that surfaces failures to the caller
"""
from __future__ import annotations
import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Iterator, Optional, Sequence, TypeVar

from circuit_breaker import AIAvailabilityBreaker
from models import IndexingError, Product, VectorDocument
from repositories import CatalogRepository
from vector_store import VectorStore

logger = logging.getLogger(__name__)

T = TypeVar('T')


# ============================================================
# Configuration
# ============================================================

@dataclass
class IndexingConfig:
    """Tunable parameters for batch indexing."""
    batch_size: int = 20
    max_retries: int = 3              # retries after the first attempt
    initial_delay_ms: int = 2000      # doubled after every failed attempt
    max_jitter_ms: int = 500          # uniform random extra wait per retry


DEFAULT_INDEXING_CONFIG = IndexingConfig()


@dataclass
class IndexingStats:
    """Tracks stats for a single indexing run."""
    total_products: int = 0
    total_batches: int = 0
    indexed_batches: int = 0
    failed_batches: int = 0
    indexed_documents: int = 0
    aborted: bool = False
    errors: list[str] = field(default_factory=list)


# ============================================================
# Helpers
# ============================================================

def product_to_document(product: Product) -> VectorDocument:
    name = product.name or ''
    description = product.description or ''
    category = product.category or ''
    content = (
        f"Name: {name}. Description: {description}. Category: {category}. "
        f"{name.lower()} {description.lower()}"
    )
    return VectorDocument(
        id=str(product.id),
        content=content,
        metadata={'id': product.id, 'name': name, 'category': category},
    )


def chunked(items: Sequence[T], size: int) -> Iterator[list[T]]:
    for i in range(0, len(items), size):
        yield list(items[i:i + size])


def is_quota_error(exc: BaseException) -> bool:
    """Quota exhaustion is only signalled through the error text ('insufficient_quota', ...)."""
    message = str(exc) or repr(exc)
    return 'quota' in message.lower()


# ============================================================
# Indexer
# ============================================================

class BatchIndexer:

    def __init__(
        self,
        vector_store: VectorStore,
        breaker: AIAvailabilityBreaker,
        catalog: Optional[CatalogRepository] = None,
        config: IndexingConfig = DEFAULT_INDEXING_CONFIG,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ):
        self.vector_store = vector_store
        self.breaker = breaker
        self.catalog = catalog
        self.config = config
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._task: Optional[asyncio.Task] = None

    # ----------------------------------------------------------
    # Public API
    # ----------------------------------------------------------

    async def index_catalog(self) -> IndexingStats:
        if self.catalog is None:
            raise RuntimeError("BatchIndexer has no catalog to index")
        products = await self.catalog.find_all()
        return await self.index_all(products)

    async def index_all(self, products: Sequence[Product]) -> IndexingStats:
        """
        Index every product in batches. Never raises for batch failures;
        they are counted in the returned stats.
        """
        stats = IndexingStats(total_products=len(products))
        if not products:
            logger.warning("No products to index")
            return stats

        batches = list(chunked(products, self.config.batch_size))
        stats.total_batches = len(batches)
        logger.info(
            f"Indexing {len(products)} products in {len(batches)} batches "
            f"of up to {self.config.batch_size}")

        for number, batch in enumerate(batches, start=1):
            documents = [product_to_document(p) for p in batch]
            await self._index_batch(number, documents, stats)
            if stats.aborted:
                break

        logger.info(
            f"Indexing finished: {stats.indexed_batches}/{stats.total_batches} batches, "
            f"{stats.indexed_documents} documents, {stats.failed_batches} failed"
            + (", aborted on quota" if stats.aborted else ""))
        return stats

    async def index_one(self, product: Product) -> None:
        """Index a single product; raises IndexingError on failure."""
        try:
            await self.vector_store.add([product_to_document(product)])
        except Exception as e:
            logger.error(f"Failed to index product {product.id}: {e}")
            self.breaker.record_failure()
            raise IndexingError(f"Could not index product {product.id}") from e
        self.breaker.record_success()
        logger.debug(f"Indexed product {product.id}: {product.name}")

    def schedule_index_catalog(self) -> asyncio.Task:
        """Run index_catalog() in the background without blocking the caller."""
        self._task = asyncio.create_task(self._index_catalog_in_background())
        return self._task

    # ----------------------------------------------------------
    # Internals
    # ----------------------------------------------------------

    async def _index_catalog_in_background(self) -> Optional[IndexingStats]:
        try:
            return await self.index_catalog()
        except Exception:
            logger.exception("Background catalog indexing failed")
            return None

    async def _index_batch(
        self,
        number: int,
        documents: list[VectorDocument],
        stats: IndexingStats,
    ) -> None:
        delay_ms = float(self.config.initial_delay_ms)
        attempts = self.config.max_retries + 1

        for attempt in range(1, attempts + 1):
            try:
                await self.vector_store.add(documents)
            except Exception as e:
                logger.warning(
                    f"Batch {number}/{stats.total_batches} attempt {attempt}/{attempts} failed: {e}")

                if is_quota_error(e):
                    logger.error("Embedding quota exhausted, aborting indexing run")
                    self.breaker.record_failure()
                    stats.aborted = True
                    stats.errors.append(f"Batch {number}: quota exhausted: {e}")
                    return

                if attempt < attempts:
                    wait_ms = delay_ms + self._rng.uniform(0, self.config.max_jitter_ms)
                    await self._sleep(wait_ms / 1000.0)
                    delay_ms *= 2
                    continue

                self.breaker.record_failure()
                stats.failed_batches += 1
                stats.errors.append(f"Batch {number}: {e}")
                return

            self.breaker.record_success()
            stats.indexed_batches += 1
            stats.indexed_documents += len(documents)
            logger.info(
                f"Batch {number}/{stats.total_batches} indexed ({len(documents)} docs)")
            return
