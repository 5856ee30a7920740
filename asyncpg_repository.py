"""
asyncpg_repository.py — Production PostgreSQL adapters.

Implements the CatalogRepository interface over a `products` table and
the VectorStore interface over a pgvector table, sharing one asyncpg
connection pool.
"""

from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from typing import Any, Optional

import asyncpg

from models import Page, PageRequest, Product, VectorDocument
from repositories import CatalogRepository
from vector_store import EmbeddingProvider, VectorStore

logger = logging.getLogger(__name__)

# ── Connection Pool Manager ──────────────────────────────────────────────────

class DatabasePool:
    """Manages asyncpg connection pool lifecycle."""

    def __init__(self, dsn: str, min_size: int = 2, max_size: int = 10):
        self.dsn = dsn
        self.min_size = min_size
        self.max_size = max_size
        self._pool: Optional[asyncpg.Pool] = None

    async def initialize(self) -> None:
        self._pool = await asyncpg.create_pool(
            self.dsn,
            min_size=self.min_size,
            max_size=self.max_size,
            command_timeout=30,
        )
        logger.info(
            "Database pool initialized (min=%d, max=%d)", self.min_size, self.max_size
        )

    @property
    def pool(self) -> asyncpg.Pool:
        if self._pool is None:
            raise RuntimeError("Database pool not initialized. Call initialize() first.")
        return self._pool

    @asynccontextmanager
    async def acquire(self):
        async with self.pool.acquire() as conn:
            yield conn

    @asynccontextmanager
    async def transaction(self):
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                yield conn

    async def close(self) -> None:
        if self._pool:
            await self._pool.close()
            logger.info("Database pool closed")

    async def health_check(self) -> dict:
        try:
            async with self.acquire() as conn:
                await conn.fetchval("SELECT 1")
                return {
                    "status": "healthy",
                    "pool_size": self.pool.get_size(),
                    "pool_free": self.pool.get_idle_size(),
                }
        except Exception as e:
            return {"status": "unhealthy", "error": str(e)}


def escape_like(term: str) -> str:
    """Escape LIKE wildcards so user text matches literally."""
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def to_vector_literal(v: list[float]) -> str:
    return "[" + ",".join(str(float(x)) for x in v) + "]"


def _row_to_product(row: asyncpg.Record) -> Product:
    return Product(
        id=row["id"],
        name=row["name"],
        description=row["description"],
        category=row["category"],
        stock=row["stock"],
        price=float(row["price"]) if row["price"] is not None else None,
    )


# ── Catalog Repository ───────────────────────────────────────────────────────

class AsyncPGCatalogRepository(CatalogRepository):
    """
    Read-only catalog over:

        products(id BIGINT PRIMARY KEY, name TEXT, description TEXT,
                 price NUMERIC, category TEXT, stock INTEGER)
    """

    COLUMNS = "id, name, description, price, category, stock"

    def __init__(self, db: DatabasePool, table: str = "products"):
        self.db = db
        self.table = table

    async def find_all(self) -> list[Product]:
        async with self.db.acquire() as conn:
            rows = await conn.fetch(
                f"SELECT {self.COLUMNS} FROM {self.table} ORDER BY id"
            )
            return [_row_to_product(r) for r in rows]

    async def find_by_id(self, product_id: int) -> Optional[Product]:
        async with self.db.acquire() as conn:
            row = await conn.fetchrow(
                f"SELECT {self.COLUMNS} FROM {self.table} WHERE id = $1", product_id
            )
            return _row_to_product(row) if row else None

    async def search_text_contains(
        self,
        name_term: str,
        description_term: str,
        page: PageRequest,
    ) -> Page:
        where = "name ILIKE $1 ESCAPE '\\' OR description ILIKE $2 ESCAPE '\\'"
        vals: list[Any] = [
            f"%{escape_like(name_term or '')}%",
            f"%{escape_like(description_term or '')}%",
        ]
        async with self.db.acquire() as conn:
            total = await conn.fetchval(
                f"SELECT COUNT(*) FROM {self.table} WHERE {where}", *vals
            )
            rows = await conn.fetch(
                f"""
                SELECT {self.COLUMNS} FROM {self.table}
                WHERE {where}
                ORDER BY id
                LIMIT $3 OFFSET $4
                """,
                *vals, page.size, page.offset,
            )
        return Page(items=[_row_to_product(r) for r in rows], total=int(total or 0))


# ── pgvector Store ───────────────────────────────────────────────────────────

class PgVectorStore(VectorStore):
    """Cosine-similarity document store on pgvector."""

    def __init__(
        self,
        db: DatabasePool,
        embedder: EmbeddingProvider,
        table: str = "vector_store",
        dim: int = 1536,
    ):
        self.db = db
        self.embedder = embedder
        self.table = table
        self.dim = dim

    async def ensure_schema(self) -> None:
        async with self.db.transaction() as conn:
            await conn.execute("CREATE EXTENSION IF NOT EXISTS vector")
            await conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {self.table} (
                    id TEXT PRIMARY KEY,
                    content TEXT NOT NULL,
                    metadata JSONB NOT NULL DEFAULT '{{}}'::jsonb,
                    embedding vector({self.dim})
                )
                """
            )
        logger.info("Vector table %s ready (dim=%d)", self.table, self.dim)

    async def similarity_search(
        self,
        query: str,
        top_k: int,
        threshold: float,
    ) -> list[tuple[str, float]]:
        embedding = await self.embedder.embed_query(query)
        async with self.db.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT id, 1 - (embedding <=> $1::text::vector) AS similarity
                FROM {self.table}
                WHERE embedding IS NOT NULL
                  AND 1 - (embedding <=> $1::text::vector) >= $2
                ORDER BY embedding <=> $1::text::vector
                LIMIT $3
                """,
                to_vector_literal(embedding), threshold, top_k,
            )
            return [(r["id"], float(r["similarity"])) for r in rows]

    async def add(self, documents: list[VectorDocument]) -> None:
        if not documents:
            return
        embeddings = await self.embedder.embed_batch([d.content for d in documents])
        async with self.db.transaction() as conn:
            stmt = await conn.prepare(
                f"""
                INSERT INTO {self.table} (id, content, metadata, embedding)
                VALUES ($1, $2, $3::jsonb, $4::text::vector)
                ON CONFLICT (id) DO UPDATE
                    SET content = EXCLUDED.content,
                        metadata = EXCLUDED.metadata,
                        embedding = EXCLUDED.embedding
                """
            )
            for doc, vec in zip(documents, embeddings):
                await stmt.fetch(
                    doc.id, doc.content, json.dumps(doc.metadata), to_vector_literal(vec)
                )
        logger.info("Upserted %d vector documents", len(documents))
