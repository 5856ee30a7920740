"""
Catalog Search Service — FastAPI Application Layer

Endpoints:
  1. GET  /api/products/search              — Natural-language product search
  2. GET  /api/products                     — Full catalog listing
  3. POST /api/products/reindex             — Re-embed the whole catalog
  4. POST /api/products/{product_id}/index  — Re-embed one product
  5. GET  /api/products/info                — Service description + AI status
  6. GET  /health                           — UP / DEGRADED
"""
from __future__ import annotations
import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from fastapi import APIRouter, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware

from asyncpg_repository import AsyncPGCatalogRepository, DatabasePool, PgVectorStore
from batch_indexer import BatchIndexer, IndexingConfig
from circuit_breaker import AIAvailabilityBreaker
from config import Settings, configure_logging, get_settings
from llm_client import LanguageModel, OpenAIEmbeddingProvider, OpenAILanguageModel
from llm_reformulator import CachedLLMReformulator, ReformulationCache
from models import (
    AIStatus, HealthResponse, IndexingError, IndexOneResponse, InfoResponse,
    ProductListResponse, ReindexResponse, SearchResponse, Vocabulary,
)
from query_reformulation import HeuristicReformulator, PrimaryTermInferrer, build_vocabulary
from repositories import CatalogRepository, InMemoryCatalogRepository, load_seed_products
from reranking import LLMReranker
from search_orchestrator import (
    EmbeddingSearchAdapter, SearchOrchestrator, build_default_strategies,
)
from vector_store import InMemoryVectorStore, VectorStore

logger = logging.getLogger(__name__)

SEARCH_EXAMPLE = "/api/products/search?q=cerrojo gal 5/8 x 16 pulgadas"
EMPTY_RESULT_SUGGESTIONS = [
    "Check the spelling",
    "Use more general terms",
    "Lower the threshold (e.g. threshold=0.4)",
]


# ============================================================
# Service Wiring
# ============================================================

@dataclass
class Services:
    """Everything a request handler needs, built once per process."""
    settings: Settings
    catalog: CatalogRepository
    vector_store: VectorStore
    breaker: AIAvailabilityBreaker
    vocabulary: Vocabulary
    orchestrator: SearchOrchestrator
    indexer: BatchIndexer
    reformulation_cache: ReformulationCache
    language_model: Optional[LanguageModel] = None
    db: Optional[DatabasePool] = None


async def assemble_services(
    settings: Settings,
    catalog: CatalogRepository,
    vector_store: VectorStore,
    breaker: AIAvailabilityBreaker,
    language_model: Optional[LanguageModel] = None,
    db: Optional[DatabasePool] = None,
) -> Services:
    """Wire the search core around already-built collaborators."""
    vocabulary = await build_vocabulary(catalog)
    inferrer = PrimaryTermInferrer(catalog)
    cache = ReformulationCache(ttl_seconds=settings.reformulation_cache_ttl_seconds)
    reformulator = CachedLLMReformulator(
        heuristic=HeuristicReformulator(vocabulary, inferrer),
        inferrer=inferrer,
        language_model=language_model,
        cache=cache,
        breaker=breaker,
    )
    embedding_search = EmbeddingSearchAdapter(vector_store, catalog, breaker)
    llm_reranker = LLMReranker(language_model, breaker) if language_model else None

    orchestrator = SearchOrchestrator(
        build_default_strategies(catalog, embedding_search, reformulator, breaker, llm_reranker),
        breaker,
        max_top_k=settings.max_top_k,
    )
    indexer = BatchIndexer(
        vector_store,
        breaker,
        catalog=catalog,
        config=IndexingConfig(
            batch_size=settings.index_batch_size,
            max_retries=settings.index_max_retries,
            initial_delay_ms=settings.index_initial_delay_ms,
            max_jitter_ms=settings.index_max_jitter_ms,
        ),
    )
    return Services(
        settings=settings,
        catalog=catalog,
        vector_store=vector_store,
        breaker=breaker,
        vocabulary=vocabulary,
        orchestrator=orchestrator,
        indexer=indexer,
        reformulation_cache=cache,
        language_model=language_model,
        db=db,
    )


async def build_services(settings: Settings) -> Services:
    """Production wiring from settings: memory or PostgreSQL backends, OpenAI when keyed."""
    breaker = AIAvailabilityBreaker(check_interval=settings.ai_check_interval_seconds)

    db: Optional[DatabasePool] = None
    if settings.catalog_backend == "postgres" or settings.vector_backend == "pgvector":
        db = DatabasePool(settings.asyncpg_dsn, settings.db_pool_min, settings.db_pool_max)
        await db.initialize()

    if settings.catalog_backend == "postgres":
        catalog: CatalogRepository = AsyncPGCatalogRepository(db)
    else:
        seed = load_seed_products(settings.catalog_seed_file) if settings.catalog_seed_file else []
        catalog = InMemoryCatalogRepository(seed)

    language_model: Optional[LanguageModel] = None
    if settings.llm_configured:
        language_model = OpenAILanguageModel(
            api_key=settings.openai_api_key,
            model=settings.llm_model,
            temperature=settings.llm_temperature,
            base_url=settings.openai_base_url,
        )
    else:
        logger.warning("OPENAI_API_KEY not set: reformulation and re-ranking run heuristically")

    if settings.vector_backend == "pgvector":
        if not settings.llm_configured:
            raise RuntimeError("vector_backend=pgvector requires OPENAI_API_KEY for embeddings")
        embedder = OpenAIEmbeddingProvider(
            api_key=settings.openai_api_key,
            model=settings.embedding_model,
            dim=settings.embedding_dim,
            base_url=settings.openai_base_url,
        )
        vector_store: VectorStore = PgVectorStore(
            db, embedder, table=settings.vector_table, dim=settings.embedding_dim)
        await vector_store.ensure_schema()
    else:
        vector_store = InMemoryVectorStore()

    return await assemble_services(settings, catalog, vector_store, breaker, language_model, db)


# ============================================================
# Application State (shared singletons)
# ============================================================

class AppState:
    """Holds all shared service instances."""
    services: Services
    indexing_task: Optional[asyncio.Task]
    start_time: float
    request_count: int = 0

    def __init__(self):
        self.start_time = time.monotonic()
        self.request_count = 0
        self.indexing_task = None


_state = AppState()


# ============================================================
# Endpoints
# ============================================================

router = APIRouter()


@router.get("/api/products/search", response_model=SearchResponse, tags=["Search"])
async def search_products(
    q: Optional[str] = Query(None, description="Natural-language query"),
    limit: Optional[int] = Query(None, description="Maximum results (1-50)"),
    threshold: Optional[float] = Query(None, description="Minimum vector similarity (0-1)"),
):
    """
    Search the catalog in natural language:
    "cerrojo gal cinco octavos por dieciseis plg", "martillo stanley".
    """
    if q is None or not q.strip():
        raise HTTPException(400, {
            "error": "Query parameter 'q' is required",
            "example": SEARCH_EXAMPLE,
        })

    settings = _state.services.settings
    top_k = limit if limit is not None else settings.default_top_k
    min_score = threshold if threshold is not None else settings.default_threshold

    start = time.monotonic()
    try:
        outcome = await _state.services.orchestrator.execute(q, top_k, min_score)
    except Exception as e:
        logger.exception("Search failed")
        raise HTTPException(500, f"Search error: {str(e)}")
    elapsed = int((time.monotonic() - start) * 1000)

    if outcome.products:
        message = f"Found {len(outcome.products)} relevant products"
        suggestions: list[str] = []
    else:
        message = "No relevant products found. Try more general terms or a lower threshold."
        suggestions = list(EMPTY_RESULT_SUGGESTIONS)

    return SearchResponse(
        query=q,
        total=len(outcome.products),
        elapsed_ms=elapsed,
        ai_available=outcome.ai_available,
        strategy_used=outcome.strategy,
        results=outcome.products,
        message=message,
        suggestions=suggestions,
    )


@router.get("/api/products", response_model=ProductListResponse, tags=["Products"])
async def list_products():
    try:
        products = await _state.services.catalog.find_all()
    except Exception as e:
        logger.exception("Listing products failed")
        raise HTTPException(500, f"Catalog error: {str(e)}")
    return ProductListResponse(total=len(products), products=products)


@router.post("/api/products/reindex", response_model=ReindexResponse, tags=["Indexing"])
async def reindex_products():
    """Re-embed every catalog product. Batch failures are reported, not raised."""
    try:
        stats = await _state.services.indexer.index_catalog()
    except Exception as e:
        logger.exception("Reindex failed")
        raise HTTPException(500, f"Reindex error: {str(e)}")

    if stats.aborted:
        message = "Reindex aborted: embedding quota exhausted"
    elif stats.failed_batches:
        message = f"Reindex finished with {stats.failed_batches} failed batches"
    else:
        message = "Reindex completed"

    return ReindexResponse(
        message=message,
        total_products=stats.total_products,
        total_batches=stats.total_batches,
        indexed_batches=stats.indexed_batches,
        failed_batches=stats.failed_batches,
        indexed_documents=stats.indexed_documents,
        aborted=stats.aborted,
        errors=stats.errors,
    )


@router.post("/api/products/{product_id}/index", response_model=IndexOneResponse,
             tags=["Indexing"])
async def index_product(product_id: int):
    product = await _state.services.catalog.find_by_id(product_id)
    if product is None:
        raise HTTPException(404, f"Product not found: {product_id}")

    try:
        await _state.services.indexer.index_one(product)
    except IndexingError as e:
        logger.exception(f"Indexing product {product_id} failed")
        raise HTTPException(502, f"{e}: {e.__cause__}")

    return IndexOneResponse(message="Product indexed", product_id=product_id)


@router.get("/api/products/info", response_model=InfoResponse, tags=["System"])
async def service_info():
    services = _state.services
    breaker = services.breaker
    return InfoResponse(
        name=services.settings.app_name,
        version=services.settings.version,
        description=(
            "Natural-language hardware catalog search. Understands spelled numbers "
            "and fractions, unit abbreviations, brands and typos, and degrades from "
            "AI search to plain text search when the AI provider is unavailable."
        ),
        ai_status=AIStatus(
            available=breaker.is_available,
            state=breaker.state,
            strategies=[s.name.value for s in services.orchestrator.strategies],
        ),
        endpoints={
            "search": "GET /api/products/search?q=...&limit=5&threshold=0.6",
            "list": "GET /api/products",
            "reindex": "POST /api/products/reindex",
            "index_one": "POST /api/products/{product_id}/index",
            "health": "GET /health",
        },
        examples={
            "spelled": "/api/products/search?q=cerrojo gal cinco octavos por dieciseis plg",
            "fraction": "/api/products/search?q=tornillo 3/4 x 10",
            "brand": "/api/products/search?q=martillo stanley",
        },
    )


@router.get("/health", response_model=HealthResponse, tags=["System"])
async def health_check():
    """UP while AI strategies are enabled, DEGRADED while cooling down."""
    services = _state.services
    available = services.breaker.is_available
    uptime = int(time.monotonic() - _state.start_time)

    components: dict[str, dict] = {
        "catalog": {"status": "healthy", "backend": services.settings.catalog_backend},
        "vector_store": {"status": "healthy", "backend": services.settings.vector_backend},
        "language_model": {
            "status": "configured" if services.language_model else "not_configured",
        },
        "vocabulary": {
            "brands": len(services.vocabulary.brands),
            "product_types": len(services.vocabulary.product_types),
        },
        "reformulation_cache": {"entries": len(services.reformulation_cache)},
    }
    if services.db is not None:
        components["database"] = await services.db.health_check()

    return HealthResponse(
        status="UP" if available else "DEGRADED",
        ai_available=available,
        mode="ai" if available else "fallback",
        version=services.settings.version,
        uptime_seconds=uptime,
        request_count=_state.request_count,
        components=components,
    )


# ============================================================
# FastAPI App
# ============================================================

ServiceBuilder = Callable[[Settings], Awaitable[Services]]


def create_app(
    settings: Optional[Settings] = None,
    build: ServiceBuilder = build_services,
) -> FastAPI:
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Initialize services on startup, cleanup on shutdown."""
        configure_logging(settings)
        logger.info(f"Starting {settings.app_name}...")
        _state.start_time = time.monotonic()
        _state.request_count = 0
        _state.indexing_task = None
        services = await build(settings)
        _state.services = services

        if settings.index_on_startup:
            _state.indexing_task = services.indexer.schedule_index_catalog()

        logger.info(f"Service ready. Environment: {settings.environment}")
        yield

        logger.info(f"Shutting down {settings.app_name}...")
        task = _state.indexing_task
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                logger.info("Background indexing cancelled")
        if services.db is not None:
            await services.db.close()

    app = FastAPI(
        title=f"{settings.app_name} API",
        description="Natural-language hardware catalog search with graceful AI degradation.",
        version=settings.version,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origin_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def timing_middleware(request: Request, call_next):
        start = time.monotonic()
        _state.request_count += 1
        response = await call_next(request)
        elapsed = int((time.monotonic() - start) * 1000)
        response.headers["X-Response-Time-Ms"] = str(elapsed)
        return response

    app.include_router(router)
    return app


app = create_app()


# ============================================================
# Entry Point
# ============================================================

def main() -> None:
    import uvicorn
    settings = get_settings()
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    main()
