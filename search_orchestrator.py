"""
Catalog Search Service — Search Orchestrator

Strategy cascade, tried in order until one yields products:
  1. AI-complete:   LLM reformulation -> vector search -> LLM re-rank
  2. Hybrid:        heuristic normalization -> vector search -> heuristic re-rank
  3. Advanced text: heuristic normalization -> catalog text searches -> heuristic re-rank
  4. Basic text:    one catalog text search, repository order

No exception escapes a search; the worst outcome is an empty list.
"""
from __future__ import annotations
import logging
import time
from typing import Optional

from circuit_breaker import AIAvailabilityBreaker
from llm_reformulator import CachedLLMReformulator
from models import PageRequest, Product, SearchOutcome, StrategyName
from query_reformulation import normalize_heuristic
from repositories import CatalogRepository
from reranking import HeuristicReranker, LLMReranker
from vector_store import VectorStore

logger = logging.getLogger(__name__)

MAX_TOP_K = 50


# ============================================================
# Embedding Search Adapter
# ============================================================

class EmbeddingSearchAdapter:
    """Vector search that resolves document ids back to catalog products."""

    def __init__(
        self,
        vector_store: VectorStore,
        catalog: CatalogRepository,
        breaker: AIAvailabilityBreaker,
    ):
        self.vector_store = vector_store
        self.catalog = catalog
        self.breaker = breaker

    async def search(self, text: str, top_k: int, threshold: float) -> list[Product]:
        try:
            hits = await self.vector_store.similarity_search(text, top_k, threshold)
            products = []
            for doc_id, _score in hits:
                try:
                    product_id = int(doc_id)
                except (TypeError, ValueError):
                    continue
                product = await self.catalog.find_by_id(product_id)
                if product is not None:
                    products.append(product)
        except Exception as e:
            logger.warning(f"Vector search failed: {e}")
            self.breaker.record_failure()
            return []

        self.breaker.record_success()
        return products


# ============================================================
# Strategies
# ============================================================

class SearchStrategy:
    """One step of the cascade."""

    name: StrategyName
    ai_dependent: bool = False

    def is_enabled(self) -> bool:
        return True

    async def attempt(self, query: str, top_k: int, threshold: float) -> list[Product]:
        raise NotImplementedError


class AICompleteStrategy(SearchStrategy):
    name = StrategyName.AI_COMPLETE
    ai_dependent = True

    def __init__(
        self,
        reformulator: CachedLLMReformulator,
        embedding_search: EmbeddingSearchAdapter,
        breaker: AIAvailabilityBreaker,
        reranker: Optional[LLMReranker] = None,
    ):
        self.reformulator = reformulator
        self.embedding_search = embedding_search
        self.breaker = breaker
        self.reranker = reranker

    def is_enabled(self) -> bool:
        return self.breaker.should_try_ai()

    async def attempt(self, query: str, top_k: int, threshold: float) -> list[Product]:
        attributes = await self.reformulator.reformulate(query)
        text = attributes.search_text(query)
        logger.info(f"AI reformulation: '{query}' -> '{text}'")

        width = top_k * 3
        candidates = await self.embedding_search.search(text, width, threshold)
        if not candidates and text != query:
            candidates = await self.embedding_search.search(query, width, threshold)
        if not candidates:
            return []

        if self.reranker is None:
            return candidates[:top_k]
        return await self.reranker.rerank(query, candidates, top_k)


class HybridStrategy(SearchStrategy):
    name = StrategyName.HYBRID

    def __init__(
        self,
        embedding_search: EmbeddingSearchAdapter,
        reranker: Optional[HeuristicReranker] = None,
    ):
        self.embedding_search = embedding_search
        self.reranker = reranker or HeuristicReranker()

    async def attempt(self, query: str, top_k: int, threshold: float) -> list[Product]:
        nq = normalize_heuristic(query)
        candidates = await self.embedding_search.search(nq.normalized or query, top_k * 2, threshold)
        if not candidates:
            return []
        return self.reranker.rerank(candidates, nq, top_k)


class AdvancedTextStrategy(SearchStrategy):
    name = StrategyName.ADVANCED_TEXT

    def __init__(
        self,
        catalog: CatalogRepository,
        reranker: Optional[HeuristicReranker] = None,
    ):
        self.catalog = catalog
        self.reranker = reranker or HeuristicReranker()

    async def attempt(self, query: str, top_k: int, threshold: float) -> list[Product]:
        nq = normalize_heuristic(query)
        page = PageRequest(page=0, size=top_k * 3)

        union: dict[int, Product] = {}
        for term in (nq.keyword, nq.fraction, nq.size, query):
            if not term:
                continue
            try:
                result = await self.catalog.search_text_contains(term, term, page)
            except Exception as e:
                logger.warning(f"Text search failed for term '{term}': {e}")
                continue
            for p in result.items:
                union.setdefault(p.id, p)

        if not union:
            return []
        return self.reranker.rerank(list(union.values()), nq, top_k)


class BasicTextStrategy(SearchStrategy):
    name = StrategyName.BASIC_TEXT

    def __init__(self, catalog: CatalogRepository):
        self.catalog = catalog

    async def attempt(self, query: str, top_k: int, threshold: float) -> list[Product]:
        try:
            page = await self.catalog.search_text_contains(
                query, query, PageRequest(page=0, size=top_k))
            return list(page.items)
        except Exception as e:
            logger.error(f"Basic text search failed: {e}")
            return []


def build_default_strategies(
    catalog: CatalogRepository,
    embedding_search: EmbeddingSearchAdapter,
    reformulator: CachedLLMReformulator,
    breaker: AIAvailabilityBreaker,
    llm_reranker: Optional[LLMReranker] = None,
) -> list[SearchStrategy]:
    heuristic = HeuristicReranker()
    return [
        AICompleteStrategy(reformulator, embedding_search, breaker, llm_reranker),
        HybridStrategy(embedding_search, heuristic),
        AdvancedTextStrategy(catalog, heuristic),
        BasicTextStrategy(catalog),
    ]


# ============================================================
# Orchestrator
# ============================================================

class SearchOrchestrator:

    def __init__(
        self,
        strategies: list[SearchStrategy],
        breaker: AIAvailabilityBreaker,
        max_top_k: int = MAX_TOP_K,
    ):
        self.strategies = strategies
        self.breaker = breaker
        self.max_top_k = max_top_k

    async def search(self, query: Optional[str], top_k: int = 5, threshold: float = 0.6) -> list[Product]:
        outcome = await self.execute(query, top_k, threshold)
        return outcome.products

    async def execute(
        self,
        query: Optional[str],
        top_k: int = 5,
        threshold: float = 0.6,
    ) -> SearchOutcome:
        if query is None or not query.strip():
            return SearchOutcome(products=[], strategy=StrategyName.NONE,
                                 ai_available=self.breaker.is_available)

        top_k = max(1, min(top_k, self.max_top_k))
        threshold = max(0.0, min(threshold, 1.0))
        start = time.monotonic()

        for strategy in self.strategies:
            if not strategy.is_enabled():
                logger.debug(f"Strategy {strategy.name.value} skipped")
                continue
            try:
                products = await strategy.attempt(query, top_k, threshold)
            except Exception as e:
                logger.warning(f"Strategy {strategy.name.value} failed: {e}")
                if strategy.ai_dependent:
                    self.breaker.record_failure()
                continue

            if products:
                elapsed = int((time.monotonic() - start) * 1000)
                logger.info(
                    f"Search '{query}': {len(products)} results via "
                    f"{strategy.name.value} in {elapsed}ms")
                return SearchOutcome(products=products, strategy=strategy.name,
                                     ai_available=self.breaker.is_available)
            logger.info(f"Strategy {strategy.name.value} found nothing, falling back")

        logger.info(f"Search '{query}': no results from any strategy")
        return SearchOutcome(products=[], strategy=StrategyName.NONE,
                             ai_available=self.breaker.is_available)
