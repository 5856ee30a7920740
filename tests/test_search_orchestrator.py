"""
Tests for the strategy cascade: AI-complete -> hybrid -> advanced text -> basic text.
"""

import pytest

from circuit_breaker import AIState
from conftest import FakeLanguageModel, FakeVectorStore, RecordingCatalog
from llm_reformulator import CachedLLMReformulator, ReformulationCache
from models import StrategyName
from query_reformulation import HeuristicReformulator, PrimaryTermInferrer
from reranking import LLMReranker
from search_orchestrator import (
    AdvancedTextStrategy,
    BasicTextStrategy,
    EmbeddingSearchAdapter,
    SearchOrchestrator,
    SearchStrategy,
    build_default_strategies,
)


def make_orchestrator(catalog, vector_store, breaker, vocabulary, language_model=None):
    inferrer = PrimaryTermInferrer(catalog)
    reformulator = CachedLLMReformulator(
        heuristic=HeuristicReformulator(vocabulary, inferrer),
        inferrer=inferrer,
        language_model=language_model,
        cache=ReformulationCache(),
        breaker=breaker,
    )
    embedding_search = EmbeddingSearchAdapter(vector_store, catalog, breaker)
    llm_reranker = LLMReranker(language_model, breaker) if language_model else None
    strategies = build_default_strategies(
        catalog, embedding_search, reformulator, breaker, llm_reranker)
    return SearchOrchestrator(strategies, breaker)


class ExplodingStrategy(SearchStrategy):
    name = StrategyName.AI_COMPLETE

    def __init__(self, ai_dependent):
        self.ai_dependent = ai_dependent

    async def attempt(self, query, top_k, threshold):
        raise RuntimeError("insufficient_quota")


#  Embedding search adapter

class TestEmbeddingSearchAdapter:
    @pytest.mark.asyncio
    async def test_unresolvable_ids_are_dropped(self, catalog, breaker):
        store = FakeVectorStore(hits=[("7", 0.9), ("abc", 0.8), ("999", 0.7), ("1", 0.6)])
        products = await EmbeddingSearchAdapter(store, catalog, breaker).search("cerrojo", 5, 0.5)

        assert [p.id for p in products] == [7, 1]
        assert breaker.state is AIState.AVAILABLE

    @pytest.mark.asyncio
    async def test_provider_error_trips_breaker(self, catalog, breaker):
        store = FakeVectorStore(search_error=RuntimeError("connection refused"))
        products = await EmbeddingSearchAdapter(store, catalog, breaker).search("cerrojo", 5, 0.5)

        assert products == []
        assert breaker.state is AIState.COOLING_DOWN


#  Individual strategies

class TestTextStrategies:
    @pytest.mark.asyncio
    async def test_advanced_text_skips_failing_term(self, products):
        catalog = RecordingCatalog(products, fail_terms={"cerrojo"})
        result = await AdvancedTextStrategy(catalog).attempt("cerrojo 5/8", 5, 0.6)

        assert [p.id for p in result] == [1, 7]
        assert catalog.search_terms() == ["cerrojo", "5/8", "cerrojo 5/8"]

    @pytest.mark.asyncio
    async def test_advanced_text_unions_without_duplicates(self, catalog):
        result = await AdvancedTextStrategy(catalog).attempt("cerrojo cinco octavos", 5, 0.6)
        ids = [p.id for p in result]

        assert sorted(ids) == [1, 2, 7]
        assert len(ids) == len(set(ids))
        assert all(c[2] == 15 for c in catalog.calls)

    @pytest.mark.asyncio
    async def test_basic_text_keeps_repository_order(self, catalog):
        result = await BasicTextStrategy(catalog).attempt("cerrojo", 2, 0.6)
        assert [p.id for p in result] == [1, 2]

    @pytest.mark.asyncio
    async def test_basic_text_never_raises(self):
        result = await BasicTextStrategy(RecordingCatalog(fail_all=True)).attempt("cerrojo", 5, 0.6)
        assert result == []


#  Orchestrator

class TestSearchOrchestrator:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("query", [None, "", "   "])
    async def test_blank_query_touches_nothing(self, query, catalog, breaker, vocabulary):
        store = FakeVectorStore(hits=[("1", 0.9)])
        model = FakeLanguageModel(["{}"])
        orchestrator = make_orchestrator(catalog, store, breaker, vocabulary, model)

        outcome = await orchestrator.execute(query, 5, 0.6)

        assert outcome.products == []
        assert outcome.strategy is StrategyName.NONE
        assert catalog.calls == []
        assert store.search_calls == []
        assert model.prompts == []

    @pytest.mark.asyncio
    async def test_ai_complete_path(self, catalog, breaker, vocabulary):
        store = FakeVectorStore(hits=[("1", 0.9), ("7", 0.85), ("2", 0.8), ("3", 0.7)])
        model = FakeLanguageModel([
            '{"primary_term": "cerrojo", "fraction": "5/8", "normalized": "cerrojo 5/8"}',
            "1, 0",
        ])
        orchestrator = make_orchestrator(catalog, store, breaker, vocabulary, model)

        outcome = await orchestrator.execute("cerrojo cinco octavos", 2, 0.6)

        assert outcome.strategy is StrategyName.AI_COMPLETE
        assert [p.id for p in outcome.products] == [7, 1]
        assert store.search_calls[0] == ("cerrojo 5/8", 6, 0.6)
        assert outcome.ai_available is True

    @pytest.mark.asyncio
    async def test_ai_complete_retries_with_raw_query(self, catalog, breaker, vocabulary):
        store = FakeVectorStore(hits_by_query={"cerrojo cinco octavos": [("1", 0.9)]})
        model = FakeLanguageModel(['{"normalized": "cerrojo 5/8"}'])
        orchestrator = make_orchestrator(catalog, store, breaker, vocabulary, model)

        outcome = await orchestrator.execute("cerrojo cinco octavos", 5, 0.6)

        assert outcome.strategy is StrategyName.AI_COMPLETE
        assert [p.id for p in outcome.products] == [1]
        assert [c[0] for c in store.search_calls] == ["cerrojo 5/8", "cerrojo cinco octavos"]

    @pytest.mark.asyncio
    async def test_embedding_failure_falls_through_to_text(self, catalog, breaker, vocabulary):
        store = FakeVectorStore(search_error=RuntimeError("connection refused"))
        orchestrator = make_orchestrator(catalog, store, breaker, vocabulary)

        outcome = await orchestrator.execute("cerrojo cinco octavos", 3, 0.6)

        assert outcome.strategy is StrategyName.ADVANCED_TEXT
        assert [p.id for p in outcome.products] == [1, 7, 2]
        assert outcome.ai_available is False
        assert breaker.state is AIState.COOLING_DOWN

    @pytest.mark.asyncio
    async def test_cooling_down_skips_ai_strategy(self, catalog, breaker, vocabulary):
        breaker.record_failure()
        store = FakeVectorStore(hits=[("4", 0.9)])
        model = FakeLanguageModel(['{"normalized": "tornillo"}'])
        orchestrator = make_orchestrator(catalog, store, breaker, vocabulary, model)

        outcome = await orchestrator.execute("tornillo", 5, 0.6)

        assert outcome.strategy is StrategyName.HYBRID
        assert [p.id for p in outcome.products] == [4]
        assert model.prompts == []
        assert store.search_calls == [("tornillo", 10, 0.6)]

    @pytest.mark.asyncio
    async def test_top_k_and_threshold_are_clamped(self, catalog, breaker, vocabulary):
        store = FakeVectorStore()
        orchestrator = make_orchestrator(catalog, store, breaker, vocabulary)

        products = await orchestrator.search("cerrojo", 1000, 5.0)

        assert 0 < len(products) <= 50
        assert [c[1:] for c in store.search_calls] == [(150, 1.0), (100, 1.0)]
        assert {c[2] for c in catalog.calls if c[0] == "search" and c[1] == "cerrojo"} >= {150}

    @pytest.mark.asyncio
    async def test_low_bounds_are_clamped(self, catalog, breaker, vocabulary):
        store = FakeVectorStore()
        orchestrator = make_orchestrator(catalog, store, breaker, vocabulary)

        products = await orchestrator.search("cerrojo", 0, -3.0)

        assert len(products) == 1
        assert store.search_calls[0][1:] == (3, 0.0)

    @pytest.mark.asyncio
    async def test_no_results_anywhere(self, catalog, breaker, vocabulary):
        orchestrator = make_orchestrator(catalog, FakeVectorStore(), breaker, vocabulary)

        outcome = await orchestrator.execute("xyzzy", 5, 0.6)

        assert outcome.products == []
        assert outcome.strategy is StrategyName.NONE

    @pytest.mark.asyncio
    async def test_failing_ai_strategy_trips_breaker(self, catalog, breaker):
        orchestrator = SearchOrchestrator(
            [ExplodingStrategy(ai_dependent=True), BasicTextStrategy(catalog)], breaker)

        outcome = await orchestrator.execute("cerrojo", 5, 0.6)

        assert outcome.strategy is StrategyName.BASIC_TEXT
        assert [p.id for p in outcome.products] == [1, 2, 7]
        assert breaker.state is AIState.COOLING_DOWN

    @pytest.mark.asyncio
    async def test_failing_local_strategy_leaves_breaker_alone(self, catalog, breaker):
        orchestrator = SearchOrchestrator(
            [ExplodingStrategy(ai_dependent=False), BasicTextStrategy(catalog)], breaker)

        outcome = await orchestrator.execute("cerrojo", 5, 0.6)

        assert outcome.strategy is StrategyName.BASIC_TEXT
        assert breaker.state is AIState.AVAILABLE

    @pytest.mark.asyncio
    async def test_everything_failing_returns_empty(self, breaker, vocabulary):
        catalog = RecordingCatalog(fail_all=True)
        store = FakeVectorStore(search_error=RuntimeError("quota exceeded"))
        model = FakeLanguageModel(error=RuntimeError("quota exceeded"))
        orchestrator = make_orchestrator(catalog, store, breaker, vocabulary, model)

        assert await orchestrator.search("cerrojo cinco octavos", 5, 0.6) == []
