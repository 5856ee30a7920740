"""
Catalog Search Service — Re-ranking

Two re-rankers:
  - HeuristicReranker: additive attribute-match scoring, no AI
  - LLMReranker: asks the language model to pick the most relevant
    candidates by index
"""
from __future__ import annotations
import logging
import re
from typing import Optional

from circuit_breaker import AIAvailabilityBreaker
from llm_client import LanguageModel
from models import NormalizedQuery, Product, ScoredProduct

logger = logging.getLogger(__name__)


# ============================================================
# Heuristic Re-ranker
# ============================================================

KEYWORD_WEIGHT = 10.0
KEYWORD_IN_NAME_WEIGHT = 5.0
FRACTION_WEIGHT = 15.0
SIZE_WEIGHT = 8.0
IN_STOCK_WEIGHT = 2.0


class HeuristicReranker:
    """Scores are unbounded sums of the weights above."""

    def score(self, product: Product, nq: NormalizedQuery) -> float:
        name = (product.name or '').lower()
        text = f"{name} {(product.description or '').lower()}"
        score = 0.0

        if nq.keyword:
            keyword = nq.keyword.lower()
            if keyword in text:
                score += KEYWORD_WEIGHT
            if keyword in name:
                score += KEYWORD_IN_NAME_WEIGHT
        if nq.fraction and nq.fraction in text:
            score += FRACTION_WEIGHT
        if nq.size and nq.size in text:
            score += SIZE_WEIGHT
        if product.stock is not None and product.stock > 0:
            score += IN_STOCK_WEIGHT

        return score

    def rerank(
        self,
        candidates: list[Product],
        nq: NormalizedQuery,
        limit: int,
    ) -> list[Product]:
        scored = [ScoredProduct(product=p, score=self.score(p, nq)) for p in candidates]
        # sorted() is stable, ties keep input order
        scored = sorted(scored, key=lambda s: s.score, reverse=True)
        return [s.product for s in scored[:limit]]


# ============================================================
# LLM Re-ranker
# ============================================================

RERANK_PROMPT = """Consulta: "{query}"
Productos:
{products}
Selecciona los {limit} más relevantes.
Responde solo con números separados por comas: 0,3,7
"""

_INDEX_SPLIT_RE = re.compile(r'[,\s]+')
_ASCII_DIGITS_RE = re.compile(r'[0-9]+')


def parse_indices(text: Optional[str], count: int) -> list[int]:
    """In-range, de-duplicated indices in the order the model gave them."""
    if not text:
        return []
    indices: list[int] = []
    seen: set[int] = set()
    for token in _INDEX_SPLIT_RE.split(text.strip()):
        if not _ASCII_DIGITS_RE.fullmatch(token):
            continue
        idx = int(token)
        if 0 <= idx < count and idx not in seen:
            seen.add(idx)
            indices.append(idx)
    return indices


class LLMReranker:

    def __init__(self, language_model: LanguageModel, breaker: AIAvailabilityBreaker):
        self.language_model = language_model
        self.breaker = breaker

    def build_prompt(self, query: str, candidates: list[Product], limit: int) -> str:
        lines = "".join(
            f"[{i}] {p.name} - {p.description or ''}\n" for i, p in enumerate(candidates))
        return RERANK_PROMPT.format(query=query, products=lines, limit=limit)

    async def rerank(self, query: str, candidates: list[Product], limit: int) -> list[Product]:
        if len(candidates) <= limit:
            return candidates

        try:
            answer = await self.language_model.complete(
                self.build_prompt(query, candidates, limit))
            indices = parse_indices(answer, len(candidates))
        except Exception as e:
            logger.warning(f"LLM re-rank failed, keeping vector order: {e}")
            self.breaker.record_failure()
            return candidates[:limit]

        if not indices:
            logger.warning(f"LLM re-rank answer had no usable indices: {answer!r}")
            self.breaker.record_failure()
            return candidates[:limit]

        self.breaker.record_success()
        return [candidates[i] for i in indices[:limit]]
