"""
Catalog Search Service — Cached LLM Reformulator

Asks the language model for a structured reading of the query, keeps
the catalog-backed primary term as the final word, and falls back to
the heuristic reformulator on any failure. Every outcome is cached.
"""
from __future__ import annotations
import json
import logging
import time
from typing import Any, Callable, Optional

from pydantic import ValidationError

from circuit_breaker import AIAvailabilityBreaker
from llm_client import LanguageModel
from models import CacheEntry, QueryAttributes, ReformulationError
from query_reformulation import HeuristicReformulator, PrimaryTermInferrer

logger = logging.getLogger(__name__)


REFORMULATION_PROMPT = """Eres un asistente que interpreta consultas de productos de ferretería.
Extrae los atributos de la consulta y responde SOLO con un objeto JSON válido,
sin texto adicional, con exactamente estas claves:

{{
  "primary_term": "tipo de producto principal en singular (ej. cerrojo, tornillo)",
  "brand": "marca si aparece, o null",
  "fraction": "medida fraccionaria como 5/8, o null",
  "size": "medida numérica como 16, o null",
  "unit": "unidad (pulgadas, milimetros, metros, centimetros, galon), o null",
  "normalized": "consulta normalizada en minúsculas"
}}

Reglas:
- Convierte números escritos en palabras a dígitos: "dieciseis" -> "16".
- Convierte fracciones escritas en palabras: "cinco octavos" -> "5/8".
- Expande abreviaturas de unidades: "plg" -> "pulgadas", "mm" -> "milimetros".
- Corrige errores ortográficos evidentes.
- Una palabra en MAYÚSCULAS de tres o más letras suele ser una marca, no una unidad.

Consulta: "{query}"
"""

_FIELD_KEYS: dict[str, tuple[str, ...]] = {
    'primary_term': ('primary_term', 'primaryTerm'),
    'brand': ('brand',),
    'fraction': ('fraction',),
    'size': ('size',),
    'unit': ('unit',),
    'normalized': ('normalized',),
}


# ============================================================
# Cache
# ============================================================

class ReformulationCache:
    """
    Raw query -> QueryAttributes with a time-to-live. A plain dict:
    concurrent handlers may race on the same key, the last write wins.
    """

    def __init__(
        self,
        ttl_seconds: float = 86400.0,
        clock: Callable[[], float] = time.time,
    ):
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._entries: dict[str, CacheEntry] = {}

    def get(self, key: str) -> Optional[QueryAttributes]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self.clock() - entry.created_at >= self.ttl_seconds:
            return None
        return entry.attributes

    def put(self, key: str, attributes: QueryAttributes) -> None:
        self._entries[key] = CacheEntry(attributes=attributes, created_at=self.clock())

    def __len__(self) -> int:
        return len(self._entries)


# ============================================================
# Response Parsing
# ============================================================

def parse_model_json(text: str) -> dict[str, Any]:
    """Parse the model answer, tolerating prose around the JSON object."""
    try:
        data = json.loads(text)
    except (json.JSONDecodeError, TypeError):
        start, end = text.find('{'), text.rfind('}')
        if start < 0 or end <= start:
            raise ReformulationError(f"No JSON object in model response: {text[:120]!r}")
        try:
            data = json.loads(text[start:end + 1])
        except json.JSONDecodeError as e:
            raise ReformulationError(f"Malformed JSON in model response: {e}") from e

    if not isinstance(data, dict):
        raise ReformulationError(f"Expected a JSON object, got {type(data).__name__}")
    return data


def attributes_from_json(data: dict[str, Any]) -> QueryAttributes:
    values: dict[str, Any] = {}
    for field_name, keys in _FIELD_KEYS.items():
        value = None
        for key in keys:
            if data.get(key) is not None:
                value = data[key]
                break
        if value is not None and not isinstance(value, str):
            if isinstance(value, (dict, list)):
                raise ReformulationError(f"Field '{field_name}' is not a scalar")
            value = str(value)
        if isinstance(value, str):
            value = value.strip() or None
        values[field_name] = value
    return QueryAttributes(**values)


# ============================================================
# Reformulator
# ============================================================

class CachedLLMReformulator:
    """Model-first reformulation with heuristic fallback and a TTL cache."""

    def __init__(
        self,
        heuristic: HeuristicReformulator,
        inferrer: PrimaryTermInferrer,
        language_model: Optional[LanguageModel],
        cache: Optional[ReformulationCache] = None,
        breaker: Optional[AIAvailabilityBreaker] = None,
    ):
        self.heuristic = heuristic
        self.inferrer = inferrer
        self.language_model = language_model
        self.cache = cache if cache is not None else ReformulationCache()
        self.breaker = breaker

    async def infer(self, raw: Optional[str]) -> Optional[str]:
        return await self.inferrer.infer(raw)

    async def reformulate(self, raw: Optional[str]) -> QueryAttributes:
        if raw is None or not raw.strip():
            return QueryAttributes.empty()

        cached = self.cache.get(raw)
        if cached is not None:
            return cached

        if self.language_model is None:
            logger.warning("No language model configured, using heuristic reformulation")
            attributes = await self.heuristic.reformulate(raw)
        else:
            try:
                attributes = await self._reformulate_with_model(raw)
            except Exception as e:
                logger.warning(f"LLM reformulation failed for '{raw}', using heuristic: {e}")
                attributes = await self.heuristic.reformulate(raw)

        self.cache.put(raw, attributes)
        return attributes

    async def _reformulate_with_model(self, raw: str) -> QueryAttributes:
        try:
            text = await self.language_model.complete(REFORMULATION_PROMPT.format(query=raw))
        except Exception:
            if self.breaker is not None:
                self.breaker.record_failure()
            raise
        if self.breaker is not None:
            self.breaker.record_success()

        try:
            attributes = attributes_from_json(parse_model_json(text))
        except ValidationError as e:
            raise ReformulationError(f"Model attributes failed validation: {e}") from e

        try:
            term = await self.inferrer.infer(raw)
        except Exception as e:
            logger.debug(f"Primary-term inference failed for '{raw}': {e}")
            term = None
        if term:
            attributes = attributes.model_copy(update={'primary_term': term})

        logger.debug(f"LLM reformulation: '{raw}' -> {attributes.model_dump()}")
        return attributes
