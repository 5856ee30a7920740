"""
Catalog Search Service — Core Models
"""
from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator
import re

FRACTION_RE = re.compile(r'^\d+/\d+$')

# ============================================================
# Enums
# ============================================================

class AIState(str, Enum):
    AVAILABLE = "available"
    COOLING_DOWN = "cooling_down"

class StrategyName(str, Enum):
    AI_COMPLETE = "ai_complete"
    HYBRID = "hybrid"
    ADVANCED_TEXT = "advanced_text"
    BASIC_TEXT = "basic_text"
    NONE = "none"

# ============================================================
# Errors
# ============================================================

class IndexingError(RuntimeError):
    """Raised when a single, explicitly requested index operation fails."""

class ReformulationError(ValueError):
    """The language model answered with something that is not usable JSON."""

# ============================================================
# Core Domain Models
# ============================================================

class Product(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    description: Optional[str] = None
    category: Optional[str] = None
    stock: Optional[int] = Field(default=None, ge=0)
    price: Optional[float] = None


class QueryAttributes(BaseModel):
    """Structured reading of a raw product query."""
    model_config = ConfigDict(frozen=True)

    brand: Optional[str] = None
    fraction: Optional[str] = None
    size: Optional[str] = None
    unit: Optional[str] = None
    normalized: str = ""
    primary_term: Optional[str] = None

    @field_validator("fraction")
    @classmethod
    def validate_fraction(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not FRACTION_RE.match(v):
            raise ValueError(f"fraction must look like '5/8', got {v!r}")
        return v

    @field_validator("normalized", mode="before")
    @classmethod
    def normalized_not_null(cls, v: Any) -> str:
        return "" if v is None else v

    @classmethod
    def empty(cls) -> QueryAttributes:
        return cls()

    def search_text(self, fallback: str) -> str:
        """Text to embed: the normalized query, else the extracted parts."""
        if self.normalized.strip():
            return self.normalized
        parts = [p for p in (self.primary_term, self.brand, self.fraction,
                             self.size, self.unit) if p]
        return " ".join(parts) if parts else fallback


@dataclass(frozen=True)
class NormalizedQuery:
    """Output of the local heuristic normalization (no AI, no catalog)."""
    normalized: str
    keyword: Optional[str] = None
    fraction: Optional[str] = None
    size: Optional[str] = None


@dataclass(frozen=True)
class Vocabulary:
    """Catalog-mined brand and product-type tokens."""
    brands: tuple[str, ...] = ()
    product_types: frozenset[str] = frozenset()

    @classmethod
    def empty(cls) -> Vocabulary:
        return cls()

    @property
    def is_empty(self) -> bool:
        return not self.brands and not self.product_types


@dataclass
class CacheEntry:
    attributes: QueryAttributes
    created_at: float


@dataclass
class ScoredProduct:
    product: Product
    score: float


@dataclass(frozen=True)
class VectorDocument:
    """A product as handed to the embedding index."""
    id: str
    content: str
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PageRequest:
    page: int = 0
    size: int = 20

    @property
    def offset(self) -> int:
        return self.page * self.size


@dataclass
class Page:
    items: list[Product]
    total: int


@dataclass
class SearchOutcome:
    products: list[Product]
    strategy: StrategyName
    ai_available: bool

# ============================================================
# API Models
# ============================================================

class SearchResponse(BaseModel):
    query: str
    total: int
    elapsed_ms: int
    ai_available: bool
    strategy_used: StrategyName
    results: list[Product]
    message: str
    suggestions: list[str] = Field(default_factory=list)

class ProductListResponse(BaseModel):
    total: int
    products: list[Product]

class ReindexResponse(BaseModel):
    message: str
    total_products: int
    total_batches: int
    indexed_batches: int
    failed_batches: int
    indexed_documents: int
    aborted: bool
    errors: list[str] = Field(default_factory=list)

class IndexOneResponse(BaseModel):
    message: str
    product_id: int

class AIStatus(BaseModel):
    available: bool
    state: AIState
    strategies: list[str]

class InfoResponse(BaseModel):
    name: str
    version: str
    description: str
    ai_status: AIStatus
    endpoints: dict[str, str]
    examples: dict[str, str]

class HealthResponse(BaseModel):
    status: str
    ai_available: bool
    mode: str
    version: str
    uptime_seconds: int
    request_count: int = 0
    components: dict[str, dict] = Field(default_factory=dict)
