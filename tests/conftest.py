"""Shared fixtures and collaborator fakes for the catalog search tests."""

from typing import Optional

import pytest

from circuit_breaker import AIAvailabilityBreaker
from llm_client import LanguageModel
from models import Page, PageRequest, Product, VectorDocument
from query_reformulation import mine_vocabulary
from repositories import InMemoryCatalogRepository
from vector_store import VectorStore


# ---------------------------------------------------------------------------
# Catalog data
# ---------------------------------------------------------------------------

HARDWARE_PRODUCTS = [
    Product(id=1, name="Cerrojo GAL 5/8 x 16 pulgadas",
            description="Cerrojo de acero galvanizado", category="Cerrojos", stock=10, price=12.5),
    Product(id=2, name="Cerrojo GAL 1/2 x 12 pulgadas",
            description="Cerrojo de seguridad", category="Cerrojos", stock=0, price=9.9),
    Product(id=3, name="Bisagra GAL 3 pulgadas",
            description="Bisagra de acero", category="Bisagras", stock=5, price=3.2),
    Product(id=4, name="Tornillo STANLEY 3/4 x 10",
            description="Tornillo hexagonal de acero", category="Tornillos", stock=100, price=0.4),
    Product(id=5, name="Martillo STANLEY 16 oz",
            description="Martillo de carpintero", category="Herramientas", stock=7, price=25.0),
    Product(id=6, name="Llave STANLEY 10 mm",
            description="Llave combinada", category="Herramientas", stock=3, price=8.0),
    Product(id=7, name="Cerrojo TRUPER 5/8 x 10 pulgadas",
            description="Cerrojo de acero inoxidable", category="Cerrojos", stock=2, price=14.0),
    Product(id=8, name="Cinta metrica TRUPER 5 metros",
            description="Cinta de medir", category="Herramientas", stock=12, price=6.5),
    Product(id=9, name="Valvula esfera 1/2 pulgadas",
            description="Valvula de bronce", category="Plomeria", stock=4, price=11.0),
]


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

class ManualClock:
    """Callable clock advanced by hand."""

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingCatalog(InMemoryCatalogRepository):
    """In-memory catalog that records calls and can fail on demand."""

    def __init__(self, products=None, fail_terms=(), fail_all=False):
        super().__init__(products)
        self.calls: list[tuple] = []
        self.fail_terms = set(fail_terms)
        self.fail_all = fail_all

    async def find_all(self) -> list[Product]:
        self.calls.append(("find_all",))
        if self.fail_all:
            raise RuntimeError("catalog unavailable")
        return await super().find_all()

    async def find_by_id(self, product_id: int) -> Optional[Product]:
        self.calls.append(("find_by_id", product_id))
        if self.fail_all:
            raise RuntimeError("catalog unavailable")
        return await super().find_by_id(product_id)

    async def search_text_contains(self, name_term, description_term, page: PageRequest) -> Page:
        self.calls.append(("search", name_term, page.size))
        if self.fail_all or name_term in self.fail_terms:
            raise RuntimeError(f"catalog query failed for {name_term!r}")
        return await super().search_text_contains(name_term, description_term, page)

    def search_terms(self) -> list[str]:
        return [c[1] for c in self.calls if c[0] == "search"]


class FakeVectorStore(VectorStore):
    """
    similarity_search returns `hits` (or hits_by_query[query]); add() pops
    one entry from `add_errors` per call and raises it when not None.
    """

    def __init__(self, hits=None, hits_by_query=None, search_error=None, add_errors=None):
        self.hits = list(hits or [])
        self.hits_by_query = dict(hits_by_query or {})
        self.search_error = search_error
        self.add_errors = list(add_errors or [])
        self.search_calls: list[tuple[str, int, float]] = []
        self.add_calls: list[list[VectorDocument]] = []

    async def similarity_search(self, query, top_k, threshold):
        self.search_calls.append((query, top_k, threshold))
        if self.search_error is not None:
            raise self.search_error
        return list(self.hits_by_query.get(query, self.hits))[:top_k]

    async def add(self, documents):
        self.add_calls.append(list(documents))
        if self.add_errors:
            error = self.add_errors.pop(0)
            if error is not None:
                raise error


class FakeLanguageModel(LanguageModel):
    """Answers from a script; the last answer repeats once the script runs out."""

    def __init__(self, responses=None, error=None):
        self.responses = list(responses or [])
        self.error = error
        self.prompts: list[str] = []

    async def complete(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        if len(self.responses) > 1:
            return self.responses.pop(0)
        return self.responses[0] if self.responses else ""


class SleepRecorder:
    def __init__(self):
        self.waits: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.waits.append(seconds)


class FixedJitter:
    """Stand-in for random.Random with a constant uniform() draw."""

    def __init__(self, value: float):
        self.value = value

    def uniform(self, a: float, b: float) -> float:
        return self.value


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def products():
    return list(HARDWARE_PRODUCTS)


@pytest.fixture
def catalog(products):
    return RecordingCatalog(products)


@pytest.fixture
def vocabulary(products):
    return mine_vocabulary(products)


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def breaker(clock):
    return AIAvailabilityBreaker(check_interval=60.0, clock=clock)
