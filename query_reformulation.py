"""
Catalog Search Service — Query Reformulation

Turns a raw, possibly misspelled or spoken-style hardware query
("cerrojo gal cinco octavos por 16 plg") into structured attributes.

Responsibilities:
  1. Token mining: brand and product-type vocabularies from the catalog
  2. Heuristic normalization: unit abbreviations, spelled numbers,
     spelled fractions ("cinco octavos" -> "5/8")
  3. Attribute extraction: brand, unit, size, fraction
  4. Primary-term inference from catalog evidence, with fuzzy fallbacks
"""
from __future__ import annotations
import logging
import re
from collections import Counter
from typing import Iterable, Optional, Sequence

from models import NormalizedQuery, PageRequest, Product, QueryAttributes, Vocabulary
from repositories import CatalogRepository

logger = logging.getLogger(__name__)


# ============================================================
# Locale Tables (es)
# ============================================================

NUMBER_WORDS: dict[str, str] = {w: str(i) for i, w in enumerate([
    'cero', 'uno', 'dos', 'tres', 'cuatro', 'cinco', 'seis', 'siete',
    'ocho', 'nueve', 'diez', 'once', 'doce', 'trece', 'catorce', 'quince',
])}

DENOMINATORS: dict[str, int] = {
    'medio': 2, 'medios': 2, 'mitad': 2,
    'tercio': 3, 'tercios': 3,
    'cuarto': 4, 'cuartos': 4,
    'quinto': 5, 'quintos': 5,
    'sexto': 6, 'sextos': 6,
    'septimo': 7, 'septimos': 7, 'séptimo': 7, 'séptimos': 7,
    'octavo': 8, 'octavos': 8,
    'noveno': 9, 'novenos': 9,
    'decimo': 10, 'decimos': 10, 'décimo': 10, 'décimos': 10,
}

# Expanded during normalization. 'gal' is deliberately absent: it is
# also a common brand token in hardware catalogs.
UNIT_ABBREVIATIONS: dict[str, str] = {
    'plg': 'pulgadas',
    'mm': 'milimetros',
    'cm': 'centimetros',
    'mt': 'metros',
}

UNIT_CANONICAL: dict[str, str] = {
    'pulgadas': 'pulgadas', 'plg': 'pulgadas',
    'milimetros': 'milimetros', 'mm': 'milimetros',
    'centimetros': 'centimetros', 'cm': 'centimetros',
    'metros': 'metros', 'mt': 'metros',
    'galon': 'galon', 'gal': 'galon',
}

STOP_WORDS: frozenset[str] = frozenset({
    'de', 'del', 'la', 'el', 'los', 'las', 'un', 'una', 'y', 'con', 'sin',
    'por', 'para', 'x',
    'pulgadas', 'milimetros', 'metros', 'centimetros', 'mm', 'plg', 'galon',
})

# Last-resort dictionary, independent of catalog mining.
KNOWN_PRODUCT_TYPES: tuple[str, ...] = (
    'cerrojo', 'alicate', 'tornillo', 'perno', 'tuerca', 'arandela', 'angulo',
    'bisagra', 'cerradura', 'cilindro', 'cinta', 'martillo', 'clavo',
    'destornillador', 'llave', 'grifo', 'valvula',
)

MIN_PRODUCTS_PER_TOKEN = 3
MAX_DENOMINATOR_DISTANCE = 1
MAX_TYPE_DISTANCE = 2


# ============================================================
# Patterns
# ============================================================

_BRAND_TOKEN_RE = re.compile(r'\b([A-ZÁÉÍÓÚÑÜ]{3,})\b')
_TYPE_TOKEN_RE = re.compile(r'\b([a-zA-ZÁÉÍÓÚÑÜáéíóúñü0-9/\-]{3,})\b')
_ABBREVIATION_RES = {
    abbr: re.compile(rf'\b{re.escape(abbr)}\b\.?') for abbr in UNIT_ABBREVIATIONS
}
_PUNCTUATION_RE = re.compile(r'["\';,:\[\]{}()]')
_WHITESPACE_RE = re.compile(r'\s+')
_NUMBER_WORD_RE = re.compile(
    r'\b(' + '|'.join(sorted(NUMBER_WORDS, key=len, reverse=True)) + r')\b')
_SPELLED_FRACTION_RE = re.compile(
    r'\b(\d+)\s+(' + '|'.join(sorted(DENOMINATORS, key=len, reverse=True)) + r')\b')
_UNIT_RE = re.compile(
    r'\b(' + '|'.join(sorted(UNIT_CANONICAL, key=len, reverse=True)) + r')\b')
_EXPLICIT_FRACTION_RE = re.compile(r'\b\d+/\d+\b')
_SIZE_BEFORE_MARKER_RE = re.compile(r'(?<![\d/.])(\d+(?:\.\d+)?)\s*(?:x|por)\s*\d')
_SIZE_AFTER_MARKER_RE = re.compile(
    r'(?:(?<![a-záéíóúñü])x|\bpor)\s*(\d+(?:\.\d+)?)(?![\d/])')
_DIGITS_RE = re.compile(r'[0-9]+')
_NUMERIC_TOKEN_RE = re.compile(r'[0-9./]+')
_TOKEN_CLEAN_RE = re.compile(r'[^a-z0-9áéíóúñü/\-]')
_LETTERS_ONLY_RE = re.compile(r'[^a-záéíóúñü]')


# ============================================================
# Token Miner
# ============================================================

def mine_vocabulary(products: Iterable[Product]) -> Vocabulary:
    """
    Build brand / product-type vocabularies from a catalog scan.

    A token counts once per product. Brands come from uppercase runs in
    product names; product types from any alphanumeric token in
    name + description. Both need MIN_PRODUCTS_PER_TOKEN products.
    """
    brand_counts: Counter[str] = Counter()
    type_counts: Counter[str] = Counter()

    for p in products:
        name = p.name or ''
        brand_counts.update({tok.upper() for tok in _BRAND_TOKEN_RE.findall(name)})
        text = f"{name} {p.description or ''}"
        type_counts.update({tok.lower() for tok in _TYPE_TOKEN_RE.findall(text)})

    brands = sorted(
        (tok for tok, n in brand_counts.items() if n >= MIN_PRODUCTS_PER_TOKEN),
        key=lambda tok: (-brand_counts[tok], -len(tok), tok),
    )
    product_types = frozenset(
        tok for tok, n in type_counts.items() if n >= MIN_PRODUCTS_PER_TOKEN)
    return Vocabulary(brands=tuple(brands), product_types=product_types)


async def build_vocabulary(catalog: CatalogRepository) -> Vocabulary:
    """Mine the catalog once at startup; an unreachable catalog yields an empty vocabulary."""
    try:
        products = await catalog.find_all()
        vocabulary = mine_vocabulary(products)
    except Exception as e:
        logger.warning(f"Could not build query vocabulary from catalog: {e}")
        return Vocabulary.empty()

    logger.info(
        f"Query vocabulary: {len(vocabulary.brands)} candidate brands, "
        f"{len(vocabulary.product_types)} product-type tokens")
    return vocabulary


# ============================================================
# Text Helpers
# ============================================================

def levenshtein_distance(s1: str, s2: str) -> int:
    """
    Calculate Levenshtein distance between two strings.

    Returns: Minimum number of single-character edits needed
    """
    if len(s1) < len(s2):
        return levenshtein_distance(s2, s1)

    if len(s2) == 0:
        return len(s1)

    previous_row = list(range(len(s2) + 1))
    for i, c1 in enumerate(s1):
        current_row = [i + 1]
        for j, c2 in enumerate(s2):
            insertions = previous_row[j + 1] + 1
            deletions = current_row[j] + 1
            substitutions = previous_row[j] + (c1 != c2)
            current_row.append(min(insertions, deletions, substitutions))
        previous_row = current_row

    return previous_row[-1]


def clean_token(token: str) -> str:
    return _TOKEN_CLEAN_RE.sub('', token.lower()).strip()


def normalize_text(raw: Optional[str], brand: Optional[str] = None) -> str:
    """
    Lower-case, expand unit abbreviations, strip quotes/brackets, map
    spelled numbers to digits and spelled fractions to "n/d".

    An abbreviation equal to the detected brand is left untouched.
    """
    if raw is None:
        return ''
    s = raw.strip().lower()

    guarded = brand.lower() if brand else None
    for abbr, full in UNIT_ABBREVIATIONS.items():
        if abbr == guarded:
            continue
        s = _ABBREVIATION_RES[abbr].sub(full, s)

    s = _PUNCTUATION_RE.sub(' ', s)
    s = _WHITESPACE_RE.sub(' ', s)
    s = _NUMBER_WORD_RE.sub(lambda m: NUMBER_WORDS[m.group(1)], s)
    s = _SPELLED_FRACTION_RE.sub(
        lambda m: f"{m.group(1)}/{DENOMINATORS[m.group(2)]}", s)
    return _WHITESPACE_RE.sub(' ', s).strip()


def detect_brand(text: str, vocabulary: Vocabulary) -> Optional[str]:
    """First vocabulary brand that is a substring of the upper-cased text."""
    upper = text.upper()
    for brand in vocabulary.brands:
        if brand in upper:
            return brand
    return None


def extract_unit(normalized: str, brand: Optional[str] = None) -> tuple[Optional[str], Optional[str]]:
    """Return (matched token, canonical unit); tokens equal to the brand are skipped."""
    guarded = brand.lower() if brand else None
    for m in _UNIT_RE.finditer(normalized):
        token = m.group(1)
        if token == guarded or UNIT_CANONICAL[token] == guarded:
            continue
        return token, UNIT_CANONICAL[token]
    return None, None


def extract_size(normalized: str, unit_token: Optional[str] = None) -> Optional[str]:
    if unit_token:
        m = re.search(
            rf'(?<![\d/.])(\d+(?:\.\d+)?)\s*{re.escape(unit_token)}\b', normalized)
        if m:
            return m.group(1)

    m = _SIZE_BEFORE_MARKER_RE.search(normalized)
    if m:
        return m.group(1)
    m = _SIZE_AFTER_MARKER_RE.search(normalized)
    return m.group(1) if m else None


def closest_denominator(token: str) -> Optional[int]:
    """Denominator for a (possibly misspelled) fraction word, within one edit."""
    clean = _LETTERS_ONLY_RE.sub('', token.lower())
    if not clean:
        return None
    best, best_dist = None, MAX_DENOMINATOR_DISTANCE + 1
    for word in DENOMINATORS:
        dist = levenshtein_distance(clean, word)
        if dist < best_dist:
            best, best_dist = word, dist
    return DENOMINATORS[best] if best is not None else None


def extract_fraction(normalized: str) -> Optional[str]:
    m = _EXPLICIT_FRACTION_RE.search(normalized)
    if m:
        return m.group(0)

    tokens = normalized.split()
    for a, b in zip(tokens, tokens[1:]):
        numerator = NUMBER_WORDS.get(a)
        if numerator is None and _DIGITS_RE.fullmatch(a):
            numerator = a
        if numerator is None:
            continue
        denominator = closest_denominator(b)
        if denominator is not None:
            return f"{numerator}/{denominator}"
    return None


def closest_term(tokens: Sequence[str], candidates: Sequence[str],
                 max_distance: int = MAX_TYPE_DISTANCE) -> Optional[str]:
    """Candidate with the smallest edit distance to any token, if within max_distance."""
    best, best_dist = None, max_distance + 1
    for token in tokens:
        for cand in candidates:
            dist = levenshtein_distance(token, cand)
            if dist < best_dist:
                best, best_dist = cand, dist
    return best


def normalize_heuristic(raw: str) -> NormalizedQuery:
    """
    Local, AI-free normalization shared by the hybrid and advanced-text
    search strategies. Never touches the catalog.
    """
    normalized = normalize_text(raw)
    unit_token, _ = extract_unit(normalized)

    keyword = None
    for token in normalized.split():
        clean = clean_token(token)
        if len(clean) > 2 and clean not in STOP_WORDS and not _NUMERIC_TOKEN_RE.fullmatch(clean):
            keyword = clean
            break

    return NormalizedQuery(
        normalized=normalized,
        keyword=keyword,
        fraction=extract_fraction(normalized),
        size=extract_size(normalized, unit_token),
    )


# ============================================================
# Primary-Term Inferrer
# ============================================================

class PrimaryTermInferrer:
    """
    Picks the query token with the most catalog matches. The catalog is
    the evidence: a token nobody sells is never the primary term.
    """

    def __init__(self, catalog: CatalogRepository):
        self.catalog = catalog

    async def infer(self, raw: Optional[str]) -> Optional[str]:
        if raw is None or not raw.strip():
            return None

        best, best_count = None, 0
        seen: set[str] = set()
        for token in normalize_text(raw).split():
            clean = clean_token(token)
            if len(clean) <= 2 or clean in STOP_WORDS or clean in seen:
                continue
            seen.add(clean)
            try:
                page = await self.catalog.search_text_contains(
                    clean, clean, PageRequest(page=0, size=1))
            except Exception as e:
                logger.debug(f"Catalog lookup failed for token '{clean}': {e}")
                continue
            if page.total > best_count:
                best, best_count = clean, page.total

        return best if best_count > 0 else None


# ============================================================
# Heuristic Reformulator
# ============================================================

class HeuristicReformulator:
    """Regex + fuzzy-match query parser backed by the mined vocabulary."""

    def __init__(
        self,
        vocabulary: Vocabulary,
        inferrer: Optional[PrimaryTermInferrer] = None,
        known_types: Sequence[str] = KNOWN_PRODUCT_TYPES,
    ):
        self.vocabulary = vocabulary
        self.inferrer = inferrer
        self.known_types = tuple(known_types)
        self._product_types = sorted(vocabulary.product_types)

    async def reformulate(self, raw: Optional[str]) -> QueryAttributes:
        if raw is None or not raw.strip():
            return QueryAttributes.empty()

        # Brand first, on the original casing, so "GAL" is not read as a unit.
        brand = detect_brand(raw, self.vocabulary)
        normalized = normalize_text(raw, brand)

        unit_token, unit = extract_unit(normalized, brand)
        size = extract_size(normalized, unit_token)
        fraction = extract_fraction(normalized)

        if brand is None:
            brand = detect_brand(normalized, self.vocabulary)
            if brand and unit_token and brand.lower() in (unit_token, unit):
                unit = None

        primary_term = await self._primary_term(raw, normalized)

        return QueryAttributes(
            brand=brand,
            fraction=fraction,
            size=size,
            unit=unit,
            normalized=normalized,
            primary_term=primary_term,
        )

    async def infer(self, raw: Optional[str]) -> Optional[str]:
        if self.inferrer is None:
            return None
        return await self.inferrer.infer(raw)

    async def _primary_term(self, raw: str, normalized: str) -> Optional[str]:
        term = await self.infer(raw)
        if term:
            return term

        tokens = [t for t in (clean_token(tok) for tok in normalized.split()) if len(t) > 2]

        for token in tokens:
            if token in self.vocabulary.product_types:
                return token
        if self._product_types:
            term = closest_term(tokens, self._product_types)
            if term:
                return term

        for token in tokens:
            if token in self.known_types:
                return token
        return closest_term(tokens, self.known_types)
