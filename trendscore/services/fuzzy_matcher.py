import logging
import re
from typing import Iterable, Optional

from trendscore.config import settings
from trendscore.models import MatchCandidate, Product

logger = logging.getLogger(__name__)

NAME_WEIGHT = 0.7
BRAND_WEIGHT = 0.3

BRAND_SUFFIXES = [
    ' new york',
    ' ny',
    ' usa',
    ' united states',
    ' inc',
    ' inc.',
    ' llc',
    ' ltd',
    ' ltd.',
    ' corp',
    ' corp.',
    ' company',
    ' co',
    ' co.',
    ' & co',
    ' & co.',
    ' beauty',
    ' cosmetics',
    ' skincare',
    ' labs',
    ' laboratory',
]

_BRAND_PREFIX_RE = re.compile(r'^([A-Z][a-zA-Z\s&]+?)\s+')


def normalize_name(name: str) -> str:
    """Lowercase, collapse whitespace, drop punctuation other than hyphens"""
    collapsed = re.sub(r'\s+', ' ', (name or '').lower().strip())
    return re.sub(r'[^\w\s-]', '', collapsed)


def _words(normalized: str) -> set:
    return {w for w in normalized.split() if len(w) > 2}


def name_similarity(name_a: str, name_b: str) -> float:
    """
    Name similarity (0-1):
    - 1.0 for identical normalized names
    - 0.8 when one contains the other
    - otherwise Jaccard overlap of words longer than 2 characters
    """
    n1 = normalize_name(name_a)
    n2 = normalize_name(name_b)

    if not n1 or not n2:
        return 0.0
    if n1 == n2:
        return 1.0
    if n1 in n2 or n2 in n1:
        return 0.8

    words1 = _words(n1)
    words2 = _words(n2)
    union = words1 | words2
    if not union:
        return 0.0
    return len(words1 & words2) / len(union)


def normalize_brand(brand: Optional[str]) -> str:
    """Strip corporate and location suffixes ("Laura Geller New York" -> "Laura Geller")"""
    if not brand:
        return ''

    normalized = brand.strip()
    for suffix in BRAND_SUFFIXES:
        if normalized.lower().endswith(suffix):
            normalized = normalized[:-len(suffix)].strip()
    return normalized


def extract_brand(name: Optional[str]) -> Optional[str]:
    """Probable brand from the leading capitalized words of a product name"""
    match = _BRAND_PREFIX_RE.match(name or '')
    return match.group(1).strip() if match else None


def brand_similarity(
    brand_a: Optional[str],
    brand_b: Optional[str],
    name_a: Optional[str] = None,
    name_b: Optional[str] = None
) -> float:
    """
    Brand similarity: 0.5 for the same brand, 0.3 when one contains the
    other, else 0. A side without a brand falls back to the brand guessed
    from its name, but only when the other side has a real brand.
    """
    if not brand_a and not brand_b:
        return 0.0

    brand_a = brand_a or extract_brand(name_a)
    brand_b = brand_b or extract_brand(name_b)
    if not brand_a or not brand_b:
        return 0.0

    b1 = normalize_brand(brand_a).lower()
    b2 = normalize_brand(brand_b).lower()
    if not b1 or not b2:
        return 0.0

    if b1 == b2:
        return 0.5
    if b1 in b2 or b2 in b1:
        shorter = b1 if len(b1) < len(b2) else b2
        if len(shorter) >= 3:
            return 0.3
    return 0.0


def similarity(
    name_a: str,
    name_b: str,
    brand_a: Optional[str] = None,
    brand_b: Optional[str] = None
) -> float:
    """Combined score = 0.7 x name similarity + 0.3 x brand similarity"""
    return (
        NAME_WEIGHT * name_similarity(name_a, name_b)
        + BRAND_WEIGHT * brand_similarity(brand_a, brand_b, name_a, name_b)
    )


def product_similarity(a: Product, b: Product) -> float:
    return similarity(a.name, b.name, a.brand, b.brand)


def is_match(score: float, threshold: Optional[float] = None) -> bool:
    if threshold is None:
        threshold = settings.match_threshold
    return score > threshold


def find_best_match(
    product: Product,
    candidates: Iterable[Product],
    threshold: Optional[float] = None
) -> Optional[MatchCandidate]:
    """Greedy single best candidate above the threshold; the first one wins a tie"""
    if threshold is None:
        threshold = settings.match_threshold

    best: Optional[MatchCandidate] = None
    for candidate in candidates:
        if candidate.id == product.id:
            continue
        score = product_similarity(product, candidate)
        if score > threshold and (best is None or score > best.score):
            best = MatchCandidate(product_id=candidate.id, name=candidate.name, score=score)

    if best:
        logger.debug(f"Best match for '{product.name}': '{best.name}' ({best.score:.2f})")
    return best
