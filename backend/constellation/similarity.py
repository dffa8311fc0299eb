"""
Tag Similarity
==============

Pure functions over two tag sets. Order is irrelevant and duplicates are
removed before comparing.

Variants:
  jaccard_similarity          |A & B| / |A | B|
  weighted_cosine_similarity  cosine over the union vocabulary with per-tag weights
  category_similarity         Jaccard over the categories the tags belong to

tag_similarity() is the equal-weighted average of the three, and is what
the resonance calculator uses.
"""

from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional, Set, Tuple

import numpy as np


# =============================================================================
# STATIC TABLES
# =============================================================================

# Relative importance of tags (unknown tags weigh 1.0)
TAG_WEIGHTS: Dict[str, float] = {
    "travel": 1.2,
    "food": 1.1,
    "music": 1.0,
    "movies": 1.0,
    "reading": 1.1,
    "sports": 1.0,
    "photography": 1.1,
    "art": 1.2,
    "technology": 1.0,
    "gaming": 0.9,
    "fashion": 1.0,
    "pets": 1.1,
    "fitness": 1.0,
    "yoga": 1.1,
    "coffee": 1.0,
    "tea": 1.0,
    "wine": 0.9,
    "cooking": 1.1,
    "gardening": 1.0,
    "crafts": 1.1,
    "hiking": 1.1,
    "camping": 1.0,
}

# Category -> tags. A tag may sit in more than one category.
TAG_CATEGORIES: Dict[str, Tuple[str, ...]] = {
    "lifestyle": ("fashion", "coffee", "tea", "wine", "shopping", "home"),
    "food": ("food", "cooking", "baking", "coffee", "tea", "wine"),
    "outdoors": ("hiking", "camping", "climbing", "cycling", "gardening", "fishing"),
    "travel": ("travel", "backpacking", "road trips", "camping"),
    "entertainment": ("music", "movies", "gaming", "anime", "theater"),
    "learning": ("reading", "writing", "history", "languages", "science"),
    "health": ("sports", "fitness", "yoga", "running", "meditation"),
    "creative": ("photography", "art", "crafts", "design", "gardening"),
    "tech": ("technology", "gaming", "programming", "gadgets"),
    "community": ("pets", "volunteering", "parenting", "board games"),
}

DEFAULT_TAG_WEIGHT = 1.0

# Returned when exactly one side has tags: low, but not "opposite"
ONE_SIDED_SIMILARITY = 0.1

# Both sides uncategorized: unknown is not the same as dissimilar
NEUTRAL_CATEGORY_SIMILARITY = 0.5


def build_tag_to_categories(categories: Mapping[str, Iterable[str]]) -> Dict[str, FrozenSet[str]]:
    """Invert a category -> tags table"""
    index: Dict[str, Set[str]] = {}
    for category, tags in categories.items():
        for tag in tags:
            index.setdefault(tag, set()).add(category)
    return {tag: frozenset(cats) for tag, cats in index.items()}


TAG_TO_CATEGORIES = build_tag_to_categories(TAG_CATEGORIES)
TOTAL_CATEGORIES = len(TAG_CATEGORIES)


# =============================================================================
# HELPERS
# =============================================================================

def _as_set(tags: Optional[Iterable[str]]) -> FrozenSet[str]:
    if not tags:
        return frozenset()
    if isinstance(tags, str):
        return frozenset([tags])
    return frozenset(tags)


def tag_weight(tag: str, weights: Optional[Mapping[str, float]] = None) -> float:
    return (TAG_WEIGHTS if weights is None else weights).get(tag, DEFAULT_TAG_WEIGHT)


def tag_categories(
    tags: Iterable[str],
    tag_to_categories: Optional[Mapping[str, FrozenSet[str]]] = None,
) -> FrozenSet[str]:
    """Categories induced by a tag set (uncategorized tags contribute nothing)"""
    index = TAG_TO_CATEGORIES if tag_to_categories is None else tag_to_categories
    found: Set[str] = set()
    for tag in _as_set(tags):
        found.update(index.get(tag, ()))
    return frozenset(found)


def _clamp01(value: float) -> float:
    return max(0.0, min(1.0, value))


# =============================================================================
# SIMILARITY VARIANTS
# =============================================================================

def jaccard_similarity(tags_a: Iterable[str], tags_b: Iterable[str]) -> float:
    """
    |A & B| / |A | B|

    1.0 when both sets are empty, 0.0 when exactly one is.
    """
    a, b = _as_set(tags_a), _as_set(tags_b)
    if not a and not b:
        return 1.0
    if not a or not b:
        return 0.0
    return len(a & b) / len(a | b)


def weighted_cosine_similarity(
    tags_a: Iterable[str],
    tags_b: Iterable[str],
    weights: Optional[Mapping[str, float]] = None,
) -> float:
    """
    Cosine similarity of weighted indicator vectors over the union vocabulary.

    Returns 0.0 if either vector has zero norm (including empty sets).
    """
    a, b = _as_set(tags_a), _as_set(tags_b)
    vocabulary = sorted(a | b)
    if not vocabulary:
        return 0.0

    w = np.array([tag_weight(t, weights) for t in vocabulary], dtype=float)
    vec_a = np.where([t in a for t in vocabulary], w, 0.0)
    vec_b = np.where([t in b for t in vocabulary], w, 0.0)

    norm_a = float(np.linalg.norm(vec_a))
    norm_b = float(np.linalg.norm(vec_b))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0

    return _clamp01(float(np.dot(vec_a, vec_b)) / (norm_a * norm_b))


def category_similarity(
    tags_a: Iterable[str],
    tags_b: Iterable[str],
    tag_to_categories: Optional[Mapping[str, FrozenSet[str]]] = None,
) -> float:
    """
    Jaccard over induced category sets.

    0.5 when neither side has a categorized tag.
    """
    cats_a = tag_categories(tags_a, tag_to_categories)
    cats_b = tag_categories(tags_b, tag_to_categories)
    if not cats_a and not cats_b:
        return NEUTRAL_CATEGORY_SIMILARITY
    return len(cats_a & cats_b) / len(cats_a | cats_b)


def tag_similarity(
    tags_a: Iterable[str],
    tags_b: Iterable[str],
    weights: Optional[Mapping[str, float]] = None,
    tag_to_categories: Optional[Mapping[str, FrozenSet[str]]] = None,
) -> float:
    """
    Combined similarity in [0, 1]: mean of Jaccard, weighted cosine and
    category similarity. Exactly one empty side yields 0.1.
    """
    a, b = _as_set(tags_a), _as_set(tags_b)
    if bool(a) != bool(b):
        return ONE_SIDED_SIMILARITY

    variants = (
        jaccard_similarity(a, b),
        weighted_cosine_similarity(a, b, weights),
        category_similarity(a, b, tag_to_categories),
    )
    return _clamp01(sum(variants) / len(variants))


def tag_distance(tags_a: Iterable[str], tags_b: Iterable[str]) -> float:
    """1 - tag_similarity, for clustering-style callers"""
    return 1.0 - tag_similarity(tags_a, tags_b)


# =============================================================================
# TAG SET ANALYSIS
# =============================================================================

def tag_set_diversity(tags: Iterable[str]) -> float:
    """
    Diversity of a single user's tags.

    Half categories-per-tag, half share of all known categories covered.
    """
    tag_set = _as_set(tags)
    if not tag_set:
        return 0.0
    category_count = len(tag_categories(tag_set))
    return 0.5 * (category_count / len(tag_set)) + 0.5 * (category_count / TOTAL_CATEGORIES)


def recommend_tags(
    user_tags: Iterable[str],
    vocabulary: Iterable[str],
    limit: int = 10,
) -> List[Tuple[str, float]]:
    """
    Rank tags the user does not have yet.

    Score = similarity(user_tags, {tag}) * tag weight. Ties keep vocabulary
    order.

    Returns:
        [(tag, score), ...] best first
    """
    owned = _as_set(user_tags)
    scored = []
    seen: Set[str] = set()
    for tag in vocabulary:
        if tag in owned or tag in seen:
            continue
        seen.add(tag)
        scored.append((tag, tag_similarity(owned, {tag}) * tag_weight(tag)))

    scored.sort(key=lambda item: item[1], reverse=True)
    return scored[:limit]
