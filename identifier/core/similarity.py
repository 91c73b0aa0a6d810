from __future__ import annotations

import re
from typing import Protocol

from .models import ProductMetadata, ProductRecord

_SIZE_SPACES_RE = re.compile(r"\s+")

NAME_EXACT = 0.5
NAME_CANDIDATE_CONTAINS = 0.3
NAME_QUERY_CONTAINS = 0.2

BRAND_EXACT = 0.3
BRAND_CANDIDATE_CONTAINS = 0.2
BRAND_QUERY_CONTAINS = 0.1

SIZE_EXACT = 0.2
SIZE_CONTAINS = 0.1

_PLACEHOLDER_BRANDS = {"unknown brand", "unknown"}


class _TextNormalizer(Protocol):
    def normalize(self, text: str | None) -> str: ...


def jaccard(left: str, right: str) -> float:
    left_words = set(left.lower().split())
    right_words = set(right.lower().split())
    union = left_words | right_words
    if not union:
        return 0.0
    return len(left_words & right_words) / len(union)


def _compact_size(value: str) -> str:
    return _SIZE_SPACES_RE.sub("", value.strip().lower().replace(",", "."))


class MetadataSimilarityScorer:
    """
    Scores how well extracted metadata describes a registry record.

    Weights: name 0.5 (required), brand 0.3, size 0.2. A name that shares no
    containment relation with the candidate scores zero, as does a brand or
    size that contradicts the candidate when both sides carry one.
    """

    def __init__(self, normalizer: _TextNormalizer | None = None) -> None:
        if normalizer is None:
            from identifier.text import ProductTextNormalizer

            normalizer = ProductTextNormalizer()
        self._normalizer = normalizer

    def normalize_name(self, value: str) -> str:
        return self._normalizer.normalize(value)

    def score(self, metadata: ProductMetadata, record: ProductRecord) -> float:
        name_score = self._name_score(metadata.product_name, record.name)
        if name_score <= 0.0:
            return 0.0

        brand_score = self._brand_score(metadata.brand_name, record.brand)
        if brand_score is None:
            return 0.0

        size_score = self._size_score(metadata.size, record.size)
        if size_score is None:
            return 0.0

        return round(min(1.0, name_score + brand_score + size_score), 4)

    def _name_score(self, query: str | None, candidate: str | None) -> float:
        query_norm = self._normalizer.normalize(query)
        candidate_norm = self._normalizer.normalize(candidate)
        if not query_norm or not candidate_norm:
            return 0.0
        if query_norm == candidate_norm:
            return NAME_EXACT

        query_tokens = set(query_norm.split())
        candidate_tokens = set(candidate_norm.split())
        if query_tokens <= candidate_tokens:
            return NAME_CANDIDATE_CONTAINS
        if candidate_tokens <= query_tokens:
            return NAME_QUERY_CONTAINS
        return 0.0

    def _brand_score(self, query: str | None, candidate: str | None) -> float | None:
        if not query or not query.strip():
            return 0.0
        if not candidate or candidate.strip().lower() in _PLACEHOLDER_BRANDS:
            return 0.0

        query_norm = self._normalizer.normalize(query) or query.strip().lower()
        candidate_norm = self._normalizer.normalize(candidate) or candidate.strip().lower()
        if query_norm == candidate_norm:
            return BRAND_EXACT
        if query_norm in candidate_norm:
            return BRAND_CANDIDATE_CONTAINS
        if candidate_norm in query_norm:
            return BRAND_QUERY_CONTAINS
        return None

    @staticmethod
    def _size_score(query: str | None, candidate: str | None) -> float | None:
        if not query or not query.strip():
            return 0.0
        if not candidate or not candidate.strip():
            return 0.0

        query_compact = _compact_size(query)
        candidate_compact = _compact_size(candidate)
        if query_compact == candidate_compact:
            return SIZE_EXACT
        if query_compact in candidate_compact or candidate_compact in query_compact:
            return SIZE_CONTAINS
        return None
