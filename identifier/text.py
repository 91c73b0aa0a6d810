from __future__ import annotations

import re
from collections.abc import Iterable
from functools import lru_cache

from razdel import tokenize as razdel_tokenize
from stop_words import get_stop_words

QUOTE_RE = re.compile(r"[\"'`“”«»’]")
NON_WORD_RE = re.compile(r"[^\w\s.,%-]+", re.UNICODE)
MULTISPACE_RE = re.compile(r"\s+")
TOKEN_RE = re.compile(r"[a-zа-я0-9][a-zа-я0-9.%-]*", re.IGNORECASE)
CYRILLIC_RE = re.compile(r"[а-я]", re.IGNORECASE)

_UNITS = ("ml", "l", "g", "kg", "mg", "oz", "lb", "pcs", "мл", "л", "г", "кг", "мг", "шт")
# "500ml" and "500 ml" must produce the same tokens.
_GLUED_UNIT_RE = re.compile(r"(\d)(" + "|".join(sorted(_UNITS, key=len, reverse=True)) + r")\b", re.IGNORECASE)
_NO_LEMMATIZE_TOKENS = frozenset(_UNITS)


class ProductTextNormalizer:
    """
    Normalizes product names and brands for registry search and scoring.

    Packaging text is often bilingual: Cyrillic words are reduced to their
    pymorphy3 lemma, Latin words are only lowercased. Stopwords of every
    configured language are dropped unless nothing else would remain.
    """

    def __init__(
        self,
        languages: Iterable[str] = ("en", "ru"),
        extra_stopwords: Iterable[str] | None = None,
        lemma_cache_size: int = 4096,
    ) -> None:
        import pymorphy3  # type: ignore

        self._morph = pymorphy3.MorphAnalyzer()
        self._stopwords: set[str] = set()
        for language in languages:
            self._stopwords.update(_fold(word) for word in get_stop_words(language))
        if extra_stopwords is not None:
            self._stopwords.update(_fold(word) for word in extra_stopwords)
        self._lemma = lru_cache(maxsize=lemma_cache_size)(self._parse_lemma)

    def clean_text(self, text: str) -> str:
        cleaned = _fold(text).replace("×", "x")
        cleaned = _GLUED_UNIT_RE.sub(r"\1 \2", cleaned)
        cleaned = QUOTE_RE.sub("", cleaned)
        cleaned = NON_WORD_RE.sub(" ", cleaned)
        return MULTISPACE_RE.sub(" ", cleaned).strip()

    def tokenize(self, text: str) -> list[str]:
        return [
            token.text
            for token in razdel_tokenize(self.clean_text(text))
            if TOKEN_RE.fullmatch(token.text)
        ]

    def normalize(self, text: str | None) -> str:
        if not text:
            return ""
        lemmas = [self._lemma(token) for token in self.tokenize(text)]
        meaningful = [lemma for lemma in lemmas if lemma not in self._stopwords]
        return " ".join(meaningful or lemmas)

    def _parse_lemma(self, token: str) -> str:
        if token in _NO_LEMMATIZE_TOKENS or not CYRILLIC_RE.search(token):
            return token
        return _fold(self._morph.parse(token)[0].normal_form)


def _fold(text: str) -> str:
    return text.strip().lower().replace("ё", "е")
