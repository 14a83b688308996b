#!/usr/bin/env python3
"""
Tokenization and inverted text index.

- Language-aware lowercasing (Turkish dotted/dotless i)
- Small per-language stop lists and light English stemming
- BM25 postings per language; scores are raw and query-relative
"""

__all__ = [
    "_STOP", "normalize_token", "tokenize", "tokenize_queries", "InvertedIndex",
    "BM25_K1", "BM25_B",
]

import math
import re
from collections import Counter, defaultdict
from typing import Dict, Iterable, List, Optional, Tuple

BM25_K1 = 1.2
BM25_B = 0.75

_STOP = {
    "en": {
        "the", "a", "an", "of", "in", "on", "for", "and", "or", "to",
        "with", "by", "is", "are", "be", "this", "that", "you", "your",
        "how", "do", "does", "at", "it", "my", "i",
    },
    "tr": {
        "ve", "ile", "bir", "bu", "şu", "da", "de", "mi", "mı", "mu", "mü",
        "için", "gibi", "çok", "ne", "nasıl", "olarak", "sizin", "siz", "ben",
    },
}

_WORD_RE = re.compile(r"\w+", re.UNICODE)


def _lower(text: str, language: Optional[str]) -> str:
    if language == "tr":
        text = text.replace("I", "ı").replace("İ", "i")
    return text.lower()


def _stem_en(tok: str) -> str:
    # minimal stemming: companies -> company, classes -> class
    if tok.endswith("ies") and len(tok) > 4:
        return tok[:-3] + "y"
    if tok.endswith("sses") and len(tok) > 5:
        return tok[:-2]
    if tok.endswith("s") and not tok.endswith("ss") and len(tok) > 3:
        return tok[:-1]
    return tok


def normalize_token(tok: str, language: Optional[str] = None) -> str:
    t = _lower(tok.strip(), language)
    if language == "en":
        t = _stem_en(t)
    return t


def tokenize(text: str, language: Optional[str] = None) -> List[str]:
    """Split text into normalized tokens, dropping stop words and 1-char noise."""
    stop = _STOP.get(language or "", set())
    out: List[str] = []
    for raw in _WORD_RE.findall(_lower(text or "", language)):
        if len(raw) < 2 or raw.isdigit() or raw in stop:
            continue
        out.append(normalize_token(raw, language))
    return out


def tokenize_queries(phrases: Iterable[str], language: Optional[str] = None) -> List[str]:
    """Tokenize phrases into unique tokens, first occurrence order."""
    seen = set()
    out: List[str] = []
    for ph in phrases:
        for t in tokenize(ph, language):
            if t not in seen:
                out.append(t)
                seen.add(t)
    return out


class InvertedIndex:
    """BM25 inverted index for one language partition of the catalog."""

    def __init__(self, language: Optional[str] = None, k1: float = BM25_K1, b: float = BM25_B):
        self.language = language
        self.k1 = k1
        self.b = b
        self._postings: Dict[str, Dict[str, int]] = defaultdict(dict)
        self._doc_len: Dict[str, int] = {}
        self._avg_len = 0.0

    def add(self, doc_id: str, fields: Iterable[str]) -> None:
        tokens: List[str] = []
        for f in fields:
            tokens.extend(tokenize(f, self.language))
        counts = Counter(tokens)
        for term, tf in counts.items():
            self._postings[term][doc_id] = tf
        self._doc_len[doc_id] = len(tokens)

    def finalize(self) -> "InvertedIndex":
        n = len(self._doc_len)
        self._avg_len = (sum(self._doc_len.values()) / n) if n else 0.0
        self._postings = dict(self._postings)
        return self

    def __len__(self) -> int:
        return len(self._doc_len)

    def idf(self, term: str) -> float:
        n = len(self._doc_len)
        df = len(self._postings.get(term, ()))
        if n == 0 or df == 0:
            return 0.0
        return math.log(1.0 + (n - df + 0.5) / (df + 0.5))

    def search(self, query: str | Iterable[str], limit: Optional[int] = None) -> List[Tuple[str, float]]:
        """Return (doc_id, bm25) pairs with score > 0, best first, ties by id."""
        phrases = [query] if isinstance(query, str) else list(query)
        terms = tokenize_queries(phrases, self.language)
        if not terms or not self._doc_len:
            return []
        scores: Dict[str, float] = defaultdict(float)
        avg = self._avg_len or 1.0
        for term in terms:
            postings = self._postings.get(term)
            if not postings:
                continue
            idf = self.idf(term)
            for doc_id, tf in postings.items():
                dl = self._doc_len.get(doc_id, 0)
                denom = tf + self.k1 * (1.0 - self.b + self.b * dl / avg)
                scores[doc_id] += idf * (tf * (self.k1 + 1.0)) / denom
        ranked = sorted(((d, s) for d, s in scores.items() if s > 0), key=lambda x: (-x[1], x[0]))
        if limit is not None:
            ranked = ranked[:limit]
        return ranked
