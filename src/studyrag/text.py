"""Text helpers shared by extraction, embeddings, reranking and templates."""

from __future__ import annotations

import math
import re
import unicodedata
from typing import List, Sequence

_TOKEN_RE = re.compile(r"[a-z0-9]+")
_SENTENCE_RE = re.compile(r"(?<=[.!?])\s+")

STOPWORDS = frozenset(
    """
    a an and are as at be been but by can did do does for from had has have how i if in into is it its
    me my no not of on or our so such than that the their them then there these they this to was we were
    what when where which who whom why will with would you your
    """.split()
)


def normalize_text(raw: str) -> str:
    normalized = unicodedata.normalize("NFKC", raw)
    normalized = normalized.replace("\u00a0", " ")
    normalized = re.sub(r"\s+", " ", normalized)
    return normalized.strip()


def tokenize(text: str, *, drop_stopwords: bool = True) -> List[str]:
    tokens = _TOKEN_RE.findall(text.lower())
    if drop_stopwords:
        return [token for token in tokens if token not in STOPWORDS]
    return tokens


def split_sentences(text: str) -> List[str]:
    return [sentence.strip() for sentence in _SENTENCE_RE.split(text) if sentence.strip()]


def cosine_similarity(left: Sequence[float], right: Sequence[float]) -> float:
    if len(left) != len(right):
        raise ValueError("Vectors must share a dimension")
    dot = sum(a * b for a, b in zip(left, right))
    left_norm = math.sqrt(sum(a * a for a in left))
    right_norm = math.sqrt(sum(b * b for b in right))
    if not left_norm or not right_norm:
        return 0.0
    return dot / (left_norm * right_norm)


def token_overlap_score(query_tokens: set[str], text: str) -> float:
    tokens = set(tokenize(text))
    if not tokens:
        return 0.0
    overlap = len(query_tokens.intersection(tokens))
    return overlap / max(len(query_tokens), 1)
