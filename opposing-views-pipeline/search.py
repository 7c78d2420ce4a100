"""Search collaborators that retrieve candidate opposing articles for a query."""

from __future__ import annotations

import logging
import re
import sqlite3
import unicodedata
from abc import ABC, abstractmethod
from typing import AbstractSet, List

import numpy as np
from rapidfuzz import fuzz
from sklearn.feature_extraction.text import TfidfVectorizer

from errors import SearchError
from models import SearchHit
from store import ArticleStore


logger = logging.getLogger(__name__)

_PUNCT_RE = re.compile(r"[^\w\s-]")
_WHITESPACE_RE = re.compile(r"\s+")


def normalize_text(text: str) -> str:
    """Lowercase, NFKC-normalize and strip punctuation for matching."""
    if not text:
        return ""
    text = unicodedata.normalize("NFKC", text).lower().strip()
    text = _PUNCT_RE.sub(" ", text)
    return _WHITESPACE_RE.sub(" ", text).strip()


class SearchCollaborator(ABC):
    """Returns ranked candidate articles for a query; scores lie in [0, 1]."""

    @abstractmethod
    def search(self, query: str, excluding: AbstractSet[str], k: int) -> List[SearchHit]:
        raise NotImplementedError


class StoreSearch(SearchCollaborator):
    """Ranks recent store articles against a query.

    The score blends TF-IDF cosine similarity over title and summary with a
    fuzzy token-set ratio on the title. Candidates that share no indexed term
    with the query are dropped.
    """

    def __init__(self, store: ArticleStore, pool_size: int = 500, tfidf_weight: float = 0.7):
        self.store = store
        self.pool_size = pool_size
        self.tfidf_weight = tfidf_weight

    def search(self, query: str, excluding: AbstractSet[str], k: int) -> List[SearchHit]:
        query_text = normalize_text(query)
        if not query_text or k <= 0:
            return []
        try:
            pool = self.store.search_pool(set(excluding), self.pool_size)
        except sqlite3.Error as exc:
            raise SearchError(f"Article store search failed: {exc}") from exc
        if not pool:
            return []

        documents = [normalize_text(f"{article.title} {article.summary or ''}") for article, _ in pool]
        vectorizer = TfidfVectorizer(min_df=1, ngram_range=(1, 2))
        try:
            matrix = vectorizer.fit_transform(documents + [query_text])
        except ValueError:
            logger.debug("No indexable terms for query %r", query)
            return []
        doc_mat = matrix[:-1]
        query_vec = matrix[-1]
        lexical = (doc_mat @ query_vec.T).toarray().ravel()
        fuzzy = np.array(
            [fuzz.token_set_ratio(query_text, normalize_text(article.title)) / 100.0 for article, _ in pool]
        )
        scores = np.clip(self.tfidf_weight * lexical + (1.0 - self.tfidf_weight) * fuzzy, 0.0, 1.0)

        hits: List[SearchHit] = []
        for idx in np.argsort(-scores, kind="stable"):
            if lexical[idx] <= 0.0:
                continue
            article, bias_score = pool[idx]
            hits.append(SearchHit(article=article, score=float(scores[idx]), bias_score=bias_score))
            if len(hits) >= k:
                break
        return hits
