"""Deterministic search queries meant to surface coverage with the opposite lean."""

from __future__ import annotations

import re
from typing import Dict, Iterable, List, Optional, Tuple

from models import ArticleAnalysis

DEFAULT_MAX_QUERIES = 3
LEAN_DEADBAND = 0.15
MAX_TOPIC_KEYWORDS = 8
MAX_QUERY_CHARS = 200

LEFT = "left"
RIGHT = "right"
CENTER = "center"

# (phrase typical of left-leaning coverage, counterpart typical of right-leaning coverage)
STANCE_PAIRS: Tuple[Tuple[str, str], ...] = (
    ("progressive", "conservative"),
    ("liberal", "conservative"),
    ("gun control", "gun rights"),
    ("gun safety", "second amendment"),
    ("pro-choice", "pro-life"),
    ("reproductive rights", "right to life"),
    ("undocumented immigrants", "illegal immigrants"),
    ("undocumented", "illegal"),
    ("asylum seekers", "border security"),
    ("climate crisis", "energy independence"),
    ("climate emergency", "energy costs"),
    ("regulation", "deregulation"),
    ("tax the rich", "tax cuts"),
    ("wealth inequality", "economic growth"),
    ("social justice", "law and order"),
    ("systemic racism", "individual responsibility"),
    ("workers' rights", "business freedom"),
    ("universal healthcare", "free market healthcare"),
    ("public option", "private insurance"),
    ("voter suppression", "election integrity"),
    ("diversity", "merit"),
    ("labor union", "right to work"),
    ("green new deal", "fossil fuel jobs"),
    ("defund the police", "back the blue"),
    ("far-right", "far-left"),
    ("extremist", "patriot"),
)

_LEFT_TO_RIGHT: Dict[str, str] = {}
_RIGHT_TO_LEFT: Dict[str, str] = {}
for _left, _right in STANCE_PAIRS:
    _LEFT_TO_RIGHT.setdefault(_left, _right)
    _RIGHT_TO_LEFT.setdefault(_right, _left)


def _phrase_pattern(phrases: Iterable[str]) -> "re.Pattern[str]":
    # Longest phrases first so "undocumented immigrants" wins over "undocumented".
    alternation = "|".join(re.escape(phrase) for phrase in sorted(phrases, key=len, reverse=True))
    return re.compile(rf"(?<![\w-])(?:{alternation})(?![\w-])")


_LEFT_PATTERN = _phrase_pattern(_LEFT_TO_RIGHT)
_RIGHT_PATTERN = _phrase_pattern(_RIGHT_TO_LEFT)

_OPPOSING_LABEL = {LEFT: "conservative", RIGHT: "progressive"}

_STOPWORDS = frozenset(
    """
    a an the and or but if of at by for with about against between into through during before after
    above below to from up down in out on off over under again further then once here there when where
    why how all any both each few more most other some such no nor not only own same so than too very
    can will just should now is are was were be been being have has had having do does did doing
    this that these those it its it's they them their he she his her we our you your i me my
    as amid says said say new report reports reported article story news
    """.split()
)
_TOKEN_RE = re.compile(r"[a-z0-9][a-z0-9'\-]*")
_WHITESPACE_RE = re.compile(r"\s+")


def classify_lean(bias_score: Optional[float], deadband: float = LEAN_DEADBAND) -> str:
    if bias_score is None or abs(bias_score) < deadband:
        return CENTER
    return LEFT if bias_score < 0 else RIGHT


def topic_keywords(topic_summary: Optional[str], limit: int = MAX_TOPIC_KEYWORDS) -> List[str]:
    """Content words of the topic summary, lowercased, in first-seen order."""
    keywords: List[str] = []
    for token in _TOKEN_RE.findall((topic_summary or "").lower()):
        token = token.strip("'-")
        if len(token) < 2 or token in _STOPWORDS or token in keywords:
            continue
        keywords.append(token)
        if len(keywords) >= limit:
            break
    return keywords


def invert_indicator(indicator: str, lean: str) -> Optional[str]:
    """Swap pole-specific phrases for their counterparts; None when nothing matched."""
    if lean == LEFT:
        lexicon, pattern = _LEFT_TO_RIGHT, _LEFT_PATTERN
    elif lean == RIGHT:
        lexicon, pattern = _RIGHT_TO_LEFT, _RIGHT_PATTERN
    else:
        return None
    text = _normalize(indicator.lower())
    inverted, count = pattern.subn(lambda match: lexicon[match.group(0)], text)
    return inverted if count else None


def _normalize(text: str) -> str:
    return _WHITESPACE_RE.sub(" ", text).strip()


def _dedupe(queries: Iterable[str], limit: int) -> List[str]:
    seen = set()
    result: List[str] = []
    for query in queries:
        query = _normalize(query)[:MAX_QUERY_CHARS].strip()
        key = query.lower()
        if not query or key in seen:
            continue
        seen.add(key)
        result.append(query)
        if len(result) >= limit:
            break
    return result


def generate_queries(analysis: ArticleAnalysis, max_queries: int = DEFAULT_MAX_QUERIES) -> List[str]:
    """Build up to ``max_queries`` search strings for contrasting coverage of the analysed article.

    The same analysis always yields the same list. An analysis with neither a
    topic summary nor bias indicators yields an empty list.
    """
    if max_queries <= 0:
        return []

    keywords = topic_keywords(analysis.topic_summary)
    indicators = sorted({_normalize(item.lower()) for item in analysis.bias_indicators if item and item.strip()})
    if not keywords and not indicators:
        return []

    lean = classify_lean(analysis.bias_score)
    label = _OPPOSING_LABEL.get(lean, "")
    inverted = [phrase for phrase in (invert_indicator(item, lean) for item in indicators) if phrase]
    topic = " ".join(keywords)

    candidates: List[str] = []
    if topic:
        if label:
            candidates.append(f"{topic} {label} perspective")
            if inverted:
                candidates.append(f"{topic} {' '.join(inverted[:2])}")
            candidates.append(f"{topic} criticism")
        else:
            candidates.append(f"{topic} debate")
            candidates.append(f"{topic} criticism")
            candidates.append(f"{topic} support")
    else:
        phrases = inverted or indicators
        for phrase in phrases:
            candidates.append(f"{phrase} {label}" if label else phrase)

    return _dedupe(candidates, max_queries)
