"""
Heuristic Reranker
==================

Re-orders search candidates with cheap signals on top of similarity:
keyword overlap with the content, overlap with the record subject,
closed records, well-documented records and freshness.
"""

import re
from datetime import datetime, timezone
from typing import List, Optional, Set

from helpdesk_retrieval.knowledge.domain.entities import SimilarChunk

KEYWORD_WEIGHT = 0.15
SUBJECT_WEIGHT = 0.10
CLOSED_BONUS = 0.05
DOCUMENTED_BONUS = 0.03
DOCUMENTED_MIN_RESPONSES = 3
FRESHNESS_WEIGHT = 0.05
FRESHNESS_WINDOW_DAYS = 365

_PUNCTUATION_RE = re.compile(r"[^\w\s]", re.UNICODE)
MIN_TOKEN_LENGTH = 3


def tokenize(text: str) -> Set[str]:
    """Lower-case word set without punctuation; tokens shorter than 3 are dropped."""
    if not text:
        return set()
    cleaned = _PUNCTUATION_RE.sub(" ", text.lower())
    return {token for token in cleaned.split() if len(token) >= MIN_TOKEN_LENGTH}


def _overlap(query_tokens: Set[str], text: str) -> float:
    if not query_tokens or not text:
        return 0.0
    return len(query_tokens & tokenize(text)) / len(query_tokens)


def _parse_datetime(value) -> Optional[datetime]:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def score_chunk(chunk: SimilarChunk, query_tokens: Set[str], now: datetime) -> float:
    metadata = chunk.metadata or {}
    score = chunk.similarity
    score += KEYWORD_WEIGHT * _overlap(query_tokens, chunk.content)
    score += SUBJECT_WEIGHT * _overlap(query_tokens, metadata.get("subject") or "")

    closed_at = _parse_datetime(metadata.get("closedAt"))
    if closed_at is not None:
        score += CLOSED_BONUS
        age_days = max((now - closed_at).total_seconds() / 86400, 0.0)
        score += FRESHNESS_WEIGHT * max(0.0, 1 - age_days / FRESHNESS_WINDOW_DAYS)

    try:
        responses = int(metadata.get("responseCount") or 0)
    except (TypeError, ValueError):
        responses = 0
    if responses >= DOCUMENTED_MIN_RESPONSES:
        score += DOCUMENTED_BONUS

    return score


def rerank_results(
    chunks: List[SimilarChunk],
    query: str,
    top_k: int,
    now: Optional[datetime] = None
) -> List[SimilarChunk]:
    """Set ``rerank_score`` on every chunk and return the best ``top_k``."""
    if not chunks:
        return []
    now = now or datetime.now(timezone.utc)
    query_tokens = tokenize(query)
    for chunk in chunks:
        chunk.rerank_score = score_chunk(chunk, query_tokens, now)
    ranked = sorted(chunks, key=lambda c: c.rerank_score, reverse=True)
    return ranked[:top_k]
