"""
Ranker — deterministic SOP relevance ranking.
Keyword matching over titles, tags and body text; no embeddings, no learned model.
"""
import logging
import re
from dataclasses import dataclass
from typing import Iterable, List, Optional

from sopbot.models import Document, normalize_tags

logger = logging.getLogger(__name__)

PUNCTUATION = re.compile(r"[^\w\s]")

# Articles, auxiliaries, pronouns and question words that carry no topic
STOP_WORDS = frozenset({
    "a", "an", "the",
    "is", "are", "was", "were", "be", "been", "being", "am",
    "do", "does", "did", "doing", "done",
    "have", "has", "had",
    "can", "could", "should", "would", "will", "shall", "may", "might", "must",
    "what", "which", "who", "whom", "whose", "when", "where", "why", "how",
    "i", "me", "my", "we", "our", "you", "your", "it", "its", "they", "them",
    "this", "that", "these", "those",
    "to", "of", "in", "on", "for", "at", "by", "with", "about", "from",
    "and", "or", "if", "so", "please",
})

SUFFIXES = ("ing", "ed", "es", "s")


@dataclass
class RankingConfig:
    """Scoring weights."""
    title_weight: float = 25.0
    body_weight: float = 2.0
    max_body_tokens: int = 2
    tag_exact_weight: float = 3.0
    tag_partial_weight: float = 0.5
    tag_multiplier: float = 10.0


@dataclass
class RankedDocument:
    document: Document
    score: float


def stem(token: str) -> str:
    """Strip the first matching suffix, never emptying the token."""
    for suffix in SUFFIXES:
        if token.endswith(suffix) and len(token) > len(suffix):
            return token[: -len(suffix)]
    return token


def tokenize(text: str, drop_stop_words: bool = True) -> List[str]:
    """Lowercase, strip punctuation, split, optionally drop stop words, stem."""
    words = PUNCTUATION.sub("", (text or "").lower()).split()
    if drop_stop_words:
        words = [w for w in words if w not in STOP_WORDS]
    return [stem(w) for w in words]


def _tag_score(tokens: Iterable[str], tags: List[str], config: RankingConfig) -> float:
    score = 0.0
    for token in tokens:
        if token in tags:
            score += config.tag_exact_weight
        elif any(tag.startswith(token) or token.startswith(tag) for tag in tags):
            score += config.tag_partial_weight
    return score


def score_document(document: Document, tokens: List[str],
                   config: Optional[RankingConfig] = None) -> float:
    """
    Score one document against already-normalized query tokens.

    Returns 0 for documents without a title hit or an exact tag hit, so body
    text alone can never surface a document.
    """
    config = config or RankingConfig()
    if not tokens:
        return 0.0

    title_tokens = tokenize(document.title, drop_stop_words=False)
    tags = normalize_tags(document.tags)

    title_hits = sum(1 for t in tokens if any(t in tw for tw in title_tokens))
    exact_tag_hit = any(t in tags for t in tokens)
    if not title_hits and not exact_tag_hit:
        return 0.0

    score = title_hits * config.title_weight

    body = document.body.lower()
    body_hits = sum(1 for t in tokens if t in body)
    score += min(body_hits, config.max_body_tokens) * config.body_weight

    score += _tag_score(tokens, tags, config) * config.tag_multiplier
    return score


def rank(corpus: List[Document], query: str,
         limit: Optional[int] = 3,
         config: Optional[RankingConfig] = None) -> List[RankedDocument]:
    """
    Rank the corpus against a free-text query.

    Args:
        corpus: Documents in source order (used as the tie-break)
        query: Raw user question
        limit: Maximum documents returned; None returns every positive score

    Returns:
        Documents with a positive score, best first. Empty when nothing
        passes the gate; there is no best-effort fallback.
    """
    config = config or RankingConfig()
    tokens = tokenize(query)
    if not tokens or not corpus:
        logger.info(f"No rankable tokens or empty corpus for query: {query!r}")
        return []

    scored = [RankedDocument(doc, score_document(doc, tokens, config)) for doc in corpus]
    # sorted() is stable, so equal scores keep corpus order
    ranked = sorted((r for r in scored if r.score > 0), key=lambda r: r.score, reverse=True)
    if limit is not None:
        ranked = ranked[:limit]

    if ranked:
        logger.info(f"Top match: {ranked[0].document.title!r} (score {ranked[0].score})")
    else:
        logger.info(f"No relevant SOP found for query: {query!r}")
    return ranked
