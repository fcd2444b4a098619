"""Similarity scoring for posts and opportunities.

Text overlap is the Jaccard index of content-token sets; agreement on
categorical fields (tags for opportunities, subreddit for posts) lifts the
score toward 1 but never creates similarity on its own.
"""

import re
from typing import Callable, Union

from demand_radar.database import Opportunity, Post

Record = Union[Post, Opportunity]
Scorer = Callable[[Record, Record], float]

DEFAULT_CATEGORY_WEIGHT = 0.25
MIN_TOKEN_LENGTH = 3
PRECISION = 6

FUNCTION_WORDS = {
    'the', 'and', 'are', 'was', 'were', 'been', 'being', 'have', 'has',
    'had', 'does', 'did', 'will', 'would', 'could', 'should', 'may',
    'might', 'must', 'shall', 'can', 'for', 'with', 'from', 'into',
    'through', 'during', 'before', 'after', 'above', 'below', 'between',
    'under', 'again', 'further', 'then', 'once', 'here', 'there', 'when',
    'where', 'why', 'how', 'all', 'each', 'few', 'more', 'most', 'other',
    'some', 'such', 'nor', 'not', 'only', 'own', 'same', 'than', 'too',
    'very', 'just', 'but', 'because', 'until', 'while', 'this', 'that',
    'these', 'those', 'what', 'which', 'who', 'whom', 'any', 'both',
    'our', 'you', 'your', 'its', 'they', 'them', 'their', 'she', 'him',
    'her', 'his', 'hers', 'about', 'also', 'even', 'much', 'out', 'over',
}

# Filler common in post titles. Still compared when a record has nothing else.
FILLER_WORDS = {
    'really', 'like', 'want', 'need', 'get', 'got', 'make', 'way', 'thing',
    'things', 'lot', 'kind', 'anyone', 'someone', 'something', 'anything',
    'everyone', 'people', 'dont', 'ive', 'youre', 'actually', 'basically',
    'probably', 'maybe', 'help',
}

# Boilerplate that never describes a problem
NOISE_WORDS = {
    'please', 'thanks', 'edit', 'update',
    'https', 'http', 'www', 'com', 'reddit', 'subreddit', 'post',
}

STOPWORDS = FUNCTION_WORDS | FILLER_WORDS | NOISE_WORDS


def tokenize(text: str) -> list[str]:
    """Lowercase and split on anything that is not part of a word."""
    if not text:
        return []
    return re.findall(r'\b[a-z][a-z0-9]*(?:[-/][a-z0-9]+)*\b', text.lower())


def content_tokens(text: str) -> set[str]:
    """Meaningful tokens: stopwords and very short tokens removed."""
    return {
        token for token in tokenize(text)
        if len(token) >= MIN_TOKEN_LENGTH and token not in STOPWORDS
    }


def record_text(record: Record) -> str:
    """Text compared for a record: title plus description or body."""
    if isinstance(record, Opportunity):
        return f"{record.title} {record.description}"
    return f"{record.title} {record.body or ''}"


def record_categories(record: Record) -> dict[str, str]:
    """Categorical fields compared for a record, only those that are set."""
    if isinstance(record, Opportunity):
        return record.tags()
    if record.subreddit:
        return {"subreddit": record.subreddit.strip().lower()}
    return {}


def record_tokens(record: Record) -> set[str]:
    """Tokens compared for a record.

    Falls back to filler words when a record says nothing else, so a title
    like "Help people get things" still matches itself.
    """
    text = record_text(record)
    tokens = content_tokens(text)
    if tokens:
        return tokens
    return {
        token for token in tokenize(text)
        if len(token) >= MIN_TOKEN_LENGTH and token in FILLER_WORDS
    }


def jaccard(a: set[str], b: set[str]) -> float:
    if not a or not b:
        return 0.0
    return len(a & b) / len(a | b)


def category_agreement(a: Record, b: Record) -> float:
    """Fraction of fields set on both sides that carry the same value."""
    cats_a = record_categories(a)
    cats_b = record_categories(b)
    shared = cats_a.keys() & cats_b.keys()
    if not shared:
        return 0.0
    return sum(1 for key in shared if cats_a[key] == cats_b[key]) / len(shared)


def similarity(
    a: Record,
    b: Record,
    category_weight: float = DEFAULT_CATEGORY_WEIGHT,
) -> float:
    """Score how alike two records are, in [0, 1].

    Symmetric and deterministic. Either side without any tokens to compare
    scores 0, as does any pair with no text overlap.

    Args:
        a: First post or opportunity.
        b: Second post or opportunity.
        category_weight: Share of the remaining gap that full category
            agreement closes.

    Returns:
        Similarity rounded to six decimals.
    """
    text = jaccard(record_tokens(a), record_tokens(b))
    if text == 0.0:
        return 0.0

    score = text + (1.0 - text) * category_weight * category_agreement(a, b)
    return round(min(max(score, 0.0), 1.0), PRECISION)
