"""Text normalisation shared by search, surprise scoring and retrieval."""

import re
from typing import Iterable, List, Optional

from longmem.lexicon import STOP_WORDS

_TOKEN_RE = re.compile(r"\w+", re.UNICODE)
_NON_WORD_RE = re.compile(r"[^\w]", re.UNICODE)

MIN_KEYWORD_LENGTH = 4


def tokenize(text: Optional[str]) -> List[str]:
    """Split text into lowercase word tokens, in order, duplicates kept.

    This is the index tokenizer: punctuation separates tokens, so
    "Express.js" becomes ["express", "js"].
    """
    if not text:
        return []
    return _TOKEN_RE.findall(text.lower())


def extract_keywords(text: Optional[str], stop_words: Optional[Iterable[str]] = None) -> List[str]:
    """Extract salient keywords from text.

    Lowercases, splits on whitespace, strips punctuation from each word, then drops
    stop words and words shorter than four characters. Keywords are deduplicated,
    keeping first-seen order.

    Args:
        text: Text to analyse
        stop_words: Override for the default stop-word list

    Returns:
        List of keywords (empty for empty input)
    """
    if not text:
        return []

    stops = STOP_WORDS if stop_words is None else frozenset(stop_words)
    seen = set()
    keywords = []
    for word in text.lower().split():
        word = _NON_WORD_RE.sub("", word)
        if len(word) < MIN_KEYWORD_LENGTH or word in stops or word in seen:
            continue
        seen.add(word)
        keywords.append(word)
    return keywords


def keyword_overlap(content_keywords: Iterable[str], query_keywords: List[str]) -> float:
    """Fraction of query keywords present in the content keywords."""
    content_set = set(content_keywords)
    if not query_keywords or not content_set:
        return 0.0
    hits = sum(1 for k in query_keywords if k in content_set)
    return hits / len(query_keywords)
