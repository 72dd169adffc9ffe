"""Surprise scoring for candidate memories.

A candidate's surprise is a weighted sum of five heuristic signals, each in [0, 1]:

    novelty         0.30  salient terms absent from existing memories
    contradiction   0.40  the candidate reverses something already stored
    specificity     0.15  proper nouns, acronyms, numbers, code
    emphasis        0.10  how strongly the user stressed it
    context switch  0.05  topic drift from the most recent memories

Candidates and existing items can be Memory objects, dicts with a ``content`` key
(and optionally ``created_at``) or plain strings.
"""

import logging
import re
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from longmem.config import MemoryConfig
from longmem.lexicon import PREFERENCE_VERBS
from longmem.memory.schema import clamp
from longmem.memory.text import extract_keywords as _extract_keywords
from longmem.memory.text import tokenize

logger = logging.getLogger(__name__)

NOVELTY_WEIGHT = 0.30
CONTRADICTION_WEIGHT = 0.40
SPECIFICITY_WEIGHT = 0.15
EMPHASIS_WEIGHT = 0.10
CONTEXT_SWITCH_WEIGHT = 0.05

DEFAULT_SURPRISE = 0.5
RECENT_WINDOW = 5

# Contradiction strengths
NEGATION_MISMATCH = 0.8
ANTONYM_MATCH = 0.7
CORRECTIVE_PHRASE = 0.6
COMPARATIVE_REPLACEMENT = 0.9

_NEGATION_RE = re.compile(
    r"\b(?:not|no|never|don't|doesn't|didn't|isn't|aren't|wasn't|weren't|won't|can't|cannot|dont|doesnt)\b"
)
_CORRECTIVE_RE = re.compile(
    r"\b(?:instead of|rather than|actually|correction|changed? (?:from|to)|replaced|no longer|switched (?:from|to))\b"
)
_COMPARATIVE_RE = re.compile(
    r"\b(?:prefers?|preferred|likes?|loves?|uses?|using|wants?|chooses?|chose)\b"
    r".*?\b(?:over|instead of|rather than)\s+([\w.+#/-]+)"
)

_CAPITALIZED_RE = re.compile(r"\b[A-Z][a-z]+\b")
_MIXED_CASE_RE = re.compile(r"\b(?:[a-z]+[A-Z]\w*|[A-Z][a-z]+[A-Z]\w*)\b")
_ACRONYM_RE = re.compile(r"\b[A-Z]{2,}\d*\b")
_IDENTIFIER_RE = re.compile(r"\b[A-Za-z_][A-Za-z0-9_]*\b")
_FILENAME_RE = re.compile(r"[A-Za-z0-9_-]+\.[A-Za-z]{2,4}\b")

_PROPER_NOUN_RE = re.compile(r"\b[A-Z][a-z]+(?:[A-Z][a-z]+)*\b")
_NUMBER_RE = re.compile(r"\b\d+(?:\.\d+)?\b")
_CODE_REF_RE = re.compile(r"`[^`]+`|[A-Za-z0-9_]+\.[A-Za-z0-9_]+")
_TECHNICAL_RE = re.compile(r"\b[a-z]+[A-Z][a-zA-Z]*\b|\b[a-z]+_[a-z_]+\b")
_CAPS_WORD_RE = re.compile(r"\b[A-Z]{2,}\b")


def _content(item: Any) -> str:
    if item is None:
        return ""
    if isinstance(item, str):
        return item
    if isinstance(item, dict):
        return item.get("content") or ""
    return getattr(item, "content", None) or ""


def _created_at(item: Any) -> Optional[datetime]:
    if isinstance(item, dict):
        return item.get("created_at")
    return getattr(item, "created_at", None)


def _user_content(context: Optional[Dict[str, Any]]) -> str:
    if not context:
        return ""
    return context.get("user_content") or ""


def _normalize(text: str) -> str:
    return text.lower().replace("’", "'")


def most_recent(existing: Sequence[Any], count: int = RECENT_WINDOW) -> List[Any]:
    """The count newest items by created_at; undated items sort last, in input order."""
    dated = sorted(
        enumerate(existing),
        key=lambda pair: (_created_at(pair[1]) is not None, _created_at(pair[1]) or datetime.min, -pair[0]),
        reverse=True,
    )
    return [item for _, item in dated[:count]]


class SurpriseEngine:
    """Surprise heuristics bound to a set of word lists."""

    def __init__(self, config: Optional[MemoryConfig] = None):
        config = config or MemoryConfig()
        self.stop_words = frozenset(config.stop_words)
        self.antonym_pairs: List[Tuple[str, str]] = [(a.lower(), b.lower()) for a, b in config.antonym_pairs]
        self.emphasis_patterns = [
            re.compile(r"\b" + re.escape(keyword) + r"\b") for keyword in config.emphasis_keywords
        ]

    def extract_keywords(self, text: Optional[str]) -> List[str]:
        return _extract_keywords(text, self.stop_words)

    def extract_simple_entities(self, text: Optional[str]) -> List[str]:
        """Capitalised words, mixed-case tokens, acronyms, longer identifiers and file names."""
        if not text:
            return []

        entities: Dict[str, None] = {}
        for pattern in (_CAPITALIZED_RE, _MIXED_CASE_RE, _ACRONYM_RE):
            for match in pattern.findall(text):
                if match.lower() not in self.stop_words:
                    entities[match] = None
        for match in _IDENTIFIER_RE.findall(text):
            if 4 <= len(match) <= 50 and match.lower() not in self.stop_words:
                entities[match] = None
        for match in _FILENAME_RE.findall(text):
            entities[match] = None
        return list(entities)

    def _salient_terms(self, text: str) -> Set[str]:
        terms = {e.lower() for e in self.extract_simple_entities(text)}
        terms.update(self.extract_keywords(text))
        return terms

    # ── Signals ──────────────────────────────────────────────────────

    def calculate_novelty(self, candidate: Any, existing: Sequence[Any]) -> float:
        """Fraction of the candidate's salient terms that no existing item mentions."""
        if not existing:
            return 1.0
        terms = self._salient_terms(_content(candidate))
        if not terms:
            return 0.5

        corpus = "\n".join(_normalize(_content(item)) for item in existing)
        novel = sum(1 for term in terms if term not in corpus)
        return novel / len(terms)

    def _uses_preference_verb(self, words: Set[str]) -> bool:
        return not words.isdisjoint(PREFERENCE_VERBS)

    def _has_antonym(self, words: Set[str], other: Set[str]) -> bool:
        for a, b in self.antonym_pairs:
            if (a in words and b in other) or (b in words and a in other):
                return True
        return False

    def detect_contradiction(self, candidate: Any, existing: Sequence[Any]) -> float:
        """Strongest contradiction signal between the candidate and any related existing item.

        An existing item is related when it shares a salient entity with the candidate
        or both express a preference.
        """
        if not existing:
            return 0.0

        text = _normalize(_content(candidate))
        if not text:
            return 0.0
        words = set(tokenize(text))
        entities = {e.lower() for e in self.extract_simple_entities(_content(candidate))}
        negated = bool(_NEGATION_RE.search(text))
        corrective = bool(_CORRECTIVE_RE.search(text))
        comparative = _COMPARATIVE_RE.search(text)
        replaced = comparative.group(1).strip(".,;:!?") if comparative else None
        prefers = self._uses_preference_verb(words)

        score = 0.0
        for item in existing:
            other_text = _normalize(_content(item))
            if not other_text:
                continue
            other_words = set(tokenize(other_text))
            other_entities = {e.lower() for e in self.extract_simple_entities(_content(item))}
            related = bool(entities & other_entities) or (prefers and self._uses_preference_verb(other_words))
            if not related:
                continue

            if negated != bool(_NEGATION_RE.search(other_text)):
                score = max(score, NEGATION_MISMATCH)
            if self._has_antonym(words, other_words):
                score = max(score, ANTONYM_MATCH)
            if corrective:
                score = max(score, CORRECTIVE_PHRASE)
            if replaced and re.search(r"\b" + re.escape(replaced) + r"\b", other_text):
                score = max(score, COMPARATIVE_REPLACEMENT)
        return score

    def measure_specificity(self, content: Optional[str]) -> float:
        """How concrete the content is: names, acronyms, numbers, code and length."""
        if not content:
            return 0.0

        score = 0.0
        score += min(0.3, len(_PROPER_NOUN_RE.findall(content)) * 0.05)
        score += min(0.2, len(_ACRONYM_RE.findall(content)) * 0.1)
        score += min(0.2, len(_NUMBER_RE.findall(content)) * 0.05)
        score += min(0.3, len(_CODE_REF_RE.findall(content)) * 0.1)
        score += min(0.2, len(_TECHNICAL_RE.findall(content)) * 0.05)
        score += min(0.2, len(content.split()) * 0.01)
        return min(1.0, score)

    def detect_emphasis(self, user_content: Optional[str]) -> float:
        """Emphasis cues in the user's own message."""
        if not user_content:
            return 0.0

        lower = _normalize(user_content)
        score = 0.0
        for pattern in self.emphasis_patterns:
            if pattern.search(lower):
                score += 0.2

        score += min(0.3, user_content.count("!") * 0.15)
        score += min(0.2, len(_CAPS_WORD_RE.findall(user_content)) * 0.1)

        words = lower.split()
        if any(first == second for first, second in zip(words, words[1:])):
            score += 0.15
        return min(1.0, score)

    def measure_context_switch(self, candidate: Any, existing: Sequence[Any]) -> float:
        """1 minus the share of candidate keywords seen in the five newest existing items.

        0 when there is nothing to compare: no existing items or no candidate keywords.
        """
        if not existing:
            return 0.0
        keywords = self.extract_keywords(_content(candidate))
        if not keywords:
            return 0.0

        recent: Set[str] = set()
        for item in most_recent(existing):
            recent.update(self.extract_keywords(_content(item)))
        overlap = sum(1 for k in keywords if k in recent)
        return 1.0 - overlap / len(keywords)

    def calculate_surprise(
        self,
        candidate: Any,
        existing: Optional[Iterable[Any]] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> float:
        """Weighted surprise in [0, 1]; 0.5 if scoring fails.

        Args:
            candidate: The memory being considered
            existing: Memories already stored
            context: Optional dict; ``user_content`` is the user's raw message
        """
        try:
            existing = list(existing or [])
            signals = (
                (self.calculate_novelty(candidate, existing), NOVELTY_WEIGHT),
                (self.detect_contradiction(candidate, existing), CONTRADICTION_WEIGHT),
                (self.measure_specificity(_content(candidate)), SPECIFICITY_WEIGHT),
                (self.detect_emphasis(_user_content(context)), EMPHASIS_WEIGHT),
                (self.measure_context_switch(candidate, existing), CONTEXT_SWITCH_WEIGHT),
            )
            return clamp(sum(clamp(value) * weight for value, weight in signals))
        except Exception as e:
            logger.warning("Surprise calculation failed: %s", e)
            return DEFAULT_SURPRISE


_default_engine = SurpriseEngine()


def extract_keywords(text: Optional[str]) -> List[str]:
    return _default_engine.extract_keywords(text)


def extract_simple_entities(text: Optional[str]) -> List[str]:
    return _default_engine.extract_simple_entities(text)


def calculate_novelty(candidate: Any, existing: Sequence[Any]) -> float:
    return _default_engine.calculate_novelty(candidate, existing)


def detect_contradiction(candidate: Any, existing: Sequence[Any]) -> float:
    return _default_engine.detect_contradiction(candidate, existing)


def measure_specificity(content: Optional[str]) -> float:
    return _default_engine.measure_specificity(content)


def detect_emphasis(user_content: Optional[str]) -> float:
    return _default_engine.detect_emphasis(user_content)


def measure_context_switch(candidate: Any, existing: Sequence[Any]) -> float:
    return _default_engine.measure_context_switch(candidate, existing)


def calculate_surprise(
    candidate: Any,
    existing: Optional[Iterable[Any]] = None,
    context: Optional[Dict[str, Any]] = None,
) -> float:
    """Surprise of candidate against existing memories using the default word lists."""
    return _default_engine.calculate_surprise(candidate, existing, context)
