"""Full-text query language: terms, "phrases", prefix*, AND / OR / NOT and parentheses.

Operators must be uppercase; adjacent expressions are joined with an implicit AND.
A word that tokenises into several index tokens (``Express.js``) becomes a phrase.
"""

import re
from dataclasses import dataclass
from typing import Iterable, List, Optional, Set, Tuple, Union

from longmem.exceptions import QuerySyntaxError
from longmem.memory.text import tokenize

MAX_QUERY_TOKENS = 256
MAX_DISTINCT_TERMS = 32
MAX_DEPTH = 16

OPERATORS = ("AND", "OR", "NOT")

_LEX_RE = re.compile(r'\s*(?:(?P<lparen>\()|(?P<rparen>\))|(?P<quote>")|(?P<word>[^\s()"]+))')


@dataclass(frozen=True)
class Term:
    text: str
    prefix: bool = False

    @property
    def key(self) -> str:
        return f"{self.text}*" if self.prefix else self.text


@dataclass(frozen=True)
class Phrase:
    terms: Tuple[str, ...]


@dataclass(frozen=True)
class And:
    children: Tuple["Node", ...]


@dataclass(frozen=True)
class Or:
    children: Tuple["Node", ...]


@dataclass(frozen=True)
class Not:
    positive: "Node"
    negative: "Node"


Node = Union[Term, Phrase, And, Or, Not]


def _unique(nodes: Iterable[Node]) -> Tuple[Node, ...]:
    return tuple(dict.fromkeys(nodes))


def make_and(nodes: Iterable[Optional[Node]]) -> Optional[Node]:
    children = _unique(n for n in nodes if n is not None)
    if not children:
        return None
    return children[0] if len(children) == 1 else And(children)


def make_or(nodes: Iterable[Optional[Node]]) -> Optional[Node]:
    children = _unique(n for n in nodes if n is not None)
    if not children:
        return None
    return children[0] if len(children) == 1 else Or(children)


def word_node(word: str) -> Optional[Node]:
    """Convert one query word into a term, prefix term or phrase."""
    prefix = word.endswith("*")
    tokens = tokenize(word.rstrip("*"))
    if not tokens:
        return None
    if len(tokens) == 1:
        return Term(tokens[0], prefix=prefix)
    return Phrase(tuple(tokens))


def _lex(query: str) -> List[Tuple[str, str]]:
    tokens: List[Tuple[str, str]] = []
    pos = 0
    while pos < len(query) and len(tokens) < MAX_QUERY_TOKENS:
        match = _LEX_RE.match(query, pos)
        if match is None:
            break
        pos = match.end()
        if match.group("lparen"):
            tokens.append(("lparen", "("))
        elif match.group("rparen"):
            tokens.append(("rparen", ")"))
        elif match.group("quote"):
            end = query.find('"', pos)
            if end == -1:
                raise QuerySyntaxError("Unterminated quoted phrase")
            tokens.append(("phrase", query[pos:end]))
            pos = end + 1
        elif match.group("word"):
            word = match.group("word")
            tokens.append(("op", word) if word in OPERATORS else ("word", word))
    return tokens


class _Parser:
    def __init__(self, tokens: List[Tuple[str, str]]):
        self.tokens = tokens
        self.pos = 0

    def peek(self) -> Optional[Tuple[str, str]]:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def take(self) -> Tuple[str, str]:
        token = self.tokens[self.pos]
        self.pos += 1
        return token

    def parse(self) -> Optional[Node]:
        node = self.or_expr(0)
        if self.peek() is not None:
            raise QuerySyntaxError(f"Unexpected {self.peek()[1]!r}")
        return node

    def or_expr(self, depth: int) -> Optional[Node]:
        nodes = [self.and_expr(depth)]
        while self.peek() == ("op", "OR"):
            self.take()
            nodes.append(self.and_expr(depth))
        return make_or(nodes)

    def and_expr(self, depth: int) -> Optional[Node]:
        nodes = [self.not_expr(depth)]
        while True:
            token = self.peek()
            if token == ("op", "AND"):
                self.take()
                nodes.append(self.not_expr(depth))
            elif token is not None and token[0] in ("word", "phrase", "lparen"):
                nodes.append(self.not_expr(depth))
            else:
                break
        return make_and(nodes)

    def not_expr(self, depth: int) -> Optional[Node]:
        node = self.primary(depth)
        while self.peek() == ("op", "NOT"):
            self.take()
            negative = self.primary(depth)
            if node is None:
                raise QuerySyntaxError("NOT needs a left-hand expression")
            if negative is not None:
                node = Not(node, negative)
        return node

    def primary(self, depth: int) -> Optional[Node]:
        token = self.peek()
        if token is None:
            raise QuerySyntaxError("Unexpected end of query")
        kind, value = self.take()
        if kind == "word":
            return word_node(value)
        if kind == "phrase":
            tokens = tokenize(value)
            if not tokens:
                return None
            return Term(tokens[0]) if len(tokens) == 1 else Phrase(tuple(tokens))
        if kind == "lparen":
            if depth >= MAX_DEPTH:
                raise QuerySyntaxError("Query nested too deeply")
            if self.peek() == ("rparen", ")"):
                raise QuerySyntaxError("Empty parentheses")
            node = self.or_expr(depth + 1)
            if self.peek() != ("rparen", ")"):
                raise QuerySyntaxError("Unbalanced parentheses")
            self.take()
            return node
        raise QuerySyntaxError(f"Unexpected {value!r}")


def fallback_node(query: str) -> Optional[Node]:
    """Best-effort reading of a malformed query: implicit AND over its plain words."""
    words = [w for w in re.findall(r'[^\s()"]+', query) if w not in OPERATORS]
    return make_and(word_node(w) for w in words[:MAX_QUERY_TOKENS])


def terms_of(node: Optional[Node], include_negative: bool = True) -> Set[Term]:
    """Collect every Term referenced by a query, phrases included as exact terms."""
    found: Set[Term] = set()

    def walk(n: Optional[Node]) -> None:
        if n is None:
            return
        if isinstance(n, Term):
            found.add(n)
        elif isinstance(n, Phrase):
            found.update(Term(t) for t in n.terms)
        elif isinstance(n, (And, Or)):
            for child in n.children:
                walk(child)
        elif isinstance(n, Not):
            walk(n.positive)
            if include_negative:
                walk(n.negative)

    walk(node)
    return found


def parse_query(query: str) -> Optional[Node]:
    """Parse a query string, degrading to plain term matching on syntax errors.

    Returns None when the query has nothing searchable. Never raises.
    """
    if not query or not query.strip():
        return None
    try:
        node = _Parser(_lex(query)).parse()
    except QuerySyntaxError:
        node = fallback_node(query)

    if len(terms_of(node)) > MAX_DISTINCT_TERMS:
        # Too wide to evaluate as written: match any of its positive terms instead
        node = make_or(positive_terms(node)[:MAX_QUERY_TOKENS])
    return node


def positive_terms(node: Optional[Node]) -> List[Term]:
    """Distinct non-negated terms of a query in the order they appear."""
    ordered: List[Term] = []

    def walk(n: Optional[Node]) -> None:
        if isinstance(n, Term):
            ordered.append(n)
        elif isinstance(n, Phrase):
            ordered.extend(Term(t) for t in n.terms)
        elif isinstance(n, (And, Or)):
            for child in n.children:
                walk(child)
        elif isinstance(n, Not):
            walk(n.positive)

    walk(node)
    return list(dict.fromkeys(ordered))
