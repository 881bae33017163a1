"""
Validation of caller-supplied selections and sort orders.

Selections and sort orders are raw SQL fragments supplied by callers.
Before they reach SQLite they are tokenized and parsed against a small
grammar so that only known columns, literals, positional parameters and
a fixed set of operators can appear:

    expr    := term (OR term)*
    term    := factor (AND factor)*
    factor  := NOT factor | '(' expr ')' | column op operand
             | column IS [NOT] NULL | column [NOT] LIKE operand
             | column [NOT] IN '(' operand (',' operand)* ')'
    operand := '?' | string | number | NULL | column

Invariants:
    - A selection that passes validation references only allowed columns
    - Sub-queries, functions and statement separators never validate
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass
from typing import NoReturn

from ..errors import InvalidSelectionError

_TOKEN_RE = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<string>'(?:[^']|'')*')
  | (?P<number>-?\d+(?:\.\d+)?)
  | (?P<ident>[A-Za-z_][A-Za-z0-9_]*)
  | (?P<op>==|!=|<>|<=|>=|=|<|>)
  | (?P<param>\?)
  | (?P<punct>[(),])
    """,
    re.VERBOSE,
)

_KEYWORDS = frozenset({"AND", "OR", "NOT", "IS", "NULL", "LIKE", "IN", "ASC", "DESC"})


@dataclass(frozen=True)
class Token:
    kind: str
    text: str

    @property
    def keyword(self) -> str | None:
        if self.kind == "ident" and self.text.upper() in _KEYWORDS:
            return self.text.upper()
        return None


def tokenize(text: str) -> list[Token]:
    """Split a SQL fragment into tokens.

    Raises:
        InvalidSelectionError: On any character outside the grammar
    """
    tokens: list[Token] = []
    pos = 0
    while pos < len(text):
        match = _TOKEN_RE.match(text, pos)
        if match is None:
            raise InvalidSelectionError(
                f"Invalid token at position {pos}: {text[pos:pos + 10]!r}", text
            )
        kind = match.lastgroup or ""
        if kind != "ws":
            tokens.append(Token(kind, match.group()))
        pos = match.end()
    return tokens


class _SelectionParser:
    """Recursive-descent parser over a token list."""

    def __init__(self, tokens: list[Token], allowed: frozenset[str], source: str) -> None:
        self._tokens = tokens
        self._allowed = allowed
        self._source = source
        self._pos = 0

    def parse(self) -> None:
        self._expression()
        if self._peek() is not None:
            self._fail(f"unexpected token '{self._peek().text}'")

    def _peek(self) -> Token | None:
        if self._pos < len(self._tokens):
            return self._tokens[self._pos]
        return None

    def _advance(self) -> Token:
        token = self._peek()
        if token is None:
            self._fail("unexpected end of selection")
        self._pos += 1
        return token

    def _accept_keyword(self, keyword: str) -> bool:
        token = self._peek()
        if token is not None and token.keyword == keyword:
            self._pos += 1
            return True
        return False

    def _expect_punct(self, punct: str) -> None:
        token = self._advance()
        if token.kind != "punct" or token.text != punct:
            self._fail(f"expected '{punct}', got '{token.text}'")

    def _fail(self, reason: str) -> NoReturn:
        raise InvalidSelectionError(f"Invalid selection ({reason}): {self._source}", self._source)

    def _column(self) -> None:
        token = self._advance()
        if token.kind != "ident" or token.keyword is not None:
            self._fail(f"expected a column, got '{token.text}'")
        if token.text not in self._allowed:
            self._fail(f"column {token.text} is not allowed")

    def _expression(self) -> None:
        self._term()
        while self._accept_keyword("OR"):
            self._term()

    def _term(self) -> None:
        self._factor()
        while self._accept_keyword("AND"):
            self._factor()

    def _factor(self) -> None:
        if self._accept_keyword("NOT"):
            self._factor()
            return
        token = self._peek()
        if token is not None and token.kind == "punct" and token.text == "(":
            self._advance()
            self._expression()
            self._expect_punct(")")
            return

        self._column()

        if self._accept_keyword("IS"):
            self._accept_keyword("NOT")
            if not self._accept_keyword("NULL"):
                self._fail("expected NULL after IS")
            return

        negated = self._accept_keyword("NOT")
        if self._accept_keyword("LIKE"):
            self._operand()
            return
        if self._accept_keyword("IN"):
            self._in_list()
            return
        if negated:
            self._fail("expected LIKE or IN after NOT")

        token = self._advance()
        if token.kind != "op":
            self._fail(f"expected a comparison operator, got '{token.text}'")
        self._operand()

    def _in_list(self) -> None:
        self._expect_punct("(")
        self._operand()
        while True:
            token = self._peek()
            if token is not None and token.kind == "punct" and token.text == ",":
                self._advance()
                self._operand()
                continue
            break
        self._expect_punct(")")

    def _operand(self) -> None:
        token = self._peek()
        if token is None:
            self._fail("expected an operand")
        if token.kind in ("param", "string", "number"):
            self._advance()
            return
        if token.keyword == "NULL":
            self._advance()
            return
        self._column()


def validate_selection(selection: str | None, allowed: frozenset[str]) -> None:
    """Validate a WHERE-clause fragment.

    Args:
        selection: Caller-supplied fragment, None or blank to skip
        allowed: Columns the fragment may reference

    Raises:
        InvalidSelectionError: If the fragment falls outside the grammar
    """
    if selection is None or not selection.strip():
        return
    _SelectionParser(tokenize(selection), allowed, selection).parse()


def validate_sort_order(sort_order: str | None, allowed: Iterable[str]) -> None:
    """Validate an ORDER BY fragment: `column [ASC|DESC] (, column [ASC|DESC])*`."""
    if sort_order is None or not sort_order.strip():
        return
    allowed_set = frozenset(allowed)
    tokens = tokenize(sort_order)
    expect_column = True
    direction_seen = False
    for token in tokens:
        if expect_column:
            if token.kind != "ident" or token.keyword is not None:
                raise InvalidSelectionError(f"Invalid sort order: {sort_order}", sort_order)
            if token.text not in allowed_set:
                raise InvalidSelectionError(
                    f"column {token.text} is not allowed in sort order", sort_order
                )
            expect_column = False
            direction_seen = False
        elif token.keyword in ("ASC", "DESC") and not direction_seen:
            direction_seen = True
        elif token.kind == "punct" and token.text == ",":
            expect_column = True
        else:
            raise InvalidSelectionError(f"Invalid sort order: {sort_order}", sort_order)
    if expect_column:
        raise InvalidSelectionError(f"Invalid sort order: {sort_order}", sort_order)
