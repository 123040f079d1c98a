"""
Evaluator for the subset of the document SQL dialect used by the SDK.

The in-memory store uses this to run the same query text that is sent
to the real store. Supported shape:

    SELECT [VALUE] * | <path>[, <path>...] FROM <alias>
    [WHERE <condition> [AND <condition> ...]]

    condition := [NOT] <operand> [<op> <operand>]
               | [NOT] ARRAY_CONTAINS(<operand>, <operand>)
    op        := = | != | <> | < | > | <= | >=
    operand   := <alias>.<field>[.<field>...] | @param | number | 'text'
               | true | false | null

Anything else raises StoreError(400), the same way the real store
rejects a malformed query.

Invariants:
    - A missing field never satisfies a comparison
    - Ordering comparisons only apply between values of the same kind
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from ..errors import StoreError

_TOKEN = re.compile(
    r"""\s*(?:
        (?P<string>'(?:[^'\\]|\\.)*'|"(?:[^"\\]|\\.)*")
      | (?P<number>-?\d+(?:\.\d+)?)
      | (?P<param>@\w+)
      | (?P<op><=|>=|!=|<>|=|<|>)
      | (?P<punct>[(),*])
      | (?P<ident>[A-Za-z_]\w*(?:\.[A-Za-z_]\w*)*)
    )""",
    re.VERBOSE,
)

_KEYWORDS = {"SELECT", "VALUE", "FROM", "WHERE", "AND", "NOT", "TRUE", "FALSE", "NULL"}
_MISSING = object()

Token = Tuple[str, str]
Operand = Tuple[str, Any]


def _tokenize(text: str) -> List[Token]:
    tokens: List[Token] = []
    pos = 0
    text = text.strip()
    while pos < len(text):
        match = _TOKEN.match(text, pos)
        if not match or match.end() == pos:
            raise StoreError(f"Syntax error near {text[pos:pos + 20]!r}", status_code=400)
        kind = match.lastgroup or ""
        value = match.group(kind)
        if kind == "ident" and value.upper() in _KEYWORDS:
            kind, value = "keyword", value.upper()
        tokens.append((kind, value))
        pos = match.end()
    return tokens


@dataclass
class Condition:
    """One conjunct of the WHERE clause."""

    left: Operand
    op: Optional[str] = None
    right: Optional[Operand] = None
    function: Optional[str] = None
    negate: bool = False


@dataclass
class ParsedQuery:
    alias: str
    value: bool = False
    projection: Optional[List[List[str]]] = None
    conditions: List[Condition] = field(default_factory=list)


class _Parser:
    def __init__(self, tokens: List[Token]) -> None:
        self.tokens = tokens
        self.pos = 0

    def peek(self) -> Optional[Token]:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def take(self, kind: Optional[str] = None, value: Optional[str] = None) -> Token:
        token = self.peek()
        if token is None:
            raise StoreError("Unexpected end of query", status_code=400)
        if (kind and token[0] != kind) or (value and token[1] != value):
            raise StoreError(f"Unexpected token {token[1]!r}", status_code=400)
        self.pos += 1
        return token

    def accept(self, kind: str, value: Optional[str] = None) -> bool:
        token = self.peek()
        if token and token[0] == kind and (value is None or token[1] == value):
            self.pos += 1
            return True
        return False

    def parse(self) -> ParsedQuery:
        self.take("keyword", "SELECT")
        value = self.accept("keyword", "VALUE")
        projection: Optional[List[str]] = None
        if not self.accept("punct", "*"):
            projection = [self.take("ident")[1]]
            while self.accept("punct", ","):
                projection.append(self.take("ident")[1])
        self.take("keyword", "FROM")
        alias = self.take("ident")[1]
        query = ParsedQuery(alias=alias, value=value)
        if projection is not None:
            query.projection = [self._path(p, alias) for p in projection]
        if self.accept("keyword", "WHERE"):
            query.conditions.append(self._condition(alias))
            while self.accept("keyword", "AND"):
                query.conditions.append(self._condition(alias))
        if self.peek() is not None:
            raise StoreError(f"Unsupported clause at {self.peek()[1]!r}", status_code=400)
        return query

    def _path(self, ident: str, alias: str) -> List[str]:
        parts = ident.split(".")
        if parts[0] != alias:
            raise StoreError(f"Identifier {parts[0]!r} could not be resolved", status_code=400)
        return parts[1:]

    def _condition(self, alias: str) -> Condition:
        negate = self.accept("keyword", "NOT")
        token = self.peek()
        if token and token[0] == "ident" and token[1].upper() == "ARRAY_CONTAINS":
            self.pos += 1
            self.take("punct", "(")
            haystack = self._operand(alias)
            self.take("punct", ",")
            needle = self._operand(alias)
            self.take("punct", ")")
            return Condition(left=haystack, right=needle, function="ARRAY_CONTAINS", negate=negate)
        left = self._operand(alias)
        token = self.peek()
        if token and token[0] == "op":
            self.pos += 1
            op = "!=" if token[1] == "<>" else token[1]
            return Condition(left=left, op=op, right=self._operand(alias), negate=negate)
        return Condition(left=left, negate=negate)

    def _operand(self, alias: str) -> Operand:
        kind, value = self.take()
        if kind == "ident":
            return ("path", self._path(value, alias))
        if kind == "param":
            return ("param", value)
        if kind == "number":
            return ("literal", float(value) if "." in value else int(value))
        if kind == "string":
            return ("literal", value[1:-1].replace("\\'", "'").replace('\\"', '"'))
        if kind == "keyword" and value in ("TRUE", "FALSE", "NULL"):
            return ("literal", {"TRUE": True, "FALSE": False, "NULL": None}[value])
        raise StoreError(f"Unexpected token {value!r}", status_code=400)


def parse_query(text: str) -> ParsedQuery:
    """Parse query text into a ParsedQuery.

    Raises:
        StoreError: If the text is outside the supported subset
    """
    return _Parser(_tokenize(text)).parse()


def _lookup(document: Any, path: List[str]) -> Any:
    value = document
    for part in path:
        if not isinstance(value, dict) or part not in value:
            return _MISSING
        value = value[part]
    return value


def _resolve(operand: Operand, document: Dict[str, Any], params: Dict[str, Any]) -> Any:
    kind, value = operand
    if kind == "path":
        return _lookup(document, value)
    if kind == "param":
        if value not in params:
            raise StoreError(f"Parameter {value} was not supplied", status_code=400)
        return params[value]
    return value


def _same_kind(a: Any, b: Any) -> bool:
    numeric = (int, float)
    if isinstance(a, bool) or isinstance(b, bool):
        return isinstance(a, bool) and isinstance(b, bool)
    if isinstance(a, numeric) and isinstance(b, numeric):
        return True
    return type(a) is type(b)


def _compare(left: Any, op: str, right: Any) -> bool:
    if left is _MISSING or right is _MISSING:
        return False
    if op == "=":
        return _same_kind(left, right) and left == right
    if op == "!=":
        return not (_same_kind(left, right) and left == right)
    if not _same_kind(left, right) or left is None:
        return False
    if op == "<":
        return left < right
    if op == ">":
        return left > right
    if op == "<=":
        return left <= right
    if op == ">=":
        return left >= right
    raise StoreError(f"Unsupported operator {op}", status_code=400)


def _evaluate(condition: Condition, document: Dict[str, Any], params: Dict[str, Any]) -> bool:
    left = _resolve(condition.left, document, params)
    if condition.function == "ARRAY_CONTAINS":
        right = _resolve(condition.right, document, params)
        result = isinstance(left, list) and right is not _MISSING and right in left
    elif condition.op is None:
        result = left is True
    else:
        result = _compare(left, condition.op, _resolve(condition.right, document, params))
    return not result if condition.negate else result


def matches(query: ParsedQuery, document: Dict[str, Any], params: Dict[str, Any]) -> bool:
    """Whether a document satisfies every WHERE conjunct."""
    return all(_evaluate(c, document, params) for c in query.conditions)


def project(query: ParsedQuery, document: Dict[str, Any]) -> Any:
    """Apply the SELECT projection to a matching document.

    Returns _MISSING-free results only; callers drop documents for which
    a VALUE projection is undefined.
    """
    if query.projection is None:
        return document
    if query.value:
        return _lookup(document, query.projection[0])
    row: Dict[str, Any] = {}
    for path in query.projection:
        value = _lookup(document, path)
        if value is not _MISSING:
            row[path[-1] if path else query.alias] = value
    return row


def is_undefined(value: Any) -> bool:
    return value is _MISSING
