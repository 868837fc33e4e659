"""A small boolean expression language evaluated over Snapshot fields.

Examples::

    pods.allReady and hpa.status.currentReplicas in [3..10]
    pods.reasons contains "ErrImagePull" or pods.reasons contains "ImagePullBackOff"
    not (app.sync == "OutOfSync") and len(pods.pods) >= 2

References are ``<observation name>.<path>``. A reference to a field whose observation is
unknown evaluates to Unknown, and Unknown propagates with Kleene logic: ``false and unknown`` is
false, ``true or unknown`` is true, everything else involving Unknown is Unknown. A predicate
that evaluates to Unknown does not pass.
"""

import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from functools import lru_cache

from srebench.errors import PredicateSyntaxError
from srebench.observer.snapshot import thaw
from srebench.utils.jsonpath import get_path


class _Unknown:
    def __repr__(self):
        return "Unknown"

    def __bool__(self):
        raise TypeError("Unknown has no truth value")


UNKNOWN = _Unknown()

KEYWORDS = {"and", "or", "not", "in", "contains", "matches", "true", "false", "null", "len"}
COMPARATORS = ("==", "!=", "<=", ">=", "<", ">")

_TOKEN_SPEC = [
    ("ws", r"\s+"),
    ("number", r"-?\d+(?:\.\d+)?"),
    ("string", r"\"(?:[^\"\\]|\\.)*\"|'(?:[^'\\]|\\.)*'"),
    ("op", r"==|!=|<=|>=|<|>|\.\.|[()\[\],]"),
    (
        "ident",
        r"[A-Za-z_][\w-]*(?:\.[A-Za-z_][\w-]*|\.\d+|\[\d+\]|\[\*\]|\['[^']*'\]|\[\"[^\"]*\"\])*",
    ),
]
_TOKEN_RE = re.compile("|".join(f"(?P<{name}>{pattern})" for name, pattern in _TOKEN_SPEC))


@dataclass(frozen=True)
class Token:
    kind: str
    text: str
    pos: int


def tokenize(source: str) -> list[Token]:
    tokens = []
    pos = 0
    while pos < len(source):
        match = _TOKEN_RE.match(source, pos)
        if not match:
            raise PredicateSyntaxError(f"Unexpected character {source[pos]!r} at offset {pos} in {source!r}")
        kind = match.lastgroup
        text = match.group()
        if kind == "ident" and text.lower() in KEYWORDS:
            kind = "keyword"
            text = text.lower()
        if kind != "ws":
            tokens.append(Token(kind, text, pos))
        pos = match.end()
    return tokens


def _is_number(v) -> bool:
    return isinstance(v, (int, float)) and not isinstance(v, bool)


def _eq(a, b) -> bool:
    if isinstance(a, bool) != isinstance(b, bool):
        return False
    if isinstance(a, Mapping) or isinstance(b, Mapping):
        return thaw(a) == thaw(b)
    if isinstance(a, (list, tuple)) and isinstance(b, (list, tuple)):
        return len(a) == len(b) and all(_eq(x, y) for x, y in zip(a, b))
    return a == b


def _and(values):
    if any(v is False for v in values):
        return False
    if any(v is UNKNOWN for v in values):
        return UNKNOWN
    return True


def _or(values):
    if any(v is True for v in values):
        return True
    if any(v is UNKNOWN for v in values):
        return UNKNOWN
    return False


def _truthy(value):
    if value is UNKNOWN:
        return UNKNOWN
    return bool(value)


@dataclass
class ClauseResult:
    clause: str
    result: bool | None
    left: object = None
    right: object = None
    note: str | None = None

    @property
    def status(self) -> str:
        return {True: "pass", False: "fail", None: "unknown"}[self.result]

    def to_dict(self) -> dict:
        out = {"clause": self.clause, "status": self.status, "observed": thaw(self.left)}
        if self.right is not None:
            out["expected"] = thaw(self.right)
        if self.note:
            out["note"] = self.note
        return out


@dataclass
class PredicateResult:
    expression: str
    value: bool | None
    clauses: list[ClauseResult] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return self.value is True

    @property
    def status(self) -> str:
        return {True: "pass", False: "fail", None: "unknown"}[self.value]

    def deviations(self) -> list[ClauseResult]:
        if self.passed:
            return []
        return [c for c in self.clauses if c.result is not True]

    def to_dict(self) -> dict:
        return {
            "expression": self.expression,
            "status": self.status,
            "clauses": [c.to_dict() for c in self.clauses],
        }


class _Node:
    text = ""

    def eval(self, snapshot, clauses):
        """Evaluate in boolean context, appending leaf clauses to ``clauses``."""
        value = self.value(snapshot)
        result = _truthy(value)
        clauses.append(
            ClauseResult(self.text, None if result is UNKNOWN else result, None if value is UNKNOWN else value)
        )
        return result

    def value(self, snapshot):
        raise NotImplementedError

    def refs(self):
        return set()


class Literal(_Node):
    def __init__(self, value, text):
        self.literal = value
        self.text = text

    def value(self, snapshot):
        return self.literal


class Ref(_Node):
    def __init__(self, text):
        self.text = text
        head = re.match(r"[A-Za-z_][\w-]*", text).group()
        self.target = head
        self.path = text[len(head) :].lstrip(".")

    def refs(self):
        return {self.target}

    def value(self, snapshot):
        observed = snapshot.fields.get(self.target) if snapshot is not None else None
        if observed is None or not observed.known:
            return UNKNOWN
        if not self.path:
            return observed.value
        return get_path(observed.value, self.path)


class ListNode(_Node):
    def __init__(self, items, text):
        self.items = items
        self.text = text

    def refs(self):
        return set().union(*(i.refs() for i in self.items)) if self.items else set()

    def value(self, snapshot):
        values = [i.value(snapshot) for i in self.items]
        if any(v is UNKNOWN for v in values):
            return UNKNOWN
        return tuple(values)


class RangeNode(_Node):
    def __init__(self, low, high, text):
        self.low = low
        self.high = high
        self.text = text

    def refs(self):
        return self.low.refs() | self.high.refs()

    def value(self, snapshot):
        low, high = self.low.value(snapshot), self.high.value(snapshot)
        if low is UNKNOWN or high is UNKNOWN:
            return UNKNOWN
        return ("range", low, high)


class Len(_Node):
    def __init__(self, arg, text):
        self.arg = arg
        self.text = text

    def refs(self):
        return self.arg.refs()

    def value(self, snapshot):
        value = self.arg.value(snapshot)
        if value is UNKNOWN:
            return UNKNOWN
        if value is None:
            return 0
        if isinstance(value, (str, list, tuple, Mapping)):
            return len(value)
        return None


class Compare(_Node):
    def __init__(self, op, left, right, text):
        self.op = op
        self.left = left
        self.right = right
        self.text = text
        if op == "matches" and isinstance(right, Literal):
            try:
                re.compile(str(right.literal))
            except re.error as e:
                raise PredicateSyntaxError(f"Invalid regular expression in {text!r}: {e}") from e

    def refs(self):
        return self.left.refs() | self.right.refs()

    def value(self, snapshot):
        return self.eval(snapshot, [])

    def eval(self, snapshot, clauses):
        left = self.left.value(snapshot)
        right = self.right.value(snapshot)
        note = None
        if left is UNKNOWN or right is UNKNOWN:
            result = UNKNOWN
            note = "observation unavailable"
        else:
            result, note = self._compare(left, right)
        clauses.append(
            ClauseResult(
                self.text,
                None if result is UNKNOWN else result,
                None if left is UNKNOWN else left,
                None if right is UNKNOWN else right,
                note,
            )
        )
        return result

    def _compare(self, left, right):
        op = self.op
        if op == "==":
            return _eq(left, right), None
        if op == "!=":
            return not _eq(left, right), None
        if op in ("<", "<=", ">", ">="):
            comparable = (_is_number(left) and _is_number(right)) or (
                isinstance(left, str) and isinstance(right, str)
            )
            if not comparable:
                return False, f"cannot order {type(left).__name__} and {type(right).__name__}"
            return {
                "<": left < right,
                "<=": left <= right,
                ">": left > right,
                ">=": left >= right,
            }[op], None
        if op in ("in", "not in"):
            found, note = self._membership(left, right)
            return (found if op == "in" else not found), note
        if op == "contains":
            if isinstance(left, (list, tuple)):
                return any(_eq(item, right) for item in left), None
            if isinstance(left, str) and isinstance(right, str):
                return right in left, None
            if isinstance(left, Mapping):
                return right in left, None
            return False, f"{type(left).__name__} cannot contain values"
        if op == "matches":
            if not isinstance(left, str):
                return False, f"cannot match {type(left).__name__} against a pattern"
            try:
                return re.search(str(right), left) is not None, None
            except re.error as e:
                return False, f"invalid pattern: {e}"
        raise PredicateSyntaxError(f"Unknown operator {op!r}")

    @staticmethod
    def _membership(left, right):
        if isinstance(right, tuple) and len(right) == 3 and right[0] == "range":
            _, low, high = right
            if not (_is_number(left) and _is_number(low) and _is_number(high)):
                return False, f"range membership needs numbers, got {type(left).__name__}"
            return low <= left <= high, None
        if isinstance(right, (list, tuple)):
            return any(_eq(left, item) for item in right), None
        if isinstance(right, str) and isinstance(left, str):
            return left in right, None
        return False, f"{type(right).__name__} is not a collection"


class Not(_Node):
    def __init__(self, operand, text):
        self.operand = operand
        self.text = text

    def refs(self):
        return self.operand.refs()

    def value(self, snapshot):
        return self.eval(snapshot, [])

    def eval(self, snapshot, clauses):
        result = self.operand.eval(snapshot, clauses)
        return UNKNOWN if result is UNKNOWN else not result


class BoolOp(_Node):
    def __init__(self, op, operands, text):
        self.op = op
        self.operands = operands
        self.text = text

    def refs(self):
        return set().union(*(o.refs() for o in self.operands))

    def value(self, snapshot):
        return self.eval(snapshot, [])

    def eval(self, snapshot, clauses):
        # every operand is evaluated so the report lists all clauses
        results = [o.eval(snapshot, clauses) for o in self.operands]
        return _and(results) if self.op == "and" else _or(results)


class _Parser:
    def __init__(self, source: str):
        self.source = source
        self.tokens = tokenize(source)
        self.i = 0

    def peek(self, offset: int = 0) -> Token | None:
        j = self.i + offset
        return self.tokens[j] if j < len(self.tokens) else None

    def accept(self, kind: str, text: str | None = None) -> Token | None:
        tok = self.peek()
        if tok and tok.kind == kind and (text is None or tok.text == text):
            self.i += 1
            return tok
        return None

    def expect(self, kind: str, text: str | None = None) -> Token:
        tok = self.accept(kind, text)
        if tok is None:
            found = self.peek()
            where = f"'{found.text}' at offset {found.pos}" if found else "end of expression"
            raise PredicateSyntaxError(f"Expected {text or kind}, found {where} in {self.source!r}")
        return tok

    def span(self, start: int) -> str:
        first = self.tokens[start]
        last = self.tokens[self.i - 1]
        return self.source[first.pos : last.pos + len(last.text)]

    def parse(self) -> _Node:
        if not self.tokens:
            raise PredicateSyntaxError("Empty predicate")
        node = self.parse_or()
        if self.peek() is not None:
            tok = self.peek()
            raise PredicateSyntaxError(f"Unexpected '{tok.text}' at offset {tok.pos} in {self.source!r}")
        return node

    def parse_or(self) -> _Node:
        start = self.i
        operands = [self.parse_and()]
        while self.accept("keyword", "or"):
            operands.append(self.parse_and())
        return operands[0] if len(operands) == 1 else BoolOp("or", operands, self.span(start))

    def parse_and(self) -> _Node:
        start = self.i
        operands = [self.parse_not()]
        while self.accept("keyword", "and"):
            operands.append(self.parse_not())
        return operands[0] if len(operands) == 1 else BoolOp("and", operands, self.span(start))

    def parse_not(self) -> _Node:
        start = self.i
        if self.accept("keyword", "not"):
            operand = self.parse_not()
            return Not(operand, self.span(start))
        return self.parse_comparison()

    def parse_comparison(self) -> _Node:
        start = self.i
        left = self.parse_operand()
        tok = self.peek()
        if tok is None:
            return left
        if tok.kind == "op" and tok.text in COMPARATORS:
            self.i += 1
            right = self.parse_operand()
            return Compare(tok.text, left, right, self.span(start))
        if tok.kind == "keyword" and tok.text == "not":
            nxt = self.peek(1)
            if nxt and nxt.kind == "keyword" and nxt.text == "in":
                self.i += 2
                right = self.parse_operand()
                return Compare("not in", left, right, self.span(start))
        if tok.kind == "keyword" and tok.text in ("in", "contains", "matches"):
            self.i += 1
            right = self.parse_operand()
            return Compare(tok.text, left, right, self.span(start))
        return left

    def parse_operand(self) -> _Node:
        start = self.i
        tok = self.peek()
        if tok is None:
            raise PredicateSyntaxError(f"Unexpected end of expression in {self.source!r}")

        if self.accept("op", "("):
            node = self.parse_or()
            self.expect("op", ")")
            return node
        if self.accept("op", "["):
            return self.parse_collection(start)
        if self.accept("number"):
            value = float(tok.text) if "." in tok.text else int(tok.text)
            return Literal(value, tok.text)
        if self.accept("string"):
            return Literal(_unquote(tok.text), tok.text)
        if tok.kind == "keyword":
            if tok.text in ("true", "false", "null"):
                self.i += 1
                return Literal({"true": True, "false": False, "null": None}[tok.text], tok.text)
            if tok.text == "len":
                self.i += 1
                self.expect("op", "(")
                arg = self.parse_operand()
                self.expect("op", ")")
                return Len(arg, self.span(start))
            raise PredicateSyntaxError(f"Unexpected keyword '{tok.text}' at offset {tok.pos} in {self.source!r}")
        if self.accept("ident"):
            return Ref(tok.text)
        raise PredicateSyntaxError(f"Unexpected '{tok.text}' at offset {tok.pos} in {self.source!r}")

    def parse_collection(self, start: int) -> _Node:
        if self.accept("op", "]"):
            return ListNode([], self.span(start))
        first = self.parse_operand()
        if self.accept("op", ".."):
            high = self.parse_operand()
            self.expect("op", "]")
            return RangeNode(first, high, self.span(start))
        items = [first]
        while self.accept("op", ","):
            items.append(self.parse_operand())
        self.expect("op", "]")
        return ListNode(items, self.span(start))


def _unquote(text: str) -> str:
    body = text[1:-1]
    return re.sub(r"\\(.)", r"\1", body)


class Predicate:
    """A parsed predicate. Parsing happens once, at construction."""

    def __init__(self, source: str):
        if not isinstance(source, str):
            raise PredicateSyntaxError(f"Predicate must be a string, got {type(source).__name__}")
        self.source = source.strip()
        self.root = _Parser(self.source).parse()

    @property
    def references(self) -> set[str]:
        """Observation names the predicate reads."""
        return self.root.refs()

    def evaluate(self, snapshot) -> PredicateResult:
        clauses: list[ClauseResult] = []
        value = self.root.eval(snapshot, clauses)
        return PredicateResult(self.source, None if value is UNKNOWN else value, clauses)

    def __str__(self):
        return self.source

    def __repr__(self):
        return f"Predicate({self.source!r})"


@lru_cache(maxsize=256)
def compile_predicate(source: str) -> Predicate:
    return Predicate(source)
