# expressions.py
"""
The `${{ ... }}` expression language.

    evaluate("needs.build.outputs.version", view)      -> value
    evaluate_condition("failure() || always()", view)  -> bool
    interpolate("Hello ${{ env.NAME }}!", view)        -> str

Values are JSON-shaped Python values (str, int/float, bool, None, list,
dict). Property access never raises: anything missing is None.
Evaluation only reads the ContextView it is given.
"""

from __future__ import annotations

import functools
import json
import logging
import math
import re
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Sequence, Tuple

from .errors import EvalError

logger = logging.getLogger(__name__)

STATUS_FUNCTIONS = frozenset({"success", "failure", "cancelled", "always"})

_WRAPPED = re.compile(r"^\s*\$\{\{(.*)\}\}\s*$", re.DOTALL)
_DECIMAL_STRING = re.compile(r"^[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?$")
_HEX_STRING = re.compile(r"^0[xX][0-9a-fA-F]+$")


# ----------------------------------------------------------------------
# Value helpers (coercion rules)
# ----------------------------------------------------------------------

class FilterResult(list):
    """Result of a `.*` object filter; property access maps over it."""


def kind_of(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "bool"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, (list, tuple)):
        return "array"
    return "object"


def is_truthy(value: Any) -> bool:
    """'' 0 null false are falsy; everything else is truthy."""
    if value is None or value is False:
        return False
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value != 0
    if isinstance(value, str):
        return value != ""
    return True


def to_number(value: Any) -> float:
    k = kind_of(value)
    if k == "null":
        return 0.0
    if k == "bool":
        return 1.0 if value else 0.0
    if k == "number":
        return float(value)
    if k == "string":
        s = value.strip()
        if s == "":
            return 0.0
        if _HEX_STRING.match(s):
            return float(int(s, 16))
        if _DECIMAL_STRING.match(s):
            return float(s)
        if s in ("Infinity", "+Infinity", "-Infinity"):
            return -math.inf if s.startswith("-") else math.inf
        return math.nan
    return math.nan


def normalize_number(n: float) -> Any:
    if isinstance(n, float) and n.is_integer() and abs(n) < 2 ** 53:
        return int(n)
    return n


def to_string(value: Any) -> str:
    k = kind_of(value)
    if k == "null":
        return ""
    if k == "bool":
        return "true" if value else "false"
    if k == "number":
        if isinstance(value, float):
            if math.isnan(value):
                return "NaN"
            if math.isinf(value):
                return "Infinity" if value > 0 else "-Infinity"
        return str(normalize_number(value))
    if k == "string":
        return value
    return to_json(value)


def to_json(value: Any) -> str:
    return json.dumps(_jsonable(value), indent=2, ensure_ascii=False)


def _jsonable(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, float) and not isinstance(value, bool):
        if math.isnan(value) or math.isinf(value):
            return to_string(value)
        return normalize_number(value)
    return value


def loose_equals(a: Any, b: Any) -> bool:
    ka, kb = kind_of(a), kind_of(b)
    if ka == kb:
        if ka == "string":
            return a.casefold() == b.casefold()
        if ka == "number":
            return float(a) == float(b)
        if ka in ("array", "object"):
            return a is b
        return a == b
    if ka in ("array", "object") or kb in ("array", "object"):
        return False
    return to_number(a) == to_number(b)


def _compare(a: Any, b: Any, op: Callable[[Any, Any], bool]) -> bool:
    ka, kb = kind_of(a), kind_of(b)
    if ka == "string" and kb == "string":
        return op(a.casefold(), b.casefold())
    if ka in ("array", "object") or kb in ("array", "object"):
        return False
    x, y = to_number(a), to_number(b)
    if math.isnan(x) or math.isnan(y):
        return False
    return op(x, y)


def lookup(obj: Any, key: Any) -> Any:
    """Safe property/index access; None for anything absent."""
    if isinstance(obj, FilterResult):
        out = FilterResult()
        for item in obj:
            v = lookup(item, key)
            if v is not None:
                out.append(v)
        return out
    if isinstance(obj, dict):
        k = to_string(key)
        if k in obj:
            return obj[k]
        folded = k.casefold()
        for name, v in obj.items():
            if isinstance(name, str) and name.casefold() == folded:
                return v
        return None
    if isinstance(obj, (list, tuple)):
        if kind_of(key) != "number":
            n = to_number(key)
        else:
            n = float(key)
        if math.isnan(n) or not n.is_integer():
            return None
        i = int(n)
        if 0 <= i < len(obj):
            return obj[i]
        return None
    return None


def _star(obj: Any) -> FilterResult:
    if isinstance(obj, FilterResult):
        out = FilterResult()
        for item in obj:
            out.extend(_star(item))
        return out
    if isinstance(obj, dict):
        return FilterResult(obj.values())
    if isinstance(obj, (list, tuple)):
        return FilterResult(obj)
    return FilterResult()


# ----------------------------------------------------------------------
# Lexer
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class Token:
    kind: str  # num | str | ident | op | eof
    value: Any
    pos: int


_OPERATORS = ("&&", "||", "==", "!=", "<=", ">=", "<", ">", "!", "(", ")", "[", "]",
              ".", ",", "+", "-", "*", "/", "%")
_NUMBER = re.compile(r"0[xX][0-9a-fA-F]+|(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?")
_IDENT_START = re.compile(r"[A-Za-z_]")
_IDENT_CHAR = re.compile(r"[A-Za-z0-9_]")


def tokenize(expression: str) -> List[Token]:
    tokens: List[Token] = []
    i, n = 0, len(expression)
    while i < n:
        c = expression[i]
        if c.isspace():
            i += 1
            continue

        if c == "'":
            j = i + 1
            buf: List[str] = []
            while True:
                if j >= n:
                    raise EvalError("parse", expression, f"unterminated string at {i}")
                if expression[j] == "'":
                    if j + 1 < n and expression[j + 1] == "'":
                        buf.append("'")
                        j += 2
                        continue
                    break
                buf.append(expression[j])
                j += 1
            tokens.append(Token("str", "".join(buf), i))
            i = j + 1
            continue

        if c.isdigit() and not _after_dot(tokens):
            m = _NUMBER.match(expression, i)
            text = m.group(0)
            value = int(text, 16) if text[:2] in ("0x", "0X") else normalize_number(float(text))
            tokens.append(Token("num", value, i))
            i = m.end()
            continue

        if _IDENT_START.match(c) or (c.isdigit() and _after_dot(tokens)):
            j = i + 1
            while j < n:
                ch = expression[j]
                if _IDENT_CHAR.match(ch):
                    j += 1
                # a dash inside a name (needs.build-job) binds only without spaces
                elif ch == "-" and j + 1 < n and _IDENT_CHAR.match(expression[j + 1]):
                    j += 1
                else:
                    break
            tokens.append(Token("ident", expression[i:j], i))
            i = j
            continue

        for op in _OPERATORS:
            if expression.startswith(op, i):
                tokens.append(Token("op", op, i))
                i += len(op)
                break
        else:
            raise EvalError("parse", expression, f"unexpected character {c!r} at {i}")

    tokens.append(Token("eof", None, n))
    return tokens


def _after_dot(tokens: List[Token]) -> bool:
    return bool(tokens) and tokens[-1].kind == "op" and tokens[-1].value == "."


# ----------------------------------------------------------------------
# AST
# ----------------------------------------------------------------------

class Node:
    def evaluate(self, view) -> Any:
        raise NotImplementedError

    def children(self) -> Sequence["Node"]:
        return ()


@dataclass(frozen=True)
class Literal(Node):
    value: Any

    def evaluate(self, view) -> Any:
        return self.value


@dataclass(frozen=True)
class ContextRef(Node):
    name: str

    def evaluate(self, view) -> Any:
        return lookup(view.contexts, self.name)


@dataclass(frozen=True)
class Index(Node):
    target: Node
    key: Node

    def evaluate(self, view) -> Any:
        return lookup(self.target.evaluate(view), self.key.evaluate(view))

    def children(self):
        return (self.target, self.key)


@dataclass(frozen=True)
class Star(Node):
    target: Node

    def evaluate(self, view) -> Any:
        return _star(self.target.evaluate(view))

    def children(self):
        return (self.target,)


@dataclass(frozen=True)
class Not(Node):
    operand: Node

    def evaluate(self, view) -> Any:
        return not is_truthy(self.operand.evaluate(view))

    def children(self):
        return (self.operand,)


@dataclass(frozen=True)
class Negate(Node):
    operand: Node

    def evaluate(self, view) -> Any:
        return normalize_number(-to_number(self.operand.evaluate(view)))

    def children(self):
        return (self.operand,)


@dataclass(frozen=True)
class Logical(Node):
    op: str
    left: Node
    right: Node

    def evaluate(self, view) -> Any:
        left = self.left.evaluate(view)
        if self.op == "&&":
            return self.right.evaluate(view) if is_truthy(left) else left
        return left if is_truthy(left) else self.right.evaluate(view)

    def children(self):
        return (self.left, self.right)


@dataclass(frozen=True)
class Binary(Node):
    op: str
    left: Node
    right: Node

    def evaluate(self, view) -> Any:
        a = self.left.evaluate(view)
        b = self.right.evaluate(view)
        op = self.op
        if op == "==":
            return loose_equals(a, b)
        if op == "!=":
            return not loose_equals(a, b)
        if op == "<":
            return _compare(a, b, lambda x, y: x < y)
        if op == "<=":
            return _compare(a, b, lambda x, y: x <= y)
        if op == ">":
            return _compare(a, b, lambda x, y: x > y)
        if op == ">=":
            return _compare(a, b, lambda x, y: x >= y)
        if op == "+" and (kind_of(a) == "string" or kind_of(b) == "string"):
            return to_string(a) + to_string(b)
        return _arith(op, to_number(a), to_number(b))

    def children(self):
        return (self.left, self.right)


def _arith(op: str, x: float, y: float) -> Any:
    if op == "+":
        r = x + y
    elif op == "-":
        r = x - y
    elif op == "*":
        r = x * y
    elif op == "/":
        if y == 0:
            r = math.nan if x == 0 or math.isnan(x) else math.copysign(math.inf, x)
        else:
            r = x / y
    else:
        r = math.nan if y == 0 or math.isinf(x) else math.fmod(x, y)
    return normalize_number(r)


@dataclass(frozen=True)
class Call(Node):
    name: str
    args: Tuple[Node, ...]
    source: str

    def evaluate(self, view) -> Any:
        from .functions import call_function

        return call_function(self.name, [a.evaluate(view) for a in self.args], view, self.source)

    def children(self):
        return self.args


# ----------------------------------------------------------------------
# Parser (recursive descent, lowest precedence first)
# ----------------------------------------------------------------------

_KEYWORDS = {"true": True, "false": False, "null": None}


class _Parser:
    def __init__(self, expression: str):
        self.expression = expression
        self.tokens = tokenize(expression)
        self.pos = 0

    # -- token helpers --
    def peek(self) -> Token:
        return self.tokens[self.pos]

    def advance(self) -> Token:
        tok = self.tokens[self.pos]
        self.pos += 1
        return tok

    def accept(self, *ops: str) -> Optional[str]:
        tok = self.peek()
        if tok.kind == "op" and tok.value in ops:
            self.pos += 1
            return tok.value
        return None

    def expect(self, op: str) -> None:
        if not self.accept(op):
            tok = self.peek()
            found = "end of expression" if tok.kind == "eof" else repr(tok.value)
            self.fail(f"expected '{op}' but found {found} at {tok.pos}")

    def fail(self, message: str):
        raise EvalError("parse", self.expression, message)

    # -- grammar --
    def parse(self) -> Node:
        if self.peek().kind == "eof":
            self.fail("empty expression")
        node = self.parse_or()
        tok = self.peek()
        if tok.kind != "eof":
            self.fail(f"unexpected token {tok.value!r} at {tok.pos}")
        return node

    def parse_or(self) -> Node:
        node = self.parse_and()
        while self.accept("||"):
            node = Logical("||", node, self.parse_and())
        return node

    def parse_and(self) -> Node:
        node = self.parse_equality()
        while self.accept("&&"):
            node = Logical("&&", node, self.parse_equality())
        return node

    def parse_equality(self) -> Node:
        node = self.parse_comparison()
        while True:
            op = self.accept("==", "!=")
            if not op:
                return node
            node = Binary(op, node, self.parse_comparison())

    def parse_comparison(self) -> Node:
        node = self.parse_additive()
        while True:
            op = self.accept("<", "<=", ">", ">=")
            if not op:
                return node
            node = Binary(op, node, self.parse_additive())

    def parse_additive(self) -> Node:
        node = self.parse_multiplicative()
        while True:
            op = self.accept("+", "-")
            if not op:
                return node
            node = Binary(op, node, self.parse_multiplicative())

    def parse_multiplicative(self) -> Node:
        node = self.parse_unary()
        while True:
            op = self.accept("*", "/", "%")
            if not op:
                return node
            node = Binary(op, node, self.parse_unary())

    def parse_unary(self) -> Node:
        if self.accept("!"):
            return Not(self.parse_unary())
        if self.accept("-"):
            return Negate(self.parse_unary())
        return self.parse_postfix()

    def parse_postfix(self) -> Node:
        node = self.parse_primary()
        while True:
            if self.accept("."):
                if self.accept("*"):
                    node = Star(node)
                    continue
                tok = self.advance()
                if tok.kind != "ident":
                    self.fail(f"expected property name at {tok.pos}")
                node = Index(node, Literal(tok.value))
            elif self.accept("["):
                if self.accept("*"):
                    node = Star(node)
                else:
                    node = Index(node, self.parse_or())
                self.expect("]")
            else:
                return node

    def parse_primary(self) -> Node:
        tok = self.advance()
        if tok.kind in ("num", "str"):
            return Literal(tok.value)
        if tok.kind == "ident":
            if self.accept("("):
                return self.parse_call(tok.value)
            lowered = tok.value.lower()
            if lowered in _KEYWORDS:
                return Literal(_KEYWORDS[lowered])
            return ContextRef(tok.value)
        if tok.kind == "op" and tok.value == "(":
            node = self.parse_or()
            self.expect(")")
            return node
        if tok.kind == "eof":
            self.fail("unexpected end of expression")
        self.fail(f"unexpected token {tok.value!r} at {tok.pos}")

    def parse_call(self, name: str) -> Node:
        from .functions import check_arity

        args: List[Node] = []
        if not self.accept(")"):
            while True:
                args.append(self.parse_or())
                if self.accept(")"):
                    break
                self.expect(",")
        check_arity(name, len(args), self.expression)
        return Call(name.lower(), tuple(args), self.expression)


@functools.lru_cache(maxsize=1024)
def parse(expression: str) -> Node:
    """Parse an expression (without `${{ }}`) into an AST. Raises EvalError."""
    return _Parser(expression).parse()


def strip_wrapper(expression: str) -> str:
    m = _WRAPPED.match(expression)
    return m.group(1) if m else expression


def uses_status_function(node: Node) -> bool:
    if isinstance(node, Call) and node.name in STATUS_FUNCTIONS:
        return True
    return any(uses_status_function(c) for c in node.children())


# ----------------------------------------------------------------------
# Public API
# ----------------------------------------------------------------------

def _run(node: Node, view, text: str) -> Any:
    """Evaluate a parsed node; anything but an EvalError becomes one."""
    try:
        return node.evaluate(view)
    except EvalError:
        raise
    except Exception as e:  # noqa: BLE001 - callers only handle EvalError
        raise EvalError("runtime", text, f"{type(e).__name__}: {e}") from e


def evaluate(expression: str, view) -> Any:
    text = strip_wrapper(expression).strip()
    value = _run(parse(text), view, text)
    if isinstance(value, FilterResult):
        return list(value)
    return value


def evaluate_condition(condition: Any, view) -> bool:
    """
    Evaluate an `if:`. None/empty means success(); a condition that calls no
    status function runs as `success() && (condition)`.
    """
    if condition is None or condition is True:
        condition = "success()"
    elif condition is False:
        return False
    text = strip_wrapper(str(condition)).strip()
    if not text:
        text = "success()"
    node = parse(text)
    if not uses_status_function(node):
        if not view.scope.success():
            logger.debug("condition %r short-circuited by implicit success()", text)
            return False
    return is_truthy(_run(node, view, text))


def _closing_braces(text: str, start: int) -> int:
    """Index of the `}}` ending the expression at `start`, skipping quoted strings; -1 if none."""
    i, n = start, len(text)
    while i < n:
        if text[i] == "'":
            i += 1
            while i < n:
                if text[i] == "'":
                    if text.startswith("''", i):
                        i += 2
                        continue
                    break
                i += 1
            i += 1
        elif text.startswith("}}", i):
            return i
        else:
            i += 1
    return -1


def interpolate(text: Any, view) -> Any:
    """Substitute every `${{ expr }}` in a string. Non-strings pass through."""
    if not isinstance(text, str) or "${{" not in text:
        return text
    out: List[str] = []
    pos = 0
    while True:
        start = text.find("${{", pos)
        end = _closing_braces(text, start + 3) if start != -1 else -1
        if end == -1:
            out.append(text[pos:])
            return "".join(out)
        out.append(text[pos:start])
        out.append(to_string(evaluate(text[start + 3:end], view)))
        pos = end + 2


def interpolate_value(value: Any, view) -> Any:
    """interpolate() over nested mappings/sequences."""
    if isinstance(value, str):
        return interpolate(value, view)
    if isinstance(value, dict):
        return {k: interpolate_value(v, view) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [interpolate_value(v, view) for v in value]
    return value
