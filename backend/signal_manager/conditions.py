"""
signal_manager/conditions.py
----------------------------
Program-rule condition evaluator.

Rule conditions are authored on the DHIS2 platform by non-programmers as
boolean expressions over named variables, e.g.:

    #{Risk level} == 'High' && #{Age} >= 18

Evaluation happens in three steps:

  1. substitute_variables()  every `#{name}` placeholder is replaced by a
                             literal for the variable's current value
  2. normalize_operators()   `==` / `=` / `!=` become the strict `===` /
                             `!==`, outside quoted literals only
  3. a small recursive-descent parser evaluates the closed formula

The parser understands literals (strings, numbers, true/false), `!`, unary
`-`/`+`, `<`, `>`, `<=`, `>=`, `===`, `!==`, `&&`, `||` and parentheses.
It has no identifiers, calls or member access, so a substituted value can
only ever become a literal.

Comparison semantics match the expression language the rules are written
for: strict equality compares kind and value, relational operators compare
two strings lexicographically and otherwise compare both sides as numbers
('' → 0, non-numeric text → NaN, which never compares true).

Usage:
    from signal_manager.conditions import evaluate_condition

    evaluate_condition("#{Risk} == 'High'", {"Risk": "High"})   # → True
    evaluate_condition("#{X} &&& true", {})                       # → False
"""

from __future__ import annotations

import logging
import math
import operator
import re
from dataclasses import dataclass
from typing import Any, Mapping

logger = logging.getLogger(__name__)

_PLACEHOLDER = re.compile(r"#\{([^}]+)\}")


class ConditionError(ValueError):
    """A condition could not be tokenized or parsed."""


# ---------------------------------------------------------------------------
# Step 1 — variable substitution
# ---------------------------------------------------------------------------

def format_literal(value: Any) -> str:
    """
    Render a variable value as an expression literal.

        None            → ''
        True / False    → true / false
        12, 1.5         → 12, 1.5
        anything else   → single-quoted string, backslashes then quotes escaped
    """
    if value is None:
        return "''"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if math.isnan(value):
            return "NaN"
        if math.isinf(value):
            return "Infinity" if value > 0 else "-Infinity"
        return repr(value)

    escaped = str(value).replace("\\", "\\\\").replace("'", "\\'")
    return f"'{escaped}'"


def substitute_variables(condition: str, variables: Mapping[str, Any]) -> str:
    """Replace every `#{name}` with the literal for `variables[name]`."""
    return _PLACEHOLDER.sub(
        lambda match: format_literal(variables.get(match.group(1))),
        condition,
    )


# ---------------------------------------------------------------------------
# Step 2 — operator normalization
# ---------------------------------------------------------------------------

# Longest match first.
_OPERATOR_REWRITES: tuple[tuple[str, str], ...] = (
    ("!==", "!=="),
    ("===", "==="),
    ("!=",  "!=="),
    ("==",  "==="),
    ("<=",  "<="),
    (">=",  ">="),
    ("=",   "==="),
)


def _string_end(text: str, start: int) -> int:
    """Index just past the quoted literal opening at `start`."""
    quote = text[start]
    i = start + 1
    while i < len(text):
        char = text[i]
        if char == "\\":
            i += 2
            continue
        if char == quote:
            return i + 1
        i += 1
    return len(text)


def normalize_operators(expression: str) -> str:
    """
    Make equality strict outside of quoted literals.

    `==` and a lone `=` become `===`, `!=` becomes `!==`; `===`, `!==`,
    `<=` and `>=` are left alone. Text between single or double quotes is
    copied verbatim, honouring backslash escapes.
    """
    out: list[str] = []
    i = 0
    while i < len(expression):
        char = expression[i]
        if char in ("'", '"'):
            end = _string_end(expression, i)
            out.append(expression[i:end])
            i = end
            continue
        for op, replacement in _OPERATOR_REWRITES:
            if expression.startswith(op, i):
                out.append(replacement)
                i += len(op)
                break
        else:
            out.append(char)
            i += 1
    return "".join(out)


# ---------------------------------------------------------------------------
# Step 3 — tokenizer
# ---------------------------------------------------------------------------

_TOKEN_RE = re.compile(
    r"""
      (?P<ws>\s+)
    | (?P<number>(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?)
    | (?P<string>'(?:[^'\\]|\\.)*'|"(?:[^"\\]|\\.)*")
    | (?P<op>===|!==|&&|\|\||<=|>=|[<>!()+\-])
    | (?P<word>[A-Za-z_$][A-Za-z0-9_$]*)
    """,
    re.VERBOSE | re.DOTALL,
)

_KEYWORDS: dict[str, Any] = {
    "true": True,
    "false": False,
    "NaN": math.nan,
    "Infinity": math.inf,
}

_ESCAPE_RE = re.compile(
    r"\\(x[0-9a-fA-F]{2}|u[0-9a-fA-F]{4}|u\{[0-9a-fA-F]+\}|.)", re.DOTALL
)
_SIMPLE_ESCAPES = {
    "n": "\n", "t": "\t", "r": "\r", "b": "\b",
    "f": "\f", "v": "\v", "0": "\0", "\n": "",
}


def _unescape(match: re.Match) -> str:
    """
    Decode one escape sequence of a string literal.

    \\xHH, \\uHHHH and \\u{H...} give the code point; the single-character
    escapes come from _SIMPLE_ESCAPES and any other character stands for
    itself. A \\x or \\u without its hex digits is a syntax error.
    """
    seq = match.group(1)
    if seq.startswith("u{"):
        code_point = int(seq[2:-1], 16)
        if code_point > 0x10FFFF:
            raise ConditionError(f"escape \\{seq} is out of range")
        return chr(code_point)
    if len(seq) > 1:
        return chr(int(seq[1:], 16))
    if seq in ("x", "u"):
        raise ConditionError(f"malformed \\{seq} escape")
    return _SIMPLE_ESCAPES.get(seq, seq)


@dataclass(frozen=True)
class Token:
    kind: str       # "number" | "string" | "literal" | "op"
    text: str
    value: Any
    pos: int


def tokenize(expression: str) -> list[Token]:
    """Split a normalized expression into tokens; raise ConditionError on junk."""
    tokens: list[Token] = []
    pos = 0
    while pos < len(expression):
        match = _TOKEN_RE.match(expression, pos)
        if match is None:
            raise ConditionError(
                f"unexpected character {expression[pos]!r} at position {pos}"
            )
        kind = match.lastgroup
        text = match.group()
        if kind == "number":
            tokens.append(Token("number", text, float(text), pos))
        elif kind == "string":
            value = _ESCAPE_RE.sub(_unescape, text[1:-1])
            tokens.append(Token("string", text, value, pos))
        elif kind == "op":
            tokens.append(Token("op", text, text, pos))
        elif kind == "word":
            if text not in _KEYWORDS:
                raise ConditionError(f"unknown identifier {text!r} at position {pos}")
            tokens.append(Token("literal", text, _KEYWORDS[text], pos))
        pos = match.end()
    return tokens


# ---------------------------------------------------------------------------
# Value semantics
# ---------------------------------------------------------------------------

_NUMERIC_TEXT = re.compile(r"[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?")
_HEX_TEXT = re.compile(r"0[xX][0-9a-fA-F]+")

_RELATIONAL = {
    "<":  operator.lt,
    ">":  operator.gt,
    "<=": operator.le,
    ">=": operator.ge,
}


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def truthy(value: Any) -> bool:
    """Truthiness of an expression value ('' / 0 / NaN / false are falsy)."""
    if isinstance(value, bool):
        return value
    if _is_number(value):
        return not (value == 0 or math.isnan(value))
    return value != ""


def to_number(value: Any) -> float:
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if _is_number(value):
        return float(value)

    text = str(value).strip()
    if not text:
        return 0.0
    if _NUMERIC_TEXT.fullmatch(text):
        return float(text)
    if _HEX_TEXT.fullmatch(text):
        return float(int(text[2:], 16))
    if text in ("Infinity", "+Infinity"):
        return math.inf
    if text == "-Infinity":
        return -math.inf
    return math.nan


def strict_equals(left: Any, right: Any) -> bool:
    if _is_number(left) and _is_number(right):
        return left == right
    if type(left) is not type(right):
        return False
    return left == right


def compare(op: str, left: Any, right: Any) -> bool:
    if isinstance(left, str) and isinstance(right, str):
        return _RELATIONAL[op](left, right)
    x, y = to_number(left), to_number(right)
    if math.isnan(x) or math.isnan(y):
        return False
    return _RELATIONAL[op](x, y)


# ---------------------------------------------------------------------------
# Recursive-descent parser
# ---------------------------------------------------------------------------

class _Parser:
    """
    Grammar (lowest precedence first):

        expression  := or EOF
        or          := and ( '||' and )*
        and         := equality ( '&&' equality )*
        equality    := relational ( ( '===' | '!==' ) relational )*
        relational  := unary ( ( '<' | '>' | '<=' | '>=' ) unary )*
        unary       := ( '!' | '-' | '+' ) unary | primary
        primary     := NUMBER | STRING | LITERAL | '(' or ')'

    Operands are evaluated while parsing; none of them has side effects.
    """

    def __init__(self, expression: str) -> None:
        self._tokens = tokenize(expression)
        self._pos = 0

    def parse(self) -> Any:
        if not self._tokens:
            raise ConditionError("empty condition")
        value = self._or()
        token = self._peek()
        if token is not None:
            raise ConditionError(f"unexpected {token.text!r} at position {token.pos}")
        return value

    def _peek(self) -> Token | None:
        if self._pos < len(self._tokens):
            return self._tokens[self._pos]
        return None

    def _accept(self, *ops: str) -> str | None:
        token = self._peek()
        if token is not None and token.kind == "op" and token.text in ops:
            self._pos += 1
            return token.text
        return None

    def _or(self) -> Any:
        value = self._and()
        while self._accept("||"):
            right = self._and()
            value = value if truthy(value) else right
        return value

    def _and(self) -> Any:
        value = self._equality()
        while self._accept("&&"):
            right = self._equality()
            value = right if truthy(value) else value
        return value

    def _equality(self) -> Any:
        value = self._relational()
        while True:
            op = self._accept("===", "!==")
            if op is None:
                return value
            equal = strict_equals(value, self._relational())
            value = equal if op == "===" else not equal

    def _relational(self) -> Any:
        value = self._unary()
        while True:
            op = self._accept("<", ">", "<=", ">=")
            if op is None:
                return value
            value = compare(op, value, self._unary())

    def _unary(self) -> Any:
        op = self._accept("!", "-", "+")
        if op == "!":
            return not truthy(self._unary())
        if op == "-":
            return -to_number(self._unary())
        if op == "+":
            return to_number(self._unary())
        return self._primary()

    def _primary(self) -> Any:
        token = self._peek()
        if token is None:
            raise ConditionError("unexpected end of condition")
        self._pos += 1

        if token.kind in ("number", "string", "literal"):
            return token.value
        if token.text == "(":
            value = self._or()
            if not self._accept(")"):
                raise ConditionError(f"missing ')' for '(' at position {token.pos}")
            return value
        raise ConditionError(f"unexpected {token.text!r} at position {token.pos}")


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def evaluate_expression(expression: str) -> Any:
    """Evaluate an already substituted and normalized expression."""
    return _Parser(expression).parse()


def evaluate_condition(
    condition: str,
    variables: Mapping[str, Any],
    log: logging.Logger | None = None,
) -> bool:
    """
    Decide whether a program-rule condition holds.

    Args:
        condition: Condition text with `#{variable name}` placeholders.
        variables: Resolved variable values keyed by variable name.
            Missing names and None values substitute as ''.
        log:       Where to report malformed conditions; defaults to this
            module's logger.

    Returns:
        bool: The truthiness of the evaluated formula. A condition that
        cannot be parsed or evaluated is logged and yields False — this
        function never raises.
    """
    log = log or logger
    normalized = None
    try:
        normalized = normalize_operators(substitute_variables(condition, variables))
        log.debug("Normalized condition: %s", normalized)
        return truthy(evaluate_expression(normalized))
    except Exception as exc:
        log.warning(
            "Invalid condition %r (normalized: %r): %s",
            condition, normalized, exc,
        )
        return False
