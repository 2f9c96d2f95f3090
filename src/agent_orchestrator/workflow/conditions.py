"""
Sandboxed condition expressions for workflow steps.

Grammar (recursive descent, no ``eval``):

    expr     -> or
    or       -> and ('||' and)*
    and      -> compare ('&&' compare)*
    compare  -> unary (('==' | '===' | '!=' | '!==' | '>' | '<' | '>=' | '<=') unary)?
    unary    -> '!' unary | primary
    primary  -> NUMBER | STRING | true | false | null | undefined
              | context.<path> | '(' expr ')'

Only ``context.*`` identifiers are allowed; they resolve against the
workflow context data. A condition that cannot be parsed or evaluated is
false.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any

from ..templating import get_path

logger = logging.getLogger(__name__)

_OPERATORS = ("===", "!==", "==", "!=", ">=", "<=", "&&", "||", ">", "<", "!")
_COMPARISONS = {"==", "===", "!=", "!==", ">", "<", ">=", "<="}
_NUMBER = re.compile(r"-?\d+(\.\d+)?")
_IDENT = re.compile(r"[A-Za-z_][A-Za-z0-9_.\[\]-]*")
_KEYWORDS = {"true": True, "false": False, "null": None, "undefined": None}
_ESCAPES = {"n": "\n", "t": "\t", "r": "\r"}


class ConditionSyntaxError(ValueError):
    pass


@dataclass(frozen=True)
class Token:
    kind: str  # NUMBER STRING LITERAL IDENT OP LPAREN RPAREN EOF
    value: Any
    raw: str


def tokenize(expression: str) -> list[Token]:
    tokens: list[Token] = []
    pos = 0
    length = len(expression)
    while pos < length:
        char = expression[pos]
        if char.isspace():
            pos += 1
            continue
        if char == "(":
            tokens.append(Token("LPAREN", "(", "("))
            pos += 1
            continue
        if char == ")":
            tokens.append(Token("RPAREN", ")", ")"))
            pos += 1
            continue

        op = next((o for o in _OPERATORS if expression.startswith(o, pos)), None)
        if op is not None:
            tokens.append(Token("OP", op, op))
            pos += len(op)
            continue

        number = _NUMBER.match(expression, pos)
        if number:
            raw = number.group(0)
            tokens.append(Token("NUMBER", float(raw) if "." in raw else int(raw), raw))
            pos = number.end()
            continue

        if char in ("'", '"'):
            quote = char
            pos += 1
            chars: list[str] = []
            while pos < length and expression[pos] != quote:
                if expression[pos] == "\\" and pos + 1 < length:
                    pos += 1
                    chars.append(_ESCAPES.get(expression[pos], expression[pos]))
                else:
                    chars.append(expression[pos])
                pos += 1
            if pos >= length:
                raise ConditionSyntaxError("Unterminated string")
            pos += 1
            text = "".join(chars)
            tokens.append(Token("STRING", text, f"{quote}{text}{quote}"))
            continue

        ident = _IDENT.match(expression, pos)
        if ident:
            raw = ident.group(0)
            pos = ident.end()
            if raw in _KEYWORDS:
                tokens.append(Token("LITERAL", _KEYWORDS[raw], raw))
            elif raw.startswith("context."):
                tokens.append(Token("IDENT", raw[len("context.") :], raw))
            else:
                raise ConditionSyntaxError(f"Unknown identifier '{raw}'; only context.* references are allowed")
            continue

        raise ConditionSyntaxError(f"Unexpected character '{char}' at {pos}")

    tokens.append(Token("EOF", None, ""))
    return tokens


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _loose_equal(left: Any, right: Any) -> bool:
    if left is None or right is None:
        return left is None and right is None
    if _is_number(left) and isinstance(right, str) or _is_number(right) and isinstance(left, str):
        try:
            return float(left) == float(right)
        except ValueError:
            return False
    return left == right


def _strict_equal(left: Any, right: Any) -> bool:
    if _is_number(left) and _is_number(right):
        return left == right
    return type(left) is type(right) and left == right


def _compare(op: str, left: Any, right: Any) -> bool:
    if op == "==":
        return _loose_equal(left, right)
    if op == "!=":
        return not _loose_equal(left, right)
    if op == "===":
        return _strict_equal(left, right)
    if op == "!==":
        return not _strict_equal(left, right)
    try:
        if op == ">":
            return left > right
        if op == "<":
            return left < right
        if op == ">=":
            return left >= right
        return left <= right
    except TypeError:
        return False


class _Parser:
    def __init__(self, tokens: list[Token], data: dict[str, Any]) -> None:
        self.tokens = tokens
        self.pos = 0
        self.data = data

    def current(self) -> Token:
        return self.tokens[self.pos]

    def advance(self) -> Token:
        token = self.tokens[self.pos]
        if token.kind != "EOF":
            self.pos += 1
        return token

    def at_op(self, *ops: str) -> bool:
        token = self.current()
        return token.kind == "OP" and token.value in ops

    def parse(self) -> Any:
        value = self.or_expr()
        if self.current().kind != "EOF":
            raise ConditionSyntaxError(f"Unexpected token '{self.current().raw}'")
        return value

    def or_expr(self) -> Any:
        left = self.and_expr()
        while self.at_op("||"):
            self.advance()
            right = self.and_expr()
            left = bool(left) or bool(right)
        return left

    def and_expr(self) -> Any:
        left = self.compare_expr()
        while self.at_op("&&"):
            self.advance()
            right = self.compare_expr()
            left = bool(left) and bool(right)
        return left

    def compare_expr(self) -> Any:
        left = self.unary_expr()
        token = self.current()
        if token.kind == "OP" and token.value in _COMPARISONS:
            self.advance()
            right = self.unary_expr()
            return _compare(token.value, left, right)
        return left

    def unary_expr(self) -> Any:
        if self.at_op("!"):
            self.advance()
            return not self.unary_expr()
        return self.primary()

    def primary(self) -> Any:
        token = self.advance()
        if token.kind in ("NUMBER", "STRING", "LITERAL"):
            return token.value
        if token.kind == "IDENT":
            return get_path(self.data, token.value)
        if token.kind == "LPAREN":
            value = self.or_expr()
            if self.current().kind != "RPAREN":
                raise ConditionSyntaxError("Expected ')'")
            self.advance()
            return value
        raise ConditionSyntaxError(f"Unexpected token '{token.raw or token.kind}'")


def parse_condition(expression: str) -> list[Token]:
    """Tokenize and syntax-check an expression without evaluating it.

    Raises:
        ConditionSyntaxError: the expression is malformed
    """
    tokens = tokenize(expression)
    _Parser(tokens, {}).parse()
    return tokens


def evaluate_condition(expression: str, data: dict[str, Any]) -> bool:
    """Evaluate an expression against context data; malformed expressions are false."""
    try:
        return bool(_Parser(tokenize(expression), data).parse())
    except ValueError as exc:
        logger.warning(f"Condition '{expression}' could not be evaluated ({exc}); treating as false")
        return False


__all__ = ["ConditionSyntaxError", "tokenize", "parse_condition", "evaluate_condition"]
