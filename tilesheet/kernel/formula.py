"""
Tilesheet Kernel — Formula Columns

A deliberately small expression language for derived columns:

    {Price} * {Qty}
    {First} + " " + {Last}
    =({A} + {B}) / 2

Fields are referenced with braces, string literals use double quotes, and the
four arithmetic operators follow the usual precedence. `+` concatenates when
either side is a string literal. Unary +/- are accepted.

compile_formula() raises FormulaCompileError. evaluate_formula() never raises:
it returns a tagged FormulaValue or FormulaError.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable

from tilesheet.kernel.types import FormulaError, FormulaResult, FormulaValue
from tilesheet.kernel.values import format_number

OPERATOR_PRECEDENCE: dict[str, int] = {"+": 1, "-": 1, "*": 2, "/": 2}

_EPSILON = 2.220446049250313e-16
_SMART_QUOTES = str.maketrans({"“": '"', "”": '"'})


class FormulaCompileError(Exception):
    """Formula text could not be tokenized or parsed."""
    pass


class _EvaluationError(Exception):
    pass


@dataclass(frozen=True)
class Token:
    type: str  # number | field | string | operator | lparen | rparen
    value: Any = None


@dataclass
class CompiledFormula:
    original: str
    rpn: list[Token]
    dependencies: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def compile_formula(raw: str) -> CompiledFormula:
    normalized = _normalize(raw)
    if not normalized:
        raise FormulaCompileError("Formula is empty")
    tokens = _tokenize(normalized)
    rpn, dependencies = _to_rpn(tokens)
    return CompiledFormula(original=raw, rpn=rpn, dependencies=dependencies)


def evaluate_formula(
    compiled: CompiledFormula,
    resolve_field: Callable[[str], Any],
) -> FormulaResult:
    """Evaluate against one row. `resolve_field` maps a field name to its raw value."""
    if len(compiled.rpn) == 1:
        sole = compiled.rpn[0]
        if sole.type == "field":
            raw = resolve_field(sole.value)
            return FormulaValue(value="" if raw is None else str(raw))
        if sole.type == "number":
            return FormulaValue(value=format_number(sole.value), kind="number", numeric=sole.value)
        if sole.type == "string":
            return FormulaValue(value=sole.value)

    try:
        kind, value = _evaluate_rpn(compiled.rpn, resolve_field)
    except _EvaluationError as e:
        return FormulaError(kind="evaluate", message=str(e))

    if kind == "number":
        if value != value or abs(value) == float("inf"):
            return FormulaError(kind="evaluate", message="Result is not a finite number")
        return FormulaValue(value=format_number(value), kind="number", numeric=value)
    return FormulaValue(value=value)


# ---------------------------------------------------------------------------
# Tokenizer
# ---------------------------------------------------------------------------


def _normalize(raw: str) -> str:
    text = (raw or "").strip()
    if text.startswith("="):
        text = text[1:].strip()
    return text.translate(_SMART_QUOTES)


def _tokenize(expression: str) -> list[Token]:
    tokens: list[Token] = []
    index = 0
    length = len(expression)

    while index < length:
        char = expression[index]

        if char in " \t\r\n":
            index += 1
            continue

        if char == "{":
            closing = expression.find("}", index + 1)
            if closing == -1:
                raise FormulaCompileError("Unmatched '{'")
            name = expression[index + 1 : closing].strip()
            if not name:
                raise FormulaCompileError("Empty field reference")
            tokens.append(Token("field", name))
            index = closing + 1
            continue

        if char == '"':
            literal, index = _read_string(expression, index + 1)
            tokens.append(Token("string", literal))
            continue

        if char in OPERATOR_PRECEDENCE:
            tokens.append(Token("operator", char))
            index += 1
            continue

        if char == "(":
            tokens.append(Token("lparen"))
            index += 1
            continue
        if char == ")":
            tokens.append(Token("rparen"))
            index += 1
            continue

        if char.isdigit() or char == ".":
            start = index
            seen_dot = False
            while index < length and (expression[index].isdigit() or expression[index] == "."):
                if expression[index] == ".":
                    if seen_dot:
                        break
                    seen_dot = True
                index += 1
            literal = expression[start:index]
            if literal == ".":
                raise FormulaCompileError("Unexpected character '.'")
            tokens.append(Token("number", float(literal)))
            continue

        raise FormulaCompileError(f"Unexpected character '{char}'")

    return tokens


def _read_string(source: str, start: int) -> tuple[str, int]:
    escapes = {'"': '"', "\\": "\\", "n": "\n", "t": "\t", "r": "\r"}
    parts: list[str] = []
    index = start
    while index < len(source):
        char = source[index]
        if char == '"':
            return "".join(parts), index + 1
        if char == "\\" and index + 1 < len(source):
            nxt = source[index + 1]
            parts.append(escapes.get(nxt, nxt))
            index += 2
            continue
        parts.append(char)
        index += 1
    raise FormulaCompileError("Unterminated string literal")


# ---------------------------------------------------------------------------
# Shunting-yard
# ---------------------------------------------------------------------------


def _to_rpn(tokens: list[Token]) -> tuple[list[Token], list[str]]:
    output: list[Token] = []
    stack: list[Token] = []
    dependencies: list[str] = []
    previous: str | None = None

    for token in tokens:
        if token.type in ("number", "string"):
            output.append(token)
        elif token.type == "field":
            output.append(token)
            if token.value not in dependencies:
                dependencies.append(token.value)
        elif token.type == "operator":
            if previous is None or previous in ("operator", "lparen"):
                if token.value not in ("+", "-"):
                    raise FormulaCompileError(f"Unary '{token.value}' is not supported")
                output.append(Token("number", 0.0))
            while stack and stack[-1].type == "operator":
                if OPERATOR_PRECEDENCE[stack[-1].value] >= OPERATOR_PRECEDENCE[token.value]:
                    output.append(stack.pop())
                else:
                    break
            stack.append(token)
        elif token.type == "lparen":
            stack.append(token)
        elif token.type == "rparen":
            while stack and stack[-1].type != "lparen":
                output.append(stack.pop())
            if not stack:
                raise FormulaCompileError("Unmatched ')'")
            stack.pop()
        previous = token.type

    while stack:
        op = stack.pop()
        if op.type == "lparen":
            raise FormulaCompileError("Unmatched '('")
        output.append(op)

    return output, dependencies


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------


def _coerce_number(value: Any) -> float:
    if value is None:
        return 0.0
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    text = str(value).strip()
    if not text:
        return 0.0
    try:
        number = float(text)
    except ValueError:
        return 0.0
    return number if number == number and abs(number) != float("inf") else 0.0


def _as_text(kind: str, value: Any) -> str:
    if kind == "number":
        return format_number(value)
    return "" if value is None else str(value)


def _as_number(kind: str, value: Any) -> float:
    return value if kind == "number" else _coerce_number(value)


def _evaluate_rpn(rpn: list[Token], resolve_field: Callable[[str], Any]) -> tuple[str, Any]:
    # stack items are (kind, value) with kind in number | string | field
    stack: list[tuple[str, Any]] = []

    for token in rpn:
        if token.type == "number":
            stack.append(("number", token.value))
        elif token.type == "string":
            stack.append(("string", token.value))
        elif token.type == "field":
            stack.append(("field", resolve_field(token.value)))
        elif token.type == "operator":
            if len(stack) < 2:
                raise _EvaluationError("Malformed expression")
            right_kind, right = stack.pop()
            left_kind, left = stack.pop()
            op = token.value
            if op == "+" and "string" in (left_kind, right_kind):
                stack.append(("string", _as_text(left_kind, left) + _as_text(right_kind, right)))
            elif op == "+":
                stack.append(("number", _as_number(left_kind, left) + _as_number(right_kind, right)))
            elif op == "-":
                stack.append(("number", _as_number(left_kind, left) - _as_number(right_kind, right)))
            elif op == "*":
                stack.append(("number", _as_number(left_kind, left) * _as_number(right_kind, right)))
            else:
                divisor = _as_number(right_kind, right)
                if abs(divisor) < _EPSILON:
                    raise _EvaluationError("Division by zero")
                stack.append(("number", _as_number(left_kind, left) / divisor))

    if len(stack) != 1:
        raise _EvaluationError("Malformed expression")

    kind, value = stack[0]
    if kind == "field":
        return "string", _as_text("field", value)
    return kind, value
