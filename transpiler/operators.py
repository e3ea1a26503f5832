"""Operator overload naming and built-in operator spelling."""

from __future__ import annotations

import re

# Binary member/free operator -> method name
BINARY_OPERATOR_NAMES: dict[str, str] = {
    "+": "add",
    "-": "sub",
    "*": "mul",
    "/": "div",
    "%": "rem",
    "^": "bitxor",
    "&": "bitand",
    "|": "bitor",
    "<<": "shl",
    ">>": "shr",
    "==": "eq",
    "!=": "ne",
    "<": "lt",
    ">": "gt",
    "<=": "le",
    ">=": "ge",
    "<=>": "cmp",
    "&&": "and",
    "||": "or",
    "=": "assign",
    "+=": "add_assign",
    "-=": "sub_assign",
    "*=": "mul_assign",
    "/=": "div_assign",
    "%=": "rem_assign",
    "^=": "bitxor_assign",
    "&=": "bitand_assign",
    "|=": "bitor_assign",
    "<<=": "shl_assign",
    ">>=": "shr_assign",
    ",": "comma",
}

# Unary operator -> method name
UNARY_OPERATOR_NAMES: dict[str, str] = {
    "-": "neg",
    "+": "pos",
    "!": "not",
    "~": "bitnot",
    "*": "deref",
    "&": "addr_of",
    "->": "arrow",
}

INCREMENT_NAMES: dict[tuple[str, bool], str] = {
    ("++", False): "pre_inc",
    ("++", True): "post_inc",
    ("--", False): "pre_dec",
    ("--", True): "post_dec",
}

# Operators a Rust source can spell directly for primitive operands
RUST_BINARY_OPERATORS: frozenset[str] = frozenset(
    {"+", "-", "*", "/", "%", "^", "&", "|", "<<", ">>", "==", "!=", "<", ">", "<=", ">=", "&&", "||"}
)

COMPARISON_OPERATORS: frozenset[str] = frozenset({"==", "!=", "<", ">", "<=", ">="})

COMPOUND_ASSIGN_OPERATORS: frozenset[str] = frozenset(
    {"+=", "-=", "*=", "/=", "%=", "^=", "&=", "|=", "<<=", ">>="}
)


def operator_method_name(
    operator: str, arity: int, is_const: bool = False, is_postfix: bool = False
) -> str:
    """Return the Rust method name for ``operator<op>``.

    ``arity`` counts operands including the object for member operators, so
    ``a - b`` is 2 and ``-a`` is 1.  ``operator[]`` maps to ``index`` for
    const overloads and ``index_mut`` otherwise; a call site that only reads
    uses the const overload when the class declares one.
    """
    if operator[:1].isalpha():
        return "to_" + re.sub(r"\W+", "_", operator).strip("_")
    if operator in ("++", "--"):
        return INCREMENT_NAMES[(operator, is_postfix)]
    if operator == "[]":
        return "index" if is_const else "index_mut"
    if operator == "()":
        return "call"
    if operator == "->":
        return "arrow"
    if arity == 1 and operator in UNARY_OPERATOR_NAMES:
        return UNARY_OPERATOR_NAMES[operator]
    if operator in BINARY_OPERATOR_NAMES:
        return BINARY_OPERATOR_NAMES[operator]
    if operator in UNARY_OPERATOR_NAMES:
        return UNARY_OPERATOR_NAMES[operator]
    return "op_" + "".join(f"{ord(c):02x}" for c in operator)
