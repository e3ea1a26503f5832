"""Parses clang type spellings (``qualType`` strings) into ``ResolvedType``.

Clang's JSON dump describes types only by their printed spelling, e.g.
``const std::vector<int> &`` or ``int (*)(double)``.  The parser reads the
declaration specifiers, then the abstract declarator, applying pointer
operators first and array/function suffixes right to left, the way C reads
declarators.  Named types are looked up in a ``TypeRegistry`` filled from the
dump's declarations.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Callable

from .cpp_types import (
    ArrayType,
    AutoParamType,
    ClosureType,
    EnumType,
    FunctionType,
    OpaqueType,
    PointerType,
    PrimitiveKind,
    RecordType,
    ReferenceType,
    ResolvedType,
    StdLibType,
    primitive,
)
from .diagnostics import FrontendError

logger = logging.getLogger(__name__)

_TOKEN_RE = re.compile(
    r"\s*(?:(?P<lambda>\((?:lambda|unnamed [a-z]+) at [^)]*\))"
    r"|(?P<ellipsis>\.\.\.)"
    r"|(?P<name>(?:::)?[A-Za-z_][A-Za-z0-9_]*(?::\d+)?(?:::[A-Za-z_~][A-Za-z0-9_]*)*)"
    r"|(?P<number>-?\d+[uUlL]*)"
    r"|(?P<punct>&&|::|[<>,*&()\[\]]))"
)

_BUILTIN_WORDS = frozenset(
    {"void", "bool", "char", "short", "int", "long", "float", "double", "signed", "unsigned"}
)
_IGNORED_WORDS = frozenset({"volatile", "struct", "class", "union", "enum", "typename", "restrict"})

_CHAR_TYPES = {
    "wchar_t": PrimitiveKind.INT,
    "char8_t": PrimitiveKind.UNSIGNED_CHAR,
    "char16_t": PrimitiveKind.UNSIGNED_SHORT,
    "char32_t": PrimitiveKind.UNSIGNED_INT,
}

_TYPEDEF_PRIMITIVES = {
    "size_t": PrimitiveKind.UNSIGNED_LONG,
    "ssize_t": PrimitiveKind.LONG,
    "ptrdiff_t": PrimitiveKind.LONG,
    "intptr_t": PrimitiveKind.LONG,
    "uintptr_t": PrimitiveKind.UNSIGNED_LONG,
    "int8_t": PrimitiveKind.SIGNED_CHAR,
    "uint8_t": PrimitiveKind.UNSIGNED_CHAR,
    "int16_t": PrimitiveKind.SHORT,
    "uint16_t": PrimitiveKind.UNSIGNED_SHORT,
    "int32_t": PrimitiveKind.INT,
    "uint32_t": PrimitiveKind.UNSIGNED_INT,
    "int64_t": PrimitiveKind.LONG,
    "uint64_t": PrimitiveKind.UNSIGNED_LONG,
    "nullptr_t": PrimitiveKind.NULLPTR,
}

_STD_INLINE_NAMESPACES = ("std::__1::", "std::__cxx11::", "std::__ndk1::")

# Template arguments the library fills in by default
_DEFAULTED_STD_ARGS = frozenset(
    {
        "std::allocator",
        "std::char_traits",
        "std::less",
        "std::hash",
        "std::equal_to",
        "std::default_delete",
    }
)

_STRING_TEMPLATES = frozenset({"std::basic_string", "std::string"})


@dataclass
class TypeRegistry:
    """Named types known to the bridge, keyed by qualified spelling."""

    records: dict[str, tuple[int, bool]] = field(default_factory=dict)
    enums: dict[str, int] = field(default_factory=dict)
    lambdas: dict[str, int] = field(default_factory=dict)

    def add_record(self, qualified: str, decl_id: int, polymorphic: bool) -> None:
        self.records[qualified] = (decl_id, polymorphic)

    def add_enum(self, qualified: str, decl_id: int) -> None:
        self.enums[qualified] = decl_id

    def lookup(self, table: dict, name: str):
        """Exact match first, then a unique match on the unqualified tail."""
        name = name.removeprefix("::")
        if name in table:
            return table[name]
        tail = "::" + name
        matches = [v for k, v in table.items() if k.endswith(tail)]
        if len(matches) == 1:
            return matches[0]
        return None


def normalize_std_name(name: str) -> str:
    for inline in _STD_INLINE_NAMESPACES:
        if name.startswith(inline):
            return "std::" + name[len(inline):]
    return name


def tokenize(text: str) -> list[str]:
    tokens = []
    pos = 0
    text = text.rstrip()
    while pos < len(text):
        m = _TOKEN_RE.match(text, pos)
        if m is None or m.end() == pos:
            raise FrontendError(f"cannot parse type spelling '{text}' at offset {pos}")
        tokens.append(m.group(m.lastgroup))
        pos = m.end()
    return tokens


@dataclass
class _Declarator:
    pointer_ops: list[tuple[str, bool]]
    inner: Callable[[ResolvedType, bool], tuple[ResolvedType, bool]] | None
    suffixes: list[Callable[[ResolvedType, bool], tuple[ResolvedType, bool]]]


class QualTypeParser:
    """Recursive-descent parser for one type spelling at a time."""

    def __init__(self, registry: TypeRegistry):
        self.registry = registry
        self._tokens: list[str] = []
        self._pos = 0
        self._auto_index: int | None = None

    def parse(self, text: str, auto_index: int | None = None) -> ResolvedType:
        """Parse ``text``; a bare ``auto`` becomes ``AutoParamType(auto_index)``."""
        self._tokens = tokenize(text)
        self._pos = 0
        self._auto_index = auto_index
        t, _ = self._type_id()
        if self._pos != len(self._tokens):
            raise FrontendError(f"trailing tokens in type spelling '{text}'")
        return t

    # ── token helpers ────────────────────────────────────────────

    def _peek(self, offset: int = 0) -> str | None:
        i = self._pos + offset
        return self._tokens[i] if i < len(self._tokens) else None

    def _next(self) -> str:
        token = self._peek()
        if token is None:
            raise FrontendError("unexpected end of type spelling")
        self._pos += 1
        return token

    def _expect(self, token: str) -> None:
        got = self._next()
        if got != token:
            raise FrontendError(f"expected '{token}' in type spelling, got '{got}'")

    # ── grammar ──────────────────────────────────────────────────

    def _type_id(self) -> tuple[ResolvedType, bool]:
        base, is_const = self._specifiers()
        return self._apply(self._declarator(), base, is_const)

    def _specifiers(self) -> tuple[ResolvedType, bool]:
        is_const = False
        words: list[str] = []
        named: ResolvedType | None = None
        while True:
            token = self._peek()
            if token == "const":
                is_const = True
            elif token in _IGNORED_WORDS:
                pass
            elif token in _BUILTIN_WORDS and named is None:
                words.append(token)
            elif token is not None and token.startswith("("):
                if named is not None or words or not token.endswith(")") or " at " not in token:
                    break
                named = self._lambda(token)
            elif (
                token is not None
                and named is None
                and not words
                and (token[0].isalpha() or token[0] == "_" or token.startswith("::"))
            ):
                self._pos += 1
                named = self._named(token)
                continue
            else:
                break
            self._pos += 1
        if words:
            return primitive(_builtin_kind(words)), is_const
        if named is None:
            raise FrontendError(f"missing type name in '{' '.join(self._tokens)}'")
        return named, is_const

    def _lambda(self, token: str) -> ResolvedType:
        lambda_id = self.registry.lambdas.get(token)
        if lambda_id is None:
            return OpaqueType(text=token)
        return ClosureType(lambda_id=lambda_id)

    def _named(self, name: str) -> ResolvedType:
        args: list[ResolvedType] | None = None
        if self._peek() == "<":
            args = self._template_args()
            tail = self._peek()
            if tail is not None and tail.startswith("::"):
                # Member of a specialization, e.g. std::vector<int>::size_type.
                self._next()
                member = tail.removeprefix("::") or self._next()
                return OpaqueType(text=f"{name}<...>::{member}")
        name = normalize_std_name(name)
        if name == "auto" or re.fullmatch(r"auto:\d+", name):
            if ":" in name:
                return AutoParamType(index=int(name.split(":")[1]) - 1)
            return AutoParamType(index=self._auto_index or 0)
        bare = name.removeprefix("std::").removeprefix("::")
        if bare in _TYPEDEF_PRIMITIVES and args is None:
            return primitive(_TYPEDEF_PRIMITIVES[bare])
        if bare in _CHAR_TYPES:
            return primitive(_CHAR_TYPES[bare])
        if name.startswith("std::"):
            return self._std(name, args or [])
        spelled = name if args is None else f"{name}<{', '.join(a.spelling() for a in args)}>"
        found = self.registry.lookup(self.registry.records, spelled)
        if found is not None:
            decl_id, polymorphic = found
            return RecordType(name=spelled.removeprefix("::"), decl_id=decl_id, polymorphic=polymorphic)
        enum_id = self.registry.lookup(self.registry.enums, name)
        if enum_id is not None:
            return EnumType(name=name.removeprefix("::"), decl_id=enum_id)
        logger.debug("Unknown type name %s kept opaque", spelled)
        return OpaqueType(text=spelled)

    def _std(self, name: str, args: list[ResolvedType]) -> ResolvedType:
        if name in _STRING_TEMPLATES:
            return StdLibType(template="std::string")
        kept = [
            a
            for a in args
            if not (isinstance(a, StdLibType) and a.template in _DEFAULTED_STD_ARGS)
        ]
        return StdLibType(template=name, args=kept)

    def _template_args(self) -> list[ResolvedType]:
        self._expect("<")
        args: list[ResolvedType] = []
        while self._peek() != ">":
            token = self._peek()
            if token is not None and re.fullmatch(r"-?\d+[uUlL]*", token):
                self._next()
                args.append(OpaqueType(text=token.rstrip("uUlL")))
            else:
                args.append(self._type_id()[0])
            if self._peek() == ",":
                self._next()
        self._expect(">")
        return args

    def _declarator(self) -> _Declarator:
        pointer_ops: list[tuple[str, bool]] = []
        while self._peek() in ("*", "&", "&&"):
            op = self._next()
            const = False
            while self._peek() in ("const", "volatile", "restrict", "__restrict"):
                const = const or self._next() == "const"
            pointer_ops.append((op, const))
        inner = None
        if self._peek() == "(" and self._peek(1) in ("*", "&", "&&", "("):
            self._next()
            nested = self._declarator()
            self._expect(")")
            inner = lambda t, c, d=nested: self._apply(d, t, c)  # noqa: E731
        suffixes = []
        while self._peek() in ("[", "("):
            if self._next() == "[":
                length = None
                if self._peek() != "]":
                    length = int(self._next().rstrip("uUlL"))
                self._expect("]")
                suffixes.append(lambda t, c, n=length: (ArrayType(element=t, length=n), c))
            else:
                params, variadic = self._params()
                while self._peek() in ("const", "volatile", "&", "&&", "noexcept"):
                    self._next()
                suffixes.append(
                    lambda t, c, p=params, v=variadic: (
                        FunctionType(result=t, params=p, is_variadic=v),
                        False,
                    )
                )
        return _Declarator(pointer_ops, inner, suffixes)

    def _params(self) -> tuple[list[ResolvedType], bool]:
        params: list[ResolvedType] = []
        variadic = False
        while self._peek() != ")":
            if self._peek() == "...":
                self._next()
                variadic = True
            elif self._peek() == "void" and self._peek(1) == ")":
                self._next()
            else:
                params.append(self._type_id()[0])
            if self._peek() == ",":
                self._next()
        self._expect(")")
        return params, variadic

    def _apply(
        self, d: _Declarator, t: ResolvedType, is_const: bool
    ) -> tuple[ResolvedType, bool]:
        for op, const in d.pointer_ops:
            if op == "*":
                t, is_const = PointerType(pointee=t, is_const=is_const), const
            else:
                t = ReferenceType(referent=t, is_const=is_const, is_rvalue=op == "&&")
                is_const = False
        for suffix in reversed(d.suffixes):
            t, is_const = suffix(t, is_const)
        if d.inner is not None:
            t, is_const = d.inner(t, is_const)
        return t, is_const


def _builtin_kind(words: list[str]) -> PrimitiveKind:
    longs = words.count("long")
    unsigned = "unsigned" in words
    if "void" in words:
        return PrimitiveKind.VOID
    if "bool" in words:
        return PrimitiveKind.BOOL
    if "float" in words:
        return PrimitiveKind.FLOAT
    if "double" in words:
        return PrimitiveKind.LONG_DOUBLE if longs else PrimitiveKind.DOUBLE
    if "char" in words:
        if unsigned:
            return PrimitiveKind.UNSIGNED_CHAR
        return PrimitiveKind.SIGNED_CHAR if "signed" in words else PrimitiveKind.CHAR
    if "short" in words:
        return PrimitiveKind.UNSIGNED_SHORT if unsigned else PrimitiveKind.SHORT
    if longs >= 2:
        return PrimitiveKind.UNSIGNED_LONG_LONG if unsigned else PrimitiveKind.LONG_LONG
    if longs == 1:
        return PrimitiveKind.UNSIGNED_LONG if unsigned else PrimitiveKind.LONG
    return PrimitiveKind.UNSIGNED_INT if unsigned else PrimitiveKind.INT


def is_const_qualified(text: str) -> bool:
    """True when the outermost type of ``text`` is const (``const int``, ``int *const``)."""
    tokens = tokenize(text)
    if not tokens:
        return False
    if tokens[-1] == "const":
        return True
    return tokens[0] == "const" and not any(t in ("*", "&", "&&", "[", "(") for t in tokens)
