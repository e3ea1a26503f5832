"""Rust literal spelling for C++ string and character data."""

from __future__ import annotations

from .target_ir import Lit

_ESCAPES = {"\\": "\\\\", '"': '\\"', "\n": "\\n", "\t": "\\t", "\r": "\\r", "\0": "\\0"}


def rust_str(text: str) -> Lit:
    """A Rust ``&str`` literal."""
    out = []
    for ch in text:
        if ch in _ESCAPES:
            out.append(_ESCAPES[ch])
        elif ord(ch) < 0x20:
            out.append(f"\\x{ord(ch):02x}")
        else:
            out.append(ch)
    return Lit('"' + "".join(out) + '"')


def byte_str(text: str) -> Lit:
    """A NUL-terminated Rust byte string literal."""
    out = []
    for byte in text.encode("utf-8") + b"\0":
        ch = chr(byte)
        if ch in ('"', "\\") or byte < 0x20 or byte > 0x7E:
            out.append(f"\\x{byte:02x}")
        else:
            out.append(ch)
    return Lit('b"' + "".join(out) + '"')
