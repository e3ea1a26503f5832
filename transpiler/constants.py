"""Names the generated Rust code and the runtime crate agree on."""

from __future__ import annotations

RUNTIME_CRATE = "fragile_rt"

# Runtime entry points (see the fragile_rt crate)
RT_NEW = "rt_new"
RT_NEW_ARRAY = "rt_new_array"
RT_DELETE = "rt_delete"
RT_DELETE_ARRAY = "rt_delete_array"
RT_THROW = "throw"
RT_RETHROW = "rethrow"
RT_RETHROW_CURRENT = "rethrow_current"
RT_TRY_CATCH = "try_catch"
RT_FLOW = "Flow"
RT_VCALL = "vcall"
RT_VSLOT = "VSlot"
RT_GLOBAL_SLOT = "GlobalSlot"
RT_PURE_VIRTUAL = "pure_virtual_called"
RT_OPAQUE = "Opaque"
RT_CSTR = "cstr"
RT_EXCEPTION = "Exception"
RT_FROM_CSTR = "from_cstr"

# Generated names
VPTR_FIELD = "__vptr"
BASE_FIELD_PREFIX = "__base_"
VBASE_PTR_PREFIX = "__vbase_"
VBASE_STORE_PREFIX = "__vstore_"
VTABLE_STATIC_PREFIX = "__VTABLE_"
VTHUNK_PREFIX = "__vthunk_"
GLOBAL_SLOT_PREFIX = "__G_"
LOCAL_STATIC_PREFIX = "__S_"
ANON_MODULE_PREFIX = "__anon_"
BASE_CTOR_PREFIX = "__base_"
DESTROY_METHOD = "__destroy"
ASSIGN_METHOD = "__assign"
BIND_VBASES_METHOD = "__bind_vbases"
INIT_VTABLES_METHOD = "__init_vtables"
INIT_GLOBALS_FN = "__init_globals"
CPP_MAIN_FN = "cpp_main"
SELF_LOCAL = "this"
EXCEPTION_LOCAL = "__exc"
SWITCH_VALUE_LOCAL = "__sw"
SWITCH_FALLTHROUGH_LOCAL = "__ft"
THIS_PTR_LOCAL = "__this"
RECEIVER_LOCAL = "__r"
TEMP_LOCAL = "__t"
CLONE_LOCAL = "__c"
RETURN_VALUE_LOCAL = "__v"
MEMBER_LOCAL_PREFIX = "__m_"
BASE_LOCAL_PREFIX = "__b_"
VBASE_LOCAL_PREFIX = "__vb_"
VBASE_PTR_LOCAL_PREFIX = "__pv_"
CAPTURED_THIS = "__self"

CTOR_DEFAULT = "new"
CTOR_COPY = "new_copy"
CTOR_MOVE = "new_move"

LOOP_LABEL_PREFIX = "'loop"
CONTINUE_LABEL_PREFIX = "'cont"
SWITCH_LABEL_PREFIX = "'sw"
BODY_LABEL = "'body"

DESTRUCTOR_SLOT_KEY = "~"

CRATE_ALLOWS: tuple[str, ...] = (
    "dead_code",
    "unused_variables",
    "unused_mut",
    "unused_unsafe",
    "unused_parens",
    "unused_labels",
    "unused_assignments",
    "unreachable_code",
    "non_snake_case",
    "non_camel_case_types",
    "non_upper_case_globals",
    "improper_ctypes",
    "improper_ctypes_definitions",
    "unsafe_op_in_unsafe_fn",
    "redundant_semicolons",
    "unused_braces",
    "unused_imports",
    "unused_must_use",
    "unreachable_patterns",
    "while_true",
)

# Rust keywords a C++ identifier may collide with
RUST_KEYWORDS: frozenset[str] = frozenset(
    {
        "as",
        "async",
        "await",
        "box",
        "dyn",
        "fn",
        "gen",
        "impl",
        "in",
        "let",
        "loop",
        "match",
        "mod",
        "move",
        "mut",
        "pub",
        "ref",
        "trait",
        "type",
        "unsafe",
        "use",
        "where",
        "abstract",
        "become",
        "final",
        "macro",
        "override",
        "priv",
        "typeof",
        "unsized",
        "yield",
        "try",
    }
)

# Keywords that cannot be written as raw identifiers
RUST_RESERVED_PLAIN: frozenset[str] = frozenset({"self", "Self", "super", "crate"})

DEFAULT_CLANG_BINARY = "clang++"
DEFAULT_CPP_STANDARD = "c++17"
CPP_LANGUAGE = "cpp"
