"""C++ to Rust lowering pipeline."""

from .api import (  # noqa: F401
    TranslationResult,
    lower_unit,
    transpile_unit,
    transpile_file,
    transpile_files,
    dump_layouts,
)
