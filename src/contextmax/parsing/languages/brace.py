"""Brace-delimited languages: JavaScript/TypeScript, the C family, JVM, Go, Rust, PHP, Swift."""

from __future__ import annotations

import re

from contextmax.parsing.analyzer import BlockStyle, LanguageFamily, register_family

_MODIFIERS = (
    r"(?:(?:export|default|public|private|protected|internal|static|async|virtual|override|final|abstract"
    r"|inline|extern|synchronized|readonly|open|suspend|unsafe|const|pub(?:\([^)]*\))?)\s+)*"
)

# Lines that start with these words are statements, never declarations
_NOT_A_DECLARATION = r"(?!(?:return|await|throw|new|else|yield|typeof|delete|case|if|for|while|switch|catch|do)\b)"

_FUNCTION_PATTERNS = (
    # function foo(...) / export async function* foo<T>(...)
    re.compile(rf"^\s*{_MODIFIERS}function\s*\*?\s*&?([A-Za-z_$][\w$]*)\s*[<(]"),
    # const foo = (...) => / const foo = async function
    re.compile(
        r"^\s*(?:export\s+)?(?:const|let|var)\s+([A-Za-z_$][\w$]*)\s*(?::[^=]+)?=\s*(?:async\s+)?"
        r"(?:function\b|\([^)]*\)\s*(?::[^=]+)?=>|[A-Za-z_$][\w$]*\s*=>)"
    ),
    # Go: func (r *Recv) Foo(...)
    re.compile(r"^\s*func\s+(?:\([^)]*\)\s*)?([A-Za-z_]\w*)\s*[(\[]"),
    # Rust: pub async fn foo
    re.compile(rf"^\s*{_MODIFIERS}(?:extern\s+\"[^\"]*\"\s+)?fn\s+([A-Za-z_]\w*)"),
    # Kotlin / Swift: fun foo / func foo
    re.compile(rf"^\s*{_MODIFIERS}(?:fun|func)\s+(?:<[^>]*>\s*)?(?:[\w.]+\.)?([A-Za-z_]\w*)\s*[(<]"),
)

# Methods and C-style definitions: only count when a body follows
_BODY_PATTERNS = (
    re.compile(
        rf"^\s*{_NOT_A_DECLARATION}{_MODIFIERS}(?:[\w.<>\[\],*&:?]+\s+)*"
        r"([A-Za-z_$][\w$]*)\s*(?:<[^>]*>)?\s*\([^;]*\)\s*(?::\s*[^{;=]+)?\s*(?:throws\s+[\w.,\s]+)?(?:\{.*)?$"
    ),
)

_CLASS_PATTERNS = (
    re.compile(
        r"(?:^|\s)(?:export\s+)?(?:default\s+)?(?:public\s+|private\s+|internal\s+)?(?:abstract\s+|sealed\s+|data\s+)?"
        r"(?:class|interface|struct|trait|enum)\s+([A-Za-z_$][\w$]*)"
    ),
    # Go: type Foo struct / type Foo interface
    re.compile(r"^\s*type\s+([A-Za-z_]\w*)\s+(?:struct|interface)\b"),
)

_IMPORT_PATTERNS = (
    re.compile(r"^\s*import\s+.*?from\s+['\"](.*?)['\"]"),
    re.compile(r"^\s*import\s+['\"](.*?)['\"]"),
    re.compile(r"^\s*import\s+(?:static\s+)?([\w.]+(?:\.\*)?)\s*;"),
    re.compile(r"\brequire\(\s*['\"](.*?)['\"]\s*\)"),
    re.compile(r"^\s*#\s*include\s*[<\"]([^>\"]+)[>\"]"),
    re.compile(r"^\s*use\s+([\w:\\]+)"),
    re.compile(r"^\s*import\s+(?:\w+\s+)?\"([^\"]+)\""),
)

_EXPORT_PATTERNS = (
    re.compile(
        r"^\s*export\s+(?:default\s+)?(?:async\s+)?(?:abstract\s+)?"
        r"(?:function\s*\*?|class|const|let|var|interface|type|enum)\s+([A-Za-z0-9_$]+)"
    ),
)

_EXPORT_LIST_PATTERNS = (re.compile(r"^\s*export\s*\{\s*([^}]+?)\s*\}"),)

_EXCLUDED = frozenset(
    {
        "if", "for", "while", "with", "try", "catch", "switch", "case",
        "return", "function", "else", "new", "typeof", "sizeof", "super", "this", "await",
    }
)  # fmt: skip

register_family(
    LanguageFamily(
        name="brace",
        extensions=frozenset(
            {
                ".js", ".jsx", ".mjs", ".cjs", ".ts", ".tsx", ".mts", ".cts", ".vue", ".svelte",
                ".java", ".kt", ".kts", ".scala", ".groovy", ".cs", ".go", ".rs", ".swift", ".dart",
                ".c", ".h", ".cc", ".cpp", ".cxx", ".hpp", ".m", ".php", ".sh", ".bash", ".zsh",
            }
        ),  # fmt: skip
        block_style=BlockStyle.BRACE,
        function_patterns=_FUNCTION_PATTERNS,
        body_patterns=_BODY_PATTERNS,
        class_patterns=_CLASS_PATTERNS,
        import_patterns=_IMPORT_PATTERNS,
        export_patterns=_EXPORT_PATTERNS,
        export_list_patterns=_EXPORT_LIST_PATTERNS,
        excluded_names=_EXCLUDED,
    )
)
