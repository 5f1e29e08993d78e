"""Indentation languages: Python."""

from __future__ import annotations

import re

from contextmax.parsing.analyzer import BlockStyle, LanguageFamily, register_family

register_family(
    LanguageFamily(
        name="python",
        extensions=frozenset({".py", ".pyi", ".pyw"}),
        block_style=BlockStyle.INDENT,
        function_patterns=(re.compile(r"^\s*(?:async\s+)?def\s+([A-Za-z_]\w*)\s*[(\[]"),),
        class_patterns=(re.compile(r"^\s*class\s+([A-Za-z_]\w*)\s*[(:\[]"),),
        import_patterns=(
            re.compile(r"^\s*from\s+(\.*[\w.]*)\s+import\b"),
            re.compile(r"^\s*import\s+([\w.]+)"),
        ),
        export_list_patterns=(re.compile(r"^__all__\s*(?::[^=]+)?=\s*[\[(]\s*(.+?)\s*[\])]\s*$"),),
    )
)
