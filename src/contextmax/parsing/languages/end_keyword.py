"""Languages whose blocks close with ``end``: Ruby, Lua, Elixir."""

from __future__ import annotations

import re

from contextmax.parsing.analyzer import BlockStyle, LanguageFamily, register_family

register_family(
    LanguageFamily(
        name="end_keyword",
        extensions=frozenset({".rb", ".rake", ".lua", ".ex", ".exs"}),
        block_style=BlockStyle.END_KEYWORD,
        function_patterns=(
            re.compile(r"^\s*def\s+(?:self\.)?([A-Za-z_]\w*[?!=]?)"),
            re.compile(r"^\s*defp?\s+([a-z_]\w*[?!]?)"),
            re.compile(r"^\s*(?:local\s+)?function\s+(?:[\w.]+[.:])?([A-Za-z_]\w*)\s*\("),
        ),
        class_patterns=(
            re.compile(r"^\s*class\s+([A-Z]\w*(?:::\w+)*)"),
            re.compile(r"^\s*module\s+([A-Z]\w*(?:::\w+)*)"),
            re.compile(r"^\s*defmodule\s+([A-Z][\w.]*)"),
        ),
        import_patterns=(
            re.compile(r"^\s*require(?:_relative)?\s*\(?\s*['\"]([^'\"]+)['\"]"),
            re.compile(r"^\s*(?:alias|import|use)\s+([A-Z][\w.]*)"),
        ),
    )
)
