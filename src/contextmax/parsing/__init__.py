"""Parsing package: pattern-based structural analysis."""

from __future__ import annotations

from contextmax.parsing.analyzer import (
    BlockStyle,
    Declaration,
    ExportRef,
    ImportRef,
    LanguageFamily,
    StructureInfo,
    analyze,
    get_family_for_file,
    is_language_supported,
    register_family,
)

__all__ = [
    "BlockStyle",
    "Declaration",
    "ExportRef",
    "ImportRef",
    "LanguageFamily",
    "StructureInfo",
    "analyze",
    "get_family_for_file",
    "is_language_supported",
    "register_family",
]
