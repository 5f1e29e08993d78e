"""Unit tests for the pattern-based structural analyzer."""

from __future__ import annotations

import random
import re
import string

from contextmax.parsing import (
    BlockStyle,
    Declaration,
    LanguageFamily,
    analyze,
    get_family_for_file,
    is_language_supported,
    register_family,
)

TS_SOURCE = """import { db } from './db'
import express from "express"
const bcrypt = require('bcrypt')

export class AuthService {
  login(user) {
    return db.check(user)
  }
}

export const hashPassword = async (pw) => {
  return bcrypt.hash(pw)
}

export { AuthService as default, hashPassword }
"""

PY_SOURCE = """import os
from .models import User

__all__ = ["login", "Session"]


class Session:
    def __init__(self, user):
        self.user = user

    def close(self):
        pass


async def login(name):
    return Session(User(name))
"""

RUBY_SOURCE = """class Greeter
  def hello(name)
    puts "hi #{name}"
  end
end
"""


# ---------------------------------------------------------------------------
# Language detection
# ---------------------------------------------------------------------------


def test_family_lookup_by_extension():
    assert get_family_for_file("src/app.ts").block_style is BlockStyle.BRACE
    assert get_family_for_file("src/app.PY").block_style is BlockStyle.INDENT
    assert get_family_for_file("lib/greeter.rb").block_style is BlockStyle.END_KEYWORD


def test_family_lookup_unknown():
    assert get_family_for_file("notes.txt") is None
    assert get_family_for_file("Makefile") is None


def test_language_supported_filter():
    assert is_language_supported("src/a.ts")
    assert is_language_supported("README.md")
    assert not is_language_supported("img/logo.PNG")
    assert not is_language_supported("node_modules/lib/index.js")
    assert not is_language_supported("yarn.lock")


# ---------------------------------------------------------------------------
# Brace family
# ---------------------------------------------------------------------------


def test_typescript_declarations():
    info = analyze(TS_SOURCE, "src/auth.ts")
    assert info.classes == (Declaration("AuthService", 5, 9),)
    assert info.functions == (Declaration("login", 6, 8), Declaration("hashPassword", 11, 13))


def test_typescript_imports_and_exports():
    info = analyze(TS_SOURCE, "src/auth.ts")
    assert [i.module for i in info.imports] == ["./db", "express", "bcrypt"]
    assert {"AuthService", "hashPassword"} <= {e.name for e in info.exports}


def test_export_function_block_end():
    source = "export function login(user) {\n  return check(user)\n}\n\nexport function logout() {\n  clear()\n}\n"
    info = analyze(source, "src/login.ts")
    assert info.functions == (Declaration("login", 1, 3), Declaration("logout", 5, 7))


def test_calls_and_control_flow_are_not_declarations():
    source = "function main() {\n  setup(config)\n  if (ready) {\n    run()\n  }\n}\n"
    info = analyze(source, "main.js")
    assert info.functions == (Declaration("main", 1, 6),)


def test_go_functions_and_types():
    source = 'import "fmt"\n\ntype Server struct {\n  port int\n}\n\nfunc (s *Server) Start() {\n  fmt.Println(s.port)\n}\n'
    info = analyze(source, "server.go")
    assert [c.name for c in info.classes] == ["Server"]
    assert info.functions == (Declaration("Start", 7, 9),)
    assert [i.module for i in info.imports] == ["fmt"]


# ---------------------------------------------------------------------------
# Indentation and end-keyword families
# ---------------------------------------------------------------------------


def test_python_declarations():
    info = analyze(PY_SOURCE, "app/auth.py")
    assert info.classes == (Declaration("Session", 7, 12),)
    assert info.functions == (
        Declaration("__init__", 8, 9),
        Declaration("close", 11, 12),
        Declaration("login", 15, 16),
    )


def test_python_imports_and_all():
    info = analyze(PY_SOURCE, "app/auth.py")
    assert [i.module for i in info.imports] == ["os", ".models"]
    assert [e.name for e in info.exports] == ["login", "Session"]


def test_ruby_end_keyword_blocks():
    info = analyze(RUBY_SOURCE, "lib/greeter.rb")
    assert info.classes == (Declaration("Greeter", 1, 5),)
    assert info.functions == (Declaration("hello", 2, 4),)


# ---------------------------------------------------------------------------
# Lookup and serialization
# ---------------------------------------------------------------------------


def test_find_prefers_nearest_declaration():
    source = "function handler() {\n}\n\nfunction handler() {\n}\n"
    info = analyze(source, "h.js")
    assert info.find("handler").start_line == 1
    assert info.find("handler", near_line=5).start_line == 4
    assert info.find("missing") is None


def test_find_covers_classes():
    info = analyze(PY_SOURCE, "app/auth.py")
    assert info.find("Session") == Declaration("Session", 7, 12)


def test_to_dict_shape():
    info = analyze("def go():\n    pass\n", "x.py")
    assert info.to_dict() == {
        "functions": [{"name": "go", "startLine": 1, "endLine": 2}],
        "classes": [],
        "imports": [],
        "exports": [],
    }


# ---------------------------------------------------------------------------
# Degradation
# ---------------------------------------------------------------------------


def test_unsupported_inputs_are_empty():
    assert analyze("hello world", "notes.txt").is_empty
    assert analyze("function a() {}", "vendor/node_modules/a.js").is_empty
    assert analyze("", "a.ts").is_empty


def test_garbage_never_raises():
    rng = random.Random(1234)
    alphabet = string.printable + "{}{}(())"
    for _ in range(50):
        text = "".join(rng.choice(alphabet) for _ in range(rng.randint(0, 400)))
        for path in ("a.ts", "a.py", "a.rb"):
            info = analyze(text, path)
            for decl in (*info.functions, *info.classes):
                assert 1 <= decl.start_line <= decl.end_line


def test_registered_family_is_used():
    register_family(
        LanguageFamily(
            name="test-proc",
            extensions=frozenset({".proctest"}),
            block_style=BlockStyle.END_KEYWORD,
            function_patterns=(re.compile(r"^\s*proc\s+(\w+)"),),
        )
    )
    info = analyze("proc start\n  go\nend\n", "job.proctest")
    assert info.functions == (Declaration("start", 1, 3),)
