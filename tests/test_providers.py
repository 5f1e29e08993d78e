"""Tests for file content, persistence and export sink implementations."""

from __future__ import annotations

import json

import pytest

from contextmax.errors import NotFoundError, PermissionDeniedError, SchemaError
from contextmax.providers import (
    ExportSink,
    FileContentProvider,
    FileSink,
    JsonFilePersistence,
    LocalFileProvider,
    MemoryFileProvider,
    MemoryPersistence,
    MemorySink,
    PersistenceProvider,
    StdoutSink,
    dump_document,
)

# ---------------------------------------------------------------------------
# File content
# ---------------------------------------------------------------------------


class TestLocalFileProvider:
    @pytest.fixture
    def provider(self, tmp_path):
        (tmp_path / "src").mkdir()
        (tmp_path / "src" / "a.py").write_text("print('hi')\n", encoding="utf-8")
        return LocalFileProvider(tmp_path)

    async def test_read(self, provider):
        assert await provider.read_file("src/a.py") == "print('hi')\n"

    async def test_leading_slash_is_project_relative(self, provider):
        assert await provider.read_file("/src/a.py") == "print('hi')\n"

    async def test_missing(self, provider):
        with pytest.raises(NotFoundError, match="src/b.py"):
            await provider.read_file("src/b.py")

    async def test_directory(self, provider):
        with pytest.raises(NotFoundError):
            await provider.read_file("src")

    async def test_outside_root(self, provider):
        with pytest.raises(PermissionDeniedError, match="outside the project root"):
            await provider.read_file("../etc/passwd")

    def test_satisfies_protocol(self, provider):
        assert isinstance(provider, FileContentProvider)


class TestMemoryFileProvider:
    async def test_read_and_errors(self):
        provider = MemoryFileProvider({"a.py": "x"}, denied={"b.py"})
        assert await provider.read_file("a.py") == "x"
        with pytest.raises(PermissionDeniedError):
            await provider.read_file("b.py")
        with pytest.raises(NotFoundError):
            await provider.read_file("c.py")


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


DOC = {"schemaVersion": "1.0", "filesIndex": {}, "sets": {"context:ä": {}}}


class TestJsonFilePersistence:
    def test_missing_file(self, tmp_path):
        assert JsonFilePersistence(tmp_path / "context-sets.json").load_working_copy() is None

    def test_save_and_load(self, tmp_path):
        store = JsonFilePersistence(tmp_path / "nested" / "context-sets.json")
        store.save_working_copy(DOC)
        assert store.load_working_copy() == DOC
        assert store.path.read_text(encoding="utf-8") == dump_document(DOC)
        assert [p.name for p in store.path.parent.iterdir()] == ["context-sets.json"]

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "context-sets.json"
        path.write_text("{oops", encoding="utf-8")
        with pytest.raises(SchemaError, match="not valid JSON"):
            JsonFilePersistence(path).load_working_copy()

    def test_not_an_object(self, tmp_path):
        path = tmp_path / "context-sets.json"
        path.write_text("[1, 2]", encoding="utf-8")
        with pytest.raises(SchemaError, match="JSON object"):
            JsonFilePersistence(path).load_working_copy()

    def test_satisfies_protocol(self, tmp_path):
        assert isinstance(JsonFilePersistence(tmp_path / "x.json"), PersistenceProvider)


class TestMemoryPersistence:
    def test_copies_documents(self):
        store = MemoryPersistence()
        doc = {"sets": {}}
        store.save_working_copy(doc)
        doc["sets"]["late"] = {}
        assert store.load_working_copy() == {"sets": {}}
        assert store.saves == 1


def test_dump_document_is_stable():
    text = dump_document(DOC)
    assert text.endswith("}\n")
    assert '"context:ä"' in text
    assert json.loads(text) == DOC
    assert list(json.loads(text)) == ["schemaVersion", "filesIndex", "sets"]


# ---------------------------------------------------------------------------
# Sinks
# ---------------------------------------------------------------------------


class TestSinks:
    def test_file_sink(self, tmp_path):
        sink = FileSink(tmp_path / "out" / "auth.md")
        sink.write("# auth\n")
        assert (tmp_path / "out" / "auth.md").read_text(encoding="utf-8") == "# auth\n"

    def test_stdout_sink_adds_newline(self, capsys):
        StdoutSink().write("{}")
        assert capsys.readouterr().out == "{}\n"

    def test_memory_sink(self):
        sink = MemorySink()
        assert sink.last == ""
        sink.write("a")
        sink.write("b")
        assert sink.outputs == ["a", "b"]
        assert sink.last == "b"
        assert isinstance(sink, ExportSink)
