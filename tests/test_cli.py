"""Tests for the contextmax CLI."""

from __future__ import annotations

import json
import sys
from unittest.mock import patch

import pytest
from loguru import logger
from typer.testing import CliRunner

from contextmax.cli import OutputMode, _output, app

runner = CliRunner()

LOGIN_TS = "export function login(user) {\n  return check(user)\n}\n"


def _reset_output() -> None:
    """Reset the global _output singleton to defaults between tests."""
    _output.quiet = False
    _output.json = False
    _output.verbose = 0
    _output.no_color = False
    _output.project = None


@pytest.fixture(autouse=True)
def _clean_state():
    yield
    _reset_output()
    logger.remove()
    logger.add(sys.stderr)


@pytest.fixture
def project(tmp_path):
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "login.ts").write_text(LOGIN_TS, encoding="utf-8")
    (tmp_path / "src" / "server.ts").write_text("listen(8080)\n", encoding="utf-8")
    return tmp_path


def _invoke(project, *args: str):
    return runner.invoke(app, ["-C", str(project), *args])


def _json(project, *args: str):
    """Run a command with --json and parse stdout; --quiet keeps log lines out of it."""
    result = runner.invoke(app, ["-C", str(project), "--quiet", "--json", *args])
    assert result.exit_code == 0, result.output
    return json.loads(result.stdout)


def _auth_api(project) -> None:
    for args in (
        ["create", "auth", "-d", "Login"],
        ["add-file", "auth", "src/login.ts"],
        ["create", "api"],
        ["add-file", "api", "src/server.ts"],
        ["use", "api", "auth"],
    ):
        result = _invoke(project, *args)
        assert result.exit_code == 0, result.output


# ---------------------------------------------------------------------------
# Working copy
# ---------------------------------------------------------------------------


class TestInit:
    def test_creates_working_copy(self, project):
        result = _invoke(project, "init")
        assert result.exit_code == 0
        doc = json.loads((project / "context-sets.json").read_text(encoding="utf-8"))
        assert doc["schemaVersion"] == "1.0"
        assert doc["sets"] == {}

    def test_existing_file_untouched(self, project):
        (project / "context-sets.json").write_text('{"schemaVersion": "1.0", "sets": {}}', encoding="utf-8")
        result = _invoke(project, "init")
        assert result.exit_code == 0
        assert (project / "context-sets.json").read_text(encoding="utf-8") == '{"schemaVersion": "1.0", "sets": {}}'


class TestEditing:
    def test_create_and_list(self, project):
        _auth_api(project)
        rows = _json(project, "list")
        assert rows == [
            {"name": "auth", "description": "Login", "files": 1, "uses": []},
            {"name": "api", "description": "", "files": 1, "uses": ["auth"]},
        ]

    def test_list_text(self, project):
        _auth_api(project)
        result = _invoke(project, "list")
        assert "api (1 files) uses auth" in result.stdout

    def test_show_json_includes_closure(self, project):
        _auth_api(project)
        data = _json(project, "show", "api")
        assert data["name"] == "context:api"
        assert [f["path"] for f in data["closure"]] == ["src/server.ts", "src/login.ts"]

    def test_cycle_rejected(self, project):
        _auth_api(project)
        result = _invoke(project, "use", "auth", "api")
        assert result.exit_code == 1
        assert "Circular dependency" in result.output

    def test_failed_edit_is_not_saved(self, project):
        _auth_api(project)
        before = (project / "context-sets.json").read_text(encoding="utf-8")
        _invoke(project, "use", "auth", "api")
        assert (project / "context-sets.json").read_text(encoding="utf-8") == before

    def test_unknown_set(self, project):
        result = _invoke(project, "delete", "nope")
        assert result.exit_code == 1

    def test_rename_and_delete(self, project):
        _auth_api(project)
        assert _invoke(project, "rename", "auth", "login").exit_code == 0
        assert _invoke(project, "delete", "login").exit_code == 0
        rows = _json(project, "list")
        assert rows == [{"name": "api", "description": "", "files": 1, "uses": []}]

    def test_prune(self, project):
        _auth_api(project)
        _invoke(project, "remove-file", "api", "src/server.ts")
        assert len(_json(project, "prune")["removed"]) == 1


# ---------------------------------------------------------------------------
# Export
# ---------------------------------------------------------------------------


class TestExport:
    def test_json_to_stdout(self, project):
        _auth_api(project)
        result = _invoke(project, "--quiet", "export")
        assert result.exit_code == 0
        doc = json.loads(result.stdout)
        assert list(doc["sets"]) == ["context:auth", "context:api"]

    def test_markdown_to_file(self, project):
        _auth_api(project)
        out = project / "out" / "api.md"
        result = _invoke(project, "export", "api", "-f", "md", "-o", str(out))
        assert result.exit_code == 0
        text = out.read_text(encoding="utf-8")
        assert "## FILE: src/server.ts" in text
        assert "## FILE: src/login.ts" in text

    def test_markdown_needs_name(self, project):
        _auth_api(project)
        result = _invoke(project, "export", "-f", "markdown")
        assert result.exit_code == 1

    def test_unknown_format(self, project):
        result = _invoke(project, "export", "-f", "yaml")
        assert result.exit_code == 1

    def test_tokens(self, project):
        _auth_api(project)

        class _Words:
            def encode(self, text, **kwargs):
                return text.split()

        with patch("contextmax.export._get_encoding", return_value=_Words()):
            data = _json(project, "tokens", "auth")
        assert data == {"name": "auth", "tokens": len(LOGIN_TS.split())}


# ---------------------------------------------------------------------------
# Scan and search
# ---------------------------------------------------------------------------


class TestScanSearch:
    def test_scan_json(self, project):
        _auth_api(project)
        assert _json(project, "scan") == ["src/login.ts", "src/server.ts"]

    def test_structural_search(self, project):
        data = _json(project, "search", "login", "--structural")
        assert [r["file"] for r in data] == ["src/login.ts"]
        assert data[0]["llmScore"] == 0.0

    def test_no_results_text(self, project):
        result = _invoke(project, "search", "zebra", "--structural")
        assert result.exit_code == 0
        assert "No results found for 'zebra'" in result.output


# ---------------------------------------------------------------------------
# Output modes
# ---------------------------------------------------------------------------


class TestOutputModes:
    def test_quiet_suppresses_info(self, project):
        result = _invoke(project, "--quiet", "create", "auth")
        assert result.exit_code == 0
        assert "Created context set" not in result.output

    def test_info_logged_by_default(self, project):
        result = _invoke(project, "create", "auth")
        assert "Created context set auth" in result.output

    def test_verbose_sets_output_mode(self, project):
        runner.invoke(app, ["-vv", "-C", str(project), "list"])
        assert _output.verbose == 2

    def test_no_color_via_env_var(self, project):
        runner.invoke(app, ["-C", str(project), "list"], env={"NO_COLOR": "1"})
        assert _output.no_color is True

    def test_defaults(self):
        mode = OutputMode()
        assert not mode.quiet
        assert not mode.json
        assert mode.verbose == 0
        assert mode.project is None
