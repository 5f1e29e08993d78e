"""Tests for the context set repository and its dependency graph."""

from __future__ import annotations

import random

import pytest

from contextmax.errors import (
    CircularDependencyError,
    DuplicateNameError,
    FileNotInManifestError,
    InvalidNameError,
    NotFoundError,
    SelfReferenceError,
    SetNotFoundError,
    ValidationError,
)
from contextmax.repository import ContextSetRepository, MoveDirection, validate_name
from contextmax.schema import (
    ContextSet,
    EntryPoint,
    FunctionRef,
    PartialFile,
    SystemBehavior,
    WholeFile,
    WorkflowStep,
)

# ---------------------------------------------------------------------------
# Names
# ---------------------------------------------------------------------------


class TestNames:
    @pytest.mark.parametrize("name", ["auth", "Auth2", "api-v1", "user_flow", "context:auth"])
    def test_valid(self, name):
        assert validate_name(name) == name.removeprefix("context:")

    @pytest.mark.parametrize("name", ["", "   ", "1auth", "-x", "has space", "tab\tname", "context:"])
    def test_invalid(self, name):
        with pytest.raises(InvalidNameError):
            validate_name(name)

    def test_invalid_name_is_validation_error(self, repo):
        with pytest.raises(ValidationError):
            repo.create("9lives")
        assert len(repo) == 0


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


class TestLifecycle:
    def test_create_empty(self, repo):
        cs = repo.create("auth", "Login and sessions")
        assert cs == ContextSet("auth", "Login and sessions")
        assert repo.names() == ["auth"]

    def test_create_stores_unprefixed(self, repo):
        repo.create("context:auth")
        assert repo.names() == ["auth"]
        assert "context:auth" in repo
        assert repo.get("context:auth").name == "auth"

    def test_duplicate_rejected(self, repo):
        repo.create("auth")
        with pytest.raises(DuplicateNameError):
            repo.create("context:auth")
        assert len(repo) == 1

    def test_get_missing(self, repo):
        with pytest.raises(SetNotFoundError):
            repo.get("nope")

    def test_delete_strips_dangling_uses(self, repo):
        for name in ("auth", "api", "web"):
            repo.create(name)
        repo.add_use("api", "auth")
        repo.add_use("web", "auth")
        repo.add_use("web", "api")
        repo.delete("auth")
        assert repo.names() == ["api", "web"]
        assert repo.get("api").uses == ()
        assert repo.get("web").uses == ("api",)

    def test_delete_missing(self, repo):
        with pytest.raises(SetNotFoundError):
            repo.delete("ghost")

    def test_delete_keeps_manifest(self, repo):
        repo.create("auth")
        repo.add_file_to_set("auth", "src/login.ts")
        repo.delete("auth")
        assert repo.manifest.find_by_path("src/login.ts") is not None

    def test_rename_rewrites_uses(self, repo):
        repo.create("auth")
        repo.create("api")
        repo.add_use("api", "auth")
        repo.rename("auth", "identity")
        assert repo.names() == ["identity", "api"]
        assert repo.get("api").uses == ("identity",)

    def test_rename_to_existing_rejected(self, repo):
        repo.create("a")
        repo.create("b")
        with pytest.raises(DuplicateNameError):
            repo.rename("a", "b")
        assert repo.names() == ["a", "b"]

    def test_rename_invalid(self, repo):
        repo.create("a")
        with pytest.raises(InvalidNameError):
            repo.rename("a", "b c")

    def test_update_metadata(self, repo):
        repo.create("api")
        fid = repo.manifest.resolve_path("src/server.ts")
        cs = repo.update(
            "api",
            description="HTTP API",
            workflows=[WorkflowStep("request arrives", fid)],
            entry_points=[EntryPoint(fid, "handle", "http", "GET", "/users")],
            system_behavior=SystemBehavior("asynchronous"),
        )
        assert cs.description == "HTTP API"
        assert cs.workflows[0].file_id == fid
        assert cs.entry_points[0].identifier == "/users"
        assert cs.system_behavior == SystemBehavior("asynchronous")

    def test_update_only_given_fields(self, repo):
        repo.create("api", "keep me")
        repo.update("api", system_behavior=SystemBehavior("batch"))
        assert repo.get("api").description == "keep me"

    def test_update_rejects_unknown_file_without_change(self, repo):
        repo.create("api", "before")
        with pytest.raises(FileNotInManifestError):
            repo.update("api", description="after", workflows=[WorkflowStep("x", "file_missing")])
        assert repo.get("api").description == "before"


# ---------------------------------------------------------------------------
# Uses edges
# ---------------------------------------------------------------------------


class TestUses:
    def test_add_use(self, repo):
        repo.create("auth")
        repo.create("api")
        assert repo.add_use("api", "auth") is True
        assert repo.get("api").uses == ("auth",)
        assert repo.dependents("auth") == ["api"]

    def test_add_use_accepts_prefixed_names(self, repo):
        repo.create("auth")
        repo.create("api")
        repo.add_use("context:api", "context:auth")
        assert repo.get("api").uses == ("auth",)

    def test_add_existing_edge_is_noop(self, repo):
        repo.create("auth")
        repo.create("api")
        repo.add_use("api", "auth")
        assert repo.add_use("api", "auth") is False
        assert repo.get("api").uses == ("auth",)

    def test_self_reference(self, repo):
        repo.create("auth")
        with pytest.raises(SelfReferenceError) as excinfo:
            repo.add_use("auth", "auth")
        assert excinfo.value.path == ["auth", "auth"]
        assert isinstance(excinfo.value, CircularDependencyError)

    def test_direct_cycle_rejected(self, repo):
        repo.create("a")
        repo.create("b")
        repo.add_use("a", "b")
        with pytest.raises(CircularDependencyError) as excinfo:
            repo.add_use("b", "a")
        assert excinfo.value.path == ["b", "a", "b"]
        assert repo.get("b").uses == ()

    def test_transitive_cycle_rejected_with_path(self, repo):
        for name in "abcd":
            repo.create(name)
        repo.add_use("a", "b")
        repo.add_use("b", "c")
        repo.add_use("c", "d")
        with pytest.raises(CircularDependencyError) as excinfo:
            repo.add_use("d", "a")
        assert excinfo.value.path == ["d", "a", "b", "c", "d"]
        assert "d -> a -> b -> c -> d" in str(excinfo.value)
        assert repo.find_cycle() is None

    def test_diamond_is_allowed(self, repo):
        for name in ("top", "left", "right", "base"):
            repo.create(name)
        repo.add_use("top", "left")
        repo.add_use("top", "right")
        repo.add_use("left", "base")
        assert repo.add_use("right", "base") is True

    def test_missing_set(self, repo):
        repo.create("a")
        with pytest.raises(SetNotFoundError):
            repo.add_use("a", "ghost")
        with pytest.raises(SetNotFoundError):
            repo.add_use("ghost", "a")

    def test_remove_use(self, repo):
        repo.create("a")
        repo.create("b")
        repo.add_use("a", "b")
        assert repo.remove_use("a", "context:b") is True
        assert repo.remove_use("a", "b") is False
        assert repo.get("a").uses == ()


class TestCycleProperty:
    """Random edge sequences never leave a cycle behind."""

    @pytest.mark.parametrize("seed", range(25))
    def test_random_edges_keep_graph_acyclic(self, seed):
        rng = random.Random(seed)
        repo = ContextSetRepository()
        names = [f"s{i}" for i in range(8)]
        for name in names:
            repo.create(name)

        rejected = 0
        for _ in range(60):
            parent, child = rng.choice(names), rng.choice(names)
            before = {n: repo.get(n).uses for n in names}
            try:
                repo.add_use(parent, child)
            except CircularDependencyError:
                rejected += 1
                # Rejection leaves every set untouched
                assert {n: repo.get(n).uses for n in names} == before
            assert repo.find_cycle() is None

        # 60 random edges over 8 nodes always hit at least one self-loop or back edge
        assert rejected > 0

    def test_find_cycle_on_hand_built_graph(self, repo):
        sets = {
            "a": ContextSet("a", uses=("b",)),
            "b": ContextSet("b", uses=("c",)),
            "c": ContextSet("c", uses=("a",)),
        }
        cycle = repo.find_cycle(sets)
        assert cycle is not None
        assert cycle[0] == cycle[-1]
        assert set(cycle) == {"a", "b", "c"}


# ---------------------------------------------------------------------------
# Files
# ---------------------------------------------------------------------------


class TestFiles:
    def test_add_file_idempotent(self, repo):
        repo.create("auth")
        assert repo.add_file_to_set("auth", "src/login.ts") is True
        assert repo.add_file_to_set("auth", "./src/login.ts") is False
        fid = repo.manifest.find_by_path("src/login.ts")
        assert repo.get("auth").files == (WholeFile(fid),)

    def test_add_file_with_function_refs(self, repo):
        repo.create("auth")
        repo.add_file_to_set("auth", "src/login.ts", function_refs=[FunctionRef("login")])
        (ref,) = repo.get("auth").files
        assert isinstance(ref, PartialFile)
        assert ref.function_refs == (FunctionRef("login"),)

    def test_add_file_to_missing_set_registers_nothing(self, repo):
        with pytest.raises(SetNotFoundError):
            repo.add_file_to_set("ghost", "a.py")
        assert len(repo.manifest) == 0

    def test_add_file_id(self, repo):
        repo.create("auth")
        fid = repo.manifest.resolve_path("a.py")
        assert repo.add_file_id_to_set("auth", fid) is True
        assert repo.add_file_id_to_set("auth", fid) is False
        with pytest.raises(FileNotInManifestError):
            repo.add_file_id_to_set("auth", "file_missing")

    def test_remove_file_keeps_manifest_entry(self, repo):
        repo.create("auth")
        repo.add_file_to_set("auth", "a.py")
        fid = repo.manifest.find_by_path("a.py")
        assert repo.remove_file_from_set("auth", fid) is True
        assert repo.remove_file_from_set("auth", fid) is False
        assert repo.get("auth").files == ()
        assert fid in repo.manifest

    def test_prune_manifest_is_explicit(self, repo):
        repo.create("auth")
        repo.add_file_to_set("auth", "keep.py")
        repo.add_file_to_set("auth", "drop.py")
        drop = repo.manifest.find_by_path("drop.py")
        repo.remove_file_from_set("auth", drop)
        assert repo.prune_manifest() == [drop]
        assert repo.manifest.find_by_path("keep.py") is not None

    def test_prune_keeps_workflow_and_entry_point_refs(self, repo):
        repo.create("api")
        fid = repo.manifest.resolve_path("server.py")
        repo.add_workflow_step("api", "start", fid)
        assert repo.prune_manifest() == []

    def test_file_contexts_index(self, repo):
        repo.create("auth")
        repo.create("api")
        repo.add_file_to_set("auth", "login.ts", function_refs=[FunctionRef("login")])
        repo.add_file_to_set("api", "login.ts")
        fid = repo.manifest.find_by_path("login.ts")
        index = repo.file_contexts_index()
        assert [ref.set_name for ref in index[fid]] == ["auth", "api"]
        assert index[fid][0].function_refs == (FunctionRef("login"),)
        assert index[fid][1].function_refs == ()


class TestFunctionRefNormalization:
    def test_empty_refs_turn_partial_into_whole(self, repo):
        repo.create("auth")
        repo.add_file_to_set("auth", "a.ts", function_refs=[FunctionRef("x")])
        fid = repo.manifest.find_by_path("a.ts")
        repo.set_function_refs("auth", fid, [])
        assert repo.get("auth").files == (WholeFile(fid),)

    def test_refs_turn_whole_into_partial_with_same_id(self, repo):
        repo.create("auth")
        repo.add_file_to_set("auth", "a.ts")
        fid = repo.manifest.find_by_path("a.ts")
        repo.set_function_refs("auth", fid, [FunctionRef("login"), FunctionRef("logout")])
        (ref,) = repo.get("auth").files
        assert isinstance(ref, PartialFile)
        assert ref.file_id == fid
        assert [r.name for r in ref.function_refs] == ["login", "logout"]

    def test_comment_kept_when_refs_change(self, repo):
        repo.create("auth")
        repo.add_file_to_set("auth", "a.ts")
        fid = repo.manifest.find_by_path("a.ts")
        repo.set_function_refs("auth", fid, [FunctionRef("x")], comment="hot path")
        repo.set_function_refs("auth", fid, [FunctionRef("y")])
        (ref,) = repo.get("auth").files
        assert ref.comment == "hot path"

    def test_position_preserved(self, repo):
        repo.create("auth")
        for path in ("a.ts", "b.ts", "c.ts"):
            repo.add_file_to_set("auth", path)
        fid = repo.manifest.find_by_path("b.ts")
        repo.set_function_refs("auth", fid, [FunctionRef("x")])
        assert repo.get("auth").file_ids()[1] == fid

    def test_file_not_in_set(self, repo):
        repo.create("auth")
        fid = repo.manifest.resolve_path("a.ts")
        with pytest.raises(NotFoundError):
            repo.set_function_refs("auth", fid, [FunctionRef("x")])


# ---------------------------------------------------------------------------
# Workflow steps and entry points
# ---------------------------------------------------------------------------


class TestWorkflow:
    def _setup(self, repo):
        repo.create("flow")
        for text in ("one", "two", "three"):
            repo.add_workflow_step("flow", text)

    def _steps(self, repo):
        return [s.description for s in repo.get("flow").workflows]

    def test_order_is_insertion_order(self, repo):
        self._setup(repo)
        assert self._steps(repo) == ["one", "two", "three"]

    def test_insert_at_index(self, repo):
        self._setup(repo)
        repo.add_workflow_step("flow", "zero", index=0)
        assert self._steps(repo) == ["zero", "one", "two", "three"]

    def test_move_up_and_down(self, repo):
        self._setup(repo)
        assert repo.move_workflow_step("flow", 2, MoveDirection.UP) is True
        assert self._steps(repo) == ["one", "three", "two"]
        assert repo.move_workflow_step("flow", 0, "down") is True
        assert self._steps(repo) == ["three", "one", "two"]

    def test_move_past_ends(self, repo):
        self._setup(repo)
        assert repo.move_workflow_step("flow", 0, "up") is False
        assert repo.move_workflow_step("flow", 2, "down") is False
        assert self._steps(repo) == ["one", "two", "three"]

    def test_remove_step(self, repo):
        self._setup(repo)
        repo.remove_workflow_step("flow", 1)
        assert self._steps(repo) == ["one", "three"]

    def test_bad_index(self, repo):
        self._setup(repo)
        with pytest.raises(ValidationError):
            repo.remove_workflow_step("flow", 5)

    def test_step_file_must_exist(self, repo):
        repo.create("flow")
        with pytest.raises(FileNotInManifestError):
            repo.add_workflow_step("flow", "x", "file_missing")
        assert repo.get("flow").workflows == ()


class TestEntryPoints:
    def test_add_and_remove(self, repo):
        repo.create("api")
        fid = repo.manifest.resolve_path("routes.py")
        ep = EntryPoint(fid, "create_user", "http", "POST", "/users")
        assert repo.add_entry_point("api", ep) is True
        assert repo.add_entry_point("api", ep) is False
        repo.remove_entry_point("api", 0)
        assert repo.get("api").entry_points == ()

    def test_entry_point_file_must_exist(self, repo):
        repo.create("api")
        with pytest.raises(FileNotInManifestError):
            repo.add_entry_point("api", EntryPoint("file_missing", "x", "cli"))


# ---------------------------------------------------------------------------
# Bulk install
# ---------------------------------------------------------------------------


class TestInstall:
    def test_install_valid_batch(self, repo):
        fid = repo.manifest.resolve_path("a.py")
        repo.install([ContextSet("a", files=(WholeFile(fid),)), ContextSet("b", uses=("a",))])
        assert repo.names() == ["a", "b"]

    def test_install_cycle_rejected_atomically(self, repo):
        repo.create("existing")
        with pytest.raises(CircularDependencyError):
            repo.install([ContextSet("a", uses=("b",)), ContextSet("b", uses=("a",))])
        assert repo.names() == ["existing"]

    def test_install_dangling_use(self, repo):
        with pytest.raises(SetNotFoundError):
            repo.install([ContextSet("a", uses=("ghost",))])
        assert len(repo) == 0

    def test_install_unknown_file(self, repo):
        with pytest.raises(FileNotInManifestError):
            repo.install([ContextSet("a", files=(WholeFile("file_missing"),))])

    def test_install_self_use(self, repo):
        with pytest.raises(SelfReferenceError):
            repo.install([ContextSet("a", uses=("a",))])
