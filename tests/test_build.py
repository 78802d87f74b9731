"""Tests for the parallel build orchestrator."""

import os
import threading

import pytest

from lbuild.modules.backends import BackendRegistry, BuildToolFailure, CustomScriptBackend, UnknownBackend
from lbuild.modules.build import (
    BUILT, CACHED, CANCELLED_CAUSE, FAILED, SKIPPED, BuildOrchestrator,
)
from lbuild.modules.graph import DependencyGraph, ResolvedPackage
from lbuild.modules.lockfile import IntegrityMismatch
from lbuild.modules.meta import CustomScriptBuild, DefaultBuild, NativeModuleBuild, SourceLocation
from lbuild.modules.sandbox import BuildCancelled, BuildTimeout, CancelToken
from lbuild.modules.toolchain import UnresolvedExternalDependency
from lbuild.modules.tree import InstallTree
from lbuild.modules.version import parse_version


def local_source(tmp_path, name, files=None):
    d = tmp_path / "sources" / name
    d.mkdir(parents=True)
    for rel, content in (files or {f"{name}.lua": f"return '{name}'\n"}).items():
        (d / rel).write_text(content)
    return SourceLocation(kind="local", path=str(d))


def make_node(tmp_path, name, deps=(), build=None, source=None, integrity=None):
    return ResolvedPackage(
        name=name,
        version=parse_version("1.0.0"),
        source=source or local_source(tmp_path, name),
        build=build or DefaultBuild(),
        integrity=integrity,
        dependencies=tuple(d.id for d in deps),
    )


@pytest.fixture
def tree(tmp_path):
    return InstallTree(str(tmp_path / "lua_modules"))


@pytest.fixture
def orchestrator(tree, tmp_path):
    return BuildOrchestrator(tree, jobs=2, timeout=30, logs_dir=str(tmp_path / "logs"))


class TestBuild:
    """Test successful builds, dependency environment and caching."""

    def test_builds_in_dependency_order(self, tmp_path, tree, orchestrator):
        c = make_node(tmp_path, "c")
        b = make_node(tmp_path, "b", deps=[c])
        a = make_node(tmp_path, "a", deps=[b])
        report = orchestrator.build(DependencyGraph([a, b, c]))
        assert report.ok
        assert report.built() == sorted([a.id, b.id, c.id])
        for node in (a, b, c):
            assert os.path.isfile(os.path.join(tree.entry_path(node.id), "src", f"{node.name}.lua"))
            assert report[node.id].integrity.startswith("sha256-")
        assert not os.path.exists(tree.staging_root)

    def test_dependency_paths_visible_to_build(self, tmp_path, tree, orchestrator):
        c = make_node(tmp_path, "c")
        b = make_node(tmp_path, "b", deps=[c], build=CustomScriptBuild(
            steps=['printf "return [[%s]]\\n" "$LUA_PATH" > gen.lua'],
            install={"lua": {"b.gen": "gen.lua"}},
        ))
        report = orchestrator.build(DependencyGraph([b, c]))
        assert report.ok
        with open(os.path.join(tree.entry_path(b.id), "src", "b", "gen.lua"), encoding="utf-8") as f:
            assert tree.entry_path(c.id) in f.read()

    def test_cache_hit_and_force(self, tmp_path, tree, orchestrator):
        a = make_node(tmp_path, "a")
        graph = DependencyGraph([a])
        assert orchestrator.build(graph)[a.id].status == BUILT
        assert orchestrator.build(graph)[a.id].status == CACHED

        forced = BuildOrchestrator(tree, jobs=1, timeout=30, force=True)
        assert forced.build(graph)[a.id].status == BUILT

    def test_progress_events(self, tmp_path, orchestrator):
        events = []
        orchestrator.add_progress_cb(lambda event, data: events.append(event))
        orchestrator.build(DependencyGraph([make_node(tmp_path, "a")]))
        assert events[0] == "build.queue"
        assert "build.start" in events
        assert "build.done" in events
        assert events[-1] == "build.progress"

    def test_custom_backend_registry(self, tmp_path, tree):
        calls = []

        class RecordingBackend:
            def prepare(self, ctx):
                calls.append("prepare")

            def build(self, ctx):
                calls.append("build")

            def install(self, ctx):
                calls.append("install")
                with open(ctx.dest("src", "rec.lua"), "w", encoding="utf-8") as f:
                    f.write("return 1\n")

        registry = BackendRegistry()
        registry.register("default", RecordingBackend())
        a = make_node(tmp_path, "a")
        report = BuildOrchestrator(tree, registry=registry, jobs=1).build(DependencyGraph([a]))
        assert report.ok
        assert calls == ["prepare", "build", "install"]
        assert os.path.isfile(os.path.join(tree.entry_path(a.id), "src", "rec.lua"))

    def test_build_dependency_wins_in_build_environment(self, tmp_path, tree):
        seen = {}

        class RecordingBackend:
            def prepare(self, ctx):
                seen[ctx.node.id] = dict(ctx.deps)

            def build(self, ctx):
                pass

            def install(self, ctx):
                with open(ctx.dest("src", f"{ctx.node.name}.lua"), "w", encoding="utf-8") as f:
                    f.write("return 1\n")

        registry = BackendRegistry()
        registry.register("default", RecordingBackend())
        p1 = make_node(tmp_path, "P")
        p2 = ResolvedPackage(name="P", version=parse_version("2.0.0"),
                             source=local_source(tmp_path, "P2"), build=DefaultBuild())
        x = ResolvedPackage(name="X", version=parse_version("1.0.0"), source=local_source(tmp_path, "X"),
                            build=DefaultBuild(), dependencies=(p2.id,), build_dependencies=(p1.id,))
        report = BuildOrchestrator(tree, registry=registry, jobs=2).build(DependencyGraph([p1, p2, x]))
        assert report.ok
        assert seen[x.id] == {"P": tree.entry_path(p1.id)}


class TestFailures:
    """Test failure isolation and skip propagation."""

    def test_partial_failure(self, tmp_path, tree, orchestrator):
        c = make_node(tmp_path, "c", build=CustomScriptBuild(steps=["echo broken >&2; exit 3"]))
        b = make_node(tmp_path, "b", deps=[c])
        a = make_node(tmp_path, "a", deps=[b])
        d = make_node(tmp_path, "d")
        report = orchestrator.build(DependencyGraph([a, b, c, d]))

        assert not report.ok
        failed = report[c.id]
        assert failed.status == FAILED
        assert isinstance(failed.error, BuildToolFailure)
        assert failed.error.backend == "script"
        assert failed.error.exit_status == 3
        assert "broken" in failed.error.diagnostic

        assert report[b.id].status == SKIPPED
        assert report[b.id].cause == c.id
        assert report[a.id].status == SKIPPED
        assert report[a.id].cause == c.id
        assert report[d.id].status == BUILT

        assert tree.installed_ids() == [d.id]
        assert os.path.isfile(os.path.join(str(tmp_path / "logs"), f"{c.id}.log"))
        assert not os.path.exists(tree.staging_root)

    def test_corrupt_installed_meta_does_not_abort_build(self, tmp_path, tree, orchestrator):
        c = make_node(tmp_path, "c")
        d = make_node(tmp_path, "d")
        os.makedirs(tree.entry_path(c.id), exist_ok=True)
        with open(tree.meta_path(c.id), "wb") as f:
            f.write(b'{"integrity": "\xff"}')
        report = orchestrator.build(DependencyGraph([c, d]))
        assert report[d.id].status == BUILT
        assert report[c.id].status == BUILT
        assert tree.read_meta(c.id)["integrity"].startswith("sha256-")

    def test_unknown_backend(self, tmp_path, tree):
        registry = BackendRegistry()
        registry.register("script", CustomScriptBackend())
        a = make_node(tmp_path, "a")
        report = BuildOrchestrator(tree, registry=registry, jobs=1).build(DependencyGraph([a]))
        assert isinstance(report[a.id].error, UnknownBackend)

    def test_integrity_mismatch_is_fatal_for_node(self, tmp_path, tree, orchestrator):
        src = local_source(tmp_path, "a")
        a = make_node(tmp_path, "a", source=SourceLocation(kind="index", url=src.path),
                      integrity="sha256-0000")
        b = make_node(tmp_path, "b", deps=[a])
        report = orchestrator.build(DependencyGraph([a, b]))
        assert isinstance(report[a.id].error, IntegrityMismatch)
        assert report[b.id].cause == a.id
        assert tree.installed_ids() == []

    def test_unresolved_external_dependency_fails_before_compiling(self, tmp_path, orchestrator):
        a = make_node(tmp_path, "a", build=NativeModuleBuild(
            modules={"a.core": ["a.c"]},
            external_dependencies={"lbuild-missing-xyz": {"header": "lbuild_missing_xyz.h"}},
        ))
        report = orchestrator.build(DependencyGraph([a]))
        assert isinstance(report[a.id].error, UnresolvedExternalDependency)
        assert report[a.id].error.name == "lbuild-missing-xyz"

    def test_timeout(self, tmp_path, tree):
        a = make_node(tmp_path, "a", build=CustomScriptBuild(steps=["exec sleep 5"]))
        report = BuildOrchestrator(tree, jobs=1, timeout=0.5).build(DependencyGraph([a]))
        assert report[a.id].status == FAILED
        assert isinstance(report[a.id].error, BuildTimeout)


class TestCancel:
    """Test cooperative cancellation."""

    def test_cancel_before_start_skips_everything(self, tmp_path, orchestrator):
        cancel = CancelToken()
        cancel.cancel()
        a = make_node(tmp_path, "a")
        b = make_node(tmp_path, "b", deps=[a])
        report = orchestrator.build(DependencyGraph([a, b]), cancel)
        assert report.cancelled
        assert report.skipped() == sorted([a.id, b.id])
        assert report[a.id].cause == CANCELLED_CAUSE

    def test_wait_policy_finishes_running_builds(self, tmp_path, tree):
        cancel = CancelToken("wait")
        c = make_node(tmp_path, "c")
        b = make_node(tmp_path, "b", deps=[c])
        a = make_node(tmp_path, "a", deps=[b])
        orch = BuildOrchestrator(tree, jobs=1, timeout=30)
        orch.add_progress_cb(lambda event, data: cancel.cancel() if event == "build.done" else None)
        report = orch.build(DependencyGraph([a, b, c]), cancel)
        assert report[c.id].status == BUILT
        assert report[b.id].cause == CANCELLED_CAUSE
        assert report[a.id].cause == CANCELLED_CAUSE
        assert tree.installed_ids() == [c.id]

    def test_terminate_policy_stops_running_build(self, tmp_path, tree):
        cancel = CancelToken("wait")
        a = make_node(tmp_path, "a", build=CustomScriptBuild(steps=["exec sleep 5"]))
        timer = threading.Timer(0.3, cancel.cancel, kwargs={"policy": "terminate"})
        timer.start()
        try:
            report = BuildOrchestrator(tree, jobs=1, timeout=30).build(DependencyGraph([a]), cancel)
        finally:
            timer.cancel()
        assert report.cancelled
        assert isinstance(report[a.id].error, BuildCancelled)
        assert tree.installed_ids() == []
