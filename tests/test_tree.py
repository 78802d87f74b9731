"""Tests for the install tree, tree sync and the per-requirer loader table."""

import os

import pytest

from lbuild.modules import runtime, sync
from lbuild.modules.graph import ROOT, DependencyGraph, ResolvedPackage, RootRequirement
from lbuild.modules.runtime import LoaderError
from lbuild.modules.tree import META_FILE, InstallTree, TreeError
from lbuild.modules.version import parse_version


def pkg(name, version, deps=(), build_deps=()):
    return ResolvedPackage(name=name, version=parse_version(version), dependencies=tuple(deps),
                           build_dependencies=tuple(build_deps))


def install(tree, node, integrity="sha256-abc", files=("src/mod.lua",)):
    staging = tree.new_staging()
    for rel in files:
        path = os.path.join(staging, rel)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            f.write("return true\n")
    return tree.publish(staging, node, integrity)


@pytest.fixture
def tree(tmp_path):
    return InstallTree(str(tmp_path / "lua_modules"))


class TestInstallTree:
    """Test staging, publication and queries."""

    def test_new_staging_has_layout(self, tree):
        staging = tree.new_staging()
        assert staging.startswith(tree.staging_root)
        for sub in ("src", "lib", "bin", "etc", "conf", "doc"):
            assert os.path.isdir(os.path.join(staging, sub))
        tree.discard(staging)
        assert not os.path.exists(staging)

    def test_publish_moves_staging_and_writes_meta(self, tree):
        node = pkg("a", "1.0.0")
        meta = install(tree, node)
        entry = tree.entry_path("a@1.0.0")
        assert os.path.isfile(os.path.join(entry, "src", "mod.lua"))
        assert os.path.isfile(os.path.join(entry, META_FILE))
        assert meta["files"] == ["src/mod.lua"]
        assert tree.read_meta("a@1.0.0")["integrity"] == "sha256-abc"
        assert os.listdir(tree.staging_root) == []

    def test_publish_replaces_existing_entry(self, tree):
        node = pkg("a", "1.0.0")
        install(tree, node, files=("src/old.lua",))
        install(tree, node, integrity="sha256-new", files=("src/new.lua",))
        entry = tree.entry_path("a@1.0.0")
        assert not os.path.exists(os.path.join(entry, "src", "old.lua"))
        assert tree.read_meta("a@1.0.0")["integrity"] == "sha256-new"

    def test_is_cached(self, tree):
        install(tree, pkg("a", "1.0.0"))
        assert tree.is_cached("a@1.0.0", None)
        assert tree.is_cached("a@1.0.0", "sha256-abc")
        assert not tree.is_cached("a@1.0.0", "sha256-other")
        assert not tree.is_cached("b@1.0.0", None)

    def test_listing_and_search(self, tree):
        install(tree, pkg("alpha", "1.0.0"))
        install(tree, pkg("beta", "2.0.0"))
        tree.new_staging()
        assert tree.installed_ids() == ["alpha@1.0.0", "beta@2.0.0"]
        assert [m["node"] for m in tree.search_installed("alp")] == ["alpha@1.0.0"]

    def test_remove_and_verify(self, tree):
        install(tree, pkg("a", "1.0.0"))
        assert tree.verify("a@1.0.0")
        os.remove(os.path.join(tree.entry_path("a@1.0.0"), "src", "mod.lua"))
        assert not tree.verify("a@1.0.0")
        assert tree.remove("a@1.0.0")
        assert not tree.remove("a@1.0.0")
        with pytest.raises(TreeError):
            tree.verify("a@1.0.0")

    def test_clean_staging(self, tree):
        tree.new_staging()
        tree.clean_staging()
        assert not os.path.exists(tree.staging_root)


class TestSync:
    """Test aligning the tree with the lockfile."""

    def test_removes_unlocked_entries(self, tree):
        install(tree, pkg("a", "1.0.0"))
        install(tree, pkg("stale", "0.1.0"))
        graph = DependencyGraph([pkg("a", "1.0.0"), pkg("b", "1.0.0")])

        preview = sync.sync(tree, graph, dry_run=True)
        assert preview.removed == ["stale@0.1.0"]
        assert preview.added == ["b@1.0.0"]
        assert tree.is_installed("stale@0.1.0")

        report = sync.sync(tree, graph)
        assert report.removed == ["stale@0.1.0"]
        assert not tree.is_installed("stale@0.1.0")
        assert not report.clean

    def test_clean_tree(self, tree):
        install(tree, pkg("a", "1.0.0"))
        assert sync.sync(tree, DependencyGraph([pkg("a", "1.0.0")])).clean

    def test_missing_tree_reports_everything_missing(self, tree):
        report = sync.sync(tree, DependencyGraph([pkg("a", "1.0.0")]))
        assert report.added == ["a@1.0.0"]
        assert report.removed == []


class TestLoaderTable:
    """Test per-requirer module resolution."""

    @pytest.fixture
    def graph(self):
        nodes = [pkg("p", "1.5.0"), pkg("p", "2.1.0"), pkg("a", "1.0.0", deps=["p@2.1.0"])]
        roots = [
            RootRequirement(kind="regular", name="p", constraint="<2.0", node="p@1.5.0"),
            RootRequirement(kind="regular", name="a", constraint="*", node="a@1.0.0"),
        ]
        return DependencyGraph(nodes, roots)

    def test_coexisting_versions(self, graph, tree):
        table = runtime.loader_table(graph, tree)
        assert runtime.lookup(table, ROOT, "p") == tree.entry_path("p@1.5.0")
        assert runtime.lookup(table, "a@1.0.0", "p") == tree.entry_path("p@2.1.0")
        assert runtime.lookup(table, "a@1.0.0", "q") is None
        assert runtime.lookup(table, None, "a") == tree.entry_path("a@1.0.0")

    def test_write_and_read(self, graph, tree):
        table = runtime.loader_table(graph, tree)
        runtime.write_loader_table(tree.loader_path, table)
        assert runtime.read_loader_table(tree.loader_path) == table

    def test_read_missing_table(self, tree):
        with pytest.raises(LoaderError):
            runtime.read_loader_table(tree.loader_path)

    def test_dangling_edge(self, tree):
        graph = DependencyGraph([pkg("a", "1.0.0", deps=["gone@1.0.0"])])
        with pytest.raises(LoaderError):
            runtime.loader_table(graph, tree)

    def test_search_paths(self, tree):
        paths = runtime.module_search_paths(tree.entry_path("a@1.0.0"))
        assert paths["path"].split(";")[0].endswith(os.path.join("a@1.0.0", "src", "?.lua"))
        assert paths["cpath"].endswith(os.path.join("lib", "?.so"))

    def test_build_roots_do_not_shadow_regular_roots(self, tree):
        graph = DependencyGraph(
            [pkg("T", "1.0.0"), pkg("T", "2.0.0")],
            [RootRequirement(kind="regular", name="T", constraint="<2.0", node="T@1.0.0"),
             RootRequirement(kind="build", name="T", constraint=">=2.0", node="T@2.0.0")],
        )
        table = runtime.loader_table(graph, tree)
        assert runtime.lookup(table, ROOT, "T") == tree.entry_path("T@1.0.0")
        assert runtime.lookup(table, runtime.root_key("build"), "T") == tree.entry_path("T@2.0.0")

    def test_node_entries_use_runtime_dependencies(self, tree):
        graph = DependencyGraph([
            pkg("P", "1.0.0"), pkg("P", "2.0.0"),
            pkg("X", "1.0.0", deps=["P@2.0.0"], build_deps=["P@1.0.0"]),
        ])
        table = runtime.loader_table(graph, tree)
        assert runtime.lookup(table, "X@1.0.0", "P") == tree.entry_path("P@2.0.0")

    def test_build_dependency_only_is_not_visible_at_runtime(self, tree):
        graph = DependencyGraph([pkg("P", "1.0.0"), pkg("X", "1.0.0", build_deps=["P@1.0.0"])])
        table = runtime.loader_table(graph, tree)
        assert runtime.lookup(table, "X@1.0.0", "P") is None

    def test_loader_file_name(self, tree):
        assert tree.loader_path == os.path.join(tree.root, "loader.json")
