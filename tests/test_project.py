"""End-to-end tests for project operations (install, add, remove, update, pin)."""

import json
import os
import zipfile

import pytest
import yaml

from lbuild.modules import lockfile
from lbuild.modules.lockfile import IntegrityMismatch, NeedsFullResolve, Unchanged
from lbuild.modules.project import Project, ProjectError
from lbuild.modules.runtime import LoaderError
from lbuild.modules.statelock import Busy
from lbuild.modules.tree import META_FILE


def make_project(ws):
    return Project(str(ws.project), index=str(ws.index), jobs=2, timeout=60)


class TestInstall:
    """Test the resolve, lock and build pipeline."""

    def test_highest_satisfying_version_is_locked_and_built(self, workspace):
        project = make_project(workspace)
        assert isinstance(project.status(), NeedsFullResolve)

        report = project.install()
        assert report.ok
        assert report.exit_code == 0
        assert report.resolution == "full"
        assert report.build.built() == ["A@1.5.0"]

        graph = lockfile.read_path(project.lock_path)
        assert list(graph.nodes) == ["A@1.5.0"]
        assert graph["A@1.5.0"].integrity.startswith("sha256-")
        entry = project.tree.entry_path("A@1.5.0")
        assert os.path.isfile(os.path.join(entry, "src", "a.lua"))
        assert project.which("A") == entry
        assert isinstance(project.status(), Unchanged)

    def test_second_install_is_cached(self, workspace):
        project = make_project(workspace)
        project.install()
        report = project.install()
        assert report.resolution == "unchanged"
        assert report.build.cached() == ["A@1.5.0"]
        assert report.build.built() == []

    def test_lock_without_building(self, workspace):
        project = make_project(workspace)
        report = project.lock()
        assert report.resolution == "full"
        assert os.path.isfile(project.lock_path)
        assert project.tree.installed_ids() == []

    def test_state_lock_is_exclusive(self, workspace):
        project = make_project(workspace)
        with project.state_lock():
            with pytest.raises(Busy):
                project.install()

    def test_which_before_install(self, workspace):
        with pytest.raises(LoaderError):
            make_project(workspace).which("A")

    def test_tampered_source_fails_closed(self, workspace):
        project = make_project(workspace)
        project.install()
        (workspace.sources / "A-1.5.0" / "a.lua").write_text("return 'tampered'\n")

        report = project.install(force=True)
        assert not report.ok
        assert report.exit_code == 1
        assert isinstance(report.build["A@1.5.0"].error, IntegrityMismatch)
        assert report.lines()[0].startswith("failed  A@1.5.0: IntegrityMismatch")


class TestEditing:
    """Test add and remove of direct dependencies."""

    def test_add_is_a_partial_resolve(self, workspace):
        project = make_project(workspace)
        project.install()
        report = project.add("B >= 1.0")
        assert report.resolution == "partial"
        assert report.build.cached() == ["A@1.5.0"]
        assert report.build.built() == ["B@1.0.0"]
        assert report.graph["B@1.0.0"].dependencies == ("A@1.5.0",)

        with open(project.manifest_path, encoding="utf-8") as f:
            assert yaml.safe_load(f)["dependencies"]["B"] == ">=1.0"

    def test_remove_syncs_the_tree(self, workspace):
        project = make_project(workspace)
        project.add("B")
        report = project.remove("B")
        assert report.sync.removed == ["B@1.0.0"]
        assert list(report.graph.nodes) == ["A@1.5.0"]
        assert project.tree.installed_ids() == ["A@1.5.0"]

    def test_remove_unknown(self, workspace):
        with pytest.raises(ProjectError):
            make_project(workspace).remove("Z")


class TestUpdate:
    """Test update and pinning against a growing index."""

    @pytest.fixture
    def project(self, workspace):
        workspace.write_index({"A": ["1.0.0"]})
        workspace.write_manifest(dependencies={"A": ">=1.0"})
        project = make_project(workspace)
        project.install()
        workspace.write_index({"A": ["1.0.0", "1.5.0"]})
        return project

    def test_install_keeps_locked_version(self, project):
        report = project.install()
        assert report.resolution == "unchanged"
        assert list(report.graph.nodes) == ["A@1.0.0"]

    def test_update_moves_to_newest(self, project):
        report = project.update(["A"])
        assert report.resolution == "update"
        assert report.build.built() == ["A@1.5.0"]

    def test_pinned_package_is_not_updated(self, project):
        project.pin("A")
        assert project.locked_graph()["A@1.0.0"].pinned
        assert list(project.update().graph.nodes) == ["A@1.0.0"]

        project.unpin("A")
        assert list(project.update().graph.nodes) == ["A@1.5.0"]

    def test_pin_without_lockfile(self, workspace):
        with pytest.raises(ProjectError):
            make_project(workspace).pin("A")


class TestLocalPackages:
    """Test dependencies declared with path:."""

    @pytest.fixture
    def util(self, workspace):
        path = workspace.root / "util"
        path.mkdir()
        (path / "lbuild.yaml").write_text(yaml.safe_dump({
            "package": "util", "version": "0.1.0", "dependencies": {"A": "*"},
        }))
        (path / "util.lua").write_text("return 'util'\n")
        workspace.write_manifest(dependencies={"A": ">=1.0,<2.0", "util": {"path": "../util"}})
        return path

    def test_local_package_is_built_with_its_dependencies(self, workspace, util):
        project = make_project(workspace)
        report = project.install()
        assert report.ok
        util_id = [n.id for n in report.graph.by_name("util")][0]
        assert report.graph[util_id].dependencies == ("A@1.5.0",)
        assert project.which("A", requirer=util_id) == project.tree.entry_path("A@1.5.0")
        assert os.path.isfile(os.path.join(project.tree.entry_path(util_id), "src", "util.lua"))

    def test_local_changes_are_rebuilt(self, workspace, util):
        project = make_project(workspace)
        project.install()
        (util / "util.lua").write_text("return 'util v2'\n")

        report = project.install()
        util_id = [n.id for n in report.graph.by_name("util")][0]
        assert report.build.built() == [util_id]
        assert report.build.cached() == ["A@1.5.0"]
        locked = project.locked_graph()[util_id]
        assert locked.integrity == lockfile.compute_integrity(str(util))


class TestPack:
    """Test packing an installed entry into a .rock archive."""

    def test_pure_lua_package_is_arch_independent(self, workspace, tmp_path):
        project = make_project(workspace)
        project.install()
        out = project.pack("A", dest=str(tmp_path / "dist"))
        assert os.path.basename(out) == "A-1.5.0.all.rock"
        with zipfile.ZipFile(out) as zf:
            names = zf.namelist()
            manifest = json.loads(zf.read("rock_manifest.json"))
        assert "src/a.lua" in names
        assert META_FILE in names
        assert list(manifest) == ["src/a.lua"]

    def test_native_library_gets_platform_suffix(self, workspace, tmp_path):
        project = make_project(workspace)
        project.install()
        lib = os.path.join(project.tree.entry_path("A@1.5.0"), "lib")
        os.makedirs(lib, exist_ok=True)
        with open(os.path.join(lib, "a.so"), "wb") as f:
            f.write(b"\x7fELF")
        out = project.pack("A", dest=str(tmp_path))
        assert not out.endswith(".all.rock")
        assert os.path.basename(out).startswith("A-1.5.0.")
        with zipfile.ZipFile(out) as zf:
            assert "lib/a.so" in zf.namelist()

    def test_pack_requires_installed_entry(self, workspace):
        project = make_project(workspace)
        with pytest.raises(ProjectError):
            project.pack("A")
        project.lock()
        with pytest.raises(ProjectError):
            project.pack("A")
        with pytest.raises(ProjectError):
            project.pack("Z")
