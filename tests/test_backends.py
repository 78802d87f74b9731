"""Tests for the build backends and the backend registry."""

import os

import pytest

from lbuild.modules.backends import (
    BackendError, BackendRegistry, BuildContext, BuildToolFailure, CustomScriptBackend,
    DefaultBackend, ExternalCompatBackend, ParserGrammarBackend, UnknownBackend, default_registry,
)
from lbuild.modules.graph import ResolvedPackage
from lbuild.modules.meta import (
    CustomScriptBuild, DefaultBuild, ExternalCompatBuild, ParserGrammarBuild,
)
from lbuild.modules.sandbox import Sandbox
from lbuild.modules.tree import InstallTree
from lbuild.modules.version import parse_version


def make_ctx(tmp_path, build, files=None, deps=None):
    src = tmp_path / "source"
    src.mkdir()
    for rel, content in (files or {}).items():
        path = src / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
    node = ResolvedPackage(name="pkg", version=parse_version("1.0.0"), build=build)
    staging = InstallTree(str(tmp_path / "tree")).new_staging()
    sandbox = Sandbox(str(tmp_path / "work"), logs_dir=str(tmp_path / "logs"))
    return BuildContext(node=node, source_dir=str(src), staging=staging, sandbox=sandbox, deps=deps or {})


def run_phases(backend, ctx):
    for phase in ("prepare", "build", "install"):
        getattr(backend, phase)(ctx)


class TestBuildContext:
    def test_env_layout_and_dependency_paths(self, tmp_path):
        ctx = make_ctx(tmp_path, DefaultBuild(), deps={"dep": "/tree/dep@1.0.0"})
        env = ctx.env()
        assert env["PREFIX"] == ctx.staging
        assert env["LUADIR"] == os.path.join(ctx.staging, "src")
        assert env["LIBDIR"] == os.path.join(ctx.staging, "lib")
        assert "/tree/dep@1.0.0/src/?.lua" in env["LUA_PATH"].split(";")
        assert "/tree/dep@1.0.0/lib/?.so" in env["LUA_CPATH"].split(";")
        assert env["LUA_PATH"].endswith(";;")


class TestDefaultBackend:
    def test_declared_modules_bin_and_conf(self, tmp_path):
        ctx = make_ctx(tmp_path, DefaultBuild(
            modules={"foo": "lua/foo.lua", "foo.util": "lua/foo/util.lua"},
            bin={"foo-cli": "bin/cli.lua"},
            conf={"foo.conf": "foo.conf"},
            copy_directories=["docs"],
        ), files={
            "lua/foo.lua": "return {}\n",
            "lua/foo/util.lua": "return {}\n",
            "bin/cli.lua": "print('hi')\n",
            "foo.conf": "x=1\n",
            "docs/index.md": "# foo\n",
        })
        run_phases(DefaultBackend(), ctx)
        assert os.path.isfile(ctx.dest("src", "foo.lua"))
        assert os.path.isfile(ctx.dest("src", "foo", "util.lua"))
        assert os.access(ctx.dest("bin", "foo-cli"), os.X_OK)
        assert os.path.isfile(ctx.dest("conf", "foo.conf"))
        assert os.path.isfile(ctx.dest("doc", "index.md"))

    def test_autodetects_src_dir(self, tmp_path):
        ctx = make_ctx(tmp_path, DefaultBuild(), files={"src/a.lua": "", "src/a/b.lua": "", "README": ""})
        run_phases(DefaultBackend(), ctx)
        assert os.path.isfile(ctx.dest("src", "a.lua"))
        assert os.path.isfile(ctx.dest("src", "a", "b.lua"))

    def test_missing_file_fails(self, tmp_path):
        ctx = make_ctx(tmp_path, DefaultBuild(modules={"foo": "foo.lua"}))
        with pytest.raises(BuildToolFailure) as exc:
            run_phases(DefaultBackend(), ctx)
        assert exc.value.backend == "default"

    def test_non_lua_module_fails(self, tmp_path):
        ctx = make_ctx(tmp_path, DefaultBuild(modules={"foo": "foo.c"}), files={"foo.c": ""})
        with pytest.raises(BuildToolFailure):
            run_phases(DefaultBackend(), ctx)


class TestCustomScriptBackend:
    def test_steps_and_install_map(self, tmp_path):
        ctx = make_ctx(tmp_path, CustomScriptBuild(
            steps=["mkdir -p out", 'printf "return %s\\n" "$GREETING" > out/gen.lua'],
            install={"lua": {"pkg.gen": "out/gen.lua"}},
            env={"GREETING": "42"},
        ))
        run_phases(CustomScriptBackend(), ctx)
        with open(ctx.dest("src", "pkg", "gen.lua"), encoding="utf-8") as f:
            assert f.read() == "return 42\n"

    def test_failing_step(self, tmp_path):
        ctx = make_ctx(tmp_path, CustomScriptBuild(steps=["echo bad >&2; exit 7"]))
        with pytest.raises(BuildToolFailure) as exc:
            run_phases(CustomScriptBackend(), ctx)
        assert exc.value.exit_status == 7
        assert "bad" in exc.value.diagnostic

    def test_unknown_install_section(self, tmp_path):
        ctx = make_ctx(tmp_path, CustomScriptBuild(install={"share": {"x": "x"}}))
        with pytest.raises(BuildToolFailure):
            CustomScriptBackend().prepare(ctx)


class TestExternalCompatBackend:
    def test_command_template(self, tmp_path):
        ctx = make_ctx(tmp_path, ExternalCompatBuild(
            command=["sh", "-c", "mkdir -p {prefix}/src && cp {source}/ext.lua {prefix}/src/ext.lua"],
        ), files={"ext.lua": "return 'ext'\n"})
        run_phases(ExternalCompatBackend(), ctx)
        assert os.path.isfile(ctx.dest("src", "ext.lua"))

    def test_missing_tool(self, tmp_path):
        ctx = make_ctx(tmp_path, ExternalCompatBuild(command=["lbuild-no-such-tool-xyz"]))
        with pytest.raises(BuildToolFailure) as exc:
            run_phases(ExternalCompatBackend(), ctx)
        assert exc.value.exit_status == 127


class TestParserGrammarBackend:
    def test_requires_lang(self, tmp_path):
        ctx = make_ctx(tmp_path, ParserGrammarBuild(parser=False))
        with pytest.raises(BuildToolFailure):
            ParserGrammarBackend().prepare(ctx)

    def test_queries_only(self, tmp_path):
        ctx = make_ctx(tmp_path, ParserGrammarBuild(
            lang="toy", parser=False, queries={"highlights.scm": "(name) @variable\n"},
        ), files={"queries/locals.scm": "(scope) @scope\n"})
        run_phases(ParserGrammarBackend(), ctx)
        qdir = ctx.dest("etc", "queries", "toy")
        assert sorted(os.listdir(qdir)) == ["highlights.scm", "locals.scm"]
        assert not os.path.exists(ctx.dest("src", "toy_parser.lua"))


class TestRegistry:
    def test_default_kinds(self):
        reg = default_registry()
        assert reg.kinds() == ["default", "external", "native", "parser", "script"]
        assert "script" in reg

    def test_unknown_kind(self):
        with pytest.raises(UnknownBackend):
            BackendRegistry().get("default")

    def test_incomplete_backend_rejected(self):
        class HalfBackend:
            def prepare(self, ctx):
                pass

        with pytest.raises(BackendError):
            BackendRegistry().register("half", HalfBackend())
