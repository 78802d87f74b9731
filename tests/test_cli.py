"""Tests for the lbuild command line."""

import json

import pytest

from lbuild import cli
from lbuild.modules import config


def run(*argv):
    with pytest.raises(SystemExit) as exc:
        cli.main(list(argv))
    return exc.value.code


def project_args(ws):
    return ["-C", str(ws.project), "--index", str(ws.index)]


class TestCli:
    def test_no_command_prints_help(self, capsys):
        assert run() == 1
        assert "usage" in capsys.readouterr().out

    def test_install(self, workspace, capsys):
        assert run(*project_args(workspace), "install") == 0
        assert "[OK] install" in capsys.readouterr().out

    def test_install_json(self, workspace, capsys):
        assert run("--json", *project_args(workspace), "install") == 0
        data = json.loads(capsys.readouterr().out)
        assert data["action"] == "install"
        assert data["resolution"] == "full"
        assert data["built"] == ["A@1.5.0"]
        assert data["problems"] == []

    def test_failed_build_exits_one(self, workspace, capsys):
        run(*project_args(workspace), "install")
        (workspace.sources / "A-1.5.0" / "a.lua").write_text("return 'tampered'\n")
        assert run("--json", *project_args(workspace), "install", "--force") == 1
        data = json.loads(capsys.readouterr().out)
        assert data["failed"] == ["A@1.5.0"]

    def test_expected_errors_exit_two(self, workspace, capsys):
        assert run(*project_args(workspace), "which", "A") == 2
        assert "[ERRO]" in capsys.readouterr().err

    def test_unsatisfiable_manifest(self, workspace):
        workspace.write_manifest(dependencies={"A": ">=9.0"})
        assert run(*project_args(workspace), "install") == 2

    def test_lock_check(self, workspace, capsys):
        assert run(*project_args(workspace), "lock", "--check") == 1
        run(*project_args(workspace), "install")
        capsys.readouterr()
        assert run("--json", *project_args(workspace), "lock", "--check") == 0
        assert json.loads(capsys.readouterr().out) == {"status": "unchanged"}

    def test_which_and_tree(self, workspace, capsys):
        run(*project_args(workspace), "install")
        capsys.readouterr()
        assert run(*project_args(workspace), "which", "A") == 0
        assert "A@1.5.0" in capsys.readouterr().out

        assert run("--json", *project_args(workspace), "tree") == 0
        data = json.loads(capsys.readouterr().out)
        assert data["A@1.5.0"]["installed"] is True

        assert run("--json", *project_args(workspace), "tree", "A") == 0
        assert json.loads(capsys.readouterr().out) == {"A@1.5.0": ["<root>:regular -> A@1.5.0"]}

    def test_pack(self, workspace, tmp_path, capsys):
        run(*project_args(workspace), "install")
        capsys.readouterr()
        assert run("--json", *project_args(workspace), "pack", "A", "--dest", str(tmp_path)) == 0
        rock = json.loads(capsys.readouterr().out)["rock"]
        assert rock == str(tmp_path / "A-1.5.0.all.rock")

    def test_pack_unknown_package(self, workspace):
        run(*project_args(workspace), "install")
        assert run(*project_args(workspace), "pack", "Z") == 2

    def test_config_set(self):
        assert run("config", "set", "jobs", "3") == 0
        assert config.get("jobs") == 3

    def test_config_set_unknown_key(self):
        assert run("config", "set", "no_such_key", "1") == 2
