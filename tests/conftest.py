"""Shared pytest setup: every test runs against its own lbuild config and cache dirs."""

import os
import tempfile

import pytest
import yaml

# log.py opens its file handler at import time, so the session config must
# exist before anything under lbuild is imported.
_SESSION_HOME = tempfile.mkdtemp(prefix="lbuild-tests-")
_SESSION_CONFIG = os.path.join(_SESSION_HOME, "config.yml")
with open(_SESSION_CONFIG, "w", encoding="utf-8") as fh:
    yaml.safe_dump({
        "cache_dir": os.path.join(_SESSION_HOME, "cache"),
        "log_dir": os.path.join(_SESSION_HOME, "logs"),
        "sandbox_dir": os.path.join(_SESSION_HOME, "sandbox"),
    }, fh)
os.environ["LBUILD_CONFIG"] = _SESSION_CONFIG

from lbuild.modules import config  # noqa: E402


@pytest.fixture(autouse=True)
def lbuild_config(tmp_path, monkeypatch):
    """Point LBUILD_CONFIG at a per-test file with dirs under tmp_path."""
    home = tmp_path / "_lbuild"
    path = home / "config.yml"
    home.mkdir()
    path.write_text(yaml.safe_dump({
        "cache_dir": str(home / "cache"),
        "log_dir": str(home / "logs"),
        "sandbox_dir": str(home / "sandbox"),
        "jobs": 2,
        "build_timeout": 60,
    }))
    monkeypatch.setenv("LBUILD_CONFIG", str(path))
    config.load_config()
    yield path
    config.load_config()


class Workspace:
    """A project dir plus an on-disk index whose sources are plain directories."""

    def __init__(self, root):
        self.root = root
        self.project = root / "app"
        self.index = root / "index.yaml"
        self.sources = root / "sources"
        self.project.mkdir(parents=True)

    def source(self, name, version):
        path = self.sources / f"{name}-{version}"
        if not path.exists():
            path.mkdir(parents=True)
            (path / f"{name.lower()}.lua").write_text(f"return '{name} {version}'\n")
        return path

    def write_index(self, packages):
        """packages: {name: [version or (version, {dep: constraint})]}"""
        data = {}
        for name, items in packages.items():
            entries = []
            for item in items:
                version, deps = item if isinstance(item, tuple) else (item, {})
                entry = {"version": version, "source": {"url": str(self.source(name, version))}}
                if deps:
                    entry["dependencies"] = deps
                entries.append(entry)
            data[name] = entries
        self.index.write_text(yaml.safe_dump({"packages": data}))

    def write_manifest(self, **sections):
        doc = {"package": "app", "version": "0.1.0"}
        doc.update(sections)
        (self.project / "lbuild.yaml").write_text(yaml.safe_dump(doc))


@pytest.fixture
def workspace(tmp_path):
    ws = Workspace(tmp_path / "ws")
    ws.write_index({"A": ["1.0.0", "1.5.0", "2.0.0"], "B": [("1.0.0", {"A": ">=1.0"})]})
    ws.write_manifest(dependencies={"A": ">=1.0,<2.0"})
    return ws
