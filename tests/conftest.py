import copy
import stat
import subprocess
from pathlib import Path

import pytest

GIT_IDENTITY = ["-c", "user.name=Test Author", "-c", "user.email=author@example.com"]


def git(*args: str, cwd: Path) -> str:
    result = subprocess.run(
        ["git", *GIT_IDENTITY, *args],
        cwd=cwd,
        capture_output=True,
        text=True,
        check=True,
    )
    return result.stdout.strip()


class OriginRepo:
    """A bare ``origin`` plus a seed clone used to push commits into it."""

    def __init__(self, root: Path):
        self.root = root
        self.bare = root / "origin.git"
        self.seed = root / "seed"

        self.bare.mkdir()
        git("init", "--bare", "-q", cwd=self.bare)
        self.seed.mkdir()
        git("init", "-q", cwd=self.seed)
        git("checkout", "-q", "-b", "main", cwd=self.seed)
        git("remote", "add", "origin", str(self.bare), cwd=self.seed)

        self.commit("main", "README.md", "# demo\n", "Initial commit")
        git("checkout", "-q", "-b", "feature/x", cwd=self.seed)
        self.commit("feature/x", "feature.py", "def feature():\n    return 42\n", "Add feature")

    @property
    def url(self) -> str:
        return self.bare.as_uri()

    def commit(self, branch: str, filename: str, content: str, message: str) -> str:
        # An unborn branch can only be the current one; checking it out would fail.
        if git("symbolic-ref", "--short", "HEAD", cwd=self.seed) != branch:
            git("checkout", "-q", branch, cwd=self.seed)
        (self.seed / filename).write_text(content)
        git("add", filename, cwd=self.seed)
        git("commit", "-q", "-m", message, cwd=self.seed)
        git("push", "-q", "origin", branch, cwd=self.seed)
        return self.sha(branch)

    def orphan(self, branch: str, filename: str, content: str) -> None:
        git("checkout", "-q", "--orphan", branch, cwd=self.seed)
        git("rm", "-rfq", ".", cwd=self.seed)
        (self.seed / filename).write_text(content)
        git("add", filename, cwd=self.seed)
        git("commit", "-q", "-m", f"Start {branch}", cwd=self.seed)
        git("push", "-q", "origin", branch, cwd=self.seed)

    def sha(self, ref: str) -> str:
        return git("rev-parse", ref, cwd=self.seed)


@pytest.fixture
def origin_repo(tmp_path) -> OriginRepo:
    root = tmp_path / "remote"
    root.mkdir()
    return OriginRepo(root)


@pytest.fixture
def make_script(tmp_path):
    """Write an executable /bin/sh script and return its path."""

    def _make(name: str, body: str) -> Path:
        path = tmp_path / "bin" / name
        path.parent.mkdir(exist_ok=True)
        path.write_text("#!/bin/sh\n" + body)
        path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return path

    return _make


BASE_PAYLOAD = {
    "pullrequest": {
        "title": "Add feature",
        "description": "Adds the feature function",
        "author": {"display_name": "Jane Doe"},
        "source": {"branch": {"name": "feature/x"}},
        "destination": {"branch": {"name": "main"}},
        "links": {"html": {"href": "https://bitbucket.org/acme/demo/pull-requests/1"}},
    },
    "repository": {
        "name": "demo",
        "workspace": {"slug": "acme"},
        "links": {
            "html": {"href": "https://bitbucket.org/acme/demo"},
            "clone": [
                {"name": "https", "href": "https://bitbucket.org/acme/demo.git"},
                {"name": "ssh", "href": "git@bitbucket.org:acme/demo.git"},
            ],
        },
    },
}


@pytest.fixture
def make_payload():
    """Fresh deep copy of a valid pullrequest:created body for each call."""
    return lambda: copy.deepcopy(BASE_PAYLOAD)



@pytest.fixture
def rewrite_bitbucket_to(monkeypatch):
    """Point the https clone URL used in payloads at a local repository."""

    def _rewrite(local_url: str) -> None:
        monkeypatch.setenv("GIT_CONFIG_COUNT", "1")
        monkeypatch.setenv("GIT_CONFIG_KEY_0", f"url.{local_url}.insteadOf")
        monkeypatch.setenv("GIT_CONFIG_VALUE_0", "https://bitbucket.org/acme/demo.git")

    return _rewrite


@pytest.fixture(autouse=True)
def _isolate_environment(monkeypatch):
    for name in (
        "BITBUCKET_WEBHOOK_SECRET",
        "ALLOWED_WORKSPACE",
        "PROCESS_ONLY_CREATED",
        "METRICS_PERSISTENCE_ENABLED",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("GIT_TERMINAL_PROMPT", "0")
