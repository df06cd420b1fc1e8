import asyncio
import subprocess

import pytest

from common.errors import DiffError, SyncError
from workspace.diff_extractor import DiffExtractor
from workspace.git_client import GitCommandError, run_git
from workspace.synchronizer import RepositorySynchronizer


def head_of(path) -> str:
    return subprocess.run(
        ["git", "rev-parse", "HEAD"], cwd=path, capture_output=True, text=True, check=True
    ).stdout.strip()


@pytest.fixture
def synchronizer(tmp_path):
    return RepositorySynchronizer(str(tmp_path / "projects"), git_timeout=60)


# ── run_git ───────────────────────────────────────────────────────────────


def test_run_git_returns_stdout(origin_repo):
    assert run_git(["rev-parse", "main"], cwd=origin_repo.seed).strip() == origin_repo.sha("main")


def test_run_git_raises_on_failure(tmp_path):
    with pytest.raises(GitCommandError) as exc_info:
        run_git(["rev-parse", "does-not-exist"], cwd=tmp_path)

    assert "rev-parse" in str(exc_info.value)


# ── RepositorySynchronizer ────────────────────────────────────────────────


def test_first_use_clones_source_branch(synchronizer, origin_repo):
    path = asyncio.run(synchronizer.ensure("demo", origin_repo.url, "feature/x"))

    assert path == synchronizer.working_copy_path("demo")
    assert (path / ".git").is_dir()
    assert (path / "feature.py").is_file()
    assert head_of(path) == origin_repo.sha("feature/x")


def test_later_use_resets_to_new_source_tip(synchronizer, origin_repo):
    path = asyncio.run(synchronizer.ensure("demo", origin_repo.url, "feature/x"))
    new_tip = origin_repo.commit("feature/x", "feature.py", "def feature():\n    return 43\n", "Tweak")

    asyncio.run(synchronizer.ensure("demo", origin_repo.url, "feature/x"))

    assert head_of(path) == new_tip
    assert "return 43" in (path / "feature.py").read_text()


def test_switching_branches_resets_to_other_branch(synchronizer, origin_repo):
    path = asyncio.run(synchronizer.ensure("demo", origin_repo.url, "feature/x"))

    asyncio.run(synchronizer.ensure("demo", origin_repo.url, "main"))

    assert head_of(path) == origin_repo.sha("main")
    assert not (path / "feature.py").exists()


def test_local_changes_are_discarded(synchronizer, origin_repo):
    path = asyncio.run(synchronizer.ensure("demo", origin_repo.url, "feature/x"))
    (path / "feature.py").write_text("tampered\n")
    subprocess.run(
        ["git", "-c", "user.name=x", "-c", "user.email=x@example.com", "commit", "-qam", "local"],
        cwd=path,
        check=True,
    )

    asyncio.run(synchronizer.ensure("demo", origin_repo.url, "feature/x"))

    assert head_of(path) == origin_repo.sha("feature/x")
    assert "return 42" in (path / "feature.py").read_text()


def test_untracked_and_ignored_files_are_removed(synchronizer, origin_repo):
    path = asyncio.run(synchronizer.ensure("demo", origin_repo.url, "feature/x"))
    (path / "agent_scratch.py").write_text("print('left behind')\n")
    (path / "build" / "out").mkdir(parents=True)
    (path / "build" / "out" / "artifact.bin").write_bytes(b"\x00")
    (path / ".git" / "info").mkdir(exist_ok=True)
    (path / ".git" / "info" / "exclude").write_text("build/\n")

    asyncio.run(synchronizer.ensure("demo", origin_repo.url, "feature/x"))

    assert not (path / "agent_scratch.py").exists()
    assert not (path / "build").exists()
    assert head_of(path) == origin_repo.sha("feature/x")



def test_ensure_is_idempotent(synchronizer, origin_repo):
    first = asyncio.run(synchronizer.ensure("demo", origin_repo.url, "feature/x"))
    second = asyncio.run(synchronizer.ensure("demo", origin_repo.url, "feature/x"))

    assert first == second
    assert head_of(second) == origin_repo.sha("feature/x")


def test_missing_source_branch_is_rejected(synchronizer, origin_repo):
    with pytest.raises(SyncError):
        asyncio.run(synchronizer.ensure("demo", origin_repo.url, ""))

    assert not synchronizer.exists("demo")


def test_failed_clone_leaves_nothing_behind(synchronizer, tmp_path):
    missing = (tmp_path / "nowhere.git").as_uri()

    with pytest.raises(SyncError):
        asyncio.run(synchronizer.ensure("demo", missing, "main"))

    assert not synchronizer.exists("demo")


def test_failed_fetch_leaves_working_copy_intact(synchronizer, origin_repo, tmp_path):
    path = asyncio.run(synchronizer.ensure("demo", origin_repo.url, "feature/x"))
    run_git(["remote", "set-url", "origin", (tmp_path / "gone.git").as_uri()], cwd=path)

    with pytest.raises(SyncError):
        asyncio.run(synchronizer.ensure("demo", origin_repo.url, "feature/x"))

    assert (path / ".git").is_dir()
    assert head_of(path) == origin_repo.sha("feature/x")


def test_unknown_branch_on_existing_copy_fails(synchronizer, origin_repo):
    asyncio.run(synchronizer.ensure("demo", origin_repo.url, "feature/x"))

    with pytest.raises(SyncError):
        asyncio.run(synchronizer.ensure("demo", origin_repo.url, "no-such-branch"))


def test_directory_without_git_is_rejected(synchronizer):
    synchronizer.working_copy_path("demo").mkdir(parents=True)

    with pytest.raises(SyncError):
        asyncio.run(synchronizer.ensure("demo", "https://bitbucket.org/acme/demo.git", "main"))


@pytest.mark.parametrize("name", ["../escape", "a/b", ".."])
def test_repository_name_must_stay_inside_projects_dir(synchronizer, name):
    with pytest.raises(SyncError):
        synchronizer.working_copy_path(name)


# ── DiffExtractor ─────────────────────────────────────────────────────────


def _diff(path, source="feature/x", destination="main", threshold=50 * 1024):
    return asyncio.run(DiffExtractor(threshold, git_timeout=60).diff(path, source, destination))


def test_diff_contains_only_source_changes(synchronizer, origin_repo):
    path = asyncio.run(synchronizer.ensure("demo", origin_repo.url, "feature/x"))
    base = origin_repo.sha("main")
    # Destination moves on after the PR was opened.
    origin_repo.commit("main", "hotfix.py", "HOTFIX = True\n", "Hotfix on main")

    result = _diff(path)

    assert result.merge_base_found
    assert result.merge_base_commit == base
    assert "feature.py" in result.diff_text
    assert "hotfix.py" not in result.diff_text
    assert result.size_in_bytes == len(result.diff_text.encode("utf-8"))
    assert not result.size_too_large


def test_diff_over_threshold_is_flagged(synchronizer, origin_repo):
    path = asyncio.run(synchronizer.ensure("demo", origin_repo.url, "feature/x"))

    result = _diff(path, threshold=10)

    assert result.size_too_large
    assert result.size_in_bytes > 10


def test_diff_without_common_history_degrades_to_destination_tip(synchronizer, origin_repo):
    origin_repo.orphan("unrelated", "other.txt", "nothing in common\n")
    path = asyncio.run(synchronizer.ensure("demo", origin_repo.url, "unrelated"))

    result = _diff(path, source="unrelated")

    assert not result.merge_base_found
    assert result.merge_base_commit == "origin/main"
    assert "other.txt" in result.diff_text


def test_diff_with_unknown_destination_fails(synchronizer, origin_repo):
    path = asyncio.run(synchronizer.ensure("demo", origin_repo.url, "feature/x"))

    with pytest.raises(DiffError):
        _diff(path, destination="no-such-branch")


def test_diff_error_is_a_git_error():
    assert DiffError.error_type == "git_error"
