"""
Pytest configuration and shared fixtures.

Provides isolated environments, temporary git repositories (a bare repo
acting as the shared remote and clones acting as replicas), sample
records, and helpers used across the test suite.
"""

import os
import subprocess
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from issuesync.core.config import IssueSyncConfig, clear_cache
from issuesync.core.config.models import SyncConfig
from issuesync.core.records.models import IssueRecord, IssueStatus
from issuesync.core.sync.service import SyncService

# Fixed instant so timestamps in tests are predictable
T0 = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)

RECORD_ID = "is-01hx5zzkbkactav9wevgemmvrz"
OTHER_ID = "is-01hx5zzkbkactav9wevgemmvs0"


def git(cwd: Path, *args: str) -> str:
    """Run a git command and return its stdout."""
    result = subprocess.run(
        ["git", *args], cwd=cwd, capture_output=True, text=True, check=True
    )
    return result.stdout.strip()


# ==============================================================================
# Environment Fixtures
# ==============================================================================


@pytest.fixture(autouse=True)
def isolated_env(tmp_path, monkeypatch):
    """
    Isolate every test from the user's configuration.

    Removes ISSUESYNC_* variables, points XDG_CONFIG_HOME at a temporary
    directory, gives git a fixed identity, and clears the config cache.
    """
    for key in list(os.environ.keys()):
        if key.startswith("ISSUESYNC_"):
            monkeypatch.delenv(key, raising=False)

    config_home = tmp_path / "xdg-config"
    config_home.mkdir()
    monkeypatch.setenv("XDG_CONFIG_HOME", str(config_home))

    monkeypatch.setenv("GIT_AUTHOR_NAME", "Test User")
    monkeypatch.setenv("GIT_AUTHOR_EMAIL", "test@example.com")
    monkeypatch.setenv("GIT_COMMITTER_NAME", "Test User")
    monkeypatch.setenv("GIT_COMMITTER_EMAIL", "test@example.com")
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")

    clear_cache()
    yield config_home
    clear_cache()


# ==============================================================================
# Git Repository Fixtures
# ==============================================================================


@pytest.fixture
def remote_repo(tmp_path: Path) -> Path:
    """Create a bare repository that acts as the shared remote."""
    remote = tmp_path / "remote.git"
    subprocess.run(
        ["git", "init", "--bare", str(remote)], capture_output=True, check=True
    )
    return remote


@pytest.fixture
def make_clone(tmp_path: Path, remote_repo: Path) -> Callable[[str], Path]:
    """
    Factory creating a working repository wired to the shared remote.

    Each clone has an initial commit on its main branch so it looks like
    a normal project.
    """

    def _make(name: str) -> Path:
        repo = tmp_path / name
        repo.mkdir()
        git(repo, "init")
        git(repo, "config", "user.email", "test@example.com")
        git(repo, "config", "user.name", "Test User")
        git(repo, "remote", "add", "origin", str(remote_repo))
        (repo / "README.md").write_text("# Test Repo\n")
        git(repo, "add", "README.md")
        git(repo, "commit", "-m", "Initial commit")
        return repo

    return _make


@pytest.fixture
def git_repo(make_clone) -> Path:
    """A single working repository with a remote."""
    return make_clone("repo")


@pytest.fixture
def local_only_repo(tmp_path: Path) -> Path:
    """A working repository without any remote."""
    repo = tmp_path / "local"
    repo.mkdir()
    git(repo, "init")
    (repo / "README.md").write_text("# Local\n")
    git(repo, "add", "README.md")
    git(repo, "commit", "-m", "Initial commit")
    return repo


@pytest.fixture
def fast_config() -> IssueSyncConfig:
    """Config with network retries disabled so failures surface quickly."""
    return IssueSyncConfig(sync=SyncConfig(network_retries=0, retry_delay=0.0))


@pytest.fixture
def make_replica(make_clone, fast_config) -> Callable[[str], SyncService]:
    """Factory creating a clone and a SyncService bound to it (not initialized)."""

    def _make(name: str) -> SyncService:
        return SyncService(project_dir=make_clone(name), config=fast_config)

    return _make


@pytest.fixture
def replica_a(make_replica) -> SyncService:
    """Replica A, initialized against an empty remote."""
    service = make_replica("replica-a")
    service.initialize()
    return service


# ==============================================================================
# Sample Data Fixtures
# ==============================================================================


@pytest.fixture
def sample_record() -> IssueRecord:
    """A version-1 record with a fixed id and timestamps."""
    return IssueRecord(
        id=RECORD_ID,
        version=1,
        title="Fix bug",
        description="Login fails on Safari.",
        labels=["frontend", "auth"],
        created_at=T0,
        updated_at=T0,
    )


@pytest.fixture
def edited_pair(sample_record: IssueRecord) -> tuple[IssueRecord, IssueRecord]:
    """Two concurrent version-2 edits of the sample record; the second is later."""
    earlier = sample_record.model_copy(
        update={"version": 2, "assignee": "alice", "updated_at": T0 + timedelta(minutes=1)}
    )
    later = sample_record.model_copy(
        update={
            "version": 2,
            "status": IssueStatus.IN_PROGRESS,
            "updated_at": T0 + timedelta(minutes=2),
        }
    )
    return earlier, later
