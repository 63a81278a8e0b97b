"""
Sync branch and private checkout management.

The sync branch never touches the user's working tree. Its content is
materialized in a hidden linked worktree at
``.issuesync/data-sync-worktree`` with a detached HEAD, so the branch
itself stays free to be advanced with ``update-ref``.

Commits are built with git plumbing against an isolated temporary index
(``GIT_INDEX_FILE``) and become visible only through a compare-and-swap
``update-ref``. Anything that fails before that point leaves the branch
and the checkout exactly as they were.
"""

from __future__ import annotations

import logging
import tempfile
import time
from collections.abc import Callable
from datetime import datetime, timezone
from io import BytesIO
from pathlib import Path
from typing import TypeVar

from git import GitCommandError, InvalidGitRepositoryError, NoSuchPathError, Repo
from gitdb import IStream

from issuesync.core.ids.mapper import DEFAULT_PREFIX
from issuesync.core.sync.errors import (
    CommitFailed,
    SyncError,
    SyncUnreachable,
    WorktreeInconsistent,
)
from issuesync.core.sync.models import PublishResult, PublishStatus
from issuesync.core.worktree.snapshot import (
    ATTIC_DIR,
    ISSUES_DIR,
    MAPPINGS_FILE,
    META_FILE,
    Snapshot,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

ZERO_SHA = "0" * 40

STATE_DIR = ".issuesync"
CHECKOUT_DIR = ".issuesync/data-sync-worktree"
GITIGNORE_CONTENT = "cache/\ndata-sync-worktree/\ndata-sync-worktree.broken-*/\n"

REJECTION_MARKERS = ("rejected", "non-fast-forward", "fetch first")
MISSING_REMOTE_REF_MARKERS = ("couldn't find remote ref", "could not find remote ref")

RETRY_BACKOFF = 2.0
# update-index arguments per invocation
CACHEINFO_BATCH = 200


class WorktreeManager:
    """
    Owns the sync branch, its private checkout, and the remote.

    Example:
        >>> manager = WorktreeManager(Path("."))
        >>> manager.initialize()
        >>> local = manager.checkout()
        >>> remote = manager.fetch()
    """

    DEFAULT_BRANCH = "issuesync-sync"
    DEFAULT_REMOTE = "origin"

    def __init__(
        self,
        repo_path: Path | None = None,
        branch: str = DEFAULT_BRANCH,
        remote: str = DEFAULT_REMOTE,
        network_timeout: float = 60.0,
        network_retries: int = 3,
        retry_delay: float = 0.5,
        id_prefix: str = DEFAULT_PREFIX,
    ):
        """
        Initialize the manager.

        Args:
            repo_path: Path inside the git repository (defaults to cwd)
            branch: Name of the sync branch
            remote: Name of the remote to sync with
            network_timeout: Seconds before a fetch or push is killed
            network_retries: Extra attempts for failed network operations
            retry_delay: Delay before the first retry, doubled each time
            id_prefix: Display id prefix used when parsing snapshots

        Raises:
            SyncError: If not in a git repository
        """
        self.repo_path = repo_path or Path.cwd()
        try:
            self.repo = Repo(self.repo_path, search_parent_directories=True)
        except (InvalidGitRepositoryError, NoSuchPathError) as e:
            raise SyncError(f"Not a git repository: {self.repo_path}") from e
        if self.repo.working_tree_dir is None:
            raise SyncError(f"Bare repositories are not supported: {self.repo_path}")

        self.root = Path(self.repo.working_tree_dir)
        self.branch = branch
        self.remote = remote
        self.network_timeout = network_timeout
        self.network_retries = network_retries
        self.retry_delay = retry_delay
        self.id_prefix = id_prefix

    @property
    def branch_ref(self) -> str:
        return f"refs/heads/{self.branch}"

    @property
    def tracking_ref(self) -> str:
        return f"refs/remotes/{self.remote}/{self.branch}"

    @property
    def checkout_path(self) -> Path:
        return self.root / CHECKOUT_DIR

    @property
    def state_dir(self) -> Path:
        return self.root / STATE_DIR

    # Refs

    def _rev(self, ref: str) -> str | None:
        try:
            return str(self.repo.git.rev_parse("--verify", "--quiet", f"{ref}^{{commit}}"))
        except GitCommandError:
            return None

    def local_tip(self) -> str | None:
        """Commit the local sync branch points at, if it exists."""
        return self._rev(self.branch_ref)

    def remote_tip(self) -> str | None:
        """Commit of the remote-tracking ref as of the last fetch."""
        return self._rev(self.tracking_ref)

    def has_remote(self) -> bool:
        return any(r.name == self.remote for r in self.repo.remotes)

    def is_initialized(self) -> bool:
        return self.local_tip() is not None

    def is_ancestor(self, ancestor: str, descendant: str) -> bool:
        return bool(self.repo.is_ancestor(ancestor, descendant))

    # Reading

    def _read_commit_files(self, sha: str) -> dict[str, bytes]:
        files: dict[str, bytes] = {}
        for item in self.repo.commit(sha).tree.traverse():
            if item.type == "blob":
                files[item.path] = item.data_stream.read()
        return files

    def read_commit(self, sha: str | None, side: str = "base") -> Snapshot:
        """Parse the tree of ``sha``; None gives an empty snapshot."""
        if sha is None:
            return Snapshot.empty(self.id_prefix)
        return Snapshot.from_files(
            self._read_commit_files(sha), commit=sha, side=side, prefix=self.id_prefix
        )

    def _read_working_files(self) -> dict[str, bytes]:
        files: dict[str, bytes] = {}
        base = self.checkout_path
        candidates = [base / META_FILE, base / MAPPINGS_FILE]
        candidates.extend(sorted((base / ISSUES_DIR).glob("*.md")))
        candidates.extend(sorted((base / ATTIC_DIR).glob("*/*.yml")))
        for path in candidates:
            if path.is_file():
                files[path.relative_to(base).as_posix()] = path.read_bytes()
        return files

    def local_snapshot(self) -> Snapshot:
        """Parse the private checkout's working files, edits included."""
        return Snapshot.from_files(
            self._read_working_files(),
            commit=self.local_tip(),
            side="local",
            prefix=self.id_prefix,
        )

    def _dirty_files(self, head: str) -> dict[str, bytes]:
        """Working files that differ from the tree of ``head``."""
        committed = self._read_commit_files(head)
        return {
            path: data
            for path, data in self._read_working_files().items()
            if committed.get(path) != data
        }

    def local_changes(self) -> list[str]:
        """Paths in the checkout that differ from the sync branch tip."""
        tip = self.local_tip()
        if tip is None or not self.checkout_path.exists():
            return []
        return sorted(self._dirty_files(tip))

    # Initialization

    def _write_gitignore(self) -> None:
        path = self.state_dir / ".gitignore"
        path.parent.mkdir(parents=True, exist_ok=True)
        if not path.exists() or path.read_text(encoding="utf-8") != GITIGNORE_CONTENT:
            path.write_text(GITIGNORE_CONTENT, encoding="utf-8")

    def initialize(self) -> str:
        """
        Create the sync branch and the private checkout.

        The branch is created from the remote sync branch when one exists,
        otherwise as an orphan root commit with the empty layout. Safe to
        call again on an initialized clone.

        Returns:
            The sync branch tip.
        """
        tip = self.local_tip()
        if tip is None:
            remote_tip = None
            if self.has_remote():
                try:
                    if self._network("fetch", self._fetch_branch):
                        remote_tip = self.remote_tip()
                except SyncUnreachable as e:
                    logger.warning("Remote unreachable, creating a local sync branch: %s", e)

            if remote_tip is not None:
                self._update_ref(remote_tip, None)
                tip = remote_tip
                logger.info("Created sync branch from %s (%s)", self.tracking_ref, tip[:8])
            else:
                files = Snapshot.empty(self.id_prefix).to_files()
                tree = self._write_tree(files)
                tip = self._commit_tree(tree, [], f"Initialize {self.branch} branch")
                self._update_ref(tip, None)
                logger.info("Created orphan sync branch %s (%s)", self.branch, tip[:8])

        self._write_gitignore()
        self.repair()
        return tip

    # Checkout health

    def _checkout_repo(self) -> Repo | None:
        path = self.checkout_path
        if not (path / ".git").is_file():
            return None
        try:
            wt = Repo(path)
        except (InvalidGitRepositoryError, NoSuchPathError):
            return None
        if Path(wt.common_dir).resolve() != Path(self.repo.common_dir).resolve():
            return None
        return wt

    def _add_checkout(self, tip: str) -> None:
        self.repo.git.worktree("prune")
        self.checkout_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self.repo.git.worktree("add", "--detach", str(self.checkout_path), tip)
        except GitCommandError as e:
            raise WorktreeInconsistent(f"Failed to create sync checkout: {e.stderr}") from e

    def _move_aside(self, reason: str) -> str:
        path = self.checkout_path
        stamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
        aside = path.with_name(f"{path.name}.broken-{stamp}")
        path.rename(aside)
        self.repo.git.worktree("prune")
        logger.warning("Moved %s sync checkout aside to %s", reason, aside)
        return f"moved {reason} checkout to {aside}"

    def diagnose(self) -> list[str]:
        """
        Describe what ``repair`` would fix, without changing anything.

        Returns:
            Problems found (empty when healthy).
        """
        tip = self.local_tip()
        if tip is None:
            return [f"sync branch '{self.branch}' does not exist"]
        if not self.checkout_path.exists():
            return ["sync checkout is missing"]
        wt = self._checkout_repo()
        if wt is None:
            return ["sync checkout is not a valid worktree of this repository"]

        problems: list[str] = []
        if (Path(wt.git_dir) / "index.lock").exists():
            problems.append("stale index.lock in sync checkout")
        if not wt.head.is_detached:
            problems.append("sync checkout HEAD is attached to a branch")
        head = wt.head.commit.hexsha
        if head != tip:
            if self.is_ancestor(head, tip):
                problems.append(f"sync checkout is behind the branch ({head[:8]} < {tip[:8]})")
            elif self.is_ancestor(tip, head):
                problems.append(f"sync checkout is ahead of the branch ({head[:8]} > {tip[:8]})")
            else:
                problems.append(f"sync checkout {head[:8]} has diverged from {tip[:8]}")
        return problems

    def repair(self, force: bool = False) -> list[str]:
        """
        Make sure the private checkout exists and matches the branch tip.

        Args:
            force: Move a diverged checkout aside and recreate it instead
                of raising.

        Returns:
            Descriptions of the repairs performed (empty when healthy).

        Raises:
            WorktreeInconsistent: If the branch is missing or the checkout
                has diverged from it.
        """
        tip = self.local_tip()
        if tip is None:
            raise WorktreeInconsistent(
                f"Sync branch '{self.branch}' does not exist; run 'issuesync init'"
            )

        actions: list[str] = []
        path = self.checkout_path

        if path.exists() and self._checkout_repo() is None:
            actions.append(self._move_aside("invalid"))

        if not path.exists():
            self._add_checkout(tip)
            actions.append("created sync checkout")
            return actions

        wt = self._checkout_repo()
        assert wt is not None

        index_lock = Path(wt.git_dir) / "index.lock"
        if index_lock.exists():
            index_lock.unlink()
            logger.warning("Removed stale %s", index_lock)
            actions.append("removed stale index.lock")

        if not wt.head.is_detached:
            wt.git.checkout("--detach")
            actions.append("detached checkout HEAD")

        head = wt.head.commit.hexsha
        if head == tip:
            return actions

        if self.is_ancestor(head, tip):
            dirty = self._dirty_files(head)
            wt.git.checkout("--force", "--detach", tip)
            self._write_files(dirty)
            logger.info("Moved sync checkout from %s to %s", head[:8], tip[:8])
            actions.append(f"moved checkout forward to {tip[:8]}")
        elif self.is_ancestor(tip, head):
            self._update_ref(head, tip)
            logger.info("Fast-forwarded %s to checkout HEAD %s", self.branch, head[:8])
            actions.append(f"fast-forwarded branch to {head[:8]}")
        elif force:
            actions.append(self._move_aside("diverged"))
            self._add_checkout(tip)
            actions.append("created sync checkout")
        else:
            raise WorktreeInconsistent(
                f"Sync checkout HEAD {head[:8]} has diverged from {self.branch} "
                f"({tip[:8]}); run 'issuesync doctor --fix'"
            )
        return actions

    def checkout(self) -> Snapshot:
        """Repair the private checkout if needed and read the local snapshot."""
        self.repair()
        return self.local_snapshot()

    def _write_files(self, files: dict[str, bytes]) -> None:
        for rel, data in files.items():
            target = self.checkout_path / rel
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)

    # Network

    def _network(self, operation: str, func: Callable[[], T]) -> T:
        """
        Run a network operation with retries and exponential backoff.

        Calls are made with ``kill_after_timeout``, so a hung transfer is
        killed and surfaces as a GitCommandError like any other failure.

        Raises:
            SyncUnreachable: If every attempt fails.
        """
        attempts = self.network_retries + 1
        delay = self.retry_delay
        last_error: GitCommandError | None = None
        for attempt in range(1, attempts + 1):
            try:
                with self.repo.git.custom_environment(GIT_TERMINAL_PROMPT="0"):
                    return func()
            except GitCommandError as e:
                last_error = e
                logger.warning(
                    "git %s to %s failed (attempt %d/%d): %s",
                    operation,
                    self.remote,
                    attempt,
                    attempts,
                    str(e.stderr).strip(),
                )
                if attempt < attempts:
                    time.sleep(delay)
                    delay *= RETRY_BACKOFF
        detail = str(last_error.stderr).strip() if last_error else ""
        raise SyncUnreachable(
            f"Could not {operation} '{self.remote}' after {attempts} attempts: {detail}",
            remote=self.remote,
            attempts=attempts,
        )

    def _fetch_branch(self) -> bool:
        try:
            self.repo.git.fetch(
                self.remote,
                f"+{self.branch_ref}:{self.tracking_ref}",
                "--no-tags",
                kill_after_timeout=self.network_timeout,
            )
        except GitCommandError as e:
            if any(m in str(e.stderr).lower() for m in MISSING_REMOTE_REF_MARKERS):
                return False
            raise
        return True

    def fetch(self) -> Snapshot:
        """
        Fetch the remote sync branch and read its tree.

        Only the remote-tracking ref moves; the local branch and the
        checkout are untouched.

        Raises:
            SyncUnreachable: If the remote is not configured or unreachable.
        """
        if not self.has_remote():
            raise SyncUnreachable(f"No remote named '{self.remote}'", remote=self.remote)
        if not self._network("fetch", self._fetch_branch):
            logger.info("Remote has no %s branch yet", self.branch)
            return Snapshot.empty(self.id_prefix)
        return self.read_commit(self.remote_tip(), side="remote")

    def base_snapshot(self, local_ref: str | None, remote_ref: str | None) -> Snapshot:
        """Snapshot of the merge base; empty when there is no common history."""
        return self.read_commit(self.merge_base(local_ref, remote_ref), side="base")

    def merge_base(self, local_ref: str | None, remote_ref: str | None) -> str | None:
        if local_ref is None or remote_ref is None:
            return None
        bases = self.repo.merge_base(local_ref, remote_ref)
        return bases[0].hexsha if bases else None

    def publish(self, sha: str) -> PublishResult:
        """
        Push ``sha`` to the remote sync branch.

        Returns:
            PublishResult with status REJECTED when the remote moved
            (non-fast-forward), OK otherwise.

        Raises:
            SyncUnreachable: If the remote cannot be reached.
        """
        if not self.has_remote():
            raise SyncUnreachable(f"No remote named '{self.remote}'", remote=self.remote)

        def push() -> PublishResult:
            try:
                self.repo.git.push(
                    self.remote,
                    f"{sha}:{self.branch_ref}",
                    "--porcelain",
                    kill_after_timeout=self.network_timeout,
                )
            except GitCommandError as e:
                output = f"{e.stdout}\n{e.stderr}".lower()
                if any(marker in output for marker in REJECTION_MARKERS):
                    return PublishResult(
                        status=PublishStatus.REJECTED,
                        commit_sha=sha,
                        message=str(e.stderr).strip(),
                    )
                raise
            return PublishResult(status=PublishStatus.OK, commit_sha=sha)

        result = self._network("push", push)
        if result.ok:
            self.repo.git.update_ref(self.tracking_ref, sha)
            logger.info("Published %s to %s/%s", sha[:8], self.remote, self.branch)
        else:
            logger.info("Publish of %s rejected: remote moved", sha[:8])
        return result

    def ahead_behind(self) -> tuple[int, int]:
        """Commits on the local branch not on the remote, and vice versa."""
        local, remote = self.local_tip(), self.remote_tip()
        if local is None:
            return (0, 0)
        if remote is None:
            return (int(self.repo.git.rev_list("--count", local)), 0)
        counts = self.repo.git.rev_list("--left-right", "--count", f"{local}...{remote}")
        ahead, behind = counts.split()
        return (int(ahead), int(behind))

    # Committing

    def _write_tree(self, files: dict[str, bytes]) -> str:
        with tempfile.TemporaryDirectory(prefix="issuesync-index-") as tmp:
            index_file = str(Path(tmp) / "index")
            with self.repo.git.custom_environment(GIT_INDEX_FILE=index_file):
                args: list[str] = []
                for path, data in sorted(files.items()):
                    istream = self.repo.odb.store(IStream(b"blob", len(data), BytesIO(data)))
                    args.extend(["--cacheinfo", f"100644,{istream.binsha.hex()},{path}"])
                    if len(args) >= CACHEINFO_BATCH * 2:
                        self.repo.git.update_index("--add", *args)
                        args = []
                if args:
                    self.repo.git.update_index("--add", *args)
                return str(self.repo.git.write_tree())

    def _commit_tree(self, tree: str, parents: list[str], message: str) -> str:
        args: list[str] = [tree]
        for parent in parents:
            args.extend(["-p", parent])
        args.extend(["-m", message])
        return str(self.repo.git.commit_tree(*args))

    def _update_ref(self, sha: str, expected: str | None) -> None:
        try:
            self.repo.git.update_ref(self.branch_ref, sha, expected or ZERO_SHA)
        except GitCommandError as e:
            raise CommitFailed(
                f"Sync branch '{self.branch}' moved during commit: {str(e.stderr).strip()}"
            ) from e

    def commit(
        self,
        snapshot: Snapshot,
        parents: list[str],
        message: str,
        expected_tip: str | None,
        preserve: dict[str, bytes] | None = None,
    ) -> str:
        """
        Commit ``snapshot`` as one unit and advance the sync branch.

        Args:
            snapshot: Full content of the new branch state
            parents: Parent commits, in order
            message: Commit message
            expected_tip: Branch tip the commit was computed against; the
                ref update fails if the branch moved since
            preserve: Checkout files to write back after the checkout is
                moved to the new commit (unreadable local files)

        Returns:
            SHA of the new commit.

        Raises:
            CommitFailed: If object creation or the ref update fails.
        """
        try:
            tree = self._write_tree(snapshot.to_files())
            sha = self._commit_tree(tree, parents, message)
        except GitCommandError as e:
            raise CommitFailed(f"Failed to write sync commit: {str(e.stderr).strip()}") from e

        self.advance(sha, expected_tip, preserve)
        return sha

    def advance(
        self,
        sha: str,
        expected_tip: str | None,
        preserve: dict[str, bytes] | None = None,
    ) -> None:
        """
        Move the sync branch to an existing commit, then the checkout.

        Raises:
            CommitFailed: If the branch no longer points at ``expected_tip``.
        """
        self._update_ref(sha, expected_tip)
        logger.info("Advanced %s to %s", self.branch, sha[:8])

        wt = self._checkout_repo()
        if wt is not None:
            wt.git.checkout("--force", "--detach", sha)
            if preserve:
                self._write_files(preserve)
