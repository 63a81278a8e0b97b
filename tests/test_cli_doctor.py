"""
Tests for issuesync doctor.
"""

from pathlib import Path

from typer.testing import CliRunner

from conftest import git

from issuesync.cli import app

runner = CliRunner()


class TestDoctor:
    def test_healthy_clone(self, replica_a, monkeypatch) -> None:
        monkeypatch.chdir(replica_a.project_dir)

        result = runner.invoke(app, ["doctor"])

        assert result.exit_code == 0
        assert "Checkout healthy" in result.output
        assert "No issues found" in result.output

    def test_requires_init(self, git_repo: Path, monkeypatch) -> None:
        monkeypatch.chdir(git_repo)

        result = runner.invoke(app, ["doctor"])

        assert result.exit_code == 2

    def test_missing_checkout_reported(self, replica_a, monkeypatch) -> None:
        checkout = replica_a.worktree.checkout_path
        git(replica_a.project_dir, "worktree", "remove", "--force", str(checkout))
        monkeypatch.chdir(replica_a.project_dir)

        result = runner.invoke(app, ["doctor"])

        assert result.exit_code == 1
        assert "sync checkout is missing" in result.output
        assert "doctor --fix" in result.output
        assert not checkout.exists()

    def test_fix_recreates_checkout(self, replica_a, monkeypatch) -> None:
        checkout = replica_a.worktree.checkout_path
        git(replica_a.project_dir, "worktree", "remove", "--force", str(checkout))
        monkeypatch.chdir(replica_a.project_dir)

        result = runner.invoke(app, ["doctor", "--fix"])

        assert result.exit_code == 0, result.output
        assert "created sync checkout" in result.output
        assert checkout.is_dir()

    def test_unreadable_record_reported(self, replica_a, monkeypatch) -> None:
        record = replica_a.records().create("Fix login bug")
        (replica_a.worktree.checkout_path / "issues" / f"{record.id}.md").write_text("garbage")
        monkeypatch.chdir(replica_a.project_dir)

        result = runner.invoke(app, ["doctor"])

        assert result.exit_code == 1
        assert record.id in result.output
