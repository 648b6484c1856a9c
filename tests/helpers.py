"""Shared helpers for tests that need a real git repository."""

import subprocess
from pathlib import Path


def run_git(cwd: Path, *args: str) -> str:
    result = subprocess.run(["git", *args], cwd=cwd, check=True, capture_output=True, text=True)
    return result.stdout.strip()


def commit_count(cwd: Path, ref: str = "HEAD") -> int:
    return int(run_git(cwd, "rev-list", "--count", ref))


def commit_messages(cwd: Path, ref: str = "HEAD") -> list[str]:
    return run_git(cwd, "log", "--format=%s", ref).splitlines()


def make_repo(base: Path) -> Path:
    """Working repository with one commit on main, pushed to a bare origin."""
    origin = base / "origin.git"
    work = base / "work"
    work.mkdir()

    run_git(base, "init", "--bare", "-b", "main", str(origin))
    run_git(work, "init", "-b", "main")
    run_git(work, "config", "user.email", "test@example.com")
    run_git(work, "config", "user.name", "Test User")
    run_git(work, "config", "commit.gpgsign", "false")
    (work / "README.md").write_text("# Test\n")
    run_git(work, "add", "README.md")
    run_git(work, "commit", "-m", "Initial commit")
    run_git(work, "remote", "add", "origin", str(origin))
    run_git(work, "push", "-u", "origin", "main")
    return work
