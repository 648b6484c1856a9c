"""Git operations for task execution.

Handles task branches, the commit/push boundary around each phase, pull
request creation through the GitHub CLI, and isolated worktrees for running
several tasks side by side.

Every git invocation is a subprocess against one fixed repository path. A
failing command raises GitCommandError carrying the command and its output.
"""

import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.markup import escape


console = Console()


class GitError(Exception):
    """Base class for git lifecycle failures."""


class GitCommandError(GitError):
    """A git (or gh) subprocess exited non-zero."""

    def __init__(self, command: list[str], returncode: int, stdout: str = "", stderr: str = ""):
        self.command = command
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        output = (stderr or stdout).strip()
        message = f"Command failed ({returncode}): {' '.join(command)}"
        if output:
            message += f"\n{output}"
        super().__init__(message)


class UncommittedChangesError(GitError):
    """The working tree must be clean for this operation."""


class PullRequestError(GitError):
    """Pull request creation failed. Branches and commits are left as they are."""


class TrackerFinalizedError(GitError):
    """A CommitTracker was finalized more than once."""


@dataclass
class GitStatus:
    """Current git status."""
    branch: str
    has_changes: bool
    staged_files: list[str]
    modified_files: list[str]
    untracked_files: list[str]
    last_commit_hash: Optional[str]
    last_commit_message: Optional[str]


@dataclass
class BranchInfo:
    """Snapshot of one branch. Derived on demand, never cached."""
    name: str
    exists: bool
    is_current_branch: bool


@dataclass
class WorktreeInfo:
    """One entry of `git worktree list`."""
    path: str
    branch: Optional[str] = None
    commit: Optional[str] = None
    is_bare: bool = False
    is_detached: bool = False


@dataclass
class CommitResult:
    """Outcome of GitManager.commit()."""
    created: bool
    sha: Optional[str] = None
    pushed: bool = False


@dataclass
class TrackerResult:
    """Outcome of CommitTracker.finalize()."""
    commit_created: bool
    pushed_branch: bool
    external_commits: bool = False
    sha: Optional[str] = None


class CommitTracker:
    """Reconciles commits made during an operation with leftover changes.

    Captures HEAD when created. finalize() then decides whether the operation
    already committed (HEAD moved), whether leftovers still need a commit, and
    whether to push. Scoped to one operation; finalizing twice raises.
    """

    def __init__(self, git: "GitManager", initial_sha: Optional[str]):
        self._git = git
        self.initial_sha = initial_sha
        self._finalized = False

    @property
    def finalized(self) -> bool:
        return self._finalized

    def finalize(self, message: str, push: bool = False) -> TrackerResult:
        """Commit leftovers with `message` and optionally push.

        Args:
            message: Commit message used only for uncommitted leftovers
            push: Push the current branch when any commit exists

        Returns:
            TrackerResult describing what happened
        """
        if self._finalized:
            raise TrackerFinalizedError("Commit tracker already finalized")
        self._finalized = True

        current_sha = self._git.head_sha()
        external_commits = current_sha != self.initial_sha
        commit_created = external_commits

        if self._git.has_uncommitted_changes():
            self._git.stage_all()
            result = self._git.commit(message)
            if result.created:
                commit_created = True
                current_sha = result.sha

        pushed = False
        if push and commit_created:
            branch = self._git.get_current_branch()
            self._git.push_branch(branch)
            pushed = True
            console.print(f"[dim]Pushed {escape(branch)}[/dim]")

        return TrackerResult(
            commit_created=commit_created,
            pushed_branch=pushed,
            external_commits=external_commits,
            sha=current_sha,
        )


class GitManager:
    """Manages git operations for one repository."""

    def __init__(
        self,
        project_path: Path,
        branch_prefix: str = "tasks",
        artifact_namespace: str = ".taskagent",
        author_name: Optional[str] = None,
        author_email: Optional[str] = None,
        remote: str = "origin",
        debug: bool = False,
    ):
        self.project_path = Path(project_path)
        self.branch_prefix = branch_prefix.rstrip("/")
        self.artifact_namespace = artifact_namespace
        self.author_name = author_name
        self.author_email = author_email
        self.remote = remote
        self.debug = debug

    def _run(self, *args: str, check: bool = True) -> subprocess.CompletedProcess:
        """Run a git command."""
        if self.debug:
            console.print(f"[dim]git {escape(' '.join(args))}[/dim]")
        result = subprocess.run(
            ["git", *args],
            cwd=self.project_path,
            capture_output=True,
            text=True,
        )
        if check and result.returncode != 0:
            raise GitCommandError(["git", *args], result.returncode, result.stdout, result.stderr)
        return result

    # =========================================================================
    # Repository state
    # =========================================================================

    def is_git_repo(self) -> bool:
        """Check if the project is a git repository."""
        result = self._run("rev-parse", "--git-dir", check=False)
        return result.returncode == 0

    def init_repo(self, initial_branch: str = "main") -> None:
        """Initialize a git repository if not exists."""
        if not self.is_git_repo():
            self._run("init", "-b", initial_branch)

    def get_status(self) -> GitStatus:
        """Get current git status."""
        branch = self._run("branch", "--show-current", check=False).stdout.strip()

        status_result = self._run("status", "--porcelain", check=False)
        staged, modified, untracked = [], [], []
        for line in status_result.stdout.splitlines():
            if not line:
                continue
            status_code = line[:2]
            filename = line[3:]

            if status_code == "??":
                untracked.append(filename)
                continue
            if status_code[0] in "MADRC":
                staged.append(filename)
            if status_code[1] in "MD":
                modified.append(filename)

        last_hash, last_message = None, None
        log_result = self._run("log", "-1", "--format=%H%n%s", check=False)
        if log_result.returncode == 0 and log_result.stdout.strip():
            parts = log_result.stdout.strip().split("\n", 1)
            last_hash = parts[0]
            last_message = parts[1] if len(parts) > 1 else ""

        return GitStatus(
            branch=branch,
            has_changes=bool(staged or modified or untracked),
            staged_files=staged,
            modified_files=modified,
            untracked_files=untracked,
            last_commit_hash=last_hash,
            last_commit_message=last_message,
        )

    def has_uncommitted_changes(self) -> bool:
        """True when anything is staged, modified or untracked."""
        result = self._run("status", "--porcelain", check=False)
        return result.returncode == 0 and bool(result.stdout.strip())

    def has_staged_changes(self) -> bool:
        """True when the index differs from HEAD."""
        result = self._run("diff", "--cached", "--name-only", check=False)
        return result.returncode == 0 and bool(result.stdout.strip())

    def get_current_branch(self) -> str:
        return self._run("branch", "--show-current").stdout.strip()

    def get_default_branch(self) -> str:
        """Branch origin/HEAD points at, else main, else master."""
        result = self._run("symbolic-ref", f"refs/remotes/{self.remote}/HEAD", check=False)
        if result.returncode == 0 and result.stdout.strip():
            return result.stdout.strip().replace(f"refs/remotes/{self.remote}/", "", 1)

        for candidate in ("main", "master"):
            if self.branch_exists(candidate):
                return candidate
        raise GitError("Cannot determine default branch. No main or master branch found.")

    def head_sha(self) -> Optional[str]:
        """HEAD commit, or None in a repository without commits."""
        result = self._run("rev-parse", "--verify", "--quiet", "HEAD", check=False)
        return result.stdout.strip() or None

    def get_commit_sha(self, ref: str = "HEAD") -> str:
        return self._run("rev-parse", ref).stdout.strip()

    def get_commit_message(self, ref: str = "HEAD") -> str:
        return self._run("log", "-1", "--pretty=%B", ref).stdout.strip()

    def get_recent_commits(self, count: int = 5, ref: str = "HEAD") -> list[tuple[str, str]]:
        """Get recent commit hashes and messages."""
        result = self._run("log", f"-{count}", "--format=%H|%s", ref, check=False)
        if result.returncode != 0 or not result.stdout.strip():
            return []

        commits = []
        for line in result.stdout.strip().split("\n"):
            if "|" in line:
                hash_, message = line.split("|", 1)
                commits.append((hash_, message))
        return commits

    def get_remote_url(self) -> Optional[str]:
        result = self._run("remote", "get-url", self.remote, check=False)
        return result.stdout.strip() or None

    # =========================================================================
    # Branches
    # =========================================================================

    def _ref_exists(self, ref: str) -> bool:
        return self._run("show-ref", "--verify", "--quiet", ref, check=False).returncode == 0

    def local_branch_exists(self, name: str) -> bool:
        return self._ref_exists(f"refs/heads/{name}")

    def remote_branch_exists(self, name: str) -> bool:
        return self._ref_exists(f"refs/remotes/{self.remote}/{name}")

    def branch_exists(self, name: str) -> bool:
        """True if the branch exists locally or on the remote."""
        return self.local_branch_exists(name) or self.remote_branch_exists(name)

    def create_branch(self, name: str, base: Optional[str] = None) -> None:
        args = ["checkout", "-b", name]
        if base:
            args.append(base)
        self._run(*args)

    def switch_to_branch(self, name: str) -> None:
        # A branch that only exists on the remote gets a local tracking branch
        self._run("checkout", name)

    def get_branch_info(self, name: str) -> BranchInfo:
        return BranchInfo(
            name=name,
            exists=self.branch_exists(name),
            is_current_branch=self.get_current_branch() == name,
        )

    def delete_branch(self, name: str, force: bool = False) -> None:
        self._run("branch", "-D" if force else "-d", name)

    def delete_remote_branch(self, name: str) -> None:
        self._run("push", self.remote, "--delete", name)

    def push_branch(self, name: str, force: bool = False) -> None:
        args = ["push"]
        if force:
            args.append("--force")
        args.extend(["-u", self.remote, name])
        self._run(*args)

    def ensure_clean(self, operation: str) -> None:
        """Raise UncommittedChangesError when the tree is dirty."""
        if self.has_uncommitted_changes():
            raise UncommittedChangesError(
                f"Uncommitted changes detected. Commit or stash them before {operation}."
            )

    def ensure_on_default_branch(self) -> str:
        default_branch = self.get_default_branch()
        if self.get_current_branch() != default_branch:
            self.ensure_clean(f"switching to {default_branch}")
            self.switch_to_branch(default_branch)
        return default_branch

    def task_branch_name(self, slug: str) -> str:
        return f"{self.branch_prefix}/{slug}"

    def get_task_branch(self, slug: str, recorded: Optional[str] = None) -> Optional[str]:
        """Find an existing branch for a task.

        Matches the recorded branch name first, then `<prefix>/<slug>`, each
        as an exact local or remote branch name.
        """
        candidates = [name for name in (recorded, self.task_branch_name(slug)) if name]
        for name in candidates:
            if self.branch_exists(name):
                return name
        return None

    def get_or_create_task_branch(self, slug: str, recorded: Optional[str] = None) -> tuple[str, bool]:
        """Switch to the task's branch, creating it from the default branch if needed.

        Returns:
            (branch name, True if the branch was newly created)

        Raises:
            UncommittedChangesError: The tree is dirty and a switch is needed
        """
        existing = self.get_task_branch(slug, recorded)
        if existing:
            if self.get_current_branch() != existing:
                self.ensure_clean(f"switching to {existing}")
                self.switch_to_branch(existing)
            return existing, False

        name = self.task_branch_name(slug)
        default_branch = self.ensure_on_default_branch()
        self.ensure_clean(f"creating {name}")
        console.print(f"[dim]Creating {escape(name)} from {escape(default_branch)}[/dim]")
        self.create_branch(name, default_branch)
        return name, True

    def generate_unique_branch_name(self, base_name: str) -> str:
        """`base_name`, or the first free `base_name-N` (N = 1, 2, ...)."""
        if not self.branch_exists(base_name):
            return base_name

        counter = 1
        while self.branch_exists(f"{base_name}-{counter}"):
            counter += 1
        return f"{base_name}-{counter}"

    def create_task_planning_branch(self, task_id: str, base_branch: Optional[str] = None) -> str:
        name = self.generate_unique_branch_name(f"{self.branch_prefix}/{task_id}-planning")
        base = base_branch or self.ensure_on_default_branch()
        self.create_branch(name, base)
        return name

    def create_task_implementation_branch(self, task_id: str, planning_branch: Optional[str] = None) -> str:
        """Create an implementation branch off the planning branch when there is one."""
        name = self.generate_unique_branch_name(f"{self.branch_prefix}/{task_id}-implementation")

        base = planning_branch
        if not base:
            current = self.get_current_branch()
            base = current if current.endswith("-planning") or "-planning-" in current else self.ensure_on_default_branch()

        self.create_branch(name, base)
        return name

    # =========================================================================
    # Staging and commits
    # =========================================================================

    def add_all(self, paths: list[str]) -> None:
        """Stage specific paths."""
        if paths:
            self._run("add", "--", *paths)

    def add_namespace(self) -> None:
        """Stage the whole task artifact namespace."""
        if (self.project_path / self.artifact_namespace).exists():
            self._run("add", "-A", "--", self.artifact_namespace)

    def stage_all(self) -> None:
        """Stage all changes."""
        self._run("add", "-A")

    def commit(self, message: str, allow_empty: bool = False, push: bool = False) -> CommitResult:
        """Commit what is staged.

        With nothing staged and allow_empty False this is a no-op: no commit
        command runs and CommitResult.created is False.
        """
        if not allow_empty and not self.has_staged_changes():
            if self.debug:
                console.print("[dim]Nothing staged, skipping commit[/dim]")
            return CommitResult(created=False)

        args = ["commit", "-m", message]
        if allow_empty:
            args.append("--allow-empty")
        if self.author_name and self.author_email:
            args.append(f"--author={self.author_name} <{self.author_email}>")
        self._run(*args)

        sha = self.get_commit_sha()
        pushed = False
        if push:
            self.push_branch(self.get_current_branch())
            pushed = True
        return CommitResult(created=True, sha=sha, pushed=pushed)

    def track_operation(self) -> CommitTracker:
        """Capture HEAD before an operation that may commit on its own."""
        return CommitTracker(self, self.head_sha())

    # =========================================================================
    # Pull requests
    # =========================================================================

    def create_pull_request(
        self,
        branch: str,
        title: str,
        body: str,
        base: Optional[str] = None,
    ) -> str:
        """Push `branch` and open a pull request with the GitHub CLI.

        Returns:
            The pull request URL

        Raises:
            PullRequestError: Push or `gh pr create` failed
        """
        if self.get_current_branch() != branch:
            self.ensure_clean("creating a pull request")
            self.switch_to_branch(branch)

        try:
            self.push_branch(branch)
        except GitCommandError as e:
            raise PullRequestError(f"Failed to push {branch}: {e}") from e

        command = ["gh", "pr", "create", "--title", title, "--body", body, "--head", branch]
        if base:
            command.extend(["--base", base])
        if self.debug:
            console.print(f"[dim]{escape(' '.join(command[:3]))} --head {escape(branch)}[/dim]")

        try:
            result = subprocess.run(command, cwd=self.project_path, capture_output=True, text=True)
        except FileNotFoundError as e:
            raise PullRequestError("GitHub CLI (gh) is not installed") from e

        if result.returncode != 0:
            error = GitCommandError(command, result.returncode, result.stdout, result.stderr)
            raise PullRequestError(f"Failed to create pull request: {error}") from error

        lines = [line.strip() for line in result.stdout.splitlines() if line.strip()]
        if not lines:
            raise PullRequestError("gh pr create printed no URL")
        return lines[-1]

    # =========================================================================
    # Worktrees
    # =========================================================================

    def get_worktree_path(self, slug: str, base_path: Optional[str] = None) -> Path:
        base = base_path or f"{self.artifact_namespace}/worktrees"
        return self.project_path / base / slug

    def create_worktree(self, branch: str, path: Path) -> None:
        """Check `branch` out into `path`, creating it from the default branch if missing."""
        console.print(f"[dim]Creating worktree {escape(str(path))} on {escape(branch)}[/dim]")
        if self.branch_exists(branch):
            self._run("worktree", "add", str(path), branch)
        else:
            self._run("worktree", "add", "-b", branch, str(path), self.get_default_branch())

    def remove_worktree(self, path: Path, force: bool = False) -> None:
        args = ["worktree", "remove"]
        if force:
            args.append("--force")
        args.append(str(path))
        self._run(*args)

    def list_worktrees(self) -> list[WorktreeInfo]:
        output = self._run("worktree", "list", "--porcelain").stdout
        return parse_worktree_list(output)

    def worktree_exists(self, path: Path) -> bool:
        target = Path(path).resolve()
        return any(Path(w.path).resolve() == target for w in self.list_worktrees())

    def cleanup_stale_worktrees(self) -> None:
        self._run("worktree", "prune")


def parse_worktree_list(output: str) -> list[WorktreeInfo]:
    """Parse `git worktree list --porcelain`."""
    worktrees: list[WorktreeInfo] = []
    current: Optional[WorktreeInfo] = None

    for line in output.splitlines():
        line = line.strip()
        if not line:
            continue
        if line.startswith("worktree "):
            current = WorktreeInfo(path=line[len("worktree "):])
            worktrees.append(current)
        elif current is None:
            continue
        elif line.startswith("HEAD "):
            current.commit = line[len("HEAD "):]
        elif line.startswith("branch "):
            current.branch = line[len("branch "):].replace("refs/heads/", "", 1)
        elif line == "bare":
            current.is_bare = True
        elif line == "detached":
            current.is_detached = True

    return worktrees
