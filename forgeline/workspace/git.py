"""
Git manager for task workspaces.

Only a whitelisted subset of git is reachable from here. Anything that
could rewrite history or talk to a remote is refused before a process
is spawned.
"""

from __future__ import annotations

import re
from pathlib import Path

from loguru import logger

from forgeline.workspace.process import CommandResult, CommandTimeoutError, run_command

GIT_TIMEOUT = 60
MAX_COMMIT_MESSAGE_CHARS = 200

ALLOWED_SUBCOMMANDS = frozenset({
    "checkout", "add", "commit", "diff", "log", "branch",
    "rev-parse", "clone", "pull", "status", "switch",
})

FORBIDDEN_ARGS = frozenset({
    "--force", "--hard", "--amend", "push", "remote", "tag", "rebase", "fetch",
})

BRANCH_PATTERN = re.compile(r"^forge/task-[a-f0-9]{8}$|^forge/auto-\d{8}-\d{6}$")
_COMMIT_HASH = re.compile(r"\[[^\s\]]+(?: \([^)]*\))? ([a-f0-9]{7,40})\]")

GIT_ENV = {
    "GIT_TERMINAL_PROMPT": "0",
    "HUSKY": "0",
}


class GitOperationError(Exception):
    pass


def build_branch_name(change_id: str) -> str:
    return f"forge/task-{change_id[:8].lower()}"


def validate_branch_name(name: str) -> None:
    if not BRANCH_PATTERN.match(name):
        raise GitOperationError(f"Invalid branch name: {name}")


def sanitize_commit_message(message: str) -> str:
    return message.replace("\r", " ").replace("\n", " ").replace('"', "'").strip()[:MAX_COMMIT_MESSAGE_CHARS]


def _check_args(args: tuple[str, ...]) -> None:
    if not args or args[0] not in ALLOWED_SUBCOMMANDS:
        raise GitOperationError(f"Git subcommand not allowed: {args[0] if args else '<none>'}")
    for arg in args:
        if arg in FORBIDDEN_ARGS:
            raise GitOperationError(f"Git argument not allowed: {arg}")


def run_git(cwd: Path, *args: str, timeout: float = GIT_TIMEOUT, raise_on_timeout: bool = False) -> CommandResult:
    _check_args(args)
    return run_command(["git", *args], cwd=cwd, timeout=timeout, env=GIT_ENV, raise_on_timeout=raise_on_timeout)


def clone_local(source: Path | str, dest: Path) -> None:
    dest.parent.mkdir(parents=True, exist_ok=True)
    try:
        result = run_git(dest.parent, "clone", "--local", str(source), str(dest), timeout=120, raise_on_timeout=True)
    except CommandTimeoutError as e:
        raise GitOperationError(f"Clone timed out: {e}") from e
    if not result.success:
        raise GitOperationError(f"Clone failed ({result.describe()}): {result.stderr.strip()}")
    logger.info(f"[GIT] Cloned {source} -> {dest}")


class GitManager:
    """Branch lifecycle inside one working tree."""

    def __init__(self, repo_path: Path, base_branch: str = "main"):
        self.repo_path = repo_path
        self.base_branch = base_branch

    def _git(self, *args: str, check: bool = True) -> str:
        try:
            result = run_git(self.repo_path, *args, raise_on_timeout=True)
        except CommandTimeoutError as e:
            raise GitOperationError(f"Git timed out: git {' '.join(args)} ({e})") from e
        if check and not result.success:
            raise GitOperationError(
                f"Git failed: git {' '.join(args)} ({result.describe()})\n{result.stderr.strip()}"
            )
        return result.stdout

    # -- queries -------------------------------------------------------------

    def current_branch(self) -> str:
        return self._git("rev-parse", "--abbrev-ref", "HEAD").strip()

    def branch_exists(self, name: str) -> bool:
        return bool(self._git("branch", "--list", name).strip())

    def has_changes(self) -> bool:
        return bool(self._git("status", "--porcelain").strip())

    def branch_diff(self, branch: str) -> str:
        return self._git("diff", f"{self.base_branch}...{branch}")

    def branch_commits(self, branch: str) -> list[str]:
        out = self._git("log", f"{self.base_branch}..{branch}", "--oneline")
        return [line.strip() for line in out.splitlines() if line.strip()]

    def is_tracked(self, path: str) -> bool:
        result = run_git(self.repo_path, "log", "-1", "--format=%H", "--", path)
        return result.success and bool(result.stdout.strip())

    # -- mutations -----------------------------------------------------------

    def switch_to_base(self) -> None:
        self._git("checkout", self.base_branch)

    def create_branch(self, name: str) -> None:
        validate_branch_name(name)
        self._git("checkout", "-b", name)
        logger.info(f"[GIT] Created branch {name}")

    def stage(self, paths: list[str]) -> None:
        if paths:
            self._git("add", "--", *paths)

    def commit(self, message: str) -> str:
        out = self._git("commit", "-m", sanitize_commit_message(message))
        match = _COMMIT_HASH.search(out)
        if match:
            return match.group(1)
        return self._git("rev-parse", "--short", "HEAD").strip()

    def restore_paths(self, paths: list[str]) -> None:
        """Discard working-tree edits to tracked files."""
        if not paths:
            return
        result = run_git(self.repo_path, "checkout", "--", *paths)
        if result.success:
            return
        logger.warning("[GIT] Bulk restore failed, restoring files one by one")
        for path in paths:
            single = run_git(self.repo_path, "checkout", "--", path)
            if not single.success:
                logger.debug(f"[GIT] {path} is not tracked, skipping restore")

    def pull(self) -> bool:
        result = run_git(self.repo_path, "pull", "--ff-only", timeout=120)
        if not result.success:
            logger.warning(f"[GIT] Pull failed in {self.repo_path}: {result.stderr.strip()[:200]}")
        return result.success

    def delete_branch(self, name: str) -> None:
        """Switch back to base and drop the branch. Failure is logged, not raised."""
        validate_branch_name(name)
        switched = run_git(self.repo_path, "checkout", self.base_branch)
        if not switched.success:
            logger.warning(f"[GIT] Could not switch to {self.base_branch} before deleting {name}")
        result = run_git(self.repo_path, "branch", "-D", name)
        if result.success:
            logger.info(f"[GIT] Deleted branch {name}")
        else:
            logger.warning(f"[GIT] Failed to delete branch {name}: {result.stderr.strip()[:200]}")
