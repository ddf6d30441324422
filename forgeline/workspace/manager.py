"""
Workspace manager: per-task checkouts and the code-change lifecycle.

Layout under the configured root:

    <root>/<project>/.base          long-lived clone of the project source
    <root>/<project>/task-<short>   disposable clone for one task

A change lands on its own `forge/task-<id8>` branch. Base is never
committed to directly; anything that fails validation is rolled back
and its branch deleted.
"""

from __future__ import annotations

import shutil
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from loguru import logger
from pydantic import BaseModel

from forgeline.config_loader import ForgelineConfig
from forgeline.forge.validation import ValidationFailure, Validator, detect_package_manager
from forgeline.models import FileChange, FileSnapshot
from forgeline.patch import PatchApplyError, apply_changes
from forgeline.result import Err
from forgeline.store import StateStore
from forgeline.workspace.git import GitManager, GitOperationError, build_branch_name, clone_local
from forgeline.workspace.process import run_command
from forgeline.workspace.security import ProjectSecurityError, sanitize_workspace_path

MAX_DESCRIPTION_IN_COMMIT = 120


class WorkspaceError(Exception):
    pass


@dataclass(frozen=True)
class FileBackup:
    path: str
    existed: bool
    original_content: str | None


class ApplyOutcome(BaseModel):
    success: bool
    diff: str = ""
    lint_output: str = ""
    branch_name: str | None = None
    commits: list[str] = []
    error: str | None = None


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class WorkspaceManager:
    """Owns task checkouts and every write the pipeline makes to them."""

    def __init__(self, config: ForgelineConfig, store: StateStore, root: Path | None = None):
        self.config = config
        self.store = store
        self.root = (root or Path(config.workspace.root)).resolve()
        self.base_branch = config.workspace.base_branch

    def git(self, workspace: Path) -> GitManager:
        return GitManager(workspace, base_branch=self.base_branch)

    def workspace_for(self, project_id: str, task_id: str) -> Path:
        return self.root / project_id / f"task-{task_id[:8]}"

    # -- checkout ------------------------------------------------------------

    def prepare_workspace(self, project_id: str, repo_source: str, task_id: str) -> Path:
        """Refresh the base clone and cut a fresh task clone from it."""
        if not repo_source:
            raise WorkspaceError(f"No repo_source configured for project {project_id}")

        base = self.root / project_id / ".base"
        try:
            if (base / ".git").exists():
                self.git(base).pull()
            else:
                clone_local(repo_source, base)

            task_dir = self.workspace_for(project_id, task_id)
            if task_dir.exists():
                logger.warning(f"[WORKSPACE] Found stale workspace {task_dir.name}. Resetting...")
                shutil.rmtree(task_dir)
            clone_local(base, task_dir)
        except GitOperationError as e:
            raise WorkspaceError(f"Failed to prepare workspace for {project_id}: {e}") from e

        self._install_dependencies(task_dir)
        logger.info(f"[WORKSPACE] Ready: {task_dir}")
        return task_dir

    def _install_dependencies(self, workspace: Path) -> None:
        if not self.config.workspace.install_dependencies:
            return
        if not (workspace / "package.json").exists():
            return

        pm = detect_package_manager(workspace)
        logger.info(f"[WORKSPACE] Installing dependencies with {pm}")
        result = run_command([pm, "install"], cwd=workspace, timeout=self.config.workspace.install_timeout)
        if not result.success:
            # validation will report whatever is actually missing
            logger.warning(f"[WORKSPACE] Dependency install failed: {result.describe()}")

    # -- file state ----------------------------------------------------------

    def backup_files(self, workspace: Path, files: list[FileChange]) -> list[FileBackup]:
        backups = []
        for change in files:
            full_path = sanitize_workspace_path(workspace, change.path)
            if full_path.exists():
                backups.append(FileBackup(change.path, True, full_path.read_text(encoding="utf-8")))
            else:
                backups.append(FileBackup(change.path, False, None))
        return backups

    def restore_backups(self, workspace: Path, backups: list[FileBackup]) -> None:
        """Put every file back exactly as it was; files that did not exist are removed."""
        for backup in backups:
            full_path = sanitize_workspace_path(workspace, backup.path)
            if backup.existed and backup.original_content is not None:
                full_path.write_text(backup.original_content, encoding="utf-8")
                logger.info(f"[WORKSPACE] Restored {backup.path}")
            elif not backup.existed and full_path.exists():
                full_path.unlink()
                logger.info(f"[WORKSPACE] Removed created file {backup.path}")

    def restore_workspace(self, workspace: Path, paths: list[str]) -> None:
        """Undo uncommitted writes: tracked files from git, untracked ones deleted."""
        git = self.git(workspace)
        tracked = [p for p in paths if git.is_tracked(p)]
        created = [p for p in paths if p not in tracked]

        git.restore_paths(tracked)
        for path in created:
            try:
                full_path = sanitize_workspace_path(workspace, path)
            except ProjectSecurityError:
                continue
            if full_path.is_file():
                full_path.unlink()
                logger.debug(f"[WORKSPACE] Deleted created file {path}")

    def read_files_state(self, workspace: Path, paths: list[str], max_chars: int = 12_000) -> dict[str, str]:
        state: dict[str, str] = {}
        for path in paths:
            try:
                full_path = sanitize_workspace_path(workspace, path)
            except ProjectSecurityError:
                continue
            if full_path.is_file():
                state[path] = full_path.read_text(encoding="utf-8", errors="replace")[:max_chars]
        return state

    def _snapshot(self, workspace: Path, files: list[FileChange], originals: dict[str, str | None]) -> list[FileSnapshot]:
        snapshot = []
        for change in files:
            full_path = sanitize_workspace_path(workspace, change.path)
            after = full_path.read_text(encoding="utf-8") if full_path.exists() else ""
            snapshot.append(FileSnapshot(
                path=change.path,
                action=change.action,
                before=originals.get(change.path),
                after=after,
            ))
        return snapshot

    # -- lifecycle -----------------------------------------------------------

    def commit_verified_changes(
        self,
        change_id: str,
        description: str,
        workspace: Path,
        files: list[FileChange],
        lint_output: str = "",
        originals: dict[str, str | None] | None = None,
    ) -> ApplyOutcome:
        """Commit a working tree that already passed validation onto a fresh branch."""
        git = self.git(workspace)
        branch = build_branch_name(change_id)
        paths = [f.path for f in files]

        try:
            git.create_branch(branch)
        except GitOperationError as e:
            logger.error(f"[GIT] Branch creation failed for {change_id[:8]}: {e}")
            return ApplyOutcome(success=False, error=f"Git branch creation failed: {e}")

        try:
            snapshot = self._snapshot(workspace, files, originals or {})
            git.stage(paths)
            commit_hash = git.commit(f"forge: {description[:MAX_DESCRIPTION_IN_COMMIT]}")
            diff = git.branch_diff(branch)
            commits = git.branch_commits(branch)
            git.switch_to_base()
        except (GitOperationError, OSError) as e:
            logger.error(f"[GIT] Commit failed for {change_id[:8]}, removing {branch}: {e}")
            git.delete_branch(branch)
            return ApplyOutcome(success=False, error=str(e))

        self.store.update_code_change_status(
            change_id,
            "applied",
            diff=diff,
            test_output=lint_output,
            applied_at=_now_iso(),
            branch_name=branch,
            commits=commits,
            snapshot=snapshot,
        )
        logger.info(f"[GIT] {change_id[:8]} committed on {branch} ({commit_hash})")
        return ApplyOutcome(success=True, diff=diff, lint_output=lint_output, branch_name=branch, commits=commits)

    def apply_code_change(
        self,
        change_id: str,
        files: list[FileChange],
        workspace: Path,
        validator: Validator,
    ) -> ApplyOutcome:
        """
        Branch, back up, write, validate, then commit or roll back.

        A failure to create the branch aborts before anything is written.
        Any later failure restores every backup byte-for-byte, returns to
        base and deletes the branch.
        """
        change = self.store.get_code_change(change_id)
        if change is None:
            return ApplyOutcome(success=False, error=f"Code change not found: {change_id}")

        git = self.git(workspace)
        branch = build_branch_name(change.id)
        paths = [f.path for f in files]

        try:
            git.switch_to_base()
            git.create_branch(branch)
        except GitOperationError as e:
            logger.error(f"[GIT] Failed to create {branch}: {e}")
            self.store.update_code_change_status(change.id, "failed", error=f"Git branch creation failed: {e}")
            return ApplyOutcome(success=False, error=f"Git branch creation failed: {e}")

        backups = self.backup_files(workspace, files)
        lint_output = ""
        try:
            written = apply_changes(workspace, files)
            if isinstance(written, Err):
                raise PatchApplyError(written.error)

            validator.auto_fix(paths)
            validation = validator.run(paths)
            lint_output = validation.output
            validation.raise_for_failure()

            originals = {b.path: b.original_content for b in backups}
            snapshot = self._snapshot(workspace, files, originals)
            git.stage(paths)
            git.commit(f"forge: {change.description[:MAX_DESCRIPTION_IN_COMMIT]}")
            diff = git.branch_diff(branch)
            commits = git.branch_commits(branch)
            git.switch_to_base()
        except (PatchApplyError, ValidationFailure, GitOperationError, ProjectSecurityError, OSError) as e:
            reason = "Lint validation failed" if isinstance(e, ValidationFailure) else str(e)
            logger.warning(f"[WORKSPACE] {change.short_id} failed ({reason[:200]}), rolling back")
            self.restore_backups(workspace, backups)
            git.delete_branch(branch)
            self.store.update_code_change_status(change.id, "failed", test_output=lint_output or None, error=reason)
            return ApplyOutcome(success=False, lint_output=lint_output, error=reason)

        self.store.update_code_change_status(
            change.id,
            "applied",
            diff=diff,
            test_output=lint_output,
            applied_at=_now_iso(),
            branch_name=branch,
            commits=commits,
            snapshot=snapshot,
        )
        logger.info(f"[WORKSPACE] {change.short_id} applied on {branch}")
        return ApplyOutcome(success=True, diff=diff, lint_output=lint_output, branch_name=branch, commits=commits)

    def rollback_code_change(self, change_id: str, workspace: Path) -> bool:
        """Restore the recorded `before` contents and drop the change's branch."""
        change = self.store.get_code_change(change_id)
        if change is None:
            logger.error(f"[WORKSPACE] Cannot roll back {change_id}: not found")
            return False
        if not change.snapshot and not change.branch_name:
            logger.error(f"[WORKSPACE] Cannot roll back {change.short_id}: nothing recorded")
            return False

        git = self.git(workspace)
        try:
            git.switch_to_base()
            self.restore_backups(workspace, [
                FileBackup(entry.path, entry.before is not None, entry.before) for entry in change.snapshot
            ])
        except (GitOperationError, ProjectSecurityError, OSError) as e:
            logger.error(f"[WORKSPACE] Rollback of {change.short_id} failed: {e}")
            return False

        if change.branch_name:
            git.delete_branch(change.branch_name)
        self.store.update_code_change_status(change.id, "rolled_back")
        logger.info(f"[WORKSPACE] {change.short_id} rolled back")
        return True
