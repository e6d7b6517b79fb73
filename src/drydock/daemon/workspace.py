"""Isolated git worktrees for jobs.

Each issue gets ``<repo>/.worktrees/issue-<n>`` on branch
``drydock/issue-<n>``, cut from the configured base branch.  A stale
worktree left behind by a crash is removed before a new one is created.
"""

from __future__ import annotations

import asyncio
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from drydock.core.logging import get_logger
from drydock.core.paths import RepoPaths
from drydock.exceptions import SpawnError

_logger = get_logger("daemon.workspace")


@dataclass(frozen=True)
class Workspace:
    path: Path
    branch: str


class WorkspaceProvider(Protocol):
    async def create(self, external_ref: int, base_branch: str) -> Workspace: ...

    async def remove(self, workspace: Workspace) -> None: ...


class GitWorktreeManager:
    """Creates and removes per-issue worktrees with ``git worktree``."""

    def __init__(self, repo: Path) -> None:
        self._repo = repo
        self._root = RepoPaths(repo).worktree_dir

    async def _git(self, *args: str) -> tuple[int, str]:
        proc = await asyncio.create_subprocess_exec(
            "git", *args,
            cwd=self._repo,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
        out, _ = await proc.communicate()
        return proc.returncode or 0, out.decode("utf-8", errors="replace").strip()

    async def create(self, external_ref: int, base_branch: str) -> Workspace:
        workspace = Workspace(
            path=self._root / f"issue-{external_ref}",
            branch=f"drydock/issue-{external_ref}",
        )
        if workspace.path.exists():
            _logger.info("workspace.stale_removed", path=str(workspace.path))
            await self.remove(workspace)

        self._root.mkdir(parents=True, exist_ok=True)
        code, out = await self._git(
            "worktree", "add", "-B", workspace.branch, str(workspace.path), base_branch,
        )
        if code != 0:
            raise SpawnError(f"git worktree add failed for issue {external_ref}: {out}")
        _logger.debug("workspace.created", path=str(workspace.path), branch=workspace.branch)
        return workspace

    async def remove(self, workspace: Workspace) -> None:
        code, out = await self._git("worktree", "remove", "--force", str(workspace.path))
        if code != 0:
            _logger.warning("workspace.remove_failed", path=str(workspace.path), error=out)
            shutil.rmtree(workspace.path, ignore_errors=True)
            await self._git("worktree", "prune")


__all__ = ["GitWorktreeManager", "Workspace", "WorkspaceProvider"]
