"""Isolated git clones for worktree tasks."""

from __future__ import annotations

import asyncio
import logging
import re
import shutil
from dataclasses import dataclass
from pathlib import Path

from piecework.errors import GitOperationFailed
from piecework.storage.common import utc_now

logger = logging.getLogger(__name__)

BRANCH_PREFIX = "piecework"
_SLUG_UNSAFE = re.compile(r"[^a-z0-9]+")
_SLUG_MAX_CHARS = 40


@dataclass(slots=True)
class CloneResult:
    """Created clone location and its branch."""

    path: Path
    branch: str


class CloneManager:
    """Create, commit in and remove ``git clone --reference --dissociate`` clones."""

    def __init__(self, *, git: str = "git") -> None:
        self.git = git

    async def create(  # noqa: PLR0913
        self,
        project_dir: Path,
        *,
        task_name: str,
        worktree: bool | str,
        branch: str | None = None,
        base_branch: str | None = None,
        issue: int | None = None,
    ) -> CloneResult:
        """Clone ``project_dir`` without an origin remote and check out a task branch."""

        project_dir = project_dir.resolve()
        timestamp = _timestamp()
        slug = slugify(task_name)
        path = resolve_clone_path(
            project_dir,
            worktree=worktree,
            timestamp=timestamp,
            slug=slug,
            issue=issue,
        )
        branch_name = branch or default_branch_name(timestamp=timestamp, slug=slug, issue=issue)
        logger.info("Creating clone %s on branch %s", path, branch_name)

        path.parent.mkdir(parents=True, exist_ok=True)
        clone_args = ["clone", "--reference", str(project_dir), "--dissociate"]
        if base_branch:
            clone_args += ["--branch", base_branch]
        await self._git(*clone_args, str(project_dir), str(path), cwd=project_dir)
        await self._git("remote", "remove", "origin", cwd=path)
        for key in ("user.name", "user.email"):
            value = await self._git_optional("config", "--local", key, cwd=project_dir)
            if value:
                await self._git("config", key, value, cwd=path)
        await self._git("checkout", "-b", branch_name, cwd=path)
        return CloneResult(path=path, branch=branch_name)

    async def auto_commit(self, path: Path, message: str) -> str | None:
        """Stage everything and commit; return the short hash or None when clean."""

        await self._git("add", "-A", cwd=path)
        status = await self._git("status", "--porcelain", cwd=path)
        if not status.strip():
            logger.info("No changes to commit in %s", path)
            return None
        await self._git("commit", "-m", message, cwd=path)
        commit_hash = (await self._git("rev-parse", "--short", "HEAD", cwd=path)).strip()
        logger.info("Auto-commit created %s in %s", commit_hash, path)
        return commit_hash

    async def push(self, path: Path, project_dir: Path) -> None:
        """Push the clone's HEAD branch back into the project repository."""

        await self._git("push", str(project_dir), "HEAD", cwd=path)

    def remove(self, path: Path) -> None:
        logger.info("Removing clone %s", path)
        shutil.rmtree(path, ignore_errors=True)

    async def _git_optional(self, *args: str, cwd: Path) -> str | None:
        try:
            return (await self._git(*args, cwd=cwd)).strip() or None
        except GitOperationFailed:
            return None

    async def _git(self, *args: str, cwd: Path) -> str:
        try:
            process = await asyncio.create_subprocess_exec(
                self.git,
                *args,
                cwd=str(cwd),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as error:
            raise GitOperationFailed(f"git {args[0]} could not start: {error}") from error
        stdout, stderr = await process.communicate()
        if process.returncode != 0:
            detail = stderr.decode("utf-8", errors="replace").strip()
            raise GitOperationFailed(
                f"git {' '.join(args)} failed with exit code {process.returncode}: {detail}",
            )
        return stdout.decode("utf-8", errors="replace")


def slugify(text: str) -> str:
    slug = _SLUG_UNSAFE.sub("-", text.lower()).strip("-")
    return slug[:_SLUG_MAX_CHARS].strip("-")


def default_branch_name(*, timestamp: str, slug: str, issue: int | None) -> str:
    if issue is not None:
        return f"{BRANCH_PREFIX}/{issue}/{slug or 'task'}"
    return f"{BRANCH_PREFIX}/{timestamp}-{slug}" if slug else f"{BRANCH_PREFIX}/{timestamp}"


def resolve_clone_path(
    project_dir: Path,
    *,
    worktree: bool | str,
    timestamp: str,
    slug: str,
    issue: int | None,
) -> Path:
    """Explicit worktree path, else a sibling ``<project>-worktrees`` directory."""

    if isinstance(worktree, str) and worktree:
        explicit = Path(worktree)
        return explicit if explicit.is_absolute() else (project_dir / explicit).resolve()
    issue_part = f"{issue}-" if issue is not None else ""
    name = f"{timestamp}-{issue_part}{slug}".rstrip("-")
    return project_dir.parent / f"{project_dir.name}-worktrees" / name


def _timestamp() -> str:
    return utc_now().strftime("%Y%m%dT%H%M%S")
