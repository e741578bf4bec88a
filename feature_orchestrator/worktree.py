"""Working-directory resolution: reuse a pre-existing git worktree for the feature branch."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

logger = logging.getLogger("orchestrator")

WORKTREE_LIST_TIMEOUT = 10.0


async def run_git(args: list[str], cwd: Path, timeout: float) -> str | None:
    """Run ``git <args>`` as an asyncio subprocess. None on any failure."""
    try:
        proc = await asyncio.create_subprocess_exec(
            "git", *args,
            cwd=str(cwd),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
        )
    except OSError as e:
        logger.debug(f"git {args[0]} failed: {e}")
        return None

    try:
        stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        logger.debug(f"git {args[0]} timed out after {timeout:.0f}s")
        return None
    finally:
        if proc.returncode is None:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            await proc.wait()

    if proc.returncode != 0:
        return None
    return stdout.decode(errors="replace")


def parse_worktree_list(porcelain: str, project_dir: Path) -> dict[str, Path]:
    """Map branch name -> worktree path from ``git worktree list --porcelain`` output."""
    worktrees: dict[str, Path] = {}
    current_path: str | None = None
    current_branch: str | None = None

    for line in porcelain.split("\n") + [""]:
        if line.startswith("worktree "):
            current_path = line[len("worktree "):]
        elif line.startswith("branch "):
            current_branch = line[len("branch "):].replace("refs/heads/", "", 1)
        elif line == "":
            if current_path and current_branch:
                path = Path(current_path)
                if not path.is_absolute():
                    path = project_dir / path
                worktrees.setdefault(current_branch, path.resolve())
            current_path = None
            current_branch = None

    return worktrees


async def find_existing_worktree(project_dir: Path, branch_name: str) -> Path | None:
    porcelain = await run_git(["worktree", "list", "--porcelain"], project_dir, WORKTREE_LIST_TIMEOUT)
    if porcelain is None:
        return None
    return parse_worktree_list(porcelain, project_dir).get(branch_name)


async def resolve_working_dir(project_dir: Path, branch_name: str | None, use_worktrees: bool = True) -> Path:
    """Use the branch's worktree when one exists, else fall back to the project root."""
    if not use_worktrees or not branch_name:
        return project_dir

    worktree = await find_existing_worktree(project_dir, branch_name)
    if worktree is not None:
        logger.info(f"  Using worktree for branch {branch_name}: {worktree}")
        return worktree

    logger.warning(
        f"  Worktree for branch {branch_name} not found, using project path: {project_dir}"
    )
    return project_dir
