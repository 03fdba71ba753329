"""Repository synchroniser: clone-or-update the deployment checkout."""

from __future__ import annotations

import logging
import posixpath
from typing import Sequence

from .errors import SyncError
from .models import DeploymentContext, HostState, utc_now
from .shell import CommandFailed, CommandRunner

logger = logging.getLogger(__name__)


def _git(runner: CommandRunner, target: str, *args: str, check: bool = True):
    return runner.run(["git", "-C", target, *args], check=check)


def _has_remote_branch(runner: CommandRunner, target: str, branch: str) -> bool:
    return _git(runner, target, "show-ref", "--verify", "--quiet", f"refs/remotes/origin/{branch}", check=False).ok


def _clone(runner: CommandRunner, url: str, target: str) -> None:
    parent = posixpath.dirname(target.rstrip("/"))
    if parent and not runner.exists(parent, "d"):
        logger.info("Creating parent directory: %s", parent)
        runner.run(["mkdir", "-p", parent])
    logger.info("Cloning %s into %s", url, target)
    runner.run(["git", "clone", url, target])


def _checkout_ref(runner: CommandRunner, target: str, ref: str) -> None:
    if _has_remote_branch(runner, target, ref):
        _git(runner, target, "checkout", ref)
        _git(runner, target, "pull", "origin", ref)
    else:
        # tag or commit
        _git(runner, target, "checkout", "--detach", ref)


def _update(runner: CommandRunner, target: str, ref: str | None, branches: Sequence[str]) -> None:
    _git(runner, target, "stash", "push", "-m", f"Auto-stash before deployment {utc_now()}")
    _git(runner, target, "fetch", "origin", "--tags", "--prune")

    if ref:
        _checkout_ref(runner, target, ref)
        return

    for branch in branches:
        if _has_remote_branch(runner, target, branch):
            _git(runner, target, "checkout", branch)
            _git(runner, target, "pull", "origin", branch)
            return

    current = _git(runner, target, "branch", "--show-current").stdout.strip()
    if not current:
        raise SyncError(f"{target} is on a detached HEAD and none of {list(branches)} exist on origin")
    logger.info("Using current branch: %s", current)
    _git(runner, target, "pull", "origin", current)


def sync_repository(
    ctx: DeploymentContext,
    url: str,
    host_state: HostState | None = None,
    ref: str | None = None,
    branches: Sequence[str] = ("main", "master"),
) -> str:
    """Bring ``ctx.project_dir`` to the desired revision and return its commit id.

    A checkout is updated in place with local edits stashed; a directory that
    is not a checkout is removed and cloned fresh.
    """
    runner = ctx.runner
    target = ctx.project_dir
    state = host_state if host_state is not None else HostState()

    try:
        state.project_dir_exists = runner.exists(target, "d")
        if not state.project_dir_exists:
            _clone(runner, url, target)
            if ref:
                _checkout_ref(runner, target, ref)
        else:
            state.is_git_repo = runner.exists(posixpath.join(target, ".git"), "e")
            if state.is_git_repo:
                logger.info("Git repository found in %s, updating", target)
                _update(runner, target, ref, branches)
            else:
                logger.warning("%s exists but is not a git repository; removing and cloning fresh", target)
                runner.run(["rm", "-rf", target])
                _clone(runner, url, target)
                if ref:
                    _checkout_ref(runner, target, ref)

        revision = _git(runner, target, "rev-parse", "HEAD").stdout.strip()
    except CommandFailed as e:
        raise SyncError(str(e), exit_code=e.returncode) from e

    state.project_dir_exists = True
    state.is_git_repo = True
    logger.info("Repository at %s is on %s", target, revision[:12])
    return revision
