from __future__ import annotations

import logging
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, List
from urllib.parse import quote_plus, urlsplit

from deadline import Deadline
from logging_utils import log_event
from models import WorkRequest
from runners.command import CommandError, run_command
from timings import Timings, timed

log = logging.getLogger("runner.workspace")

DEFAULT_GIT_HOST = "github.com"

# Never block on a credential prompt; the token is already in the remote URL.
_GIT_ENV = {"GIT_TERMINAL_PROMPT": "0"}


class WorkspaceError(Exception):
    """The repository could not be materialized at the requested commit."""


@dataclass
class Workspace:
    root: Path
    repo_dir: Path
    workdir: Path


def build_remote_url(clone_url: str, full_name: str, token: str) -> str:
    host = DEFAULT_GIT_HOST
    if clone_url:
        try:
            netloc = urlsplit(clone_url).netloc
        except ValueError:
            netloc = ""
        # drop any userinfo already present in the clone URL
        netloc = netloc.rpartition("@")[2]
        if netloc:
            host = netloc
    return f"https://x-access-token:{quote_plus(token)}@{host}/{full_name}.git"


def resolve_workdir(repo_dir: Path, work_dir: str) -> Path:
    base = repo_dir.resolve()
    if not work_dir.strip() or work_dir == ".":
        return base
    # "/infra" means infra under the repo root, not the filesystem root
    workdir = (base / work_dir.lstrip("/\\")).resolve()
    if workdir != base and base not in workdir.parents:
        raise WorkspaceError(f"work.dir escapes the repository: {work_dir}")
    if not workdir.is_dir():
        raise WorkspaceError(f"work.dir not found: {workdir}")
    return workdir


@contextmanager
def materialize(
    request: WorkRequest,
    deadline: Deadline,
    timings: Timings,
    git_bin: str = "git",
) -> Iterator[Workspace]:
    """
    Check out ``request.pull_request.head_sha`` into a fresh temporary tree.

    The tree is removed when the ``with`` block exits, however it exits.
    """
    with tempfile.TemporaryDirectory(prefix="runner-") as td:
        root = Path(td)
        repo_dir = root / "repo"
        repo_dir.mkdir()

        remote = build_remote_url(request.repo.clone_url, request.repo.full_name, request.installation.token)
        git: List[str] = [git_bin, "-c", f"safe.directory={repo_dir}"]

        def step(label: str, *args: str) -> None:
            try:
                run_command([*git, *args], repo_dir, deadline, env=_GIT_ENV)
            except CommandError as e:
                raise WorkspaceError(f"{label}: {e}") from e

        step("git init", "init")
        step("git remote add", "remote", "add", "origin", remote)
        with timed(timings, "git_fetch_ms"):
            step("git fetch", "fetch", "--depth=1", "origin", request.pull_request.head_sha)
        with timed(timings, "git_checkout_ms"):
            step("git checkout", "checkout", "FETCH_HEAD")

        workdir = resolve_workdir(repo_dir, request.work.dir)
        log_event(log, logging.INFO, "workspace ready",
                  request_id=request.request_id, sha=request.pull_request.head_sha,
                  workdir=str(workdir.relative_to(repo_dir.resolve())))
        yield Workspace(root=root, repo_dir=repo_dir, workdir=workdir)
