from __future__ import annotations

import os
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Union

from deadline import Deadline, DeadlineExceeded
from logging_utils import redact_secrets

# --------------------------------- Public API ---------------------------------

@dataclass
class CommandError(Exception):
    cmd: List[str]
    exit_code: int
    stderr: str

    def __str__(self) -> str:
        return _fmt_command_error(self.cmd, self.exit_code, self.stderr)


def run_command(
    cmd: Sequence[str],
    cwd: Union[str, Path],
    deadline: Deadline,
    capture_stdout: bool = False,
    env: Optional[Dict[str, str]] = None,
) -> str:
    """
    Run ``cmd`` in ``cwd`` bounded by the request deadline.

    Stdout is discarded unless ``capture_stdout`` is set, in which case it is
    returned whole. Stderr is always collected and ends up in the
    :class:`CommandError` raised on a non-zero exit.
    """
    cmd = list(cmd)
    deadline.check(_describe(cmd))

    full_env = os.environ.copy()
    if env:
        full_env.update(env)

    try:
        proc = subprocess.run(
            cmd,
            cwd=str(cwd),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE if capture_stdout else subprocess.DEVNULL,
            stderr=subprocess.PIPE,
            encoding="utf-8",
            errors="replace",
            check=False,
            timeout=deadline.remaining(),
            env=full_env,
        )
    except subprocess.TimeoutExpired as e:
        raise DeadlineExceeded(_describe(cmd)) from e
    except FileNotFoundError as e:
        raise CommandError(cmd, 127, f"executable not found: {cmd[0]}") from e

    if proc.returncode != 0:
        raise CommandError(cmd, proc.returncode, proc.stderr or "")
    return proc.stdout if capture_stdout else ""

# --------------------------------- Internals ----------------------------------

def _describe(cmd: List[str]) -> str:
    name, args = (cmd[0], cmd[1:]) if cmd else ("", [])
    return redact_secrets(f"{name} [{' '.join(args)}]")


def _fmt_command_error(cmd: List[str], code: int, stderr: str) -> str:
    return f"{_describe(cmd)}: exit status {code} | {redact_secrets((stderr or '').strip())}"
