from __future__ import annotations

import logging
from pathlib import Path
from typing import Union

from deadline import Deadline
from logging_utils import log_event
from models import PlanResult
from runners.command import CommandError, run_command
from timings import Timings, timed

log = logging.getLogger("runner.tofu")

PLAN_ARTIFACT = "tfplan.bin"

# Keep tofu non-interactive and its output stable for comments.
_TOFU_ENV = {"TF_IN_AUTOMATION": "1", "TF_INPUT": "0"}


class PlanError(Exception):
    """A tofu step exited non-zero; later steps were not attempted."""


def run_plan(
    workdir: Union[str, Path],
    deadline: Deadline,
    timings: Timings,
    tofu_bin: str = "tofu",
    tool_version: str = "",
) -> PlanResult:
    """
    Run ``init``, ``plan`` and ``show`` in ``workdir``; return the rendered plan.

    ``tool_version`` is advisory: it is logged, never enforced.
    """
    log_event(log, logging.INFO, "tofu plan starting", tofu_bin=tofu_bin, requested_version=tool_version or None)

    def step(label: str, field: str, *args: str, capture: bool = False) -> str:
        with timed(timings, field):
            try:
                return run_command([tofu_bin, *args], workdir, deadline, capture_stdout=capture, env=_TOFU_ENV)
            except CommandError as e:
                raise PlanError(f"{label}: {e}") from e

    step("tofu init", "tofu_init_ms", "init", "-input=false", "-no-color")
    step("tofu plan", "tofu_plan_ms", "plan", "-input=false", "-no-color", f"-out={PLAN_ARTIFACT}")
    out = step("tofu show", "tofu_show_ms", "show", "-no-color", PLAN_ARTIFACT, capture=True)

    result = PlanResult.from_text(out)
    if result.truncated:
        log_event(log, logging.WARNING, "plan output truncated", original_chars=len(out))
    return result
