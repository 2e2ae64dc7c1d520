import time
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Dict, Iterator, Optional

# (field, label) in the order they appear in the comment's timings line
_LINE_ORDER = (
    ("queue_to_runner_ms", "queue→runner"),
    ("git_fetch_ms", "git.fetch"),
    ("git_checkout_ms", "git.checkout"),
    ("tofu_init_ms", "tofu.init"),
    ("tofu_plan_ms", "tofu.plan"),
    ("tofu_show_ms", "tofu.show"),
    ("comment_list_ms", "comment.list"),
    ("comment_upsert_ms", "comment.upsert"),
    ("total_run_ms", "total"),
)


def _ms_since(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


@dataclass
class Timings:
    """Per-request stage durations in milliseconds. Stages only ever add."""

    queue_to_runner_ms: int = 0
    git_fetch_ms: int = 0
    git_checkout_ms: int = 0
    tofu_init_ms: int = 0
    tofu_plan_ms: int = 0
    tofu_show_ms: int = 0
    comment_list_ms: int = 0
    comment_upsert_ms: int = 0
    total_run_ms: int = 0

    def add(self, name: str, ms: int) -> None:
        if name == "total_run_ms" or not hasattr(self, name):
            raise AttributeError(f"not a stage timing: {name}")
        setattr(self, name, getattr(self, name) + max(0, int(ms)))

    def set_queue_latency(self, publish_time: Optional[datetime], received_at: datetime) -> None:
        if publish_time is None:
            return
        delta = (received_at - publish_time).total_seconds() * 1000
        self.queue_to_runner_ms = max(0, int(delta))

    def finish(self, started: float) -> int:
        """Record total elapsed time since ``started`` (a ``time.monotonic()`` value)."""
        self.total_run_ms = _ms_since(started)
        return self.total_run_ms

    def as_fields(self) -> Dict[str, int]:
        return asdict(self)

    def render_line(self) -> str:
        pairs = ", ".join(f"{label}={getattr(self, name)}" for name, label in _LINE_ORDER)
        return f"Timings (ms): {pairs}"


@contextmanager
def timed(timings: Timings, name: str) -> Iterator[None]:
    """Add the block's wall-clock duration to ``name``, even when the block raises."""
    start = time.monotonic()
    try:
        yield
    finally:
        timings.add(name, _ms_since(start))


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
