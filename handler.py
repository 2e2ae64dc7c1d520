"""
One push message, start to finish.

    received -> decoded -> validated -> materialized -> planned
             -> published (no timings) -> published (with timings) -> done

Decode and validation failures end the request right away. Workspace and
tofu failures do not: their error text replaces the plan inside the sticky
comment so the PR author sees why. Publishing failures are logged and the
next pass is still attempted. Whatever happens, the message is acknowledged.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional
from urllib.parse import quote_plus

import requests

from config import Settings
from deadline import Deadline, DeadlineExceeded
from github import (
    CommentsClient,
    GitHubAPIError,
    build_comment_body,
    find_sticky_comment,
    upsert_sticky_comment,
)
from logging_utils import log_event, redact_secrets, register_sensitive_values, unregister_sensitive_values
from models import PlanResult, ValidationError, WorkRequest
from pubsub import MessageDecodeError, decode_push
from runners.git_workspace import WorkspaceError, materialize
from runners.tofu_runner import PlanError, run_plan
from timings import Timings, timed, utcnow

log = logging.getLogger("runner.handler")

FAILURE_PREFIX = "tofu execution failed:\n"

RECEIVED = "received"
DECODED = "decoded"
VALIDATED = "validated"
MATERIALIZED = "materialized"
PLANNED = "planned"
PUBLISHED = "published"
PUBLISHED_WITH_TIMINGS = "published_with_timings"
DONE = "done"
FAILED = "failed"


@dataclass
class Outcome:
    state: str = RECEIVED
    failed_stage: Optional[str] = None
    error: Optional[str] = None
    comment_id: int = 0
    first_total_ms: int = 0
    timings: Timings = field(default_factory=Timings)

    @property
    def ok(self) -> bool:
        return self.failed_stage is None

    def record_failure(self, stage: str, err: BaseException) -> None:
        # the first failure is the one worth reporting
        if self.failed_stage is None:
            self.failed_stage = stage
            self.error = redact_secrets(str(err))


def handle_push(
    raw: bytes,
    settings: Settings,
    session_factory: Callable[[], requests.Session] = requests.Session,
) -> Outcome:
    started = time.monotonic()
    received_at = utcnow()
    outcome = Outcome()
    secrets: List[str] = []
    try:
        _handle(raw, settings, session_factory, outcome, started, received_at, secrets)
    except Exception as e:
        log_event(log, logging.ERROR, "unhandled error", exc_info=True, state=outcome.state, error=e)
        outcome.record_failure(outcome.state, e)
        outcome.state = FAILED
    finally:
        unregister_sensitive_values(*secrets)
    return outcome


def _handle(raw, settings, session_factory, outcome, started, received_at, secrets) -> None:
    try:
        msg = decode_push(raw, default_api=settings.github_api)
    except MessageDecodeError as e:
        log_event(log, logging.ERROR, e.step, error=str(e))
        outcome.record_failure(DECODED, e)
        outcome.state = FAILED
        return
    outcome.state = DECODED

    req = msg.request
    log_event(log, logging.INFO, "message received", message_id=msg.message_id,
              tofu_version=req.work.tool_version or None, **req.log_fields())

    try:
        msg.check_subscription(settings.subscription)
        req.validate()
    except ValidationError as e:
        log_event(log, logging.ERROR, "invalid message", request_id=req.request_id, error=str(e))
        outcome.record_failure(VALIDATED, e)
        outcome.state = FAILED
        return
    outcome.state = VALIDATED

    # the git remote carries the token URL-escaped
    secrets += [req.installation.token, quote_plus(req.installation.token)]
    register_sensitive_values(*secrets)

    timings = outcome.timings
    timings.set_queue_latency(msg.publish_time, received_at)
    deadline = Deadline(settings.request_deadline_s)

    text = _materialize_and_plan(req, settings, deadline, timings, outcome)

    with session_factory() as session:
        client = CommentsClient(req.installation.token, req.api_base_url, settings.http_timeout_s, session=session)
        _publish(client, req, text, deadline, timings, outcome, started)

    outcome.state = DONE
    log_event(log, logging.INFO, "completed", request_id=req.request_id, comment_id=outcome.comment_id,
              plan_ok=outcome.failed_stage not in (MATERIALIZED, PLANNED), duration_ms=timings.total_run_ms,
              **timings.as_fields())


def _materialize_and_plan(req: WorkRequest, settings: Settings, deadline: Deadline, timings: Timings,
                          outcome: Outcome) -> str:
    try:
        with materialize(req, deadline, timings, git_bin=settings.git_bin) as ws:
            outcome.state = MATERIALIZED
            result = run_plan(ws.workdir, deadline, timings, tofu_bin=settings.tofu_bin,
                              tool_version=req.work.tool_version)
            outcome.state = PLANNED
            return result.text
    except (WorkspaceError, PlanError, DeadlineExceeded, OSError) as e:
        stage = PLANNED if outcome.state == MATERIALIZED else MATERIALIZED
        log_event(log, logging.ERROR, "tofu execution failed", request_id=req.request_id, stage=stage, error=str(e))
        outcome.record_failure(stage, e)
        return PlanResult.from_text(FAILURE_PREFIX + str(e)).text


def _publish(client: CommentsClient, req: WorkRequest, text: str, deadline: Deadline, timings: Timings,
             outcome: Outcome, started: float) -> None:
    existing_id = 0
    try:
        with timed(timings, "comment_list_ms"):
            existing_id = find_sticky_comment(client, req, deadline)
    except (GitHubAPIError, DeadlineExceeded) as e:
        log_event(log, logging.ERROR, "comment list failed", request_id=req.request_id, error=str(e))
        outcome.record_failure(PUBLISHED, e)

    comment_id = 0
    try:
        with timed(timings, "comment_upsert_ms"):
            comment_id = upsert_sticky_comment(client, req, existing_id, build_comment_body(req, text), deadline)
        outcome.state = PUBLISHED
    except (GitHubAPIError, DeadlineExceeded) as e:
        log_event(log, logging.ERROR, "comment upsert failed", request_id=req.request_id, error=str(e))
        outcome.record_failure(PUBLISHED, e)

    outcome.first_total_ms = timings.finish(started)

    # No second listing: reuse whatever id the first pass produced or found.
    target_id = comment_id or existing_id
    try:
        with timed(timings, "comment_upsert_ms"):
            comment_id = upsert_sticky_comment(client, req, target_id, build_comment_body(req, text, timings), deadline)
        outcome.state = PUBLISHED_WITH_TIMINGS
    except (GitHubAPIError, DeadlineExceeded) as e:
        log_event(log, logging.ERROR, "comment upsert failed", request_id=req.request_id, error=str(e), timings=True)
        outcome.record_failure(PUBLISHED_WITH_TIMINGS, e)

    outcome.comment_id = comment_id
    timings.finish(started)
