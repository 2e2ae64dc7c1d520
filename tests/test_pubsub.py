import base64
import json
from datetime import datetime, timezone

import pytest

from conftest import make_push_body, make_request_dict
from models import ValidationError, WorkRequest
from pubsub import MessageDecodeError, decode_push, parse_publish_time


def test_decode_push_builds_work_request():
    msg = decode_push(make_push_body(subscription="projects/p/subscriptions/plan-runner"))
    req = msg.request
    assert req.request_id == "req-1"
    assert req.repo.full_name == "octo/infra-repo"
    assert req.repo.default_ref == "main"
    assert req.pull_request.number == 7
    assert req.pull_request.head_sha == "a" * 40
    assert req.installation.id == 99
    assert req.work.tool_version == "1.7.0"
    assert req.work.plan_id == "prod"
    assert req.api_base_url == "https://api.github.com"
    assert msg.message_id == "m-1"
    assert msg.subscription == "projects/p/subscriptions/plan-runner"
    assert msg.publish_time == datetime(2024, 5, 1, 12, 0, 0, 123456, tzinfo=timezone.utc)


def test_explicit_api_base_is_kept_without_trailing_slash():
    body = make_push_body(make_request_dict(github_api_base_url="https://ghe.example.com/api/v3/"))
    assert decode_push(body).request.api_base_url == "https://ghe.example.com/api/v3"


def test_work_defaults_when_absent():
    req = make_request_dict()
    del req["work"]
    work = decode_push(make_push_body(req)).request.work
    assert work.dir == "."
    assert work.plan_id == ""
    assert not work.uses_subdir


@pytest.mark.parametrize(
    "raw, step",
    [
        (b"not json", "decode envelope"),
        (b"[1, 2]", "decode envelope"),
        (json.dumps({"message": {"data": "%%%not-base64%%%"}}).encode(), "b64 decode"),
        (json.dumps({"message": {"data": 12345}}).encode(), "b64 decode"),
        (json.dumps({"message": {"data": base64.b64encode(b"{oops").decode()}}).encode(), "decode message"),
        (json.dumps({"message": {"data": base64.b64encode(b'"a string"').decode()}}).encode(), "decode message"),
        (json.dumps({"message": {}}).encode(), "decode message"),
    ],
)
def test_decode_failures_name_the_step(raw, step):
    with pytest.raises(MessageDecodeError) as ei:
        decode_push(raw)
    assert ei.value.step == step
    assert str(ei.value).startswith(step + ":")


def test_line_wrapped_data_decodes():
    # MIME-style: 76-char lines joined with CRLF
    flat = base64.b64encode(json.dumps(make_request_dict()).encode()).decode()
    wrapped = "\r\n".join(flat[i:i + 76] for i in range(0, len(flat), 76)) + "\n"
    raw = json.dumps({"message": {"data": wrapped, "messageId": "m-2"}}).encode()
    assert decode_push(raw).request.request_id == "req-1"


def test_unparseable_publish_time_is_not_fatal():
    msg = decode_push(make_push_body(publish_time="yesterday-ish"))
    assert msg.publish_time is None


@pytest.mark.parametrize(
    "value, expected",
    [
        ("2024-05-01T12:00:00Z", datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)),
        ("2024-05-01T12:00:00.5Z", datetime(2024, 5, 1, 12, 0, 0, 500000, tzinfo=timezone.utc)),
        ("2024-05-01T14:00:00.987654321+02:00", datetime(2024, 5, 1, 12, 0, 0, 987654, tzinfo=timezone.utc)),
        ("", None),
    ],
)
def test_parse_publish_time(value, expected):
    assert parse_publish_time(value) == expected


def test_subscription_check():
    msg = decode_push(make_push_body(subscription="projects/p/subscriptions/plan-runner"))
    msg.check_subscription(None)
    msg.check_subscription("plan-runner")
    msg.check_subscription("projects/p/subscriptions/plan-runner")
    with pytest.raises(ValidationError):
        msg.check_subscription("other")


@pytest.mark.parametrize(
    "overrides, fragment",
    [
        ({"repo": {"full_name": ""}}, "repo.full_name"),
        ({"pull_request": {"head_sha": ""}}, "pull_request.head_sha"),
        ({"installation": {"token": ""}}, "installation.token"),
        ({"pull_request": {"number": 0}}, "pull_request.number"),
        ({"repo": {"full_name": "no-slash"}}, "invalid repo.full_name"),
        ({"repo": {"full_name": "a/b/c"}}, "invalid repo.full_name"),
    ],
)
def test_validate_rejects(overrides, fragment):
    req = WorkRequest.from_dict(make_request_dict(**overrides))
    with pytest.raises(ValidationError) as ei:
        req.validate()
    assert fragment in str(ei.value)


def test_validate_accepts_complete_request():
    WorkRequest.from_dict(make_request_dict()).validate()


def test_token_is_kept_out_of_repr():
    req = WorkRequest.from_dict(make_request_dict())
    assert "ghs_secretToken123" not in repr(req)
    assert "ghs_secretToken123" not in json.dumps(req.log_fields())
