from dotenv import load_dotenv
load_dotenv()  # ensures RUN_INTEGRATION / IT_* env are visible to pytest
import base64
import json
import stat
import sys
import warnings
from pathlib import Path

import pytest
import requests

from config import Settings

warnings.filterwarnings(
    "ignore",
    message=r"on_event is deprecated, use lifespan event handlers instead\.",
    category=DeprecationWarning,
    module=r"fastapi\..*",
)

needs_posix_shell = pytest.mark.skipif(sys.platform == "win32", reason="fake executables are /bin/sh scripts")


# ---------------- GitHub fakes ----------------

class _Resp:
    def __init__(self, status_code=200, json_obj=None, text="", headers=None):
        self.status_code = status_code
        self._json = json_obj
        self.text = text or (json.dumps(json_obj) if json_obj is not None else "")
        self.reason = "OK" if status_code < 400 else "Error"
        self.headers = headers or {}

    def json(self):
        if self._json is None:
            raise ValueError("No JSON")
        return self._json

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(response=self)


class FakeGitHub:
    """Stands in for ``requests.Session``; keeps issue comments in memory."""

    def __init__(self, comments=None, next_id=42):
        self.headers = {}
        self.verify = True
        self.comments = list(comments or [])
        self.next_id = next_id
        self.calls = []
        self.fail = {}  # method -> (status, text) or an exception instance
        self.closed = False

    def request(self, method, url, timeout=None, params=None, json=None, **kwargs):
        self.calls.append({"method": method, "url": url, "params": params, "json": json, "timeout": timeout})
        failure = self.fail.get(method)
        if isinstance(failure, Exception):
            raise failure
        if failure:
            return _Resp(failure[0], text=failure[1])
        if method == "GET" and url.endswith("/comments"):
            return _Resp(200, [dict(c) for c in self.comments])
        if method == "POST" and url.endswith("/comments"):
            c = {"id": self.next_id, "body": json["body"]}
            self.next_id += 1
            self.comments.append(c)
            return _Resp(201, dict(c))
        if method == "PATCH" and "/issues/comments/" in url:
            cid = int(url.rsplit("/", 1)[1])
            for c in self.comments:
                if c["id"] == cid:
                    c["body"] = json["body"]
                    return _Resp(200, dict(c))
            return _Resp(404, text='{"message": "Not Found"}')
        return _Resp(404, text='{"message": "Not Found"}')

    def methods(self):
        return [c["method"] for c in self.calls]

    def close(self):
        self.closed = True

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


@pytest.fixture
def fake_github():
    return FakeGitHub()


# ---------------- Fake executables ----------------

_FAKE_GIT = r"""#!/bin/sh
# argv: -c safe.directory=<repo> <subcommand> ...
shift 2
echo "$PWD $*" >> "$FAKE_GIT_LOG"
case "$1" in
  fetch)
    if [ -n "$FAKE_GIT_FAIL_FETCH" ]; then echo "$FAKE_GIT_FAIL_FETCH" >&2; exit 128; fi ;;
  checkout)
    mkdir -p infra
    echo 'resource "null_resource" "x" {}' > infra/main.tf
    echo 'terraform {}' > main.tf ;;
esac
exit 0
"""

_FAKE_TOFU = r"""#!/bin/sh
echo "$PWD $*" >> "$FAKE_TOFU_LOG"
case "$1" in
  init)
    if [ -n "$FAKE_TOFU_FAIL_INIT" ]; then echo "$FAKE_TOFU_FAIL_INIT" >&2; exit 1; fi
    echo "Initializing the backend..." ;;
  plan)
    if [ -n "$FAKE_TOFU_FAIL_PLAN" ]; then echo "$FAKE_TOFU_FAIL_PLAN" >&2; exit 1; fi
    echo "Planning..."
    echo "binary plan" > tfplan.bin ;;
  show)
    [ -f "$3" ] || { echo "no plan file $3" >&2; exit 1; }
    if [ -n "$FAKE_TOFU_SHOW_FILE" ]; then cat "$FAKE_TOFU_SHOW_FILE"; else
      echo "Plan: 1 to add, 0 to change, 0 to destroy."; fi ;;
esac
exit 0
"""


def _write_exe(path: Path, script: str) -> str:
    path.write_text(script)
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return str(path)


@pytest.fixture
def fake_git(tmp_path, monkeypatch):
    log = tmp_path / "git.log"
    log.touch()
    monkeypatch.setenv("FAKE_GIT_LOG", str(log))
    monkeypatch.delenv("FAKE_GIT_FAIL_FETCH", raising=False)
    return _write_exe(tmp_path / "fake-git", _FAKE_GIT), log


@pytest.fixture
def fake_tofu(tmp_path, monkeypatch):
    log = tmp_path / "tofu.log"
    log.touch()
    monkeypatch.setenv("FAKE_TOFU_LOG", str(log))
    for k in ("FAKE_TOFU_FAIL_INIT", "FAKE_TOFU_FAIL_PLAN", "FAKE_TOFU_SHOW_FILE"):
        monkeypatch.delenv(k, raising=False)
    return _write_exe(tmp_path / "fake-tofu", _FAKE_TOFU), log


# ---------------- Messages ----------------

def make_request_dict(**overrides):
    req = {
        "request_id": "req-1",
        "repo": {"full_name": "octo/infra-repo", "clone_url": "https://github.com/octo/infra-repo.git",
                 "default_branch": "main"},
        "pull_request": {"number": 7, "head_sha": "a" * 40, "head_ref": "feature", "base_ref": "main"},
        "installation": {"id": 99, "token": "ghs_secretToken123"},
        "work": {"dir": ".", "tofu_version": "1.7.0", "plan_id": "prod"},
    }
    for k, v in overrides.items():
        if isinstance(v, dict) and isinstance(req.get(k), dict):
            req[k] = {**req[k], **v}
        else:
            req[k] = v
    return req


def make_push_body(request=None, publish_time="2024-05-01T12:00:00.123456789Z", subscription=None) -> bytes:
    data = base64.b64encode(json.dumps(request if request is not None else make_request_dict()).encode()).decode()
    env = {"message": {"data": data, "messageId": "m-1", "publishTime": publish_time}}
    if subscription is not None:
        env["subscription"] = subscription
    return json.dumps(env).encode()


@pytest.fixture
def settings(fake_git, fake_tofu):
    return Settings(git_bin=fake_git[0], tofu_bin=fake_tofu[0], request_deadline_s=60, http_timeout_s=5)
