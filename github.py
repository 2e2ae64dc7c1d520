import logging
import os
from typing import Any, Dict, List, Optional

import certifi
import requests

from config import DEFAULT_GITHUB_API
from deadline import Deadline, DeadlineExceeded
from logging_utils import log_event
from models import WorkRequest
from timings import Timings

log = logging.getLogger("runner.github")

COMMENT_TITLE = "Managed Runners (OpenTofu) Plan"
COMMENTS_PAGE_SIZE = 100


class GitHubAPIError(Exception):
    def __init__(self, operation: str, status: Optional[int] = None, reason: str = "", body: str = ""):
        self.operation = operation
        self.status = status
        self.body = (body or "").strip()[:800]
        if status is None:
            msg = f"{operation}: {self.body}"
        else:
            msg = f"{operation}: {status} {reason}: {self.body}".rstrip(": ")
        super().__init__(msg)


def _ca_bundle() -> str:
    return (
        os.getenv("REQUESTS_CA_BUNDLE")
        or os.getenv("SSL_CERT_FILE")
        or certifi.where()
    )


class CommentsClient:
    """Issue-comment endpoints of the GitHub REST API, authenticated with one installation token."""

    def __init__(self, token: str, base_url: str = DEFAULT_GITHUB_API, timeout_s: float = 30,
                 session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        self.session = session or requests.Session()
        self.session.headers.update({
            "Authorization": f"Bearer {token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
            "User-Agent": "plan-runner/1.0",
        })
        self.session.verify = _ca_bundle()

    def _request(self, operation: str, method: str, path: str, deadline: Deadline, **kwargs) -> requests.Response:
        deadline.check(operation)
        url = f"{self.base_url}{path}"
        try:
            r = self.session.request(method, url, timeout=deadline.bound(self.timeout_s), **kwargs)
        except requests.Timeout as e:
            if deadline.expired:
                raise DeadlineExceeded(operation) from e
            raise GitHubAPIError(operation, body=str(e)) from e
        except requests.RequestException as e:
            raise GitHubAPIError(operation, body=str(e)) from e
        if not 200 <= r.status_code < 300:
            log_event(log, logging.ERROR, "github api error", method=method, url=url,
                      status=r.status_code, resp=(r.text or "")[:800])
            raise GitHubAPIError(operation, r.status_code, r.reason or "", r.text or "")
        return r

    @staticmethod
    def _json(operation: str, r: requests.Response) -> Any:
        try:
            return r.json()
        except ValueError as e:
            raise GitHubAPIError(operation, r.status_code, "invalid JSON", r.text or "") from e

    def list_issue_comments(self, owner: str, repo: str, number: int, deadline: Deadline) -> List[Dict[str, Any]]:
        op = "list comments"
        r = self._request(op, "GET", f"/repos/{owner}/{repo}/issues/{number}/comments", deadline,
                          params={"per_page": COMMENTS_PAGE_SIZE})
        js = self._json(op, r)
        if not isinstance(js, list):
            raise GitHubAPIError(op, r.status_code, "unexpected payload", str(js))
        return js

    def create_comment(self, owner: str, repo: str, number: int, body: str, deadline: Deadline) -> Dict[str, Any]:
        op = "create comment"
        r = self._request(op, "POST", f"/repos/{owner}/{repo}/issues/{number}/comments", deadline,
                          json={"body": body})
        return self._json(op, r)

    def update_comment(self, owner: str, repo: str, comment_id: int, body: str, deadline: Deadline) -> Dict[str, Any]:
        op = "update comment"
        r = self._request(op, "PATCH", f"/repos/{owner}/{repo}/issues/comments/{comment_id}", deadline,
                          json={"body": body})
        return self._json(op, r)

# ---------- Sticky comment ----------

def marker_for(plan_id: str) -> str:
    return f"<!-- runners-poc:plan:{plan_id or 'default'} -->"


def build_comment_body(request: WorkRequest, text: str, timings: Optional[Timings] = None) -> str:
    lines = [
        marker_for(request.work.plan_id),
        COMMENT_TITLE,
        "",
        f"{request.repo.full_name} @ {request.pull_request.head_sha}",
        "",
    ]
    if request.work.uses_subdir:
        lines += [f"Dir: {request.work.dir}", ""]
    body = "\n".join(lines) + "\n```\n" + text
    if not text.endswith("\n"):
        body += "\n"
    body += "```\n"
    if timings is not None:
        body += timings.render_line() + "\n"
    return body


def find_sticky_comment(client: CommentsClient, request: WorkRequest, deadline: Deadline) -> int:
    """
    Id of the first comment among the latest page carrying this plan's marker, or 0.

    Only one page is read: a sticky comment buried under more than a page of
    newer comments is not found and a second one gets created.
    """
    owner, repo = request.repo.owner_and_name
    marker = marker_for(request.work.plan_id)
    for c in client.list_issue_comments(owner, repo, request.pull_request.number, deadline):
        if marker in (c.get("body") or ""):
            return int(c.get("id") or 0)
    return 0


def upsert_sticky_comment(client: CommentsClient, request: WorkRequest, existing_id: int, body: str,
                          deadline: Deadline) -> int:
    owner, repo = request.repo.owner_and_name
    if existing_id:
        client.update_comment(owner, repo, existing_id, body, deadline)
        log_event(log, logging.INFO, "comment updated", request_id=request.request_id, comment_id=existing_id)
        return existing_id
    js = client.create_comment(owner, repo, request.pull_request.number, body, deadline)
    comment_id = int((js or {}).get("id") or 0)
    if not comment_id:
        raise GitHubAPIError("create comment", body="response carried no comment id")
    log_event(log, logging.INFO, "comment created", request_id=request.request_id, comment_id=comment_id)
    return comment_id
