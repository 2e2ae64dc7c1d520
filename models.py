from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from config import DEFAULT_GITHUB_API

MAX_PLAN_CHARS = 200_000
TRUNCATION_SUFFIX = "\n... (truncated)"


class ValidationError(Exception):
    """A decoded message that can never be processed. Terminal, not retried."""


@dataclass
class RepoRef:
    full_name: str = ""
    clone_url: str = ""
    default_ref: str = ""

    @property
    def owner_and_name(self) -> tuple[str, str]:
        parts = self.full_name.split("/")
        if len(parts) != 2 or not all(parts):
            raise ValidationError(f"invalid repo.full_name: {self.full_name!r}")
        return parts[0], parts[1]


@dataclass
class PullRequestRef:
    number: int = 0
    head_sha: str = ""
    head_ref: str = ""
    base_ref: str = ""


@dataclass
class InstallationCredential:
    id: int = 0
    token: str = field(default="", repr=False)


@dataclass
class WorkSpec:
    dir: str = "."
    tool_version: str = ""
    plan_id: str = ""

    @property
    def uses_subdir(self) -> bool:
        return bool(self.dir.strip()) and self.dir != "."


@dataclass
class WorkRequest:
    request_id: str = ""
    repo: RepoRef = field(default_factory=RepoRef)
    pull_request: PullRequestRef = field(default_factory=PullRequestRef)
    installation: InstallationCredential = field(default_factory=InstallationCredential)
    work: WorkSpec = field(default_factory=WorkSpec)
    api_base_url: str = DEFAULT_GITHUB_API

    @classmethod
    def from_dict(cls, data: Dict[str, Any], default_api: str = DEFAULT_GITHUB_API) -> "WorkRequest":
        if not isinstance(data, dict):
            raise TypeError(f"expected a JSON object, got {type(data).__name__}")
        repo = _obj(data, "repo")
        pr = _obj(data, "pull_request")
        inst = _obj(data, "installation")
        work = _obj(data, "work")
        return cls(
            request_id=str(data.get("request_id") or ""),
            repo=RepoRef(
                full_name=str(repo.get("full_name") or ""),
                clone_url=str(repo.get("clone_url") or ""),
                default_ref=str(repo.get("default_branch") or ""),
            ),
            pull_request=PullRequestRef(
                number=int(pr.get("number") or 0),
                head_sha=str(pr.get("head_sha") or ""),
                head_ref=str(pr.get("head_ref") or ""),
                base_ref=str(pr.get("base_ref") or ""),
            ),
            installation=InstallationCredential(
                id=int(inst.get("id") or 0),
                token=str(inst.get("token") or ""),
            ),
            work=WorkSpec(
                dir=str(work.get("dir") or "."),
                tool_version=str(work.get("tofu_version") or ""),
                plan_id=str(work.get("plan_id") or ""),
            ),
            api_base_url=str(data.get("github_api_base_url") or default_api).rstrip("/"),
        )

    def validate(self) -> None:
        missing = []
        if not self.repo.full_name:
            missing.append("repo.full_name")
        if not self.pull_request.head_sha:
            missing.append("pull_request.head_sha")
        if not self.installation.token:
            missing.append("installation.token")
        if missing:
            raise ValidationError("missing required field(s): " + ", ".join(missing))
        if self.pull_request.number <= 0:
            raise ValidationError("pull_request.number must be positive")
        self.repo.owner_and_name  # raises on a malformed full_name

    def log_fields(self) -> Dict[str, Any]:
        return {
            "request_id": self.request_id,
            "repo": self.repo.full_name,
            "pr": self.pull_request.number,
            "sha": self.pull_request.head_sha,
            "plan_id": self.work.plan_id,
        }


def _obj(data: Dict[str, Any], key: str) -> Dict[str, Any]:
    v = data.get(key)
    if v is None:
        return {}
    if not isinstance(v, dict):
        raise TypeError(f"{key}: expected a JSON object, got {type(v).__name__}")
    return v


@dataclass(frozen=True)
class PlanResult:
    text: str
    truncated: bool = False

    @classmethod
    def from_text(cls, text: str, limit: int = MAX_PLAN_CHARS) -> "PlanResult":
        if len(text) > limit:
            return cls(text[:limit] + TRUNCATION_SUFFIX, True)
        return cls(text, False)
