import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

load_dotenv(dotenv_path=".env")  # local dev convenience; real deployments use env vars


def bool_env(name: str, default: bool = False) -> bool:
    v = os.environ.get(name)
    if v is None:
        return default
    return v.lower() in {"1","true","yes","on"}


def int_env(name: str, default: int) -> int:
    v = (os.environ.get(name) or "").strip()
    if not v:
        return default
    try:
        return int(v)
    except ValueError:
        raise RuntimeError(f"{name} must be an integer, got {v!r}")


def str_env(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


DEFAULT_GITHUB_API = "https://api.github.com"


@dataclass(frozen=True)
class Settings:
    port: int = 8080
    push_path: str = "/pubsub/push"
    subscription: Optional[str] = None
    github_api: str = DEFAULT_GITHUB_API
    http_timeout_s: int = 30
    request_deadline_s: int = 15 * 60
    git_bin: str = "git"
    tofu_bin: str = "tofu"
    log_level: str = "INFO"


def load_settings() -> Settings:
    """Snapshot the environment once, at process start."""
    return Settings(
        port=int_env("PORT", 8080),
        push_path=str_env("PUSH_PATH", "/pubsub/push"),
        subscription=str_env("PUBSUB_SUBSCRIPTION") or None,
        github_api=str_env("GITHUB_API", DEFAULT_GITHUB_API).rstrip("/"),
        http_timeout_s=int_env("HTTP_TIMEOUT_S", 30),
        request_deadline_s=int_env("REQUEST_DEADLINE_S", 15 * 60),
        git_bin=str_env("GIT_BIN", "git"),
        tofu_bin=str_env("TOFU_BIN", "tofu"),
        log_level=str_env("LOGLEVEL", "INFO").upper(),
    )
