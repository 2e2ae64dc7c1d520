"""Push-envelope decoding: ``{"message": {"data": <b64 JSON>, "publishTime": ...}}``."""

import base64
import binascii
import json
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from config import DEFAULT_GITHUB_API
from models import ValidationError, WorkRequest


class MessageDecodeError(Exception):
    def __init__(self, step: str, detail: str):
        super().__init__(f"{step}: {detail}")
        self.step = step


@dataclass
class PushMessage:
    request: WorkRequest
    publish_time: Optional[datetime] = None
    message_id: str = ""
    subscription: str = ""

    def check_subscription(self, expected: Optional[str]) -> None:
        if not expected:
            return
        # Push envelopes carry the full "projects/<p>/subscriptions/<name>" path.
        if self.subscription != expected and not self.subscription.endswith("/" + expected):
            raise ValidationError(f"unexpected subscription {self.subscription!r}")


_FRACTION = re.compile(r"\.(\d+)")


def parse_publish_time(value: str) -> Optional[datetime]:
    """Parse RFC3339 with up to nanosecond precision. Returns None when blank."""
    value = (value or "").strip()
    if not value:
        return None
    if value.endswith(("Z", "z")):
        value = value[:-1] + "+00:00"
    # datetime only keeps microseconds
    value = _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), value, count=1)
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def decode_push(raw: bytes, default_api: str = DEFAULT_GITHUB_API) -> PushMessage:
    try:
        envelope = json.loads(raw.decode("utf-8"))
        if not isinstance(envelope, dict):
            raise ValueError("envelope is not a JSON object")
        message: Dict[str, Any] = envelope.get("message") or {}
        if not isinstance(message, dict):
            raise ValueError("message is not a JSON object")
    except (UnicodeDecodeError, ValueError) as e:
        raise MessageDecodeError("decode envelope", str(e)) from e

    try:
        encoded = message.get("data") or ""
        if not isinstance(encoded, str):
            raise TypeError("data is not a string")
        # MIME-style encoders wrap lines; anything else outside the alphabet is an error
        encoded = encoded.replace("\r", "").replace("\n", "")
        data = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError, TypeError) as e:
        raise MessageDecodeError("b64 decode", str(e)) from e

    try:
        request = WorkRequest.from_dict(json.loads(data.decode("utf-8")), default_api=default_api)
    except (UnicodeDecodeError, ValueError, TypeError) as e:
        raise MessageDecodeError("decode message", str(e)) from e

    try:
        publish_time = parse_publish_time(str(message.get("publishTime") or ""))
    except ValueError:
        publish_time = None  # only feeds the queue latency figure

    return PushMessage(
        request=request,
        publish_time=publish_time,
        message_id=str(message.get("messageId") or message.get("message_id") or ""),
        subscription=str(envelope.get("subscription") or ""),
    )
