"""Heartbeat report entries and the base64 header wire format."""

from __future__ import annotations

import base64
import binascii
from collections.abc import Iterable
from dataclasses import dataclass
import json
from typing import Any


class HeartBeatEncodingError(ValueError):
    """Raised when a heartbeat header cannot be encoded or decoded."""


@dataclass(frozen=True, slots=True)
class HeartBeatResult:
    """Days on which one user agent was active."""

    user_agent: str
    used_dates: tuple[str, ...]

    def to_payload(self) -> dict[str, Any]:
        return {"agent": self.user_agent, "date": list(self.used_dates)}


def encode_heartbeats_header(results: Iterable[HeartBeatResult]) -> str:
    """
    Serialize results as a JSON array and base64-encode its UTF-8 bytes.

    An empty input encodes the text ``[]``.
    """

    payload = [result.to_payload() for result in results]
    try:
        text = json.dumps(payload, separators=(",", ":"), ensure_ascii=False)
        raw = text.encode("utf-8")
    except (TypeError, ValueError) as exc:
        raise HeartBeatEncodingError(f"Unable to encode heartbeat header: {exc}") from exc
    return base64.b64encode(raw).decode("ascii")


def decode_heartbeats_header(header: str) -> list[HeartBeatResult]:
    """Parse a header produced by :func:`encode_heartbeats_header`."""

    try:
        raw = base64.b64decode(header, validate=True)
        payload = json.loads(raw.decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, ValueError) as exc:
        raise HeartBeatEncodingError("Heartbeat header is not base64-encoded JSON") from exc

    if not isinstance(payload, list):
        raise HeartBeatEncodingError("Heartbeat header must contain a JSON array")

    results: list[HeartBeatResult] = []
    for item in payload:
        if not isinstance(item, dict) or set(item) != {"agent", "date"}:
            raise HeartBeatEncodingError("Heartbeat entries must have exactly 'agent' and 'date'")
        agent = item["agent"]
        dates = item["date"]
        if not isinstance(agent, str):
            raise HeartBeatEncodingError("Heartbeat entry 'agent' must be a string")
        if not isinstance(dates, list) or not all(isinstance(day, str) for day in dates):
            raise HeartBeatEncodingError("Heartbeat entry 'date' must be a list of strings")
        results.append(HeartBeatResult(user_agent=agent, used_dates=tuple(dates)))
    return results
