import json
from datetime import datetime, timezone
from typing import Any, Iterator

from mycelial_sync.shared.errors import DecodeError

# Only a normal closure is final; 1001 (server going away) reconnects
CLEAN_CLOSE_CODES = frozenset({1000})
CLIENT_CLOSE_CODE = 1000


def make_channel_stats() -> dict:
    """
    Returns a fresh stats dictionary with zeroed counters.
    Every ConnectionManager calls this once in __init__.
    Keys: events_received, bytes_received, reconnect_count, errors,
          last_event_at, connected_at, last_close_code.
    """
    return {
        "events_received": 0,
        "bytes_received": 0,
        "reconnect_count": 0,
        "errors": 0,
        "last_event_at": None,
        "connected_at": None,
        "last_close_code": None,
    }


def backoff_delay(base_delay_s: float, attempt: int) -> float:
    """Delay before reconnect attempt `attempt` (counted from 1): base * 2^(attempt-1)."""
    if attempt < 1:
        raise ValueError(f"attempt must be >= 1, got {attempt}")
    return base_delay_s * (2 ** (attempt - 1))


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def now_ms() -> int:
    return int(datetime.now(timezone.utc).timestamp() * 1000)


def iter_frames(raw: str | bytes) -> Iterator[str]:
    """Split one WebSocket message into its line-delimited JSON frames."""
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecodeError("frame is not valid UTF-8", cause=e)
    for line in raw.splitlines():
        if line.strip():
            yield line


def decode_frame(raw: str | bytes | dict) -> dict[str, Any]:
    """Parse one frame into a JSON object or raise DecodeError."""
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecodeError("frame is not valid UTF-8", cause=e)
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise DecodeError("frame is not valid JSON", cause=e, raw=raw[:80])
    if not isinstance(data, dict):
        raise DecodeError("frame is not a JSON object", kind=type(data).__name__)
    return data
