import json
import logging
import os
from datetime import datetime, timedelta, timezone
from pathlib import Path

from models import FailureReason, UsageQueryResult

log = logging.getLogger(__name__)

CODEX_HOME = Path(os.environ.get("CODEX_HOME", Path.home() / ".codex"))
SESSIONS_DIR = CODEX_HOME / "sessions"
AUTH_PATH = CODEX_HOME / "auth.json"


def has_valid_token() -> bool:
    if not AUTH_PATH.exists():
        return False
    try:
        auth = json.loads(AUTH_PATH.read_text())
    except (json.JSONDecodeError, OSError):
        return False
    tokens = auth.get("tokens") or {}
    return bool(tokens.get("access_token") or auth.get("OPENAI_API_KEY"))


def _parse_timestamp(value: str) -> datetime | None:
    try:
        ts = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def _latest_rate_limits() -> tuple[dict, datetime | None] | None:
    """Most recent ``rate_limits`` payload across session logs."""
    # sessions/YYYY/MM/DD/*.jsonl sorts chronologically; newest first.
    for session_file in sorted(SESSIONS_DIR.rglob("*.jsonl"), reverse=True):
        latest: dict | None = None
        latest_ts = ""
        for line in session_file.read_text(errors="replace").splitlines():
            if '"rate_limits"' not in line:
                continue
            try:
                entry = json.loads(line)
            except json.JSONDecodeError:
                continue
            if not isinstance(entry, dict):
                continue
            payload = entry.get("payload") or {}
            if entry.get("type") != "event_msg" or payload.get("type") != "token_count":
                continue
            rl = payload.get("rate_limits")
            ts = entry.get("timestamp", "")
            if rl and isinstance(ts, str) and ts >= latest_ts:
                latest_ts = ts
                latest = rl
        if latest is not None:
            return latest, _parse_timestamp(latest_ts) if latest_ts else None
    return None


def _reset_time(window: dict, event_time: datetime | None) -> datetime | None:
    resets = window.get("resets_at")
    if resets:
        return datetime.fromtimestamp(resets, tz=timezone.utc)
    # Older CLI versions report a relative offset from the event.
    resets_in = window.get("resets_in_seconds")
    if resets_in is not None and event_time is not None:
        return event_time + timedelta(seconds=resets_in)
    return None


def query_usage() -> UsageQueryResult:
    """Read the latest rate-limit report the Codex CLI wrote to its session logs."""
    if not SESSIONS_DIR.exists():
        return UsageQueryResult.failure(FailureReason.TRANSIENT)

    try:
        found = _latest_rate_limits()
    except OSError as exc:
        log.debug("Could not read Codex sessions: %s", exc)
        return UsageQueryResult.failure(FailureReason.TRANSIENT)
    if found is None:
        return UsageQueryResult(ok=True)

    limits, event_time = found
    primary = limits.get("primary") or {}
    secondary = limits.get("secondary") or {}
    try:
        used = primary.get("used_percent")
        weekly = secondary.get("used_percent")
        return UsageQueryResult(
            ok=True,
            used_percent=float(used) if used is not None else None,
            resets_at=_reset_time(primary, event_time),
            secondary_used_percent=float(weekly) if weekly is not None else None,
            secondary_resets_at=_reset_time(secondary, event_time),
        )
    except (AttributeError, TypeError, ValueError, OverflowError) as exc:
        log.warning("Codex rate_limits payload not understood: %s", exc)
        return UsageQueryResult.failure(FailureReason.MALFORMED_RESPONSE)
