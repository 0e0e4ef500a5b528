import json
import logging
import subprocess
import sys
import time
import urllib.error
import urllib.request
from datetime import datetime, timezone
from pathlib import Path

from models import FailureReason, UsageQueryResult

log = logging.getLogger(__name__)

CREDENTIALS_PATH = Path.home() / ".claude" / ".credentials.json"

USAGE_API_URL = "https://api.anthropic.com/api/oauth/usage"
KEYCHAIN_SERVICE = "Claude Code-credentials"
REQUEST_TIMEOUT = 10

PRIMARY_WINDOW = "five_hour"
SECONDARY_WINDOW = "seven_day"


def _read_credentials() -> dict | None:
    """Claude Code stores OAuth credentials in the macOS keychain or a JSON file."""
    if sys.platform == "darwin":
        try:
            raw = subprocess.run(
                ["security", "find-generic-password", "-s", KEYCHAIN_SERVICE, "-w"],
                capture_output=True, text=True, timeout=5,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            log.debug("Keychain lookup failed: %s", exc)
        else:
            if raw.returncode == 0:
                try:
                    return json.loads(raw.stdout.strip())
                except json.JSONDecodeError:
                    log.debug("Keychain entry is not JSON")
            else:
                log.debug("Keychain lookup failed: %s", raw.stderr.strip())

    if not CREDENTIALS_PATH.exists():
        return None
    try:
        return json.loads(CREDENTIALS_PATH.read_text())
    except (json.JSONDecodeError, OSError) as exc:
        log.debug("Unreadable credentials file %s: %s", CREDENTIALS_PATH, exc)
        return None


def _read_token() -> str | None:
    creds = _read_credentials()
    if not creds:
        return None
    oauth = creds.get("claudeAiOauth") or {}
    token = oauth.get("accessToken")
    if not token:
        log.debug("No accessToken in Claude credentials")
        return None
    expires_at = oauth.get("expiresAt")  # epoch milliseconds
    if isinstance(expires_at, (int, float)) and expires_at / 1000 < time.time():
        log.debug("Claude OAuth token expired at %s", expires_at)
        return None
    return token


def has_valid_token() -> bool:
    return _read_token() is not None


def _fetch_usage(token: str) -> dict:
    req = urllib.request.Request(
        USAGE_API_URL,
        headers={
            "Authorization": f"Bearer {token}",
            "anthropic-beta": "oauth-2025-04-20",
        },
    )
    with urllib.request.urlopen(req, timeout=REQUEST_TIMEOUT) as resp:
        return json.loads(resp.read())


def _parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    ts = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def _parse_body(body: dict) -> UsageQueryResult:
    """Map the oauth usage response onto a query result.

    A missing or null ``five_hour.utilization`` is not an error: the endpoint
    returns it while usage data is still loading, so the result carries no
    reading rather than a zero.
    """
    if not isinstance(body, dict):
        raise ValueError(f"unexpected usage payload: {type(body).__name__}")

    primary = body.get(PRIMARY_WINDOW) or {}
    secondary = body.get(SECONDARY_WINDOW) or {}
    used = primary.get("utilization")
    weekly = secondary.get("utilization")
    return UsageQueryResult(
        ok=True,
        used_percent=float(used) if used is not None else None,
        resets_at=_parse_timestamp(primary.get("resets_at")),
        secondary_used_percent=float(weekly) if weekly is not None else None,
        secondary_resets_at=_parse_timestamp(secondary.get("resets_at")),
    )


def query_usage() -> UsageQueryResult:
    """Query Claude's live usage API. Never raises."""
    token = _read_token()
    if token is None:
        return UsageQueryResult.failure(FailureReason.CREDENTIAL_MISSING)

    try:
        body = _fetch_usage(token)
    except urllib.error.HTTPError as exc:
        if exc.code in (401, 403):
            log.info("Usage API rejected the token (HTTP %s)", exc.code)
            return UsageQueryResult.failure(FailureReason.AUTH_EXPIRED)
        log.debug("Usage API returned HTTP %s", exc.code)
        return UsageQueryResult.failure(FailureReason.TRANSIENT)
    except json.JSONDecodeError as exc:
        log.warning("Usage API returned malformed JSON: %s", exc)
        return UsageQueryResult.failure(FailureReason.MALFORMED_RESPONSE)
    except (urllib.error.URLError, OSError) as exc:
        log.debug("Usage API call failed: %s", exc)
        return UsageQueryResult.failure(FailureReason.TRANSIENT)

    try:
        return _parse_body(body)
    except (AttributeError, TypeError, ValueError) as exc:
        log.warning("Usage API payload not understood: %s", exc)
        return UsageQueryResult.failure(FailureReason.MALFORMED_RESPONSE)
