import logging
import sqlite3
from datetime import datetime, timedelta, timezone
from pathlib import Path

from pydantic import ValidationError

from models import CacheEntry, Snapshot

log = logging.getLogger(__name__)

DB_PATH = Path.home() / ".quota-meter" / "usage.db"

# Cached readings older than this are flagged stale.
STALE_AFTER = timedelta(minutes=5)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SnapshotCache:
    """Last known-good snapshot per provider, persisted to sqlite.

    The provider set is fixed, so nothing is ever evicted. Entries are only
    removed by :meth:`clear` (an explicit operator reset).
    """

    def __init__(self, path: Path = DB_PATH, stale_after: timedelta = STALE_AFTER):
        self.path = Path(path)
        self.stale_after = stale_after
        self._entries: dict[str, CacheEntry] = {}

    def _get_conn(self) -> sqlite3.Connection:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(self.path))
        conn.execute("""
            CREATE TABLE IF NOT EXISTS snapshots (
                provider_id TEXT NOT NULL,
                data TEXT NOT NULL,
                is_stale INTEGER NOT NULL DEFAULT 0,
                updated_at TEXT NOT NULL,
                PRIMARY KEY (provider_id)
            )
        """)
        conn.commit()
        return conn

    def load(self, now: datetime | None = None) -> dict[str, CacheEntry]:
        """Read persisted entries once at startup, flagging aged ones stale."""
        now = now or _utcnow()
        try:
            conn = self._get_conn()
            try:
                rows = conn.execute(
                    "SELECT provider_id, data, is_stale FROM snapshots"
                ).fetchall()
            finally:
                conn.close()
        except sqlite3.DatabaseError as exc:
            self._quarantine(exc)
            self._entries = {}
            return {}

        entries: dict[str, CacheEntry] = {}
        for provider_id, data, is_stale in rows:
            try:
                snapshot = Snapshot.model_validate_json(data)
            except ValidationError as exc:
                log.warning("Skipping unreadable cache row for %s: %s", provider_id, exc)
                continue
            entry = CacheEntry(last_good=snapshot, is_stale=bool(is_stale))
            entries[provider_id] = self._age(entry, now)
        self._entries = entries
        log.debug("Loaded %d cached snapshot(s) from %s", len(entries), self.path)
        return dict(entries)

    def get(self, provider_id: str, now: datetime | None = None) -> CacheEntry | None:
        entry = self._entries.get(provider_id)
        if entry is None:
            return None
        aged = self._age(entry, now or _utcnow())
        if aged is not entry:
            self._entries[provider_id] = aged
        return aged

    def put(self, provider_id: str, snapshot: Snapshot) -> CacheEntry:
        entry = CacheEntry(last_good=snapshot, is_stale=False)
        self._entries[provider_id] = entry
        self._persist(provider_id, entry)
        return entry

    def mark_stale(self, provider_id: str) -> None:
        entry = self._entries.get(provider_id)
        if entry is None or entry.is_stale:
            return
        entry = entry.model_copy(update={"is_stale": True})
        self._entries[provider_id] = entry
        self._persist(provider_id, entry)

    def clear(self) -> None:
        self._entries = {}
        try:
            conn = self._get_conn()
            try:
                conn.execute("DELETE FROM snapshots")
                conn.commit()
            finally:
                conn.close()
        except sqlite3.DatabaseError as exc:
            log.error("Failed to clear snapshot cache at %s: %s", self.path, exc)
        log.info("Snapshot cache cleared")

    def _age(self, entry: CacheEntry, now: datetime) -> CacheEntry:
        # Sticky: once stale, only put() clears the flag.
        if entry.is_stale:
            return entry
        if now - entry.last_good.observed_at > self.stale_after:
            return entry.model_copy(update={"is_stale": True})
        return entry

    def _persist(self, provider_id: str, entry: CacheEntry) -> None:
        try:
            conn = self._get_conn()
            try:
                conn.execute(
                    "INSERT OR REPLACE INTO snapshots (provider_id, data, is_stale, updated_at) "
                    "VALUES (?, ?, ?, ?)",
                    (
                        provider_id,
                        entry.last_good.model_dump_json(),
                        int(entry.is_stale),
                        _utcnow().isoformat(),
                    ),
                )
                conn.commit()
            finally:
                conn.close()
        except sqlite3.DatabaseError as exc:
            log.error("Failed to persist snapshot for %s: %s", provider_id, exc)

    def _quarantine(self, exc: Exception) -> None:
        log.warning("Snapshot cache at %s is unreadable (%s); starting empty", self.path, exc)
        if not self.path.exists():
            return
        target = self.path.with_name(self.path.name + ".corrupt")
        try:
            self.path.replace(target)
        except OSError as move_exc:
            log.error("Could not move corrupt cache aside: %s", move_exc)
