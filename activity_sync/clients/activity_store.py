"""SQLite-backed storage for synced commits, listens and sync metadata."""

from __future__ import annotations

import sqlite3
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Iterable, List, Optional, Tuple

from activity_sync.models.activity import (
    CommitRecord,
    Provider,
    SpotifyListen,
    SyncMetadata,
    SyncOutcome,
)

_TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def _ts(value: datetime) -> str:
    # Fixed-width UTC text so that string order matches time order.
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(_TS_FORMAT)


def _dt(value: str) -> datetime:
    return datetime.strptime(value, _TS_FORMAT).replace(tzinfo=timezone.utc)


class ActivityStore:
    """Append-only commit and listen tables plus one metadata row per provider.

    Uniqueness constraints carry the idempotence of the sync: inserting a row
    that already exists is a no-op and is not counted as new.
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = Path(db_path)
        if self._db_path.parent and not self._db_path.parent.exists():
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._ensure_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS commits (
                    hash TEXT NOT NULL,
                    repo_full_name TEXT NOT NULL,
                    message TEXT NOT NULL,
                    author_name TEXT NOT NULL,
                    url TEXT NOT NULL,
                    committed_at TEXT NOT NULL,
                    UNIQUE (repo_full_name, hash)
                );
                CREATE INDEX IF NOT EXISTS idx_commits_committed_at
                    ON commits (committed_at);

                CREATE TABLE IF NOT EXISTS spotify_listens (
                    track_id TEXT NOT NULL,
                    played_at TEXT NOT NULL,
                    name TEXT NOT NULL,
                    artist TEXT NOT NULL,
                    album TEXT NOT NULL,
                    external_url TEXT NOT NULL,
                    image_url TEXT NOT NULL,
                    duration_ms INTEGER NOT NULL DEFAULT 0,
                    linked_commit_hash TEXT,
                    UNIQUE (track_id, played_at)
                );
                CREATE INDEX IF NOT EXISTS idx_listens_played_at
                    ON spotify_listens (played_at);

                CREATE TABLE IF NOT EXISTS sync_metadata (
                    provider TEXT PRIMARY KEY,
                    last_synced_at TEXT NOT NULL,
                    last_status TEXT NOT NULL,
                    last_error TEXT,
                    sync_count INTEGER NOT NULL DEFAULT 0,
                    last_new_items INTEGER NOT NULL DEFAULT 0
                );
                """
            )

    # Commits

    def insert_commits(self, commits: Iterable[CommitRecord]) -> int:
        """Insert commits not already stored; return how many were new."""
        rows = [
            (
                c.hash,
                c.repo_full_name,
                c.message,
                c.author_name,
                c.url,
                _ts(c.committed_at),
            )
            for c in commits
        ]
        if not rows:
            return 0
        with self._connect() as conn:
            before = conn.total_changes
            conn.executemany(
                """
                INSERT OR IGNORE INTO commits
                    (hash, repo_full_name, message, author_name, url, committed_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                rows,
            )
            return conn.total_changes - before

    def list_recent_commits(
        self,
        *,
        limit: int = 20,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> List[CommitRecord]:
        clauses, params = [], []
        if since is not None:
            clauses.append("committed_at >= ?")
            params.append(_ts(since))
        if until is not None:
            clauses.append("committed_at <= ?")
            params.append(_ts(until))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM commits {where} ORDER BY committed_at DESC LIMIT ?",
                (*params, limit),
            ).fetchall()
        return [self._commit_from_row(row) for row in rows]

    def find_commit_near(
        self, moment: datetime, window: timedelta = timedelta(minutes=5)
    ) -> Optional[CommitRecord]:
        """Return the commit closest to ``moment`` within +/- ``window``."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM commits WHERE committed_at BETWEEN ? AND ?",
                (_ts(moment - window), _ts(moment + window)),
            ).fetchall()
        candidates = [self._commit_from_row(row) for row in rows]
        if not candidates:
            return None
        return min(candidates, key=lambda c: abs(c.committed_at - moment))

    def count_commits(self) -> int:
        with self._connect() as conn:
            return conn.execute("SELECT COUNT(*) FROM commits").fetchone()[0]

    @staticmethod
    def _commit_from_row(row: sqlite3.Row) -> CommitRecord:
        return CommitRecord(
            hash=row["hash"],
            message=row["message"],
            author_name=row["author_name"],
            repo_full_name=row["repo_full_name"],
            url=row["url"],
            committed_at=_dt(row["committed_at"]),
        )

    # Listens

    def insert_listens(self, listens: Iterable[SpotifyListen]) -> int:
        """Insert listens not already stored; return how many were new."""
        rows = [
            (
                listen.track_id,
                _ts(listen.played_at),
                listen.name,
                listen.artist,
                listen.album,
                listen.external_url,
                listen.image_url,
                listen.duration_ms,
                listen.linked_commit_hash,
            )
            for listen in listens
        ]
        if not rows:
            return 0
        with self._connect() as conn:
            before = conn.total_changes
            conn.executemany(
                """
                INSERT OR IGNORE INTO spotify_listens
                    (track_id, played_at, name, artist, album, external_url,
                     image_url, duration_ms, linked_commit_hash)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                rows,
            )
            return conn.total_changes - before

    def list_recent_listens(self, *, limit: int = 20) -> List[SpotifyListen]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM spotify_listens ORDER BY played_at DESC LIMIT ?",
                (limit,),
            ).fetchall()
        return [self._listen_from_row(row) for row in rows]

    def count_listens(self) -> int:
        with self._connect() as conn:
            return conn.execute("SELECT COUNT(*) FROM spotify_listens").fetchone()[0]

    def list_commits_with_tracks(
        self, *, since: datetime, until: Optional[datetime] = None
    ) -> List[Tuple[CommitRecord, List[SpotifyListen]]]:
        """Commits in the range, newest first, each with the listens linked to it."""
        commits = self.list_recent_commits(limit=-1, since=since, until=until)
        if not commits:
            return []
        hashes = sorted({c.hash for c in commits})
        placeholders = ", ".join("?" for _ in hashes)
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT * FROM spotify_listens
                WHERE linked_commit_hash IN ({placeholders})
                ORDER BY played_at
                """,
                hashes,
            ).fetchall()
        by_hash: dict[str, List[SpotifyListen]] = {}
        for row in rows:
            listen = self._listen_from_row(row)
            by_hash.setdefault(listen.linked_commit_hash or "", []).append(listen)
        return [(c, by_hash.get(c.hash, [])) for c in commits]

    @staticmethod
    def _listen_from_row(row: sqlite3.Row) -> SpotifyListen:
        return SpotifyListen(
            track_id=row["track_id"],
            name=row["name"],
            artist=row["artist"],
            album=row["album"],
            external_url=row["external_url"],
            image_url=row["image_url"],
            played_at=_dt(row["played_at"]),
            duration_ms=row["duration_ms"],
            linked_commit_hash=row["linked_commit_hash"],
        )

    # Sync metadata

    def record_sync_attempt(
        self,
        provider: Provider,
        *,
        status: SyncOutcome,
        synced_at: datetime,
        error: Optional[str] = None,
        new_items: int = 0,
    ) -> SyncMetadata:
        """Overwrite the provider's metadata row and bump its attempt counter."""
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO sync_metadata
                    (provider, last_synced_at, last_status, last_error,
                     sync_count, last_new_items)
                VALUES (?, ?, ?, ?, 1, ?)
                ON CONFLICT(provider) DO UPDATE SET
                    last_synced_at = excluded.last_synced_at,
                    last_status = excluded.last_status,
                    last_error = excluded.last_error,
                    sync_count = sync_metadata.sync_count + 1,
                    last_new_items = excluded.last_new_items
                """,
                (provider.value, _ts(synced_at), status.value, error, new_items),
            )
        metadata = self.get_sync_metadata(provider)
        if metadata is None:
            raise sqlite3.DatabaseError(
                f"sync_metadata row for {provider.value} missing after upsert"
            )
        return metadata

    def get_sync_metadata(self, provider: Provider) -> Optional[SyncMetadata]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM sync_metadata WHERE provider = ?", (provider.value,)
            ).fetchone()
        return self._metadata_from_row(row) if row else None

    def list_sync_metadata(self) -> List[SyncMetadata]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM sync_metadata ORDER BY provider"
            ).fetchall()
        return [self._metadata_from_row(row) for row in rows]

    @staticmethod
    def _metadata_from_row(row: sqlite3.Row) -> SyncMetadata:
        return SyncMetadata(
            provider=Provider(row["provider"]),
            last_synced_at=_dt(row["last_synced_at"]),
            last_status=SyncOutcome(row["last_status"]),
            last_error=row["last_error"],
            sync_count=row["sync_count"],
            last_new_items=row["last_new_items"],
        )


__all__ = ["ActivityStore"]
