"""
On-device record store for guest mode.

SQLite via aiosqlite. Each record is stored as its full JSON document plus
the handful of columns the queries need. Every write publishes the name of
the changed table on ``changes`` so live queries can re-run.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import aiosqlite

from ..exceptions import MalformedRecordError, StorageConnectionError, StorageIOError
from ..models import Hike, HikeFilter, Observation
from ..streams import Channel, Subscription

logger = logging.getLogger(__name__)

HIKES_TABLE = "hikes"
OBSERVATIONS_TABLE = "observations"
MIGRATED_ASSETS_TABLE = "migrated_assets"

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS hikes (
    id TEXT NOT NULL PRIMARY KEY,
    owner_id TEXT NOT NULL,
    name TEXT NOT NULL,
    location_name TEXT,
    date TEXT NOT NULL,
    length_km REAL,
    difficulty TEXT,
    created_at TEXT NOT NULL,
    synced INTEGER NOT NULL DEFAULT 0,
    data TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS observations (
    id TEXT NOT NULL PRIMARY KEY,
    hike_id TEXT NOT NULL REFERENCES hikes(id) ON DELETE CASCADE,
    timestamp TEXT NOT NULL,
    created_at TEXT NOT NULL,
    synced INTEGER NOT NULL DEFAULT 0,
    data TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS migrated_assets (
    local_path TEXT NOT NULL PRIMARY KEY,
    remote_url TEXT NOT NULL,
    owner_id TEXT NOT NULL,
    migrated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_hikes_owner ON hikes(owner_id, date DESC);
CREATE INDEX IF NOT EXISTS idx_hikes_unsynced ON hikes(owner_id, synced, created_at);
CREATE INDEX IF NOT EXISTS idx_observations_hike ON observations(hike_id, timestamp DESC);
CREATE INDEX IF NOT EXISTS idx_assets_owner ON migrated_assets(owner_id);
"""


def _utc_iso(value: datetime) -> str:
    """ISO string normalized to UTC so that lexical order equals time order."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat()


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


@dataclass(frozen=True)
class MigratedAsset:
    """Ledger row for a local image already copied to the object store."""

    local_path: str
    remote_url: str
    owner_id: str
    migrated_at: datetime


class LocalDatabase:
    """
    SQLite store for hikes, observations and the migrated-asset ledger.

    Features:
    - Single file database (or ``:memory:``)
    - Foreign-key cascade from hikes to observations
    - ``synced`` marker per record to drive migration and cleanup
    """

    def __init__(self, db_path: Path | str):
        self.db_path = db_path
        self.conn: aiosqlite.Connection | None = None
        self.changes: Channel[str] = Channel()
        self._initialized = False

    @classmethod
    async def create(cls, db_path: Path | str) -> LocalDatabase:
        """Create and initialize the database."""
        database = cls(db_path)
        await database.initialize()
        return database

    async def initialize(self) -> None:
        """Open the connection and create the schema."""
        if self._initialized:
            return

        try:
            if isinstance(self.db_path, Path):
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self.conn = await aiosqlite.connect(str(self.db_path))
            await self.conn.execute("PRAGMA foreign_keys = ON")
            await self.conn.executescript(_SCHEMA_SQL)
            await self.conn.commit()
            self._initialized = True
            logger.info(f"Local database initialized: {self.db_path}")
        except (OSError, aiosqlite.Error) as e:
            raise StorageConnectionError(str(self.db_path), e) from e

    async def close(self) -> None:
        """Close the connection and end every change subscription."""
        if self.conn:
            await self.conn.close()
            self.conn = None
        self.changes.close()
        self._initialized = False

    def subscribe_changes(self) -> Subscription[str]:
        return self.changes.subscribe()

    def _require_conn(self, operation: str) -> aiosqlite.Connection:
        if self.conn is None:
            raise StorageIOError(operation, cause=RuntimeError("Not initialized"))
        return self.conn

    def _notify(self, table: str) -> None:
        self.changes.publish(table)

    # =========================================================================
    # Row decoding
    # =========================================================================

    @staticmethod
    def _decode(kind: str, record_id: str, raw: str) -> dict[str, Any]:
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, TypeError) as e:
            raise MalformedRecordError(kind, record_id, f"invalid JSON: {e}") from e
        if not isinstance(data, dict):
            raise MalformedRecordError(kind, record_id, "document is not an object")
        return data

    def _hike_from_row(self, row: Any) -> Hike:
        record_id, raw = row[0], row[1]
        data = self._decode("hike", record_id, raw)
        try:
            return Hike.from_dict(data)
        except (TypeError, ValueError) as e:
            raise MalformedRecordError("hike", record_id, str(e)) from e

    def _observation_from_row(self, row: Any) -> Observation:
        record_id, raw = row[0], row[1]
        data = self._decode("observation", record_id, raw)
        try:
            return Observation.from_dict(data)
        except (TypeError, ValueError) as e:
            raise MalformedRecordError("observation", record_id, str(e)) from e

    async def _fetch_hikes(self, operation: str, query: str, params: Any) -> list[Hike]:
        conn = self._require_conn(operation)
        async with conn.execute(query, params) as cursor:
            rows = await cursor.fetchall()
        return [self._hike_from_row(row) for row in rows]

    async def _fetch_observations(
        self, operation: str, query: str, params: Any
    ) -> list[Observation]:
        conn = self._require_conn(operation)
        async with conn.execute(query, params) as cursor:
            rows = await cursor.fetchall()
        return [self._observation_from_row(row) for row in rows]

    # =========================================================================
    # Hike Operations
    # =========================================================================

    async def upsert_hike(self, hike: Hike, synced: bool = False) -> Hike:
        """Insert or replace a hike. Local writes are unsynced unless stated."""
        conn = self._require_conn("upsert_hike")
        await conn.execute(
            """
            INSERT INTO hikes (
                id, owner_id, name, location_name, date, length_km,
                difficulty, created_at, synced, data
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (id) DO UPDATE SET
                owner_id = excluded.owner_id,
                name = excluded.name,
                location_name = excluded.location_name,
                date = excluded.date,
                length_km = excluded.length_km,
                difficulty = excluded.difficulty,
                synced = excluded.synced,
                data = excluded.data
            """,
            (
                hike.id,
                hike.owner_id,
                hike.name,
                hike.location.name,
                _utc_iso(hike.date),
                hike.length_km,
                hike.difficulty.value,
                _utc_iso(hike.created_at),
                int(synced),
                json.dumps(hike.to_dict()),
            ),
        )
        await conn.commit()
        self._notify(HIKES_TABLE)
        return hike

    async def get_hike(self, hike_id: str) -> Hike | None:
        hikes = await self._fetch_hikes(
            "get_hike", "SELECT id, data FROM hikes WHERE id = ?", (hike_id,)
        )
        return hikes[0] if hikes else None

    async def list_hikes(self, owner_id: str) -> list[Hike]:
        """Hikes owned by ``owner_id``, most recent hike date first."""
        return await self._fetch_hikes(
            "list_hikes",
            "SELECT id, data FROM hikes WHERE owner_id = ? ORDER BY date DESC, rowid",
            (owner_id,),
        )

    async def delete_hike(self, hike_id: str) -> bool:
        """Delete a hike; its observations go with it. Returns False if absent."""
        conn = self._require_conn("delete_hike")
        cursor = await conn.execute("DELETE FROM hikes WHERE id = ?", (hike_id,))
        deleted = cursor.rowcount > 0
        await conn.commit()
        if deleted:
            self._notify(HIKES_TABLE)
            self._notify(OBSERVATIONS_TABLE)
        return deleted

    async def search_hikes(self, owner_id: str, prefix: str) -> list[Hike]:
        """Case-insensitive name prefix search."""
        return await self._fetch_hikes(
            "search_hikes",
            """
            SELECT id, data FROM hikes
            WHERE owner_id = ? AND name LIKE ? ESCAPE '\\'
            ORDER BY date DESC, rowid
            """,
            (owner_id, _escape_like(prefix) + "%"),
        )

    async def filter_hikes(self, owner_id: str, criteria: HikeFilter) -> list[Hike]:
        """Advanced search. Blank text criteria are ignored."""
        where_parts = ["owner_id = ?"]
        params: list[Any] = [owner_id]

        if criteria.name_query:
            where_parts.append("name LIKE ? ESCAPE '\\'")
            params.append(f"%{_escape_like(criteria.name_query)}%")

        if criteria.location_query:
            where_parts.append("location_name LIKE ? ESCAPE '\\'")
            params.append(f"%{_escape_like(criteria.location_query)}%")

        if criteria.min_length is not None:
            where_parts.append("length_km >= ?")
            params.append(criteria.min_length)

        if criteria.max_length is not None:
            where_parts.append("length_km <= ?")
            params.append(criteria.max_length)

        if criteria.start_date is not None:
            where_parts.append("date >= ?")
            params.append(_utc_iso(criteria.start_date))

        if criteria.end_date is not None:
            where_parts.append("date <= ?")
            params.append(_utc_iso(criteria.end_date))

        if criteria.difficulty is not None:
            where_parts.append("difficulty = ?")
            params.append(criteria.difficulty.value)

        where_clause = " AND ".join(where_parts)
        return await self._fetch_hikes(
            "filter_hikes",
            f"SELECT id, data FROM hikes WHERE {where_clause} ORDER BY date DESC, rowid",
            params,
        )

    async def get_unsynced_hikes(self, owner_id: str) -> list[Hike]:
        """Hikes not yet copied to the cloud, in creation order."""
        return await self._fetch_hikes(
            "get_unsynced_hikes",
            """
            SELECT id, data FROM hikes
            WHERE owner_id = ? AND synced = 0
            ORDER BY created_at, rowid
            """,
            (owner_id,),
        )

    async def get_synced_hikes(self, owner_id: str) -> list[Hike]:
        return await self._fetch_hikes(
            "get_synced_hikes",
            "SELECT id, data FROM hikes WHERE owner_id = ? AND synced = 1 ORDER BY created_at, rowid",
            (owner_id,),
        )

    async def mark_hike_synced(self, hike_id: str) -> None:
        await self.mark_hikes_synced([hike_id])

    async def mark_hikes_synced(self, hike_ids: list[str]) -> None:
        """Bulk mark-synced."""
        if not hike_ids:
            return
        conn = self._require_conn("mark_hikes_synced")
        await conn.executemany(
            "UPDATE hikes SET synced = 1 WHERE id = ?", [(hike_id,) for hike_id in hike_ids]
        )
        await conn.commit()
        self._notify(HIKES_TABLE)

    # =========================================================================
    # Observation Operations
    # =========================================================================

    async def upsert_observation(self, observation: Observation, synced: bool = False) -> Observation:
        """Insert or replace an observation. The parent hike must exist."""
        conn = self._require_conn("upsert_observation")
        await conn.execute(
            """
            INSERT INTO observations (id, hike_id, timestamp, created_at, synced, data)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT (id) DO UPDATE SET
                hike_id = excluded.hike_id,
                timestamp = excluded.timestamp,
                synced = excluded.synced,
                data = excluded.data
            """,
            (
                observation.id,
                observation.hike_id,
                _utc_iso(observation.timestamp),
                _utc_iso(observation.created_at),
                int(synced),
                json.dumps(observation.to_dict()),
            ),
        )
        await conn.commit()
        self._notify(OBSERVATIONS_TABLE)
        return observation

    async def upsert_observations(self, observations: list[Observation]) -> list[Observation]:
        """Insert several observations in one transaction."""
        conn = self._require_conn("upsert_observations")
        try:
            await conn.executemany(
                """
                INSERT INTO observations (id, hike_id, timestamp, created_at, synced, data)
                VALUES (?, ?, ?, ?, 0, ?)
                ON CONFLICT (id) DO UPDATE SET
                    hike_id = excluded.hike_id,
                    timestamp = excluded.timestamp,
                    synced = 0,
                    data = excluded.data
                """,
                [
                    (
                        obs.id,
                        obs.hike_id,
                        _utc_iso(obs.timestamp),
                        _utc_iso(obs.created_at),
                        json.dumps(obs.to_dict()),
                    )
                    for obs in observations
                ],
            )
            await conn.commit()
        except Exception:
            await conn.rollback()
            raise
        self._notify(OBSERVATIONS_TABLE)
        return observations

    async def get_observation(self, observation_id: str) -> Observation | None:
        observations = await self._fetch_observations(
            "get_observation",
            "SELECT id, data FROM observations WHERE id = ?",
            (observation_id,),
        )
        return observations[0] if observations else None

    async def list_observations(self, hike_id: str) -> list[Observation]:
        """Observations of a hike, newest first."""
        return await self._fetch_observations(
            "list_observations",
            "SELECT id, data FROM observations WHERE hike_id = ? ORDER BY timestamp DESC, rowid",
            (hike_id,),
        )

    async def delete_observation(self, observation_id: str) -> bool:
        conn = self._require_conn("delete_observation")
        cursor = await conn.execute("DELETE FROM observations WHERE id = ?", (observation_id,))
        deleted = cursor.rowcount > 0
        await conn.commit()
        if deleted:
            self._notify(OBSERVATIONS_TABLE)
        return deleted

    async def count_observations(self, hike_id: str) -> int:
        conn = self._require_conn("count_observations")
        async with conn.execute(
            "SELECT COUNT(*) FROM observations WHERE hike_id = ?", (hike_id,)
        ) as cursor:
            row = await cursor.fetchone()
        return int(row[0]) if row else 0

    async def get_unsynced_observations(self, hike_id: str) -> list[Observation]:
        """Observations of a hike not yet copied to the cloud, in creation order."""
        return await self._fetch_observations(
            "get_unsynced_observations",
            """
            SELECT id, data FROM observations
            WHERE hike_id = ? AND synced = 0
            ORDER BY created_at, rowid
            """,
            (hike_id,),
        )

    async def get_synced_observations(self, hike_id: str) -> list[Observation]:
        return await self._fetch_observations(
            "get_synced_observations",
            """
            SELECT id, data FROM observations
            WHERE hike_id = ? AND synced = 1
            ORDER BY created_at, rowid
            """,
            (hike_id,),
        )

    async def mark_observation_synced(self, observation_id: str) -> None:
        await self.mark_observations_synced([observation_id])

    async def mark_observations_synced(self, observation_ids: list[str]) -> None:
        """Bulk mark-synced."""
        if not observation_ids:
            return
        conn = self._require_conn("mark_observations_synced")
        await conn.executemany(
            "UPDATE observations SET synced = 1 WHERE id = ?",
            [(observation_id,) for observation_id in observation_ids],
        )
        await conn.commit()
        self._notify(OBSERVATIONS_TABLE)

    # =========================================================================
    # Migrated Asset Ledger
    # =========================================================================

    async def record_migrated_asset(self, local_path: str, remote_url: str, owner_id: str) -> None:
        conn = self._require_conn("record_migrated_asset")
        await conn.execute(
            """
            INSERT INTO migrated_assets (local_path, remote_url, owner_id, migrated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT (local_path) DO UPDATE SET
                remote_url = excluded.remote_url,
                owner_id = excluded.owner_id,
                migrated_at = excluded.migrated_at
            """,
            (local_path, remote_url, owner_id, datetime.now(UTC).isoformat()),
        )
        await conn.commit()

    async def get_migrated_assets(self, owner_id: str) -> list[MigratedAsset]:
        conn = self._require_conn("get_migrated_assets")
        async with conn.execute(
            """
            SELECT local_path, remote_url, owner_id, migrated_at
            FROM migrated_assets WHERE owner_id = ?
            ORDER BY migrated_at, rowid
            """,
            (owner_id,),
        ) as cursor:
            rows = await cursor.fetchall()
        return [
            MigratedAsset(
                local_path=row[0],
                remote_url=row[1],
                owner_id=row[2],
                migrated_at=datetime.fromisoformat(row[3]),
            )
            for row in rows
        ]

    async def is_asset_migrated(self, local_path: str) -> bool:
        conn = self._require_conn("is_asset_migrated")
        async with conn.execute(
            "SELECT 1 FROM migrated_assets WHERE local_path = ?", (local_path,)
        ) as cursor:
            return await cursor.fetchone() is not None

    async def forget_migrated_asset(self, local_path: str) -> None:
        conn = self._require_conn("forget_migrated_asset")
        await conn.execute("DELETE FROM migrated_assets WHERE local_path = ?", (local_path,))
        await conn.commit()
