"""
persistence/store.py — Profile persistence adapters

A profile is the saved activity set (without work callables) plus the
progress snapshot of every activity. The scheduler saves on every
`finished` transition and at termination, and loads once at setup.

Contract (ProfileStore):
  - load(profile_id) → ProfileState, or None when the profile does not exist.
  - Corrupt or unreadable data raises PersistenceError; the scheduler logs
    it, records it in RunResult.persistence_errors and starts fresh.
  - save(profile_id, activities, progress) raises PersistenceError on failure.
  - save() followed by load() reproduces the records field-for-field.

Backends:
    JsonProfileStore    one JSON document per profile, atomically replaced
    SqliteProfileStore  aiosqlite database with profiles/activities/progress tables
    NullProfileStore    persistence disabled
"""

from __future__ import annotations

import asyncio
import json
import os
import re
import tempfile
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional, Sequence

import aiosqlite

from autocycle.exceptions import ConfigurationError, PersistenceError
from autocycle.observability.logger import get_logger
from autocycle.scheduler.types import ActivityRecord, ProgressSnapshot

log = get_logger(__name__)

_PROFILE_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,63}$")
_FORMAT_VERSION = 1


def validate_profile_id(profile_id: str) -> str:
    if not isinstance(profile_id, str) or not _PROFILE_ID_RE.match(profile_id):
        raise ConfigurationError(
            f"Invalid profile id {profile_id!r}: use letters, digits, '_', '.', '-' (max 64)."
        )
    return profile_id


@dataclass
class ProfileState:
    profile_id: str
    activities: list[ActivityRecord] = field(default_factory=list)
    progress: list[ProgressSnapshot] = field(default_factory=list)
    saved_at: Optional[float] = None

    def activity(self, key: str) -> Optional[ActivityRecord]:
        return next((a for a in self.activities if a.key == key), None)

    def snapshot(self, key: str) -> Optional[ProgressSnapshot]:
        return next((p for p in self.progress if p.key == key), None)

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": _FORMAT_VERSION,
            "profile_id": self.profile_id,
            "saved_at": self.saved_at,
            "activities": [a.to_dict() for a in self.activities],
            "progress": [p.to_dict() for p in self.progress],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ProfileState":
        return cls(
            profile_id=str(data["profile_id"]),
            activities=[ActivityRecord.from_dict(a) for a in data.get("activities", [])],
            progress=[ProgressSnapshot.from_dict(p) for p in data.get("progress", [])],
            saved_at=data.get("saved_at"),
        )


class ProfileStore(ABC):
    """Persistence adapter consumed by ActivityScheduler."""

    async def init(self) -> None:
        """Open underlying resources. Called once by the scheduler before load()."""

    async def close(self) -> None:
        """Release underlying resources. Called once when the run ends."""

    @abstractmethod
    async def load(self, profile_id: str) -> Optional[ProfileState]: ...

    @abstractmethod
    async def save(
        self,
        profile_id: str,
        activities: Sequence[ActivityRecord],
        progress: Sequence[ProgressSnapshot],
    ) -> None: ...

    @abstractmethod
    async def delete(self, profile_id: str) -> bool: ...


# ─────────────────────────────────────────────────────────────────────────────
# Null
# ─────────────────────────────────────────────────────────────────────────────

class NullProfileStore(ProfileStore):
    async def load(self, profile_id: str) -> Optional[ProfileState]:
        return None

    async def save(self, profile_id, activities, progress) -> None:
        return None

    async def delete(self, profile_id: str) -> bool:
        return False


# ─────────────────────────────────────────────────────────────────────────────
# JSON
# ─────────────────────────────────────────────────────────────────────────────

class JsonProfileStore(ProfileStore):
    """
    One `<profile_id>.json` per profile under `directory`.

    Writes go to a temp file in the same directory and are moved into place
    with os.replace(), so a crash mid-save never leaves a truncated profile.
    File I/O runs in a worker thread to keep the control loop responsive.
    """

    def __init__(self, directory: str | Path = "./data/profiles") -> None:
        self.directory = Path(directory)

    def path_for(self, profile_id: str) -> Path:
        return self.directory / f"{validate_profile_id(profile_id)}.json"

    async def load(self, profile_id: str) -> Optional[ProfileState]:
        path = self.path_for(profile_id)
        try:
            return await asyncio.to_thread(self._read, path)
        except FileNotFoundError:
            log.info("persistence.json.no_profile", profile_id=profile_id, path=str(path))
            return None
        except (OSError, ValueError, KeyError, TypeError, ConfigurationError) as e:
            raise PersistenceError(
                profile_id, "load", f"Could not read profile '{profile_id}' from {path}: {e}"
            ) from e

    async def save(self, profile_id, activities, progress) -> None:
        path = self.path_for(profile_id)
        state = ProfileState(
            profile_id=profile_id,
            activities=list(activities),
            progress=list(progress),
            saved_at=time.time(),
        )
        try:
            await asyncio.to_thread(self._write, path, state.to_dict())
        except (OSError, TypeError, ValueError) as e:
            raise PersistenceError(
                profile_id, "save", f"Could not write profile '{profile_id}' to {path}: {e}"
            ) from e
        log.debug("persistence.json.saved", profile_id=profile_id, path=str(path))

    async def delete(self, profile_id: str) -> bool:
        path = self.path_for(profile_id)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            raise PersistenceError(profile_id, "delete", str(e)) from e
        log.info("persistence.json.deleted", profile_id=profile_id)
        return True

    @staticmethod
    def _read(path: Path) -> ProfileState:
        with path.open("r", encoding="utf-8") as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ValueError("profile document is not a JSON object")
        version = data.get("version", _FORMAT_VERSION)
        if version != _FORMAT_VERSION:
            raise ValueError(f"unsupported profile format version {version}")
        return ProfileState.from_dict(data)

    @staticmethod
    def _write(path: Path, payload: dict[str, Any]) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.stem}.", suffix=".tmp", dir=path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2, ensure_ascii=False)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise


# ─────────────────────────────────────────────────────────────────────────────
# SQLite
# ─────────────────────────────────────────────────────────────────────────────

_SCHEMA = """
CREATE TABLE IF NOT EXISTS profiles (
    profile_id  TEXT PRIMARY KEY,
    saved_at    REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS activities (
    profile_id     TEXT NOT NULL,
    position       INTEGER NOT NULL,
    key            TEXT NOT NULL,
    target_metric  REAL NOT NULL,
    weight         REAL NOT NULL,
    enabled        INTEGER NOT NULL,
    PRIMARY KEY (profile_id, key),
    FOREIGN KEY (profile_id) REFERENCES profiles(profile_id)
);

CREATE TABLE IF NOT EXISTS progress (
    profile_id       TEXT NOT NULL,
    position         INTEGER NOT NULL,
    key              TEXT NOT NULL,
    baseline_metric  REAL NOT NULL,
    current_metric   REAL NOT NULL,
    target_metric    REAL NOT NULL,
    action_count     INTEGER NOT NULL DEFAULT 0,
    finished         INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (profile_id, key),
    FOREIGN KEY (profile_id) REFERENCES profiles(profile_id)
);
"""


class SqliteProfileStore(ProfileStore):
    """
    Async SQLite-backed profile store.

    Usage:
        store = SqliteProfileStore("./data/sqlite/profiles.db")
        await store.init()
        await store.save("main", activities, progress)
        state = await store.load("main")
        await store.close()
    """

    def __init__(self, db_path: str | Path = "./data/sqlite/profiles.db") -> None:
        self.db_path = str(db_path)
        self._db: Optional[aiosqlite.Connection] = None

    async def init(self) -> None:
        if self._db is not None:
            return
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        try:
            self._db = await aiosqlite.connect(self.db_path)
            self._db.row_factory = aiosqlite.Row
            await self._db.executescript(_SCHEMA)
            await self._db.commit()
        except Exception as e:
            self._db = None
            raise PersistenceError("*", "init", f"Could not open {self.db_path}: {e}") from e
        log.info("persistence.sqlite.initialized", db_path=self.db_path)

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    def _require_db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError(
                "SqliteProfileStore is not initialised (or has been closed). "
                "Call `await store.init()` before use."
            )
        return self._db

    async def load(self, profile_id: str) -> Optional[ProfileState]:
        validate_profile_id(profile_id)
        db = self._require_db()
        try:
            async with db.execute(
                "SELECT saved_at FROM profiles WHERE profile_id=?", (profile_id,)
            ) as cur:
                row = await cur.fetchone()
            if row is None:
                log.info("persistence.sqlite.no_profile", profile_id=profile_id)
                return None
            saved_at = row["saved_at"]

            async with db.execute(
                "SELECT key, target_metric, weight, enabled FROM activities "
                "WHERE profile_id=? ORDER BY position",
                (profile_id,),
            ) as cur:
                activity_rows = await cur.fetchall()
            async with db.execute(
                "SELECT key, baseline_metric, current_metric, target_metric, action_count, finished "
                "FROM progress WHERE profile_id=? ORDER BY position",
                (profile_id,),
            ) as cur:
                progress_rows = await cur.fetchall()
        except aiosqlite.Error as e:
            raise PersistenceError(profile_id, "load", f"SQLite load failed: {e}") from e

        try:
            return ProfileState(
                profile_id=profile_id,
                activities=[ActivityRecord.from_dict(dict(r)) for r in activity_rows],
                progress=[ProgressSnapshot.from_dict(dict(r)) for r in progress_rows],
                saved_at=saved_at,
            )
        except (ValueError, TypeError, KeyError, ConfigurationError) as e:
            raise PersistenceError(
                profile_id, "load", f"Corrupt SQLite rows for profile '{profile_id}': {e}"
            ) from e

    async def save(self, profile_id, activities, progress) -> None:
        validate_profile_id(profile_id)
        db = self._require_db()
        try:
            await db.execute("DELETE FROM activities WHERE profile_id=?", (profile_id,))
            await db.execute("DELETE FROM progress WHERE profile_id=?", (profile_id,))
            await db.execute(
                "INSERT OR REPLACE INTO profiles (profile_id, saved_at) VALUES (?, ?)",
                (profile_id, time.time()),
            )
            await db.executemany(
                "INSERT INTO activities (profile_id, position, key, target_metric, weight, enabled) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                [
                    (profile_id, i, a.key, float(a.target_metric), float(a.weight), int(a.enabled))
                    for i, a in enumerate(activities)
                ],
            )
            await db.executemany(
                "INSERT INTO progress (profile_id, position, key, baseline_metric, current_metric, "
                "target_metric, action_count, finished) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                [
                    (
                        profile_id, i, p.key, p.baseline_metric, p.current_metric,
                        p.target_metric, p.action_count, int(p.finished),
                    )
                    for i, p in enumerate(progress)
                ],
            )
            await db.commit()
        except aiosqlite.Error as e:
            await db.rollback()
            raise PersistenceError(profile_id, "save", f"SQLite save failed: {e}") from e
        log.debug("persistence.sqlite.saved", profile_id=profile_id, activities=len(activities))

    async def delete(self, profile_id: str) -> bool:
        validate_profile_id(profile_id)
        db = self._require_db()
        try:
            await db.execute("DELETE FROM activities WHERE profile_id=?", (profile_id,))
            await db.execute("DELETE FROM progress WHERE profile_id=?", (profile_id,))
            cur = await db.execute("DELETE FROM profiles WHERE profile_id=?", (profile_id,))
            await db.commit()
        except aiosqlite.Error as e:
            raise PersistenceError(profile_id, "delete", f"SQLite delete failed: {e}") from e
        deleted = cur.rowcount > 0
        if deleted:
            log.info("persistence.sqlite.deleted", profile_id=profile_id)
        return deleted


def build_store(backend: str, path: str | Path) -> ProfileStore:
    """Store factory used by the CLI: 'json' → directory, 'sqlite' → db file, 'none'."""
    backend = backend.lower()
    if backend == "json":
        return JsonProfileStore(path)
    if backend == "sqlite":
        db_path = Path(path)
        if db_path.suffix == "":
            db_path = db_path / "profiles.db"
        return SqliteProfileStore(db_path)
    if backend == "none":
        return NullProfileStore()
    raise ConfigurationError(f"Unknown persistence backend '{backend}'")
