"""Record stores for image inventory records.

Two backends share the :class:`RecordStore` protocol:

* :class:`SqliteRecordStore` keeps records in a local SQLite database, for
  standalone runs and tests.
* :class:`KubectlRecordStore` keeps them as ``ImageCertificationInfo`` custom
  resources on the cluster.

Both provide atomic create and optimistic-concurrency updates keyed on the
record's ``resource_version``.  Status and metadata (annotations) are written
independently, mirroring the Kubernetes status subresource.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from imagecertinfo.cluster import ClusterClient, CommandResult
from imagecertinfo.errors import RecordConflict, RecordExists, RecordNotFound, StoreError
from imagecertinfo.models import API_VERSION, ImageRecord, ImageRecordStatus

logger = logging.getLogger(__name__)


@runtime_checkable
class RecordStore(Protocol):
    def get(self, key: str) -> ImageRecord | None: ...

    def create(self, record: ImageRecord) -> ImageRecord: ...

    def update_status(self, record: ImageRecord) -> ImageRecord: ...

    def update_metadata(self, record: ImageRecord) -> ImageRecord: ...

    def list(self) -> list[ImageRecord]: ...


# ── SQLite ────────────────────────────────────────────────────────────────

_SCHEMA_VERSION = 1

_DDL = """\
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS image_records (
    name             TEXT    PRIMARY KEY,
    resource_version INTEGER NOT NULL DEFAULT 1,
    registry         TEXT    NOT NULL,
    repository       TEXT    NOT NULL,
    tag              TEXT    NOT NULL DEFAULT '',
    digest           TEXT    NOT NULL,
    full_reference   TEXT    NOT NULL,
    annotations_json TEXT    NOT NULL DEFAULT '{}',
    status_json      TEXT    NOT NULL DEFAULT '{}',
    created_at       TEXT    NOT NULL,           -- ISO-8601 UTC
    updated_at       TEXT    NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_records_registry ON image_records(registry);
"""


class SqliteRecordStore:
    """Record store backed by a SQLite database.

    Parameters
    ----------
    db_path : str | Path
        Path to the SQLite database file.  Created automatically if missing.
        ``":memory:"`` keeps everything in memory.
    """

    def __init__(self, db_path: str | Path) -> None:
        self._db_path = str(db_path)
        if self._db_path != ":memory:":
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        # One connection shared by the worker threads, serialised by _lock.
        self._conn = sqlite3.connect(self._db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    # ── Schema management ──────────────────────────────────────────────

    def _ensure_schema(self) -> None:
        with self._lock:
            cur = self._conn.cursor()
            cur.executescript(_DDL)
            row = cur.execute("SELECT version FROM schema_version LIMIT 1").fetchone()
            if row is None:
                cur.execute("INSERT INTO schema_version (version) VALUES (?)", (_SCHEMA_VERSION,))
            self._conn.commit()

    # ── Read ───────────────────────────────────────────────────────────

    def get(self, key: str) -> ImageRecord | None:
        with self._lock:
            row = self._conn.execute("SELECT * FROM image_records WHERE name = ?", (key,)).fetchone()
        if row is None:
            return None
        return self._row_to_record(row)

    def list(self) -> list[ImageRecord]:
        with self._lock:
            rows = self._conn.execute("SELECT * FROM image_records ORDER BY name").fetchall()
        return [self._row_to_record(r) for r in rows]

    def __len__(self) -> int:
        with self._lock:
            row = self._conn.execute("SELECT COUNT(*) FROM image_records").fetchone()
        return row[0] if row else 0

    # ── Write ──────────────────────────────────────────────────────────

    def create(self, record: ImageRecord) -> ImageRecord:
        now = _now()
        with self._lock:
            try:
                self._conn.execute(
                    """
                    INSERT INTO image_records
                        (name, resource_version, registry, repository, tag, digest,
                         full_reference, annotations_json, status_json, created_at, updated_at)
                    VALUES (?, 1, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        record.name,
                        record.registry,
                        record.repository,
                        record.tag,
                        record.digest,
                        record.full_reference,
                        json.dumps(record.annotations),
                        _dump_status(record.status),
                        now,
                        now,
                    ),
                )
            except sqlite3.IntegrityError as exc:
                raise RecordExists(record.name) from exc
            self._conn.commit()
        logger.debug("Created record %s", record.name)
        return record.model_copy(update={"resource_version": "1"})

    def update_status(self, record: ImageRecord) -> ImageRecord:
        return self._update(record, "status_json", _dump_status(record.status))

    def update_metadata(self, record: ImageRecord) -> ImageRecord:
        return self._update(record, "annotations_json", json.dumps(record.annotations))

    def _update(self, record: ImageRecord, column: str, value: str) -> ImageRecord:
        sql = f"UPDATE image_records SET {column} = ?, updated_at = ?, resource_version = resource_version + 1 WHERE name = ?"
        params: list[Any] = [value, _now(), record.name]
        if record.resource_version:
            sql += " AND resource_version = ?"
            params.append(int(record.resource_version))
        with self._lock:
            cur = self._conn.execute(sql, params)
            if cur.rowcount == 0:
                row = self._conn.execute(
                    "SELECT resource_version FROM image_records WHERE name = ?", (record.name,)
                ).fetchone()
                self._conn.rollback()
                if row is None:
                    raise RecordNotFound(record.name)
                raise RecordConflict(
                    f"{record.name}: resource version {record.resource_version} is stale "
                    f"(current {row[0]})"
                )
            self._conn.commit()
            row = self._conn.execute(
                "SELECT resource_version FROM image_records WHERE name = ?", (record.name,)
            ).fetchone()
        return record.model_copy(update={"resource_version": str(row[0])})

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # ── Internals ──────────────────────────────────────────────────────

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> ImageRecord:
        return ImageRecord(
            name=row["name"],
            registry=row["registry"],
            repository=row["repository"],
            tag=row["tag"],
            digest=row["digest"],
            full_reference=row["full_reference"],
            annotations=json.loads(row["annotations_json"]),
            resource_version=str(row["resource_version"]),
            status=ImageRecordStatus.model_validate_json(row["status_json"]),
        )


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _dump_status(status: ImageRecordStatus) -> str:
    return status.model_dump_json(by_alias=True, exclude_none=True)


# ── Custom resources via kubectl ──────────────────────────────────────────

RECORD_RESOURCE = "imagecertificationinfoes." + API_VERSION.split("/")[0]

_CONFLICT_MARKERS = ("the object has been modified", "Conflict")
_EXISTS_MARKERS = ("AlreadyExists", "already exists")


def _raise_for_result(result: CommandResult, name: str) -> None:
    if result.ok:
        return
    stderr = result.stderr
    if any(m in stderr for m in _EXISTS_MARKERS):
        raise RecordExists(name)
    if any(m in stderr for m in _CONFLICT_MARKERS):
        raise RecordConflict(f"{name}: {stderr.strip()}")
    if result.not_found:
        raise RecordNotFound(name)
    raise StoreError(f"{name}: {result.summary}")


class KubectlRecordStore:
    """Record store persisting ``ImageCertificationInfo`` custom resources."""

    def __init__(self, cluster: ClusterClient, resource: str = RECORD_RESOURCE) -> None:
        self._cluster = cluster
        self._resource = resource

    def get(self, key: str) -> ImageRecord | None:
        result = self._cluster.get_object(self._resource, key)
        if result.not_found:
            return None
        _raise_for_result(result, key)
        return self._decode(result, key)

    def list(self) -> list[ImageRecord]:
        result = self._cluster.list_objects(self._resource)
        _raise_for_result(result, self._resource)
        try:
            items = result.json().get("items", [])
        except json.JSONDecodeError as exc:
            raise StoreError(f"decoding {self._resource} list: {exc}") from exc
        return [ImageRecord.from_manifest(item) for item in items]

    def create(self, record: ImageRecord) -> ImageRecord:
        manifest = record.to_manifest()
        status = manifest.pop("status")
        manifest["metadata"].pop("resourceVersion", None)
        result = self._cluster.create_manifest(manifest)
        _raise_for_result(result, record.name)
        created = self._decode(result, record.name)

        # Status is a subresource and is dropped on create.
        manifest = created.to_manifest()
        manifest["status"] = status
        result = self._cluster.replace_manifest(manifest, subresource="status")
        _raise_for_result(result, record.name)
        logger.debug("Created record %s", record.name)
        return self._decode(result, record.name)

    def update_status(self, record: ImageRecord) -> ImageRecord:
        result = self._cluster.replace_manifest(record.to_manifest(), subresource="status")
        _raise_for_result(result, record.name)
        return self._decode(result, record.name)

    def update_metadata(self, record: ImageRecord) -> ImageRecord:
        manifest = record.to_manifest()
        manifest.pop("status")
        result = self._cluster.replace_manifest(manifest)
        _raise_for_result(result, record.name)
        return self._decode(result, record.name)

    @staticmethod
    def _decode(result: CommandResult, name: str) -> ImageRecord:
        try:
            return ImageRecord.from_manifest(result.json())
        except json.JSONDecodeError as exc:
            raise StoreError(f"decoding {name}: {exc}") from exc
