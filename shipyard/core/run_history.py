"""Append-only, hash-chained run history backed by SQLite.

The history is the record of every pipeline run.  The CLI's ``status`` and
``history`` commands are projections of it; the orchestrator only appends.

Design:
- Append-only: records are inserted, never updated or deleted.  A status
  change is a new RUN record; the latest one wins when a run is read back.
- Hash-chained per run: each record includes the SHA-256 of the previous
  record for the same run.
- WAL journal mode; one connection per operation so concurrent runs on
  separate threads can write safely.
- Two side indexes, also append-only: published artifacts by source ref
  (for cache hits) and applied revisions by deployment name (for rollback).
- One mutable table, ``rollout_lease``, holds at most one row per deployment
  name while a rollout is in flight.  It is taken under ``BEGIN IMMEDIATE``
  so processes sharing the database queue on it.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

from shipyard.core.errors import ShipyardError
from shipyard.core.hasher import compute_entry_hash
from shipyard.models.artifacts import Artifact
from shipyard.models.deployment import DeploymentRevision, Manifest, RevisionStatus
from shipyard.models.history import HistoryEntry, RecordKind
from shipyard.models.runs import PipelineRun, StepResult

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# DDL
# ---------------------------------------------------------------------------

_CREATE_HISTORY = """
CREATE TABLE IF NOT EXISTS run_history (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    entry_id            TEXT NOT NULL UNIQUE,
    run_id              TEXT NOT NULL,
    kind                TEXT NOT NULL,
    payload_json        TEXT NOT NULL,
    timestamp_utc       TEXT NOT NULL,
    previous_entry_hash TEXT NOT NULL DEFAULT '',
    entry_hash          TEXT NOT NULL UNIQUE
);
"""

_CREATE_IDX_RUN = """
CREATE INDEX IF NOT EXISTS idx_history_run ON run_history(run_id, id);
"""

_CREATE_ARTIFACTS = """
CREATE TABLE IF NOT EXISTS artifact_index (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    source_ref  TEXT NOT NULL,
    repository  TEXT NOT NULL,
    tag         TEXT NOT NULL,
    digest      TEXT NOT NULL,
    recorded_at TEXT NOT NULL
);
"""

_CREATE_IDX_ARTIFACTS = """
CREATE INDEX IF NOT EXISTS idx_artifact_source ON artifact_index(source_ref, repository, id);
"""

_CREATE_REVISIONS = """
CREATE TABLE IF NOT EXISTS revision_index (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    deployment_name TEXT NOT NULL,
    revision        INTEGER NOT NULL,
    status          TEXT NOT NULL,
    manifest_json   TEXT NOT NULL,
    recorded_at     TEXT NOT NULL
);
"""

_CREATE_IDX_REVISIONS = """
CREATE INDEX IF NOT EXISTS idx_revision_name ON revision_index(deployment_name, status, id);
"""


_CREATE_LEASES = """
CREATE TABLE IF NOT EXISTS rollout_lease (
    deployment_name TEXT PRIMARY KEY,
    holder          TEXT NOT NULL,
    acquired_at     REAL NOT NULL
);
"""


class HistoryIntegrityError(ShipyardError):
    """Raised when a run's hash chain is broken."""


class RunHistory:
    """Persistent, append-only store of pipeline runs.

    Parameters
    ----------
    db_path:
        Path to the SQLite database file. Created if it does not exist.
    """

    def __init__(self, db_path: Path) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        # Serializes read-latest-hash + insert so chains never fork.
        self._append_lock = threading.Lock()
        self._init_schema()

    @property
    def db_path(self) -> Path:
        return self._db_path

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(str(self._db_path), timeout=30)
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            yield conn
            conn.commit()
        finally:
            conn.close()

    def _init_schema(self) -> None:
        with self._connect() as conn:
            for ddl in (
                _CREATE_HISTORY,
                _CREATE_IDX_RUN,
                _CREATE_ARTIFACTS,
                _CREATE_IDX_ARTIFACTS,
                _CREATE_REVISIONS,
                _CREATE_IDX_REVISIONS,
                _CREATE_LEASES,
            ):
                conn.execute(ddl)

    # ------------------------------------------------------------------
    # Append-only writes
    # ------------------------------------------------------------------

    def append_run(self, run: PipelineRun) -> HistoryEntry:
        """Record the run's current header (status and timestamps)."""
        payload = run.model_dump(mode="json", exclude={"steps"})
        return self._append(HistoryEntry(run_id=run.run_id, kind=RecordKind.RUN, payload=payload))

    def append_step(self, run_id: str, result: StepResult) -> HistoryEntry:
        """Record one StepResult for a run."""
        payload = result.model_dump(mode="json")
        return self._append(HistoryEntry(run_id=run_id, kind=RecordKind.STEP, payload=payload))

    def _append(self, entry: HistoryEntry) -> HistoryEntry:
        with self._append_lock:
            previous_hash = self._get_latest_hash(entry.run_id)
            entry_dict = entry.model_dump(mode="json")
            entry_dict["previous_entry_hash"] = previous_hash
            sealed = entry.model_copy(
                update={
                    "previous_entry_hash": previous_hash,
                    "entry_hash": compute_entry_hash(entry_dict),
                }
            )
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO run_history
                        (entry_id, run_id, kind, payload_json, timestamp_utc,
                         previous_entry_hash, entry_hash)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        sealed.entry_id,
                        sealed.run_id,
                        sealed.kind.value,
                        json.dumps(sealed.payload),
                        sealed.timestamp_utc,
                        sealed.previous_entry_hash,
                        sealed.entry_hash,
                    ),
                )
        logger.debug("history: %s record for %s", sealed.kind.value, sealed.run_id)
        return sealed

    def _get_latest_hash(self, run_id: str) -> str:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT entry_hash FROM run_history WHERE run_id = ? ORDER BY id DESC LIMIT 1",
                (run_id,),
            ).fetchone()
        return row[0] if row else ""

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_entries(self, run_id: str) -> list[HistoryEntry]:
        """All records for a run, in append order."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT entry_id, run_id, kind, payload_json, timestamp_utc, "
                "previous_entry_hash, entry_hash "
                "FROM run_history WHERE run_id = ? ORDER BY id ASC",
                (run_id,),
            ).fetchall()
        return [self._row_to_entry(row) for row in rows]

    def get_run(self, run_id: str) -> PipelineRun | None:
        """Rebuild a PipelineRun from its records, or None if unknown."""
        entries = self.get_entries(run_id)
        header: dict | None = None
        steps: list[dict] = []
        for entry in entries:
            if entry.kind == RecordKind.RUN:
                header = entry.payload
            else:
                steps.append(entry.payload)
        if header is None:
            return None
        return PipelineRun.model_validate({**header, "steps": steps})

    def list_runs(self, limit: int | None = None) -> list[PipelineRun]:
        """Runs ordered most recently started first."""
        sql = "SELECT run_id FROM run_history GROUP BY run_id ORDER BY MIN(id) DESC"
        params: tuple = ()
        if limit is not None:
            sql += " LIMIT ?"
            params = (limit,)
        with self._connect() as conn:
            run_ids = [row[0] for row in conn.execute(sql, params).fetchall()]
        runs = [self.get_run(rid) for rid in run_ids]
        return [r for r in runs if r is not None]

    # ------------------------------------------------------------------
    # Chain verification
    # ------------------------------------------------------------------

    def verify_chain(self, run_id: str) -> bool:
        """Verify the hash chain for a run.

        Returns True if the chain is valid, raises HistoryIntegrityError
        otherwise.
        """
        prev_hash = ""
        for entry in self.get_entries(run_id):
            if entry.previous_entry_hash != prev_hash:
                raise HistoryIntegrityError(
                    f"Chain broken at entry {entry.entry_id}: "
                    f"expected previous_hash={prev_hash!r}, "
                    f"got {entry.previous_entry_hash!r}"
                )
            expected_hash = compute_entry_hash(entry.model_dump(mode="json"))
            if entry.entry_hash != expected_hash:
                raise HistoryIntegrityError(
                    f"Tampered entry {entry.entry_id}: "
                    f"expected hash={expected_hash!r}, got {entry.entry_hash!r}"
                )
            prev_hash = entry.entry_hash
        return True

    # ------------------------------------------------------------------
    # Artifact index
    # ------------------------------------------------------------------

    def record_artifact(self, artifact: Artifact) -> None:
        """Index a published artifact under its source ref."""
        if not artifact.digest:
            raise ValueError(f"{artifact.reference} has no digest; only published artifacts are indexed")
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO artifact_index (source_ref, repository, tag, digest, recorded_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (
                    artifact.source_ref,
                    artifact.repository,
                    artifact.tag,
                    artifact.digest,
                    _now(),
                ),
            )

    def find_artifact(self, source_ref: str, repository: str) -> Artifact | None:
        """Most recently published artifact for a source ref, if any."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT repository, tag, digest FROM artifact_index "
                "WHERE source_ref = ? AND repository = ? ORDER BY id DESC LIMIT 1",
                (source_ref, repository),
            ).fetchone()
        if row is None:
            return None
        return Artifact(repository=row[0], tag=row[1], digest=row[2], source_ref=source_ref)

    # ------------------------------------------------------------------
    # Revision index
    # ------------------------------------------------------------------

    def record_revision(
        self, manifest: Manifest, revision: int, status: RevisionStatus
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO revision_index "
                "(deployment_name, revision, status, manifest_json, recorded_at) "
                "VALUES (?, ?, ?, ?, ?)",
                (
                    manifest.deployment_name,
                    revision,
                    status.value,
                    manifest.model_dump_json(),
                    _now(),
                ),
            )

    def last_available(self, deployment_name: str) -> tuple[int, Manifest] | None:
        """The most recent manifest that reached AVAILABLE for a deployment."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT revision, manifest_json FROM revision_index "
                "WHERE deployment_name = ? AND status = ? ORDER BY id DESC LIMIT 1",
                (deployment_name, RevisionStatus.AVAILABLE.value),
            ).fetchone()
        if row is None:
            return None
        return row[0], Manifest.model_validate_json(row[1])

    def revisions(self, deployment_name: str) -> list[DeploymentRevision]:
        """Every recorded revision status change for a deployment, oldest first."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT revision, status, manifest_json FROM revision_index "
                "WHERE deployment_name = ? ORDER BY id ASC",
                (deployment_name,),
            ).fetchall()
        revisions = []
        for revision, status, manifest_json in rows:
            manifest = Manifest.model_validate_json(manifest_json)
            revisions.append(
                DeploymentRevision(
                    deployment_name=deployment_name,
                    revision=revision,
                    image=manifest.image,
                    replicas=manifest.replicas,
                    status=RevisionStatus(status),
                )
            )
        return revisions

    # ------------------------------------------------------------------
    # Rollout leases
    # ------------------------------------------------------------------

    def acquire_lease(self, deployment_name: str, holder: str, ttl_seconds: float) -> bool:
        """Take the rollout lease for *deployment_name* on behalf of *holder*.

        Returns False while another holder has it.  A lease older than
        *ttl_seconds* is treated as abandoned and taken over.
        """
        now = time.time()
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                "SELECT holder, acquired_at FROM rollout_lease WHERE deployment_name = ?",
                (deployment_name,),
            ).fetchone()
            if row is not None and row[0] != holder:
                if now - row[1] < ttl_seconds:
                    return False
                logger.warning(
                    "taking over stale rollout lease on %s from %s", deployment_name, row[0]
                )
            conn.execute(
                "INSERT OR REPLACE INTO rollout_lease (deployment_name, holder, acquired_at) "
                "VALUES (?, ?, ?)",
                (deployment_name, holder, now),
            )
        return True

    def release_lease(self, deployment_name: str, holder: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "DELETE FROM rollout_lease WHERE deployment_name = ? AND holder = ?",
                (deployment_name, holder),
            )

    def lease_holder(self, deployment_name: str) -> str | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT holder FROM rollout_lease WHERE deployment_name = ?",
                (deployment_name,),
            ).fetchone()
        return row[0] if row else None

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_entry(row: tuple) -> HistoryEntry:
        (
            entry_id,
            run_id,
            kind,
            payload_json,
            timestamp_utc,
            previous_entry_hash,
            entry_hash,
        ) = row
        return HistoryEntry(
            entry_id=entry_id,
            run_id=run_id,
            kind=RecordKind(kind),
            payload=json.loads(payload_json),
            timestamp_utc=timestamp_utc,
            previous_entry_hash=previous_entry_hash,
            entry_hash=entry_hash,
        )


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()
