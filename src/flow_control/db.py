"""SQLite state store for flow-control.

Runs, node states, worktrees, artifacts, lineage and the event log live in a
single SQLite file shared by every worktree of a repository. The schema is
versioned with ``PRAGMA user_version`` and advanced by ``MIGRATIONS``. A
sibling ``<db>.lock`` file with a heartbeat keeps a second process from
writing at the same time.
"""

from __future__ import annotations

import json
import logging
import os
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Generator, Sequence

from flow_control.errors import (
	MigrationFailed,
	SchemaTooNew,
	StateStoreLocked,
	StateStoreNotOpen,
)
from flow_control.models import (
	ApprovedCommandRecord,
	ArtifactRecord,
	EventRecord,
	LockOwner,
	LockResult,
	MigrationStatus,
	NodeStateRecord,
	RunRecord,
	WorktreeRecord,
	_new_id,
	_now_iso,
)

logger = logging.getLogger(__name__)

DEFAULT_LOCK_STALE_SECONDS = 30.0
DEFAULT_LOCK_HEARTBEAT_SECONDS = 5.0

# Each entry advances the schema by one version. Never edit a released entry;
# append a new one instead.
MIGRATIONS: tuple[str, ...] = (
	# 1: base schema
	"""
CREATE TABLE IF NOT EXISTS runs (
	id TEXT PRIMARY KEY,
	flow_id TEXT NOT NULL,
	worktree_id TEXT NOT NULL,
	state TEXT NOT NULL,
	created_at TEXT NOT NULL,
	updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS node_states (
	run_id TEXT NOT NULL,
	node_id TEXT NOT NULL,
	state TEXT NOT NULL,
	updated_at TEXT NOT NULL,
	meta TEXT,
	PRIMARY KEY (run_id, node_id)
);

CREATE TABLE IF NOT EXISTS worktrees (
	id TEXT PRIMARY KEY,
	path TEXT NOT NULL,
	branch TEXT NOT NULL,
	status TEXT NOT NULL,
	created_at TEXT NOT NULL,
	updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS artifacts (
	id TEXT PRIMARY KEY,
	run_id TEXT NOT NULL,
	node_id TEXT NOT NULL,
	path TEXT NOT NULL,
	hash TEXT NOT NULL,
	meta TEXT,
	created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS events (
	id INTEGER PRIMARY KEY AUTOINCREMENT,
	run_id TEXT,
	node_id TEXT,
	type TEXT NOT NULL,
	payload TEXT,
	created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS approved_commands (
	id TEXT PRIMARY KEY,
	command_path TEXT NOT NULL,
	args_pattern TEXT,
	hash TEXT NOT NULL,
	approved_at TEXT NOT NULL,
	last_seen_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_events_run ON events(run_id, node_id);
CREATE INDEX IF NOT EXISTS idx_artifacts_node ON artifacts(run_id, node_id);
""",
	# 2: worktrees remember their base branch and owning run
	"""
ALTER TABLE worktrees ADD COLUMN base_branch TEXT;
ALTER TABLE worktrees ADD COLUMN run_id TEXT;
""",
	# 3: artifact lineage edges
	"""
CREATE TABLE IF NOT EXISTS artifact_lineage (
	artifact_id TEXT NOT NULL,
	source_artifact_id TEXT NOT NULL,
	PRIMARY KEY (artifact_id, source_artifact_id)
);
""",
)


def _dump_json(value: Any) -> str | None:
	if value is None:
		return None
	return json.dumps(value)


def _load_json(raw: str | None) -> Any:
	if raw is None:
		return None
	return json.loads(raw)


class Database:
	"""SQLite-backed state store.

	Construct with a path to open immediately, or call ``open`` later. All
	timestamps come from ``clock`` (an ISO-8601 string factory) unless a
	mutating method is given an explicit ``now``.
	"""

	def __init__(
		self,
		path: str | Path | None = None,
		*,
		clock: Callable[[], str] | None = None,
		migrations: Sequence[str] = MIGRATIONS,
	) -> None:
		self.conn: sqlite3.Connection | None = None
		self.path: str | None = None
		self._clock = clock or _now_iso
		self._migrations = tuple(migrations)
		self._schema_version = 0
		self._applied: list[int] = []
		self._last_error: dict[str, Any] | None = None
		self._lock_path: str | None = None
		self._lock_owner: LockOwner | None = None
		self._heartbeat_stop: threading.Event | None = None
		self._heartbeat_thread: threading.Thread | None = None
		if path is not None:
			self.open(path)

	# -- Lifecycle --

	def open(self, path: str | Path) -> None:
		"""Open the database file and bring its schema up to date.

		Raises:
			SchemaTooNew: The file was written by a newer flow-control.
			MigrationFailed: A migration step failed and was rolled back.
		"""
		if self.conn is not None:
			self.close()
		db_path = str(path)
		if db_path != ":memory:":
			Path(db_path).parent.mkdir(parents=True, exist_ok=True)
		self.conn = sqlite3.connect(db_path)
		self.conn.row_factory = sqlite3.Row
		self.path = db_path
		self._lock_path = f"{db_path}.lock" if db_path != ":memory:" else None
		logger.debug("Opened state database: %s", db_path)
		if db_path != ":memory:":
			self.conn.execute("PRAGMA journal_mode=WAL")
			self.conn.execute("PRAGMA busy_timeout=5000")
		try:
			self.apply_migrations()
		except (SchemaTooNew, MigrationFailed):
			self.conn.close()
			self.conn = None
			raise

	@property
	def is_open(self) -> bool:
		return self.conn is not None

	def close(self) -> None:
		self.release_lock()
		if self.conn is not None:
			logger.debug("Closing state database: %s", self.path)
			self.conn.close()
			self.conn = None

	def __enter__(self) -> Database:
		return self

	def __exit__(self, *args: object) -> None:
		self.close()

	def _require_conn(self) -> sqlite3.Connection:
		if self.conn is None:
			raise StateStoreNotOpen("State database is not open")
		return self.conn

	def _now(self, now: str | None) -> str:
		return now if now is not None else self._clock()

	@contextmanager
	def transaction(self) -> Generator[sqlite3.Connection, None, None]:
		"""Commit on success, roll back on exception."""
		conn = self._require_conn()
		try:
			yield conn
		except Exception:
			conn.rollback()
			raise
		else:
			conn.commit()

	# -- Migrations --

	def get_schema_version(self) -> int:
		row = self._require_conn().execute("PRAGMA user_version").fetchone()
		return int(row[0])

	def apply_migrations(self) -> list[int]:
		"""Apply every migration above the stored version, one transaction each."""
		conn = self._require_conn()
		current = self.get_schema_version()
		supported = len(self._migrations)
		self._schema_version = current
		if current > supported:
			self._last_error = {"current": current, "supported": supported}
			raise SchemaTooNew(
				f"State database schema version {current} is newer than supported version {supported}",
				details={"current": current, "supported": supported},
			)
		applied: list[int] = []
		for index in range(current, supported):
			version = index + 1
			script = f"BEGIN;\n{self._migrations[index]}\nPRAGMA user_version = {version};\nCOMMIT;"
			try:
				conn.executescript(script)
			except sqlite3.Error as exc:
				if conn.in_transaction:
					conn.rollback()
				self._last_error = {"version": version, "reason": str(exc)}
				logger.error("State database migration %d failed: %s", version, exc)
				raise MigrationFailed(
					f"Migration to schema version {version} failed: {exc}",
					details={"version": version, "reason": str(exc)},
				) from exc
			applied.append(version)
			self._schema_version = version
			logger.info("Applied state database migration %d", version)
		self._applied = applied
		self._last_error = None
		return applied

	def migration_status(self) -> MigrationStatus:
		"""Schema version, migrations applied by the last open, and the last failure."""
		return MigrationStatus(
			schema_version=self._schema_version,
			applied=list(self._applied),
			error=dict(self._last_error) if self._last_error else None,
		)

	# -- Advisory lock --

	def acquire_lock(
		self,
		stale_seconds: float = DEFAULT_LOCK_STALE_SECONDS,
		heartbeat_seconds: float = DEFAULT_LOCK_HEARTBEAT_SECONDS,
	) -> LockResult:
		"""Take the writer lock for this database.

		A lock whose heartbeat is older than ``stale_seconds`` is reclaimed
		once. While held, a daemon thread refreshes the heartbeat every
		``heartbeat_seconds``.
		"""
		self._require_conn()
		if self._lock_owner is not None:
			return LockResult(acquired=True, owner=self._lock_owner)
		if self._lock_path is None:
			# In-memory stores cannot be shared between processes.
			return LockResult(acquired=True)
		return self._try_acquire(self._lock_path, stale_seconds, heartbeat_seconds, reclaim=True)

	def _try_acquire(
		self,
		lock_path: str,
		stale_seconds: float,
		heartbeat_seconds: float,
		reclaim: bool,
	) -> LockResult:
		now = self._clock()
		owner = LockOwner(pid=os.getpid(), created_at=now, heartbeat_at=now)
		try:
			with open(lock_path, "x", encoding="utf-8") as f:
				json.dump(owner.to_json(), f)
		except FileExistsError:
			existing = self._read_lock_owner(lock_path)
			if reclaim and self._lock_is_stale(lock_path, existing, stale_seconds):
				logger.warning(
					"Reclaiming stale state database lock %s (pid %s)",
					lock_path, existing.pid if existing else "unknown",
				)
				Path(lock_path).unlink(missing_ok=True)
				result = self._try_acquire(lock_path, stale_seconds, heartbeat_seconds, reclaim=False)
				result.stale = result.acquired
				return result
			logger.info("State database lock held by pid %s", existing.pid if existing else "unknown")
			return LockResult(acquired=False, stale=False, owner=existing)

		self._lock_owner = owner
		self._start_heartbeat(lock_path, heartbeat_seconds)
		logger.debug("Acquired state database lock %s", lock_path)
		return LockResult(acquired=True, owner=owner)

	@staticmethod
	def _read_lock_owner(lock_path: str) -> LockOwner | None:
		try:
			data = json.loads(Path(lock_path).read_text(encoding="utf-8"))
		except (OSError, ValueError):
			return None
		if not isinstance(data, dict):
			return None
		try:
			return LockOwner.from_json(data)
		except (TypeError, ValueError):
			return None

	def _lock_is_stale(self, lock_path: str, owner: LockOwner | None, stale_seconds: float) -> bool:
		now = datetime.fromisoformat(self._clock())
		try:
			if owner is not None and owner.heartbeat_at:
				last = datetime.fromisoformat(owner.heartbeat_at)
				return (now - last).total_seconds() > stale_seconds
		except ValueError:
			pass
		# Unreadable owner: fall back to the file's modification time.
		try:
			mtime = os.path.getmtime(lock_path)
		except OSError:
			return True
		return now.timestamp() - mtime > stale_seconds

	def _start_heartbeat(self, lock_path: str, interval: float) -> None:
		stop = threading.Event()

		def beat() -> None:
			while not stop.wait(interval):
				self._write_heartbeat(lock_path)

		thread = threading.Thread(target=beat, name="flow-control-lock-heartbeat", daemon=True)
		self._heartbeat_stop = stop
		self._heartbeat_thread = thread
		thread.start()

	def _write_heartbeat(self, lock_path: str) -> None:
		owner = self._lock_owner
		if owner is None:
			return
		owner.heartbeat_at = self._clock()
		tmp_path = f"{lock_path}.{owner.pid}.tmp"
		try:
			Path(tmp_path).write_text(json.dumps(owner.to_json()), encoding="utf-8")
			os.replace(tmp_path, lock_path)
		except OSError as exc:
			logger.warning("Failed to refresh state database lock heartbeat: %s", exc)

	def release_lock(self) -> None:
		"""Stop the heartbeat and delete the lock file if this store holds it."""
		if self._heartbeat_stop is not None:
			self._heartbeat_stop.set()
		if self._heartbeat_thread is not None:
			self._heartbeat_thread.join(timeout=5)
		self._heartbeat_stop = None
		self._heartbeat_thread = None
		if self._lock_owner is not None and self._lock_path is not None:
			Path(self._lock_path).unlink(missing_ok=True)
			logger.debug("Released state database lock %s", self._lock_path)
		self._lock_owner = None

	@contextmanager
	def hold_lock(
		self,
		stale_seconds: float = DEFAULT_LOCK_STALE_SECONDS,
		heartbeat_seconds: float = DEFAULT_LOCK_HEARTBEAT_SECONDS,
	) -> Generator[LockResult, None, None]:
		"""Hold the writer lock for the duration of the block.

		Raises:
			StateStoreLocked: Another live process owns the lock.
		"""
		result = self.acquire_lock(stale_seconds, heartbeat_seconds)
		if not result.acquired:
			owner = result.owner
			raise StateStoreLocked(
				f"State database is locked by pid {owner.pid if owner else 'unknown'}",
				details=owner.to_json() if owner else {},
			)
		try:
			yield result
		finally:
			self.release_lock()

	# -- Runs --

	def create_run(
		self,
		flow_id: str,
		worktree_id: str,
		*,
		run_id: str | None = None,
		now: str | None = None,
	) -> RunRecord:
		ts = self._now(now)
		record = RunRecord(
			id=run_id or _new_id(),
			flow_id=flow_id,
			worktree_id=worktree_id,
			state="pending",
			created_at=ts,
			updated_at=ts,
		)
		conn = self._require_conn()
		conn.execute(
			"""INSERT INTO runs (id, flow_id, worktree_id, state, created_at, updated_at)
			VALUES (?, ?, ?, ?, ?, ?)""",
			(record.id, record.flow_id, record.worktree_id, record.state, record.created_at, record.updated_at),
		)
		conn.commit()
		return record

	def get_run(self, run_id: str) -> RunRecord | None:
		row = self._require_conn().execute("SELECT * FROM runs WHERE id=?", (run_id,)).fetchone()
		if row is None:
			return None
		return self._row_to_run(row)

	def update_run_state(self, run_id: str, state: str, *, now: str | None = None) -> None:
		conn = self._require_conn()
		conn.execute(
			"UPDATE runs SET state=?, updated_at=? WHERE id=?",
			(state, self._now(now), run_id),
		)
		conn.commit()

	def list_runs(self, flow_id: str | None = None, state: str | None = None) -> list[RunRecord]:
		query = "SELECT * FROM runs"
		clauses: list[str] = []
		params: list[Any] = []
		if flow_id is not None:
			clauses.append("flow_id=?")
			params.append(flow_id)
		if state is not None:
			clauses.append("state=?")
			params.append(state)
		if clauses:
			query += " WHERE " + " AND ".join(clauses)
		query += " ORDER BY created_at, rowid"
		rows = self._require_conn().execute(query, params).fetchall()
		return [self._row_to_run(r) for r in rows]

	@staticmethod
	def _row_to_run(row: sqlite3.Row) -> RunRecord:
		return RunRecord(
			id=row["id"],
			flow_id=row["flow_id"],
			worktree_id=row["worktree_id"],
			state=row["state"],
			created_at=row["created_at"],
			updated_at=row["updated_at"],
		)

	# -- Node states --

	def get_node_state(self, run_id: str, node_id: str) -> NodeStateRecord | None:
		row = self._require_conn().execute(
			"SELECT * FROM node_states WHERE run_id=? AND node_id=?", (run_id, node_id),
		).fetchone()
		if row is None:
			return None
		return self._row_to_node_state(row)

	def update_node_state(
		self,
		run_id: str,
		node_id: str,
		state: str,
		*,
		meta: dict[str, Any] | None = None,
		now: str | None = None,
	) -> NodeStateRecord:
		"""Insert or replace the state of one node in one run."""
		record = NodeStateRecord(
			run_id=run_id, node_id=node_id, state=state, updated_at=self._now(now), meta=meta,
		)
		conn = self._require_conn()
		conn.execute(
			"""INSERT INTO node_states (run_id, node_id, state, updated_at, meta)
			VALUES (?, ?, ?, ?, ?)
			ON CONFLICT(run_id, node_id) DO UPDATE SET
				state=excluded.state, updated_at=excluded.updated_at, meta=excluded.meta""",
			(record.run_id, record.node_id, record.state, record.updated_at, _dump_json(record.meta)),
		)
		conn.commit()
		return record

	def list_node_states(self, run_id: str) -> list[NodeStateRecord]:
		rows = self._require_conn().execute(
			"SELECT * FROM node_states WHERE run_id=? ORDER BY rowid", (run_id,),
		).fetchall()
		return [self._row_to_node_state(r) for r in rows]

	@staticmethod
	def _row_to_node_state(row: sqlite3.Row) -> NodeStateRecord:
		return NodeStateRecord(
			run_id=row["run_id"],
			node_id=row["node_id"],
			state=row["state"],
			updated_at=row["updated_at"],
			meta=_load_json(row["meta"]),
		)

	# -- Worktrees --

	def create_worktree(self, record: WorktreeRecord, *, now: str | None = None) -> WorktreeRecord:
		ts = self._now(now)
		if not record.created_at:
			record.created_at = ts
		if not record.updated_at:
			record.updated_at = ts
		conn = self._require_conn()
		conn.execute(
			"""INSERT INTO worktrees
			(id, path, branch, base_branch, run_id, status, created_at, updated_at)
			VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
			(
				record.id, record.path, record.branch, record.base_branch,
				record.run_id, record.status, record.created_at, record.updated_at,
			),
		)
		conn.commit()
		return record

	def get_worktree(self, worktree_id: str) -> WorktreeRecord | None:
		row = self._require_conn().execute(
			"SELECT * FROM worktrees WHERE id=?", (worktree_id,),
		).fetchone()
		if row is None:
			return None
		return self._row_to_worktree(row)

	def update_worktree_status(self, worktree_id: str, status: str, *, now: str | None = None) -> None:
		conn = self._require_conn()
		conn.execute(
			"UPDATE worktrees SET status=?, updated_at=? WHERE id=?",
			(status, self._now(now), worktree_id),
		)
		conn.commit()

	def list_worktrees(self, status: str | None = None) -> list[WorktreeRecord]:
		if status is None:
			rows = self._require_conn().execute(
				"SELECT * FROM worktrees ORDER BY created_at, rowid",
			).fetchall()
		else:
			rows = self._require_conn().execute(
				"SELECT * FROM worktrees WHERE status=? ORDER BY created_at, rowid", (status,),
			).fetchall()
		return [self._row_to_worktree(r) for r in rows]

	@staticmethod
	def _row_to_worktree(row: sqlite3.Row) -> WorktreeRecord:
		return WorktreeRecord(
			id=row["id"],
			path=row["path"],
			branch=row["branch"],
			base_branch=row["base_branch"],
			run_id=row["run_id"],
			status=row["status"],
			created_at=row["created_at"],
			updated_at=row["updated_at"],
		)

	# -- Artifacts --

	def register_artifact(self, record: ArtifactRecord, *, now: str | None = None) -> ArtifactRecord:
		"""Insert or replace an artifact; re-running a node overwrites its outputs."""
		if not record.created_at:
			record.created_at = self._now(now)
		conn = self._require_conn()
		conn.execute(
			"""INSERT OR REPLACE INTO artifacts (id, run_id, node_id, path, hash, meta, created_at)
			VALUES (?, ?, ?, ?, ?, ?, ?)""",
			(
				record.id, record.run_id, record.node_id, record.path,
				record.hash, _dump_json(record.meta), record.created_at,
			),
		)
		conn.commit()
		return record

	def get_artifact(self, artifact_id: str) -> ArtifactRecord | None:
		row = self._require_conn().execute(
			"SELECT * FROM artifacts WHERE id=?", (artifact_id,),
		).fetchone()
		if row is None:
			return None
		return self._row_to_artifact(row)

	def get_artifacts_by_node(self, run_id: str, node_id: str) -> list[ArtifactRecord]:
		rows = self._require_conn().execute(
			"SELECT * FROM artifacts WHERE run_id=? AND node_id=? ORDER BY created_at, rowid",
			(run_id, node_id),
		).fetchall()
		return [self._row_to_artifact(r) for r in rows]

	def register_artifact_lineage(self, artifact_id: str, source_artifact_id: str) -> None:
		conn = self._require_conn()
		conn.execute(
			"INSERT OR IGNORE INTO artifact_lineage (artifact_id, source_artifact_id) VALUES (?, ?)",
			(artifact_id, source_artifact_id),
		)
		conn.commit()

	def list_artifact_lineage(self, artifact_id: str) -> list[str]:
		rows = self._require_conn().execute(
			"SELECT source_artifact_id FROM artifact_lineage WHERE artifact_id=? ORDER BY rowid",
			(artifact_id,),
		).fetchall()
		return [r["source_artifact_id"] for r in rows]

	@staticmethod
	def _row_to_artifact(row: sqlite3.Row) -> ArtifactRecord:
		return ArtifactRecord(
			id=row["id"],
			run_id=row["run_id"],
			node_id=row["node_id"],
			path=row["path"],
			hash=row["hash"],
			meta=_load_json(row["meta"]),
			created_at=row["created_at"],
		)

	# -- Events --

	def record_event(
		self,
		event_type: str,
		*,
		run_id: str | None = None,
		node_id: str | None = None,
		payload: dict[str, Any] | None = None,
		now: str | None = None,
	) -> EventRecord:
		record = EventRecord(
			run_id=run_id, node_id=node_id, type=event_type,
			payload=payload, created_at=self._now(now),
		)
		conn = self._require_conn()
		cursor = conn.execute(
			"""INSERT INTO events (run_id, node_id, type, payload, created_at)
			VALUES (?, ?, ?, ?, ?)""",
			(record.run_id, record.node_id, record.type, _dump_json(record.payload), record.created_at),
		)
		conn.commit()
		record.id = cursor.lastrowid
		return record

	def list_events(
		self,
		run_id: str | None = None,
		node_id: str | None = None,
		event_type: str | None = None,
		limit: int | None = None,
	) -> list[EventRecord]:
		"""Events in insertion order, optionally filtered."""
		query = "SELECT * FROM events"
		clauses: list[str] = []
		params: list[Any] = []
		if run_id is not None:
			clauses.append("run_id=?")
			params.append(run_id)
		if node_id is not None:
			clauses.append("node_id=?")
			params.append(node_id)
		if event_type is not None:
			clauses.append("type=?")
			params.append(event_type)
		if clauses:
			query += " WHERE " + " AND ".join(clauses)
		query += " ORDER BY id"
		if limit is not None:
			query += " LIMIT ?"
			params.append(limit)
		rows = self._require_conn().execute(query, params).fetchall()
		return [self._row_to_event(r) for r in rows]

	@staticmethod
	def _row_to_event(row: sqlite3.Row) -> EventRecord:
		return EventRecord(
			id=row["id"],
			run_id=row["run_id"],
			node_id=row["node_id"],
			type=row["type"],
			payload=_load_json(row["payload"]),
			created_at=row["created_at"],
		)

	# -- Approved commands --

	def save_approved_command(
		self, record: ApprovedCommandRecord, *, now: str | None = None,
	) -> ApprovedCommandRecord:
		if not record.approved_at:
			record.approved_at = self._now(now)
		conn = self._require_conn()
		conn.execute(
			"""INSERT OR REPLACE INTO approved_commands
			(id, command_path, args_pattern, hash, approved_at, last_seen_at)
			VALUES (?, ?, ?, ?, ?, ?)""",
			(
				record.id, record.command_path, _dump_json(record.args_pattern),
				record.hash, record.approved_at, record.last_seen_at,
			),
		)
		conn.commit()
		return record

	def list_approved_commands(self) -> list[ApprovedCommandRecord]:
		rows = self._require_conn().execute(
			"SELECT * FROM approved_commands ORDER BY approved_at, rowid",
		).fetchall()
		return [self._row_to_approved_command(r) for r in rows]

	def update_approved_command_hash(self, command_id: str, hash_value: str) -> None:
		conn = self._require_conn()
		conn.execute("UPDATE approved_commands SET hash=? WHERE id=?", (hash_value, command_id))
		conn.commit()

	def touch_approved_command(self, command_id: str, *, now: str | None = None) -> None:
		conn = self._require_conn()
		conn.execute(
			"UPDATE approved_commands SET last_seen_at=? WHERE id=?",
			(self._now(now), command_id),
		)
		conn.commit()

	@staticmethod
	def _row_to_approved_command(row: sqlite3.Row) -> ApprovedCommandRecord:
		return ApprovedCommandRecord(
			id=row["id"],
			command_path=row["command_path"],
			args_pattern=_load_json(row["args_pattern"]),
			hash=row["hash"],
			approved_at=row["approved_at"],
			last_seen_at=row["last_seen_at"],
		)
