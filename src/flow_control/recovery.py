"""Startup recovery: reopen state, reconcile worktrees, interrupt orphaned runs."""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path

from flow_control.db import DEFAULT_LOCK_HEARTBEAT_SECONDS, DEFAULT_LOCK_STALE_SECONDS, Database
from flow_control.errors import StateDbPathUnresolved
from flow_control.flow_store import FlowLoadResult, FlowStore
from flow_control.models import ReconcileResult, SessionState
from flow_control.worktree import GitRunner, SubprocessGitRunner, WorktreeManager

logger = logging.getLogger(__name__)

STATE_DB_DIR_NAME = "flow-control"
STATE_DB_FILE_NAME = "state.db"


async def resolve_state_db_path(project_root: str | Path, git: GitRunner | None = None) -> Path:
	"""Place the database in the git common dir so every worktree shares it.

	Raises:
		StateDbPathUnresolved: ``project_root`` is not inside a git repository.
	"""
	root = Path(project_root)
	runner = git or SubprocessGitRunner()
	result = await runner.run(str(root), "rev-parse", "--git-common-dir")
	common = result.stdout.strip()
	if not result.ok or not common:
		raise StateDbPathUnresolved(
			f"Could not resolve the git common dir for {root}: {result.stderr.strip()}",
			details={"project_root": str(root), "stderr": result.stderr},
		)
	common_dir = Path(common)
	if not common_dir.is_absolute():
		common_dir = root / common_dir
	return common_dir.resolve() / STATE_DB_DIR_NAME / STATE_DB_FILE_NAME


class SessionStore(ABC):
	"""Remembers which project and flow were in use last."""

	@abstractmethod
	def load_last_session(self) -> SessionState | None:
		"""The last saved session, if any."""

	@abstractmethod
	def save_session(self, state: SessionState) -> None:
		"""Persist ``state`` as the last session."""


class FileSessionStore(SessionStore):
	def __init__(self, path: str | Path) -> None:
		self.path = Path(path)

	def load_last_session(self) -> SessionState | None:
		try:
			data = json.loads(self.path.read_text(encoding="utf-8"))
		except FileNotFoundError:
			return None
		except (OSError, ValueError) as exc:
			logger.warning("Ignoring unreadable session file %s: %s", self.path, exc)
			return None
		if not isinstance(data, dict) or not isinstance(data.get("projectRoot"), str):
			logger.warning("Ignoring malformed session file %s", self.path)
			return None
		flow_id = data.get("flowId")
		return SessionState(
			project_root=data["projectRoot"],
			flow_id=flow_id if isinstance(flow_id, str) else None,
		)

	def save_session(self, state: SessionState) -> None:
		data: dict[str, str] = {"projectRoot": state.project_root}
		if state.flow_id is not None:
			data["flowId"] = state.flow_id
		self.path.parent.mkdir(parents=True, exist_ok=True)
		self.path.write_text(json.dumps(data, indent=2) + "\n", encoding="utf-8")


@dataclass
class RecoveryReport:
	flows: list[FlowLoadResult] = field(default_factory=list)
	worktrees: ReconcileResult = field(default_factory=ReconcileResult)
	interrupted_runs: list[str] = field(default_factory=list)
	last_session: SessionState | None = None
	db_path: str = ""


class StartupRecovery:
	"""Bring persisted state back in line with reality after a restart."""

	def __init__(
		self,
		project_root: str | Path,
		db: Database,
		flow_store: FlowStore,
		worktree_manager: WorktreeManager,
		session_store: SessionStore | None = None,
		db_path: str | Path | None = None,
		git: GitRunner | None = None,
		lock_stale_seconds: float = DEFAULT_LOCK_STALE_SECONDS,
		lock_heartbeat_seconds: float = DEFAULT_LOCK_HEARTBEAT_SECONDS,
	) -> None:
		self.project_root = Path(project_root)
		self.db = db
		self.flow_store = flow_store
		self.worktree_manager = worktree_manager
		self.session_store = session_store
		self.db_path = db_path
		self.git = git
		self.lock_stale_seconds = lock_stale_seconds
		self.lock_heartbeat_seconds = lock_heartbeat_seconds

	async def _open_db(self) -> str:
		if self.db.is_open:
			return self.db.path or ""
		path = self.db_path or await resolve_state_db_path(self.project_root, self.git)
		self.db.open(path)
		return str(path)

	async def recover(self) -> RecoveryReport:
		"""Reconcile worktrees and interrupt runs left running by a dead process.

		Raises:
			StateStoreLocked: Another live process holds the writer lock, so its
				runs are not orphaned.
		"""
		db_path = await self._open_db()
		flows = self.flow_store.load_all()
		with self.db.hold_lock(self.lock_stale_seconds, self.lock_heartbeat_seconds):
			worktrees = await self.worktree_manager.reconcile_with_db()
			interrupted = self._interrupt_orphaned_runs()
		if interrupted:
			logger.warning("Marked %d orphaned run(s) interrupted: %s", len(interrupted), interrupted)

		last_session = self.session_store.load_last_session() if self.session_store else None
		logger.info(
			"Recovery complete: %d flow(s), %d missing / %d discovered worktree(s)",
			len(flows), len(worktrees.missing), len(worktrees.discovered),
		)
		return RecoveryReport(
			flows=flows,
			worktrees=worktrees,
			interrupted_runs=interrupted,
			last_session=last_session,
			db_path=db_path,
		)

	def _interrupt_orphaned_runs(self) -> list[str]:
		interrupted: list[str] = []
		for run in self.db.list_runs(state="running"):
			self.db.update_run_state(run.id, "interrupted")
			for node in self.db.list_node_states(run.id):
				if node.state == "running":
					self.db.update_node_state(run.id, node.node_id, "interrupted", meta=node.meta)
			self.db.record_event("run_interrupted", run_id=run.id, payload={"reason": "startup_recovery"})
			interrupted.append(run.id)
		return interrupted
