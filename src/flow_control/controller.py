"""Run controller: the full lifecycle of one flow run.

Takes the state database lock, provisions a worktree, creates the run record,
drives the engine with an AgentNodeExecutor and settles the run's final state.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Generator, Iterable

from flow_control.agent_adapter import AgentAdapter, SubprocessSpawner
from flow_control.config import FlowControlConfig, resolve_concurrency_limit
from flow_control.db import Database
from flow_control.engine import RunEngine
from flow_control.errors import (
	DefaultBranchNotFound,
	FlowControlError,
	FlowSchemaInvalid,
	RunNotFound,
	WorktreeNotFound,
)
from flow_control.executor import AgentNodeExecutor
from flow_control.flow_store import FlowStore
from flow_control.models import (
	Flow,
	RunExecutionResult,
	RunRecord,
	SessionState,
	WorktreeInfo,
	_new_id,
)
from flow_control.recovery import SessionStore
from flow_control.redaction import DEFAULT_REDACTOR
from flow_control.worktree import WorktreeManager

logger = logging.getLogger(__name__)


@dataclass
class RunOutcome:
	run: RunRecord
	worktree: WorktreeInfo
	result: RunExecutionResult = field(default_factory=RunExecutionResult)

	@property
	def state(self) -> str:
		return self.run.state


def build_adapter(config: FlowControlConfig) -> AgentAdapter:
	"""AgentAdapter wired with the configured output cap and extra redaction patterns."""
	return AgentAdapter(
		spawner=SubprocessSpawner(
			max_output_mb=config.agent.max_output_mb,
			kill_grace_seconds=config.agent.kill_grace_seconds,
		),
		redactor=DEFAULT_REDACTOR.with_patterns(config.security.redact_patterns),
	)


class RunController:
	"""Start, resume and partially re-run flow runs."""

	def __init__(
		self,
		config: FlowControlConfig,
		db: Database,
		worktrees: WorktreeManager,
		flow_store: FlowStore,
		adapter: AgentAdapter | None = None,
		session_store: SessionStore | None = None,
	) -> None:
		self.config = config
		self.db = db
		self.worktrees = worktrees
		self.flow_store = flow_store
		self.adapter = adapter or build_adapter(config)
		self.session_store = session_store

	@property
	def project_root(self) -> Path:
		return self.worktrees.project_root

	@contextmanager
	def _locked(self) -> Generator[None, None, None]:
		with self.db.hold_lock(self.config.lock.stale_seconds, self.config.lock.heartbeat_seconds):
			yield

	def _load_flow(self, flow_id: str) -> Flow:
		loaded = self.flow_store.load(flow_id)
		if loaded.errors:
			raise FlowSchemaInvalid(
				f"Flow {flow_id} has structural errors",
				details={"flow_id": flow_id, "issues": [e.__dict__ for e in loaded.errors]},
			)
		return loaded.flow

	def _load_run(self, run_id: str) -> tuple[RunRecord, WorktreeInfo]:
		run = self.db.get_run(run_id)
		if run is None:
			raise RunNotFound(f"Run {run_id} not found", details={"run_id": run_id})
		record = self.db.get_worktree(run.worktree_id)
		if record is None or record.status == "missing":
			raise WorktreeNotFound(
				f"Worktree {run.worktree_id} of run {run_id} is not available",
				details={"run_id": run_id, "worktree_id": run.worktree_id},
			)
		info = WorktreeInfo(
			id=record.id,
			path=record.path,
			branch=record.branch,
			base_branch=record.base_branch or "",
			run_id=record.run_id or run_id,
		)
		return run, info

	async def start_run(self, flow_id: str, base_branch: str | None = None) -> RunOutcome:
		"""Provision a worktree for a new run of ``flow_id`` and execute it."""
		flow = self._load_flow(flow_id)
		with self._locked():
			run_id = _new_id()
			worktree = await self.worktrees.create(run_id, base_branch or flow.base_branch)
			run = self.db.create_run(flow.id, worktree.id, run_id=run_id)
			if self.session_store is not None:
				self.session_store.save_session(SessionState(project_root=str(self.project_root), flow_id=flow.id))
			return await self._drive(run, flow, worktree, "fresh")

	async def resume_run(self, run_id: str) -> RunOutcome:
		"""Continue a run, keeping the nodes that already completed."""
		with self._locked():
			run, worktree = self._load_run(run_id)
			flow = self._load_flow(run.flow_id)
			return await self._drive(run, flow, worktree, "resume")

	async def rerun_nodes(self, run_id: str, node_ids: Iterable[str]) -> RunOutcome:
		"""Run ``node_ids`` and everything downstream of them again."""
		targets = list(node_ids)
		with self._locked():
			run, worktree = self._load_run(run_id)
			flow = self._load_flow(run.flow_id)
			return await self._drive(run, flow, worktree, "rerun", targets)

	async def _default_branch(self, worktree: WorktreeInfo) -> str:
		try:
			return await self.worktrees.get_default_branch()
		except DefaultBranchNotFound:
			logger.warning("No default branch found, using base branch %s", worktree.base_branch)
			return worktree.base_branch

	async def _drive(
		self,
		run: RunRecord,
		flow: Flow,
		worktree: WorktreeInfo,
		mode: str,
		targets: list[str] | None = None,
	) -> RunOutcome:
		executor = AgentNodeExecutor(
			adapter=self.adapter,
			db=self.db,
			flow=flow,
			config=self.config,
			project_root=self.project_root,
			worktree=worktree,
			default_branch=await self._default_branch(worktree),
		)
		engine = RunEngine(self.db, executor, resolve_concurrency_limit(self.config, flow))

		self.db.update_run_state(run.id, "running")
		self.db.record_event(
			"run_started",
			run_id=run.id,
			payload={"flowId": flow.id, "mode": mode, "worktreeId": worktree.id},
		)
		try:
			if mode == "fresh":
				result = await engine.execute(run.id, flow)
			elif mode == "resume":
				result = await engine.resume(run.id, flow)
			else:
				result = await engine.rerun(run.id, flow, targets or [])
		except asyncio.CancelledError:
			self._settle(run, "interrupted", {"reason": "cancelled"})
			logger.info("Run %s cancelled", run.id)
			raise
		except FlowControlError as exc:
			self._settle(run, "failed", {"error": exc.to_dict()})
			raise

		final = "completed" if all(s == "completed" for s in result.node_states.values()) else "failed"
		self._settle(run, final, {"nodeStates": result.node_states})
		logger.info("Run %s finished: %s", run.id, final)
		return RunOutcome(run=run, worktree=worktree, result=result)

	def _settle(self, run: RunRecord, state: str, payload: dict[str, object]) -> None:
		self.db.update_run_state(run.id, state)
		self.db.record_event("run_finished", run_id=run.id, payload={"state": state, **payload})
		updated = self.db.get_run(run.id)
		if updated is not None:
			run.state = updated.state
			run.updated_at = updated.updated_at
