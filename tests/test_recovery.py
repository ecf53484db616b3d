"""Tests for startup recovery, session persistence and state db placement."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Callable

import pytest

from flow_control.db import Database
from flow_control.errors import StateDbPathUnresolved, StateStoreLocked
from flow_control.flow_store import FlowStore
from flow_control.models import Flow, SessionState
from flow_control.recovery import FileSessionStore, StartupRecovery, resolve_state_db_path
from flow_control.worktree import WorktreeManager


class TestResolveStateDbPath:
	async def test_main_checkout(self, git_repo: Path) -> None:
		path = await resolve_state_db_path(git_repo)
		assert path == (git_repo / ".git").resolve() / "flow-control" / "state.db"

	async def test_shared_by_worktrees(self, git_repo: Path, run_git: Callable[..., str], tmp_path: Path) -> None:
		linked = tmp_path / "linked"
		run_git(git_repo, "worktree", "add", "-b", "side", str(linked))
		assert await resolve_state_db_path(linked) == await resolve_state_db_path(git_repo)

	async def test_outside_repo(self, tmp_path: Path) -> None:
		outside = tmp_path / "plain"
		outside.mkdir()
		with pytest.raises(StateDbPathUnresolved):
			await resolve_state_db_path(outside)


class TestFileSessionStore:
	def test_missing_file(self, tmp_path: Path) -> None:
		assert FileSessionStore(tmp_path / "session.json").load_last_session() is None

	def test_save_and_load(self, tmp_path: Path) -> None:
		store = FileSessionStore(tmp_path / "nested" / "session.json")
		store.save_session(SessionState(project_root="/repo", flow_id="demo"))
		assert json.loads(store.path.read_text()) == {"projectRoot": "/repo", "flowId": "demo"}
		assert store.load_last_session() == SessionState(project_root="/repo", flow_id="demo")

	def test_flow_id_optional(self, tmp_path: Path) -> None:
		store = FileSessionStore(tmp_path / "session.json")
		store.save_session(SessionState(project_root="/repo"))
		assert store.load_last_session() == SessionState(project_root="/repo", flow_id=None)

	@pytest.mark.parametrize("content", ["{broken", "[]", '{"flowId": "x"}'])
	def test_bad_files_ignored(self, tmp_path: Path, content: str) -> None:
		path = tmp_path / "session.json"
		path.write_text(content)
		assert FileSessionStore(path).load_last_session() is None


def _seed(db_path: Path) -> None:
	"""A crashed run (r1) next to a finished one (r2)."""
	db = Database(db_path)
	try:
		db.create_run("demo", "wt1", run_id="r1")
		db.update_run_state("r1", "running")
		db.update_node_state("r1", "A", "completed")
		db.update_node_state("r1", "B", "running", meta={"attempt": 1})
		db.update_node_state("r1", "C", "pending")
		db.create_run("demo", "wt2", run_id="r2")
		db.update_run_state("r2", "completed")
	finally:
		db.close()


class TestStartupRecovery:
	async def test_interrupts_orphaned_runs(self, git_repo: Path, tmp_path: Path) -> None:
		db_path = tmp_path / "state" / "state.db"
		_seed(db_path)
		db = Database()
		recovery = StartupRecovery(
			git_repo, db, FlowStore(git_repo / ".flow-control" / "flows"),
			WorktreeManager(git_repo, db), db_path=db_path,
		)
		try:
			report = await recovery.recover()

			assert report.interrupted_runs == ["r1"]
			assert report.db_path == str(db_path)
			assert db.get_run("r1").state == "interrupted"
			assert db.get_run("r2").state == "completed"
			states = {n.node_id: n for n in db.list_node_states("r1")}
			assert states["A"].state == "completed"
			assert states["B"].state == "interrupted"
			assert states["B"].meta == {"attempt": 1}
			assert states["C"].state == "pending"
			events = db.list_events(run_id="r1", event_type="run_interrupted")
			assert events[0].payload == {"reason": "startup_recovery"}
			assert report.flows == []
			assert report.last_session is None
		finally:
			db.close()

	async def test_live_writer_keeps_its_runs(self, git_repo: Path, tmp_path: Path) -> None:
		db_path = tmp_path / "state.db"
		_seed(db_path)
		writer = Database(db_path)
		db = Database()
		recovery = StartupRecovery(
			git_repo, db, FlowStore(tmp_path / "flows"), WorktreeManager(git_repo, db), db_path=db_path,
		)
		try:
			assert writer.acquire_lock().acquired
			with pytest.raises(StateStoreLocked):
				await recovery.recover()
			assert db.get_run("r1").state == "running"
			assert db.get_node_state("r1", "B").state == "running"
			assert db.list_events(event_type="run_interrupted") == []

			writer.release_lock()
			report = await recovery.recover()
			assert report.interrupted_runs == ["r1"]
		finally:
			db.close()
			writer.close()

	async def test_second_recovery_is_a_noop(self, git_repo: Path, tmp_path: Path) -> None:
		db_path = tmp_path / "state.db"
		_seed(db_path)
		db = Database()
		recovery = StartupRecovery(
			git_repo, db, FlowStore(tmp_path / "flows"), WorktreeManager(git_repo, db), db_path=db_path,
		)
		try:
			await recovery.recover()
			report = await recovery.recover()
			assert report.interrupted_runs == []
		finally:
			db.close()

	async def test_default_db_location(self, git_repo: Path) -> None:
		db = Database()
		recovery = StartupRecovery(git_repo, db, FlowStore(git_repo / "flows"), WorktreeManager(git_repo, db))
		try:
			report = await recovery.recover()
			assert Path(report.db_path) == (git_repo / ".git").resolve() / "flow-control" / "state.db"
			assert Path(report.db_path).exists()
		finally:
			db.close()

	async def test_loads_flows_session_and_worktrees(
		self, git_repo: Path, db: Database, run_git: Callable[..., str], make_flow: Callable[..., Flow],
	) -> None:
		flows = FlowStore(git_repo / ".flow-control" / "flows")
		flows.save(make_flow(["A"], id="demo"))
		session = FileSessionStore(git_repo / ".flow-control" / "session.json")
		session.save_session(SessionState(project_root=str(git_repo), flow_id="demo"))
		stray = git_repo.parent / "stray"
		run_git(git_repo, "worktree", "add", "-b", "stray", str(stray))

		report = await StartupRecovery(
			git_repo, db, flows, WorktreeManager(git_repo, db), session_store=session,
		).recover()

		assert [r.flow.id for r in report.flows] == ["demo"]
		assert report.last_session.flow_id == "demo"
		assert report.db_path == ":memory:"
		assert len(report.worktrees.discovered) == 1
		assert db.get_worktree(report.worktrees.discovered[0]).branch == "stray"
