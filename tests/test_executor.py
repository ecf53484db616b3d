"""Tests for the agent-backed node executor."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Callable
from unittest.mock import AsyncMock

import pytest

from flow_control.agent_adapter import AgentAdapter
from flow_control.config import FlowControlConfig
from flow_control.db import Database
from flow_control.errors import AgentResultParseError, AgentTimeout
from flow_control.executor import NODE_RESULT_EVENT, AgentNodeExecutor, render_prompt
from flow_control.models import (
	AgentConfig,
	AgentResult,
	ArtifactDef,
	ArtifactRecord,
	ArtifactRef,
	Flow,
	NodeExecutionContext,
	WorktreeInfo,
)


@pytest.fixture()
def worktree_info(tmp_path: Path) -> WorktreeInfo:
	path = tmp_path / ".flow-control" / "worktrees" / "r1-abc"
	path.mkdir(parents=True)
	return WorktreeInfo(id="wt1", path=str(path), branch="run/r1-abc", base_branch="main", run_id="r1")


@pytest.fixture()
def adapter() -> AsyncMock:
	mock = AsyncMock(spec=AgentAdapter)
	mock.execute.return_value = AgentResult(
		success=True, exit_code=0, result_block={"summary": "did the thing"},
	)
	return mock


def _agent_flow(make_flow: Callable[..., Flow], **data: Any) -> Flow:
	flow = make_flow(["plan", "build"], [("plan", "build")])
	for node in flow.nodes:
		node.data.agent = AgentConfig(command="agent")
	for key, value in data.items():
		setattr(flow.node("build").data, key, value)
	return flow


def _executor(
	flow: Flow, adapter: AsyncMock, db: Database, tmp_path: Path, worktree_info: WorktreeInfo,
) -> AgentNodeExecutor:
	return AgentNodeExecutor(
		adapter=adapter,
		db=db,
		flow=flow,
		config=FlowControlConfig(),
		project_root=tmp_path,
		worktree=worktree_info,
		default_branch="main",
	)


def _context(node_id: str) -> NodeExecutionContext:
	return NodeExecutionContext(run_id="r1", node_id=node_id, flow_id="flow1")


def _node_events(db: Database, node_id: str) -> list[dict[str, Any]]:
	return [e.payload for e in db.list_events(run_id="r1", node_id=node_id, event_type=NODE_RESULT_EVENT)]


class TestRenderPrompt:
	def test_substitutes_known_and_keeps_unknown(self) -> None:
		assert render_prompt("Prior:\n$previousSummaries\n$other", {"previousSummaries": "[a] x"}) == (
			"Prior:\n[a] x\n$other"
		)

	def test_none(self) -> None:
		assert render_prompt(None, {"a": "b"}) is None


class TestAgentNodeExecutor:
	async def test_node_without_agent_succeeds(
		self, make_flow: Callable[..., Flow], adapter: AsyncMock, db: Database,
		tmp_path: Path, worktree_info: WorktreeInfo,
	) -> None:
		flow = make_flow(["A"])
		executor = _executor(flow, adapter, db, tmp_path, worktree_info)
		result = await executor.execute(flow.node("A"), _context("A"))
		assert result.success is True
		adapter.execute.assert_not_called()

	async def test_builds_task(
		self, make_flow: Callable[..., Flow], adapter: AsyncMock, db: Database,
		tmp_path: Path, worktree_info: WorktreeInfo,
	) -> None:
		flow = _agent_flow(make_flow, goal="Build it", prompt_template="Context: $previousSummaries")
		db.record_event(NODE_RESULT_EVENT, run_id="r1", node_id="plan", payload={"success": True, "summary": "planned"})
		executor = _executor(flow, adapter, db, tmp_path, worktree_info)

		result = await executor.execute(flow.node("build"), _context("build"))

		assert result.success is True
		assert result.summary == "did the thing"
		task = adapter.execute.call_args.args[0]
		assert task.task_id == "r1:build"
		assert task.goal == "Build it"
		assert task.agent.command == "agent"
		assert task.repo.worktree_path == worktree_info.path
		assert task.repo.branch == "run/r1-abc"
		assert task.repo.default_branch == "main"
		assert task.repo.repository_url is None
		assert task.prompt_template == "Context: [plan] planned"
		assert [(r.node_id, r.success, r.summary) for r in task.context.previous_results] == [
			("plan", True, "planned"),
		]
		assert _node_events(db, "build") == [{"success": True, "summary": "did the thing", "exitCode": 0}]

	async def test_goal_falls_back_to_label(
		self, make_flow: Callable[..., Flow], adapter: AsyncMock, db: Database,
		tmp_path: Path, worktree_info: WorktreeInfo,
	) -> None:
		flow = _agent_flow(make_flow)
		await _executor(flow, adapter, db, tmp_path, worktree_info).execute(flow.node("plan"), _context("plan"))
		task = adapter.execute.call_args.args[0]
		assert task.goal == "plan"
		assert task.context.previous_results is None

	def test_latest_upstream_result_wins(
		self, make_flow: Callable[..., Flow], adapter: AsyncMock, db: Database,
		tmp_path: Path, worktree_info: WorktreeInfo,
	) -> None:
		flow = _agent_flow(make_flow)
		db.record_event(NODE_RESULT_EVENT, run_id="r1", node_id="plan", payload={"success": False})
		db.record_event(NODE_RESULT_EVENT, run_id="r1", node_id="plan", payload={"success": True, "summary": "v2"})
		executor = _executor(flow, adapter, db, tmp_path, worktree_info)
		previous = executor.previous_results("r1", "build")
		assert [(p.success, p.summary) for p in previous] == [(True, "v2")]

	async def test_nonzero_exit_fails(
		self, make_flow: Callable[..., Flow], adapter: AsyncMock, db: Database,
		tmp_path: Path, worktree_info: WorktreeInfo,
	) -> None:
		adapter.execute.return_value = AgentResult(success=False, exit_code=2)
		flow = _agent_flow(make_flow)
		result = await _executor(flow, adapter, db, tmp_path, worktree_info).execute(flow.node("plan"), _context("plan"))
		assert result.success is False
		assert result.error_message == "Agent exited with code 2"
		assert _node_events(db, "plan") == [{"success": False, "exitCode": 2, "error": "Agent exited with code 2"}]

	async def test_timeout_reported(
		self, make_flow: Callable[..., Flow], adapter: AsyncMock, db: Database,
		tmp_path: Path, worktree_info: WorktreeInfo,
	) -> None:
		adapter.execute.side_effect = AgentTimeout("Agent for task r1:plan timed out after 5s")
		flow = _agent_flow(make_flow)
		result = await _executor(flow, adapter, db, tmp_path, worktree_info).execute(flow.node("plan"), _context("plan"))
		assert result.success is False
		assert result.timed_out is True
		assert "timed out" in result.error_message

	async def test_parse_error_fails(
		self, make_flow: Callable[..., Flow], adapter: AsyncMock, db: Database,
		tmp_path: Path, worktree_info: WorktreeInfo,
	) -> None:
		adapter.execute.side_effect = AgentResultParseError("Agent result block is not valid JSON")
		flow = _agent_flow(make_flow)
		result = await _executor(flow, adapter, db, tmp_path, worktree_info).execute(flow.node("plan"), _context("plan"))
		assert result.success is False
		assert result.timed_out is False
		assert result.error_message == "Agent result block is not valid JSON"

	async def test_spawn_failure_fails(
		self, make_flow: Callable[..., Flow], adapter: AsyncMock, db: Database,
		tmp_path: Path, worktree_info: WorktreeInfo,
	) -> None:
		adapter.execute.side_effect = FileNotFoundError("agent")
		flow = _agent_flow(make_flow)
		result = await _executor(flow, adapter, db, tmp_path, worktree_info).execute(flow.node("plan"), _context("plan"))
		assert result.success is False
		assert result.error_message.startswith("Failed to start agent")

	async def test_missing_required_input(
		self, make_flow: Callable[..., Flow], adapter: AsyncMock, db: Database,
		tmp_path: Path, worktree_info: WorktreeInfo,
	) -> None:
		flow = _agent_flow(make_flow, input_artifacts=[ArtifactRef(name="plan", ref="@node:plan.output.plan")])
		result = await _executor(flow, adapter, db, tmp_path, worktree_info).execute(flow.node("build"), _context("build"))
		assert result.success is False
		assert "not found" in result.error_message
		adapter.execute.assert_not_called()
		assert _node_events(db, "build")[0]["success"] is False

	async def test_inputs_passed_and_outputs_registered(
		self, make_flow: Callable[..., Flow], adapter: AsyncMock, db: Database,
		tmp_path: Path, worktree_info: WorktreeInfo,
	) -> None:
		db.register_artifact(ArtifactRecord(id="r1:plan:plan", run_id="r1", node_id="plan", path="plan.md"))
		flow = _agent_flow(
			make_flow,
			input_artifacts=[ArtifactRef(name="plan", ref="@node:plan.output.plan")],
			output_artifacts=[ArtifactDef(name="code", path="code.py")],
		)
		(Path(worktree_info.path) / "code.py").write_text("print('hi')\n")

		result = await _executor(flow, adapter, db, tmp_path, worktree_info).execute(flow.node("build"), _context("build"))

		assert result.success is True
		task = adapter.execute.call_args.args[0]
		assert task.artifacts == {"plan": str(tmp_path / "plan.md")}
		assert db.get_artifact("r1:build:code").path == ".flow-control/worktrees/r1-abc/code.py"
		assert db.list_artifact_lineage("r1:build:code") == ["r1:plan:plan"]

	async def test_missing_output_fails(
		self, make_flow: Callable[..., Flow], adapter: AsyncMock, db: Database,
		tmp_path: Path, worktree_info: WorktreeInfo,
	) -> None:
		flow = _agent_flow(make_flow, output_artifacts=[ArtifactDef(name="code", path="code.py")])
		result = await _executor(flow, adapter, db, tmp_path, worktree_info).execute(flow.node("build"), _context("build"))
		assert result.success is False
		assert result.summary == "did the thing"
		assert db.get_artifact("r1:build:code") is None
