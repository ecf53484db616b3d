"""Tests for the DAG run engine."""

from __future__ import annotations

import asyncio
from typing import Any, Callable

import pytest

from flow_control.db import Database
from flow_control.engine import (
	NodeExecutor,
	RunEngine,
	build_adjacency,
	build_dependencies,
	collect_downstream,
	ensure_acyclic,
)
from flow_control.errors import FlowCycleDetected
from flow_control.models import Flow, FlowNode, NodeExecutionContext, NodeExecutionResult


class RecordingExecutor(NodeExecutor):
	"""Executor double that records call order and peak concurrency."""

	def __init__(self, outcomes: dict[str, Any] | None = None, delay: float = 0.01) -> None:
		self.outcomes = outcomes or {}
		self.delay = delay
		self.calls: list[str] = []
		self.contexts: list[NodeExecutionContext] = []
		self.active = 0
		self.max_active = 0

	async def execute(self, node: FlowNode, context: NodeExecutionContext) -> NodeExecutionResult:
		self.calls.append(node.id)
		self.contexts.append(context)
		self.active += 1
		self.max_active = max(self.max_active, self.active)
		try:
			await asyncio.sleep(self.delay)
		finally:
			self.active -= 1
		outcome = self.outcomes.get(node.id, NodeExecutionResult(success=True))
		if isinstance(outcome, BaseException):
			raise outcome
		return outcome


def _persisted(db: Database, run_id: str) -> dict[str, str]:
	return {r.node_id: r.state for r in db.list_node_states(run_id)}


# ----------------------------------------------------------------------
# Graph helpers
# ----------------------------------------------------------------------


class TestGraphHelpers:
	def test_dependencies_and_adjacency(self, make_flow: Callable[..., Flow]) -> None:
		flow = make_flow(["A", "B", "C"], [("A", "B"), ("A", "C"), ("B", "C")])
		assert build_dependencies(flow) == {"A": [], "B": ["A"], "C": ["A", "B"]}
		assert build_adjacency(flow) == {"A": ["B", "C"], "B": ["C"], "C": []}

	def test_collect_downstream(self) -> None:
		adjacency = {"A": ["B"], "B": ["C", "D"], "C": [], "D": [], "E": []}
		assert collect_downstream(["B"], adjacency) == {"B", "C", "D"}
		assert collect_downstream(["E"], adjacency) == {"E"}

	def test_ensure_acyclic_accepts_dag(self, make_flow: Callable[..., Flow]) -> None:
		ensure_acyclic(make_flow(["A", "B", "C", "D"], [("A", "B"), ("A", "C"), ("B", "D"), ("C", "D")]))

	def test_ensure_acyclic_self_loop(self, make_flow: Callable[..., Flow]) -> None:
		with pytest.raises(FlowCycleDetected) as exc_info:
			ensure_acyclic(make_flow(["A"], [("A", "A")]))
		assert exc_info.value.details["node_id"] == "A"


# ----------------------------------------------------------------------
# Execution
# ----------------------------------------------------------------------


class TestExecute:
	async def test_cycle_rejected_before_any_state(self, db: Database, make_flow: Callable[..., Flow]) -> None:
		flow = make_flow(["A", "B"], [("A", "B"), ("B", "A")])
		executor = RecordingExecutor()
		engine = RunEngine(db, executor)
		with pytest.raises(FlowCycleDetected) as exc_info:
			await engine.execute("r1", flow)
		assert exc_info.value.code == "FLOW_CYCLE_DETECTED"
		assert db.list_node_states("r1") == []
		assert executor.calls == []

	async def test_linear_chain_runs_in_order(self, db: Database, make_flow: Callable[..., Flow]) -> None:
		flow = make_flow(["A", "B", "C"], [("A", "B"), ("B", "C")])
		executor = RecordingExecutor()
		result = await RunEngine(db, executor).execute("r1", flow)
		assert executor.calls == ["A", "B", "C"]
		assert result.run_id == "r1"
		assert result.node_states == {"A": "completed", "B": "completed", "C": "completed"}
		assert _persisted(db, "r1") == result.node_states

	async def test_context_carries_ids(self, db: Database, make_flow: Callable[..., Flow]) -> None:
		executor = RecordingExecutor()
		await RunEngine(db, executor).execute("r1", make_flow(["A"]))
		assert executor.contexts[0] == NodeExecutionContext(run_id="r1", node_id="A", flow_id="flow1")

	async def test_concurrency_limit_respected(self, db: Database, make_flow: Callable[..., Flow]) -> None:
		flow = make_flow(["A", "B", "C", "D", "E"])
		executor = RecordingExecutor(delay=0.02)
		result = await RunEngine(db, executor, concurrency_limit=2).execute("r1", flow)
		assert executor.max_active == 2
		assert set(result.node_states.values()) == {"completed"}

	async def test_limit_of_one_follows_declaration_order(self, db: Database, make_flow: Callable[..., Flow]) -> None:
		executor = RecordingExecutor()
		await RunEngine(db, executor, concurrency_limit=1).execute("r1", make_flow(["X", "Y", "Z"]))
		assert executor.max_active == 1
		assert executor.calls == ["X", "Y", "Z"]

	def test_limit_floor_is_one(self, db: Database) -> None:
		assert RunEngine(db, RecordingExecutor(), concurrency_limit=0).concurrency_limit == 1
		assert RunEngine(db, RecordingExecutor(), concurrency_limit=-3).concurrency_limit == 1

	async def test_failure_blocks_downstream(self, db: Database, make_flow: Callable[..., Flow]) -> None:
		flow = make_flow(["A", "B", "C"], [("A", "B"), ("B", "C")])
		executor = RecordingExecutor({"B": NodeExecutionResult(success=False, error_message="boom")})
		result = await RunEngine(db, executor).execute("r1", flow)
		assert result.node_states == {"A": "completed", "B": "failed", "C": "blocked"}
		assert executor.calls == ["A", "B"]
		assert db.get_node_state("r1", "B").meta == {"errorMessage": "boom"}
		assert _persisted(db, "r1") == result.node_states

	async def test_failure_without_message_has_no_meta(self, db: Database, make_flow: Callable[..., Flow]) -> None:
		executor = RecordingExecutor({"A": NodeExecutionResult(success=False)})
		await RunEngine(db, executor).execute("r1", make_flow(["A"]))
		assert db.get_node_state("r1", "A").meta is None

	async def test_independent_branch_keeps_running(self, db: Database, make_flow: Callable[..., Flow]) -> None:
		flow = make_flow(["A", "B", "C", "D"], [("A", "B"), ("A", "C"), ("B", "D"), ("C", "D")])
		executor = RecordingExecutor({"C": NodeExecutionResult(success=False, error_message="no")})
		result = await RunEngine(db, executor).execute("r1", flow)
		assert result.node_states == {"A": "completed", "B": "completed", "C": "failed", "D": "blocked"}
		assert "D" not in executor.calls

	async def test_executor_exception_becomes_failure(self, db: Database, make_flow: Callable[..., Flow]) -> None:
		flow = make_flow(["A", "B"], [("A", "B")])
		executor = RecordingExecutor({"A": RuntimeError("agent crashed")})
		result = await RunEngine(db, executor).execute("r1", flow)
		assert result.node_states == {"A": "failed", "B": "blocked"}
		assert db.get_node_state("r1", "A").meta == {"errorMessage": "agent crashed"}

	async def test_timeout_result_marks_timed_out(self, db: Database, make_flow: Callable[..., Flow]) -> None:
		flow = make_flow(["A", "B"], [("A", "B")])
		executor = RecordingExecutor({"A": NodeExecutionResult(success=False, timed_out=True, error_message="late")})
		result = await RunEngine(db, executor).execute("r1", flow)
		assert result.node_states == {"A": "timed_out", "B": "blocked"}

	async def test_fresh_execute_resets_previous_states(self, db: Database, make_flow: Callable[..., Flow]) -> None:
		db.update_node_state("r1", "A", "completed")
		executor = RecordingExecutor()
		await RunEngine(db, executor).execute("r1", make_flow(["A"]))
		assert executor.calls == ["A"]

	async def test_dependency_on_unknown_node_never_runs(self, db: Database, make_flow: Callable[..., Flow]) -> None:
		flow = make_flow(["B"], [("ghost", "B")])
		executor = RecordingExecutor()
		result = await RunEngine(db, executor).execute("r1", flow)
		assert result.node_states == {"B": "pending"}
		assert executor.calls == []

	async def test_cancellation_interrupts_in_flight_nodes(self, db: Database, make_flow: Callable[..., Flow]) -> None:
		flow = make_flow(["A", "B"])
		executor = RecordingExecutor(delay=10)
		task = asyncio.create_task(RunEngine(db, executor).execute("r1", flow))
		while executor.active < 2:
			await asyncio.sleep(0.005)
		task.cancel()
		with pytest.raises(asyncio.CancelledError):
			await task
		assert _persisted(db, "r1") == {"A": "interrupted", "B": "interrupted"}


class TestResumeAndRerun:
	async def test_resume_skips_completed(self, db: Database, make_flow: Callable[..., Flow]) -> None:
		flow = make_flow(["A", "B", "C"], [("A", "B"), ("B", "C")])
		db.update_node_state("r1", "A", "completed")
		db.update_node_state("r1", "B", "failed", meta={"errorMessage": "boom"})
		db.update_node_state("r1", "C", "blocked")
		executor = RecordingExecutor()
		result = await RunEngine(db, executor).resume("r1", flow)
		assert executor.calls == ["B", "C"]
		assert result.node_states == {"A": "completed", "B": "completed", "C": "completed"}
		assert db.get_node_state("r1", "B").meta is None

	async def test_failure_blocks_below_a_completed_dependent(
		self, db: Database, make_flow: Callable[..., Flow],
	) -> None:
		flow = make_flow(["A", "B", "E", "D"], [("A", "B"), ("B", "D"), ("E", "D")])
		db.update_node_state("r1", "A", "failed")
		db.update_node_state("r1", "B", "completed")
		executor = RecordingExecutor({"A": NodeExecutionResult(success=False, error_message="boom")})
		result = await RunEngine(db, executor, concurrency_limit=1).resume("r1", flow)
		assert executor.calls == ["A", "E"]
		assert result.node_states == {"A": "failed", "B": "completed", "E": "completed", "D": "blocked"}
		assert _persisted(db, "r1")["D"] == "blocked"

	async def test_resume_does_not_rewrite_unchanged_nodes(
		self, db: Database, clock: Any, make_flow: Callable[..., Flow],
	) -> None:
		flow = make_flow(["A", "B"], [("A", "B")])
		db.update_node_state("r1", "A", "completed")
		stamp = db.get_node_state("r1", "A").updated_at
		clock.advance()
		await RunEngine(db, RecordingExecutor()).resume("r1", flow)
		assert db.get_node_state("r1", "A").updated_at == stamp

	async def test_resume_restarts_interrupted_and_timed_out(self, db: Database, make_flow: Callable[..., Flow]) -> None:
		flow = make_flow(["A", "B"])
		db.update_node_state("r1", "A", "interrupted")
		db.update_node_state("r1", "B", "timed_out")
		executor = RecordingExecutor()
		await RunEngine(db, executor).resume("r1", flow)
		assert executor.calls == ["A", "B"]

	async def test_resume_with_no_prior_state_runs_everything(self, db: Database, make_flow: Callable[..., Flow]) -> None:
		executor = RecordingExecutor()
		await RunEngine(db, executor).resume("r1", make_flow(["A", "B"], [("A", "B")]))
		assert executor.calls == ["A", "B"]

	async def test_rerun_resets_target_and_downstream(self, db: Database, make_flow: Callable[..., Flow]) -> None:
		flow = make_flow(["A", "B", "C"], [("A", "B"), ("B", "C")])
		for node_id in ("A", "B", "C"):
			db.update_node_state("r1", node_id, "completed")
		executor = RecordingExecutor()
		result = await RunEngine(db, executor).rerun("r1", flow, ["B"])
		assert executor.calls == ["B", "C"]
		assert result.node_states == {"A": "completed", "B": "completed", "C": "completed"}

	async def test_rerun_leaves_unrelated_nodes_alone(self, db: Database, make_flow: Callable[..., Flow]) -> None:
		flow = make_flow(["A", "B", "X"], [("A", "B")])
		db.update_node_state("r1", "A", "completed")
		db.update_node_state("r1", "B", "completed")
		db.update_node_state("r1", "X", "failed")
		executor = RecordingExecutor()
		result = await RunEngine(db, executor).rerun("r1", flow, ["A"])
		assert executor.calls == ["A", "B"]
		assert result.node_states["X"] == "failed"

	async def test_rerun_ignores_unknown_targets(self, db: Database, make_flow: Callable[..., Flow]) -> None:
		flow = make_flow(["A"])
		db.update_node_state("r1", "A", "completed")
		executor = RecordingExecutor()
		result = await RunEngine(db, executor).rerun("r1", flow, ["nope"])
		assert executor.calls == []
		assert result.node_states == {"A": "completed"}
