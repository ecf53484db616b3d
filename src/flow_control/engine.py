"""DAG scheduler for flow runs.

The engine walks a flow's dependency graph, starting every node whose
prerequisites have completed, up to a fixed concurrency limit. Each state
change is written to the state store before dependents are considered, so a
crash at any point leaves an accurate picture for ``resume``.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections import deque
from typing import Iterable, Literal

from flow_control.db import Database
from flow_control.errors import FlowCycleDetected
from flow_control.models import (
	Flow,
	FlowNode,
	NodeExecutionContext,
	NodeExecutionResult,
	RunExecutionResult,
)

logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY_LIMIT = 2

RunMode = Literal["fresh", "resume", "rerun"]


class NodeExecutor(ABC):
	"""Does the actual work of one node."""

	@abstractmethod
	async def execute(self, node: FlowNode, context: NodeExecutionContext) -> NodeExecutionResult:
		"""Run ``node`` and report success or failure."""


def build_dependencies(flow: Flow) -> dict[str, list[str]]:
	"""Map each node to the sources of its incoming edges."""
	deps: dict[str, list[str]] = {node.id: [] for node in flow.nodes}
	for edge in flow.edges:
		deps.setdefault(edge.target, []).append(edge.source)
	return deps


def build_adjacency(flow: Flow) -> dict[str, list[str]]:
	"""Map each node to the targets of its outgoing edges."""
	adjacency: dict[str, list[str]] = {node.id: [] for node in flow.nodes}
	for edge in flow.edges:
		adjacency.setdefault(edge.source, []).append(edge.target)
	return adjacency


def ensure_acyclic(flow: Flow) -> None:
	"""Raise FlowCycleDetected if the edges contain a cycle."""
	adjacency = build_adjacency(flow)
	visited: set[str] = set()
	on_stack: set[str] = set()

	def visit(node_id: str) -> None:
		if node_id in on_stack:
			raise FlowCycleDetected(
				f"Flow {flow.id} contains a cycle through node {node_id}",
				details={"node_id": node_id, "flow_id": flow.id},
			)
		if node_id in visited:
			return
		on_stack.add(node_id)
		for target in adjacency.get(node_id, []):
			visit(target)
		on_stack.discard(node_id)
		visited.add(node_id)

	for node_id in adjacency:
		visit(node_id)


def collect_downstream(start_ids: Iterable[str], adjacency: dict[str, list[str]]) -> set[str]:
	"""``start_ids`` plus every node reachable from them."""
	result: set[str] = set()
	queue = deque(start_ids)
	while queue:
		node_id = queue.popleft()
		if node_id in result:
			continue
		result.add(node_id)
		queue.extend(adjacency.get(node_id, []))
	return result


class RunEngine:
	"""Execute, resume or partially re-run a flow for one run."""

	def __init__(
		self,
		db: Database,
		executor: NodeExecutor,
		concurrency_limit: int = DEFAULT_CONCURRENCY_LIMIT,
	) -> None:
		self.db = db
		self.executor = executor
		self.concurrency_limit = max(1, int(concurrency_limit))

	async def execute(self, run_id: str, flow: Flow) -> RunExecutionResult:
		"""Run every node from scratch."""
		return await self._run(run_id, flow, "fresh")

	async def resume(self, run_id: str, flow: Flow) -> RunExecutionResult:
		"""Keep completed nodes and run everything else again."""
		return await self._run(run_id, flow, "resume")

	async def rerun(self, run_id: str, flow: Flow, node_ids: Iterable[str]) -> RunExecutionResult:
		"""Run ``node_ids`` and everything downstream of them again."""
		return await self._run(run_id, flow, "rerun", list(node_ids))

	async def _run(
		self,
		run_id: str,
		flow: Flow,
		mode: RunMode,
		targets: list[str] | None = None,
	) -> RunExecutionResult:
		ensure_acyclic(flow)
		deps = build_dependencies(flow)
		adjacency = build_adjacency(flow)
		states = self._initial_states(run_id, flow, mode, adjacency, targets or [])
		logger.info(
			"Run %s: %s execution of flow %s (%d nodes, limit %d)",
			run_id, mode, flow.id, len(flow.nodes), self.concurrency_limit,
		)
		await self._schedule(run_id, flow, states, deps, adjacency)
		return RunExecutionResult(run_id=run_id, node_states=dict(states))

	def _initial_states(
		self,
		run_id: str,
		flow: Flow,
		mode: RunMode,
		adjacency: dict[str, list[str]],
		targets: list[str],
	) -> dict[str, str]:
		existing = {r.node_id: r.state for r in self.db.list_node_states(run_id)}
		reset: set[str] = set()
		if mode == "rerun":
			unknown = [t for t in targets if t not in adjacency]
			if unknown:
				logger.warning("Run %s: ignoring unknown rerun targets %s", run_id, unknown)
			reset = collect_downstream([t for t in targets if t in adjacency], adjacency)

		states: dict[str, str] = {}
		for node in flow.nodes:
			current = existing.get(node.id)
			if mode == "fresh":
				next_state = "pending"
			elif mode == "resume":
				next_state = "completed" if current == "completed" else "pending"
			else:
				next_state = "pending" if node.id in reset else (current or "pending")
			states[node.id] = next_state
			if current != next_state:
				self.db.update_node_state(run_id, node.id, next_state)
		return states

	def _set_state(
		self,
		run_id: str,
		states: dict[str, str],
		node_id: str,
		state: str,
		meta: dict[str, str] | None = None,
	) -> None:
		states[node_id] = state
		self.db.update_node_state(run_id, node_id, state, meta=meta)
		logger.debug("Run %s: node %s -> %s", run_id, node_id, state)

	async def _schedule(
		self,
		run_id: str,
		flow: Flow,
		states: dict[str, str],
		deps: dict[str, list[str]],
		adjacency: dict[str, list[str]],
	) -> None:
		running: dict[asyncio.Task[NodeExecutionResult], str] = {}
		try:
			while True:
				for node in flow.nodes:
					if len(running) >= self.concurrency_limit:
						break
					if states[node.id] != "pending":
						continue
					if not all(states.get(d) == "completed" for d in deps.get(node.id, [])):
						continue
					self._set_state(run_id, states, node.id, "running")
					context = NodeExecutionContext(run_id=run_id, node_id=node.id, flow_id=flow.id)
					task = asyncio.create_task(self._execute_node(node, context))
					running[task] = node.id

				if not running:
					return

				done, _ = await asyncio.wait(running, return_when=asyncio.FIRST_COMPLETED)
				for task in done:
					node_id = running.pop(task)
					self._finish_node(run_id, node_id, task.result(), states, adjacency)
		except asyncio.CancelledError:
			for task in running:
				task.cancel()
			await asyncio.gather(*running, return_exceptions=True)
			for node_id in running.values():
				self._set_state(run_id, states, node_id, "interrupted")
			logger.warning("Run %s cancelled with %d node(s) in flight", run_id, len(running))
			raise

	async def _execute_node(self, node: FlowNode, context: NodeExecutionContext) -> NodeExecutionResult:
		try:
			return await self.executor.execute(node, context)
		except Exception as exc:
			logger.error("Run %s: node %s raised %s", context.run_id, node.id, exc, exc_info=True)
			return NodeExecutionResult(success=False, error_message=str(exc) or type(exc).__name__)

	def _finish_node(
		self,
		run_id: str,
		node_id: str,
		result: NodeExecutionResult,
		states: dict[str, str],
		adjacency: dict[str, list[str]],
	) -> None:
		if result.success:
			self._set_state(run_id, states, node_id, "completed")
			logger.info("Run %s: node %s completed", run_id, node_id)
			return
		state = "timed_out" if result.timed_out else "failed"
		meta = {"errorMessage": result.error_message} if result.error_message else None
		self._set_state(run_id, states, node_id, state, meta=meta)
		logger.warning("Run %s: node %s %s: %s", run_id, node_id, state, result.error_message)
		self._block_dependents(run_id, node_id, states, adjacency)

	def _block_dependents(
		self,
		run_id: str,
		node_id: str,
		states: dict[str, str],
		adjacency: dict[str, list[str]],
	) -> None:
		queue = deque(adjacency.get(node_id, []))
		visited: set[str] = set()
		while queue:
			next_id = queue.popleft()
			if next_id in visited:
				continue
			visited.add(next_id)
			queue.extend(adjacency.get(next_id, []))
			if states.get(next_id) in ("completed", "failed"):
				continue
			if next_id in states:
				self._set_state(run_id, states, next_id, "blocked")
