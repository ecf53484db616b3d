"""Production NodeExecutor: artifacts in, agent run, artifacts out."""

from __future__ import annotations

import logging
from pathlib import Path
from string import Template

from flow_control.agent_adapter import AgentAdapter
from flow_control.artifacts import (
	build_context_payload,
	register_output_artifacts,
	resolve_input_artifacts,
)
from flow_control.config import FlowControlConfig, resolve_agent_config
from flow_control.db import Database
from flow_control.engine import NodeExecutor, build_dependencies
from flow_control.errors import AgentResultParseError, AgentTimeout, ArtifactError
from flow_control.models import (
	AgentResult,
	AgentTask,
	Flow,
	FlowNode,
	NodeExecutionContext,
	NodeExecutionResult,
	NodeResultSummary,
	RepoInfo,
	TaskContext,
	WorktreeInfo,
)

logger = logging.getLogger(__name__)

NODE_RESULT_EVENT = "node_result"


def _summary_from(result: AgentResult) -> str | None:
	block = result.result_block
	if isinstance(block, dict) and isinstance(block.get("summary"), str):
		return block["summary"]
	return None


def render_prompt(template: str | None, variables: dict[str, str]) -> str | None:
	"""Substitute ``$name`` placeholders; unknown placeholders are left as-is."""
	if template is None:
		return None
	return Template(template).safe_substitute(variables)


class AgentNodeExecutor(NodeExecutor):
	"""Run a node's agent inside the run's worktree.

	Nodes without an agent succeed immediately. Failures of the agent,
	its result block or its declared artifacts come back as a failed
	NodeExecutionResult; the engine decides what that means for dependents.
	"""

	def __init__(
		self,
		*,
		adapter: AgentAdapter,
		db: Database,
		flow: Flow,
		config: FlowControlConfig,
		project_root: str | Path,
		worktree: WorktreeInfo,
		default_branch: str,
	) -> None:
		self.adapter = adapter
		self.db = db
		self.flow = flow
		self.config = config
		self.project_root = Path(project_root)
		self.worktree = worktree
		self.default_branch = default_branch
		self._deps = build_dependencies(flow)

	def previous_results(self, run_id: str, node_id: str) -> list[NodeResultSummary]:
		"""Latest recorded outcome of each direct upstream node."""
		results: list[NodeResultSummary] = []
		for upstream in self._deps.get(node_id, []):
			events = self.db.list_events(run_id=run_id, node_id=upstream, event_type=NODE_RESULT_EVENT)
			if not events:
				continue
			payload = events[-1].payload or {}
			results.append(NodeResultSummary(
				node_id=upstream,
				success=bool(payload.get("success")),
				summary=payload.get("summary"),
			))
		return results

	async def execute(self, node: FlowNode, context: NodeExecutionContext) -> NodeExecutionResult:
		agent = node.data.agent
		if agent is None:
			logger.info("Node %s has no agent, nothing to execute", node.id)
			return NodeExecutionResult(success=True)

		try:
			artifacts, input_records = resolve_input_artifacts(
				context.run_id, self.project_root, node.data.input_artifacts, self.db,
			)
		except ArtifactError as exc:
			self._record_result(context, success=False, error=exc.message)
			return NodeExecutionResult(success=False, error_message=exc.message)

		previous = self.previous_results(context.run_id, node.id)
		variables = build_context_payload(previous, node.data.context_overrides)
		task = AgentTask(
			task_id=f"{context.run_id}:{node.id}",
			run_id=context.run_id,
			node_id=node.id,
			goal=node.data.goal or node.data.label or node.id,
			agent=resolve_agent_config(agent, self.config, context.flow_id),
			repo=RepoInfo(
				worktree_path=self.worktree.path,
				base_branch=self.worktree.base_branch,
				branch=self.worktree.branch,
				default_branch=self.default_branch,
				repository_url=self.config.agent.repository_url or None,
			),
			context=TaskContext(
				run_id=context.run_id,
				node_id=node.id,
				flow_id=context.flow_id,
				previous_results=previous or None,
			),
			prompt_template=render_prompt(node.data.prompt_template, variables),
			artifacts=artifacts,
		)

		try:
			result = await self.adapter.execute(task)
		except AgentTimeout as exc:
			self._record_result(context, success=False, error=exc.message)
			return NodeExecutionResult(success=False, timed_out=True, error_message=exc.message)
		except (AgentResultParseError, OSError) as exc:
			message = exc.message if isinstance(exc, AgentResultParseError) else f"Failed to start agent: {exc}"
			self._record_result(context, success=False, error=message)
			return NodeExecutionResult(success=False, error_message=message)

		summary = _summary_from(result)
		if not result.success:
			message = f"Agent exited with code {result.exit_code}"
			self._record_result(context, success=False, error=message, exit_code=result.exit_code, summary=summary)
			return NodeExecutionResult(success=False, error_message=message, summary=summary)

		try:
			register_output_artifacts(
				context.run_id,
				node.id,
				self.worktree.path,
				self.project_root,
				node.data.output_artifacts,
				self.db,
				input_records,
			)
		except ArtifactError as exc:
			self._record_result(context, success=False, error=exc.message, exit_code=result.exit_code, summary=summary)
			return NodeExecutionResult(success=False, error_message=exc.message, summary=summary)

		self._record_result(context, success=True, exit_code=result.exit_code, summary=summary)
		return NodeExecutionResult(success=True, summary=summary)

	def _record_result(
		self,
		context: NodeExecutionContext,
		*,
		success: bool,
		error: str | None = None,
		exit_code: int | None = None,
		summary: str | None = None,
	) -> None:
		payload: dict[str, object] = {"success": success}
		if summary is not None:
			payload["summary"] = summary
		if exit_code is not None:
			payload["exitCode"] = exit_code
		if error is not None:
			payload["error"] = error
		self.db.record_event(NODE_RESULT_EVENT, run_id=context.run_id, node_id=context.node_id, payload=payload)
