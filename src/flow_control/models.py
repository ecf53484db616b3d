"""Data models for flow-control.

Flow definitions are external JSON documents and are validated with pydantic
(camelCase keys on the wire, snake_case attributes in code). Everything the
state store persists is a plain dataclass.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal
from uuid import uuid4

from pydantic import BaseModel, Field

RunState = Literal["pending", "running", "completed", "failed", "interrupted"]
NodeState = Literal["pending", "running", "completed", "failed", "blocked", "interrupted", "timed_out"]
WorktreeStatus = Literal["active", "merged", "abandoned", "missing", "discovered"]

CURRENT_FLOW_SCHEMA_VERSION = 1


def _now_iso() -> str:
	return datetime.now(timezone.utc).isoformat()


def _new_id() -> str:
	return uuid4().hex


# -- Flow definitions --


class _FlowModel(BaseModel, populate_by_name=True, extra="allow"):
	"""Base for flow document models: accepts aliases and keeps x- extension keys."""


class Position(_FlowModel):
	x: float = 0
	y: float = 0


class AgentConfig(_FlowModel):
	"""Agent invocation declared on a node."""

	type: Literal["stdio-json"] = "stdio-json"
	command: str
	args: list[str] = Field(default_factory=list)
	adapter_command: str | None = Field(default=None, alias="adapterCommand")
	env_allowlist: list[str] = Field(default_factory=list, alias="envAllowlist")
	env_denylist: list[str] = Field(default_factory=list, alias="envDenylist")
	timeout_sec: float | None = Field(default=None, alias="timeoutSec")


class ArtifactRef(_FlowModel):
	"""An input artifact pulled from an upstream node's outputs."""

	name: str
	ref: str
	required: bool = True


class ArtifactDef(_FlowModel):
	"""An output artifact a node promises to write inside its worktree."""

	name: str
	path: str | None = None
	schema_hint: dict[str, Any] | None = Field(default=None, alias="schema")


class ContextOverride(_FlowModel):
	key: str
	value: str | None = None


class NodeData(_FlowModel):
	label: str = ""
	goal: str | None = None
	agent: AgentConfig | None = None
	prompt_template: str | None = Field(default=None, alias="promptTemplate")
	input_artifacts: list[ArtifactRef] = Field(default_factory=list, alias="inputArtifacts")
	output_artifacts: list[ArtifactDef] = Field(default_factory=list, alias="outputArtifacts")
	context_overrides: list[ContextOverride] = Field(default_factory=list, alias="contextOverrides")


class FlowNode(_FlowModel):
	id: str
	type: str = "task"
	position: Position = Field(default_factory=Position)
	data: NodeData = Field(default_factory=NodeData)


class FlowEdge(_FlowModel):
	id: str = ""
	source: str
	target: str


class Flow(_FlowModel):
	"""A pipeline definition: nodes in declaration order plus dependency edges."""

	id: str
	name: str = ""
	schema_version: int = Field(default=CURRENT_FLOW_SCHEMA_VERSION, alias="schemaVersion")
	nodes: list[FlowNode] = Field(default_factory=list)
	edges: list[FlowEdge] = Field(default_factory=list)
	meta: dict[str, Any] = Field(default_factory=dict)

	@property
	def base_branch(self) -> str | None:
		value = self.meta.get("baseBranch")
		return str(value) if value else None

	@property
	def concurrency_limit(self) -> int | None:
		value = self.meta.get("concurrencyLimit")
		return int(value) if value is not None else None

	def node(self, node_id: str) -> FlowNode | None:
		for n in self.nodes:
			if n.id == node_id:
				return n
		return None

	def to_json_dict(self) -> dict[str, Any]:
		return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# -- Persisted records --


@dataclass
class RunRecord:
	"""One execution of a flow inside one worktree."""

	id: str = field(default_factory=_new_id)
	flow_id: str = ""
	worktree_id: str = ""
	state: str = "pending"  # pending/running/completed/failed/interrupted
	created_at: str = ""
	updated_at: str = ""


@dataclass
class NodeStateRecord:
	"""Execution state of one node within one run."""

	run_id: str = ""
	node_id: str = ""
	state: str = "pending"  # see NodeState
	updated_at: str = ""
	meta: dict[str, Any] | None = None


@dataclass
class WorktreeRecord:
	"""A git worktree the manager created or discovered."""

	id: str = field(default_factory=_new_id)
	path: str = ""
	branch: str = ""
	base_branch: str | None = None
	run_id: str | None = None
	status: str = "active"  # active/merged/abandoned/missing/discovered
	created_at: str = ""
	updated_at: str = ""


@dataclass
class ArtifactRecord:
	"""A file produced by a node; path is relative to the project root."""

	id: str = ""
	run_id: str = ""
	node_id: str = ""
	path: str = ""
	hash: str = ""
	meta: dict[str, Any] | None = None
	created_at: str = ""


@dataclass
class EventRecord:
	id: int | None = None
	run_id: str | None = None
	node_id: str | None = None
	type: str = ""
	payload: dict[str, Any] | None = None
	created_at: str = ""


@dataclass
class ApprovedCommandRecord:
	"""A command path and argument pattern the user has approved for agents."""

	id: str = field(default_factory=_new_id)
	command_path: str = ""
	args_pattern: list[str] | None = None
	hash: str = ""
	approved_at: str = ""
	last_seen_at: str | None = None


@dataclass
class LockOwner:
	pid: int = 0
	created_at: str = ""
	heartbeat_at: str = ""

	def to_json(self) -> dict[str, Any]:
		return {"pid": self.pid, "createdAt": self.created_at, "heartbeatAt": self.heartbeat_at}

	@classmethod
	def from_json(cls, data: dict[str, Any]) -> LockOwner:
		return cls(
			pid=int(data.get("pid", 0)),
			created_at=str(data.get("createdAt", "")),
			heartbeat_at=str(data.get("heartbeatAt", "")),
		)


@dataclass
class LockResult:
	acquired: bool = False
	stale: bool = False
	owner: LockOwner | None = None


@dataclass
class MigrationStatus:
	schema_version: int = 0
	applied: list[int] = field(default_factory=list)
	error: dict[str, Any] | None = None


# -- Worktree manager results --


@dataclass
class WorktreeInfo:
	id: str = ""
	path: str = ""
	branch: str = ""
	base_branch: str = ""
	run_id: str = ""


@dataclass
class MergeResult:
	worktree_id: str = ""
	branch: str = ""
	base_branch: str = ""
	merged: bool = False


@dataclass
class ReconcileResult:
	"""Worktree ids grouped by what reconciliation did to them."""

	missing: list[str] = field(default_factory=list)
	discovered: list[str] = field(default_factory=list)
	unchanged: list[str] = field(default_factory=list)
	restored: list[str] = field(default_factory=list)


@dataclass
class LiveWorktree:
	"""One entry of ``git worktree list --porcelain``."""

	path: str = ""
	branch: str | None = None


# -- Engine --


@dataclass
class NodeExecutionContext:
	run_id: str = ""
	node_id: str = ""
	flow_id: str = ""


@dataclass
class NodeExecutionResult:
	success: bool = False
	error_message: str | None = None
	timed_out: bool = False
	summary: str | None = None


@dataclass
class RunExecutionResult:
	run_id: str = ""
	node_states: dict[str, str] = field(default_factory=dict)


@dataclass
class NodeResultSummary:
	"""What a downstream node learns about an upstream node's outcome."""

	node_id: str = ""
	success: bool = False
	summary: str | None = None


# -- Agents --


@dataclass
class ResolvedAgentConfig:
	"""Agent invocation after local overrides have been applied."""

	command: str = ""
	args: list[str] = field(default_factory=list)
	adapter_command: str | None = None
	env_allowlist: list[str] = field(default_factory=list)
	env_denylist: list[str] = field(default_factory=list)
	timeout_sec: float = 0


@dataclass
class RepoInfo:
	worktree_path: str = ""
	base_branch: str = ""
	branch: str = ""
	default_branch: str = ""
	repository_url: str | None = None


@dataclass
class TaskContext:
	run_id: str = ""
	node_id: str = ""
	flow_id: str = ""
	previous_results: list[NodeResultSummary] | None = None


@dataclass
class AgentTask:
	"""Everything the adapter needs to run one node's agent."""

	task_id: str = ""
	run_id: str = ""
	node_id: str = ""
	goal: str = ""
	agent: ResolvedAgentConfig = field(default_factory=ResolvedAgentConfig)
	repo: RepoInfo = field(default_factory=RepoInfo)
	context: TaskContext = field(default_factory=TaskContext)
	prompt_template: str | None = None
	artifacts: dict[str, str] = field(default_factory=dict)
	constraints: dict[str, Any] | None = None


@dataclass
class AgentResult:
	success: bool = False
	exit_code: int | None = None
	stdout: str = ""
	stderr: str = ""
	result_block: Any = None


@dataclass
class SessionState:
	project_root: str = ""
	flow_id: str | None = None
