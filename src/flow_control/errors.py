"""Structured error types for flow-control.

Every error carries a stable machine-readable ``code``, a human message and a
``details`` dict so callers (the CLI, event log, tests) can branch on the code
instead of parsing messages.
"""

from __future__ import annotations

from typing import Any


class FlowControlError(RuntimeError):
	"""Base class for all flow-control errors."""

	code: str = "FLOW_CONTROL_ERROR"

	def __init__(
		self,
		message: str = "",
		*,
		details: dict[str, Any] | None = None,
		code: str | None = None,
	) -> None:
		super().__init__(message or self.code)
		self.message = message or self.code
		self.details: dict[str, Any] = dict(details or {})
		if code is not None:
			self.code = code

	def to_dict(self) -> dict[str, Any]:
		return {"code": self.code, "message": self.message, "details": dict(self.details)}


class ConfigError(FlowControlError):
	code = "CONFIG_INVALID"


# -- Flow definitions --


class FlowError(FlowControlError):
	code = "FLOW_ERROR"


class FlowCycleDetected(FlowError):
	code = "FLOW_CYCLE_DETECTED"


class FlowNotFound(FlowError):
	code = "FLOW_NOT_FOUND"


class FlowJsonParseFailed(FlowError):
	code = "FLOW_JSON_PARSE_FAILED"


class FlowSchemaInvalid(FlowError):
	code = "FLOW_SCHEMA_INVALID"


class RunNotFound(FlowError):
	code = "RUN_NOT_FOUND"


# -- State store --


class StateStoreError(FlowControlError):
	code = "STATE_DB_ERROR"


class StateStoreNotOpen(StateStoreError):
	code = "STATE_DB_NOT_OPEN"


class SchemaTooNew(StateStoreError):
	code = "STATE_DB_VERSION_TOO_NEW"


class MigrationFailed(StateStoreError):
	code = "STATE_DB_MIGRATION_FAILED"


class StateDbPathUnresolved(StateStoreError):
	code = "STATE_DB_PATH_UNRESOLVED"


class StateStoreLocked(StateStoreError):
	code = "STATE_DB_LOCKED"


# -- Worktrees --


class WorktreeError(FlowControlError):
	code = "WORKTREE_ERROR"


class DefaultBranchNotFound(WorktreeError):
	code = "DEFAULT_BRANCH_NOT_FOUND"


class WorktreeCreateFailed(WorktreeError):
	code = "WORKTREE_CREATE_FAILED"


class WorktreeListFailed(WorktreeError):
	code = "WORKTREE_LIST_FAILED"


class WorktreeRemoveFailed(WorktreeError):
	code = "WORKTREE_REMOVE_FAILED"


class WorktreeNotFound(WorktreeError):
	code = "WORKTREE_NOT_FOUND"


class WorktreeMergeFailed(WorktreeError):
	code = "WORKTREE_MERGE_FAILED"


class WorktreeMergeConflict(WorktreeError):
	code = "WORKTREE_MERGE_CONFLICT"


class BranchCollision(WorktreeError):
	code = "WORKTREE_BRANCH_COLLISION"


# -- Agents --


class AgentError(FlowControlError):
	code = "AGENT_ERROR"


class AgentTimeout(AgentError):
	code = "AGENT_TIMEOUT"


class AgentResultParseError(AgentError):
	code = "AGENT_RESULT_PARSE_ERROR"


# -- Artifacts --


class ArtifactError(FlowControlError):
	code = "ARTIFACT_ERROR"


class ArtifactNotFound(ArtifactError):
	code = "ARTIFACT_NOT_FOUND"


class ArtifactInvalid(ArtifactError):
	code = "ARTIFACT_INVALID"


class ArtifactReferenceError(ArtifactError):
	code = "ARTIFACT_REFERENCE_ERROR"


class ArtifactPathInvalid(ArtifactError):
	code = "ARTIFACT_PATH_INVALID"
