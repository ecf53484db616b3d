"""Flow definitions on disk: ``<project>/.flow-control/flows/<flow_id>.json``."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from flow_control.errors import FlowJsonParseFailed, FlowNotFound, FlowSchemaInvalid
from flow_control.models import (
	CURRENT_FLOW_SCHEMA_VERSION,
	ArtifactDef,
	Flow,
	FlowNode,
)

logger = logging.getLogger(__name__)

SDLC_PHASES = ("requirements", "design", "implementation", "test", "review", "deploy")

# label, prompt template, (output name, output path)
_SDLC_DEFAULTS: dict[str, tuple[str, str, tuple[str, str]]] = {
	"requirements": (
		"Requirements",
		"Summarize the requirements and produce a requirements doc.",
		("requirements", "docs/requirements.md"),
	),
	"design": (
		"Design",
		"Draft a design outline and key architecture decisions.",
		("design", "docs/design.md"),
	),
	"implementation": (
		"Implementation",
		"Implement the planned changes and summarize the diff.",
		("summary", "docs/implementation.md"),
	),
	"test": (
		"Test",
		"Add or update tests for the implemented changes.",
		("results", "docs/test-results.md"),
	),
	"review": (
		"Review",
		"Review changes and highlight risks or follow-ups.",
		("review", "docs/review.md"),
	),
	"deploy": (
		"Deploy",
		"Prepare deployment notes and rollout steps.",
		("deploy", "docs/deploy.md"),
	),
}


@dataclass
class ValidationIssue:
	path: str
	message: str


@dataclass
class FlowLoadResult:
	flow: Flow
	read_only: bool = False
	migrated: bool = False
	errors: list[ValidationIssue] = field(default_factory=list)


def apply_sdlc_defaults(node: FlowNode) -> FlowNode:
	"""Fill label, prompt and outputs for the standard SDLC node types."""
	defaults = _SDLC_DEFAULTS.get(node.type)
	if defaults is None:
		return node
	label, prompt, (output_name, output_path) = defaults
	data = node.data
	if not data.label:
		data.label = label
	if data.prompt_template is None:
		data.prompt_template = prompt
	if "output_artifacts" not in data.model_fields_set:
		data.output_artifacts = [ArtifactDef(name=output_name, path=output_path)]
	return node


def _normalize_legacy(raw: Any) -> Any:
	"""Rewrite pre-release artifact and override keys to the current names."""
	if not isinstance(raw, dict) or not isinstance(raw.get("nodes"), list):
		return raw
	nodes = []
	for node in raw["nodes"]:
		data = node.get("data") if isinstance(node, dict) else None
		if not isinstance(data, dict):
			nodes.append(node)
			continue
		data = dict(data)
		if isinstance(data.get("inputArtifacts"), list):
			items = []
			for item in data["inputArtifacts"]:
				if isinstance(item, dict):
					item = dict(item)
					if "name" not in item and "id" in item:
						item["name"] = item["id"]
					if "required" not in item and isinstance(item.get("optional"), bool):
						item["required"] = not item["optional"]
				items.append(item)
			data["inputArtifacts"] = items
		if isinstance(data.get("outputArtifacts"), list):
			items = []
			for item in data["outputArtifacts"]:
				if isinstance(item, dict) and "name" not in item and "id" in item:
					item = {**item, "name": item["id"]}
				items.append(item)
			data["outputArtifacts"] = items
		if isinstance(data.get("contextOverrides"), list):
			items = []
			for item in data["contextOverrides"]:
				if isinstance(item, dict) and "key" not in item and "source" in item:
					item = {**item, "key": item["source"]}
				items.append(item)
			data["contextOverrides"] = items
		nodes.append({**node, "data": data})
	return {**raw, "nodes": nodes}


def graph_issues(flow: Flow) -> list[ValidationIssue]:
	"""Structural problems pydantic cannot see: duplicate ids and dangling edges."""
	issues: list[ValidationIssue] = []
	node_ids: set[str] = set()
	for i, node in enumerate(flow.nodes):
		if node.id in node_ids:
			issues.append(ValidationIssue(f"nodes.{i}.id", f"duplicate node id {node.id!r}"))
		node_ids.add(node.id)
	for i, edge in enumerate(flow.edges):
		if edge.source not in node_ids:
			issues.append(ValidationIssue(f"edges.{i}.source", f"unknown node {edge.source!r}"))
		if edge.target not in node_ids:
			issues.append(ValidationIssue(f"edges.{i}.target", f"unknown node {edge.target!r}"))
	return issues


def _pydantic_issues(exc: ValidationError) -> list[ValidationIssue]:
	return [
		ValidationIssue(".".join(str(p) for p in err["loc"]), err["msg"])
		for err in exc.errors()
	]


class FlowStore:
	"""Load, validate and save flow definition files."""

	def __init__(self, flows_dir: str | Path) -> None:
		self.flows_dir = Path(flows_dir)

	def _path(self, flow_id: str) -> Path:
		return self.flows_dir / f"{flow_id}.json"

	def list_ids(self) -> list[str]:
		if not self.flows_dir.is_dir():
			return []
		return sorted(p.stem for p in self.flows_dir.glob("*.json"))

	def load_all(self) -> list[FlowLoadResult]:
		"""Every flow in the directory; an absent directory means no flows."""
		return [self.load(flow_id) for flow_id in self.list_ids()]

	def load(self, flow_id: str) -> FlowLoadResult:
		"""Load one flow.

		Raises:
			FlowNotFound: No file for ``flow_id``.
			FlowJsonParseFailed: The file is not JSON.
			FlowSchemaInvalid: The JSON does not describe a flow.
		"""
		path = self._path(flow_id)
		try:
			raw = path.read_text(encoding="utf-8")
		except FileNotFoundError:
			raise FlowNotFound(f"Flow {flow_id} not found at {path}", details={"flow_id": flow_id}) from None
		try:
			data = json.loads(raw)
		except json.JSONDecodeError as exc:
			raise FlowJsonParseFailed(
				f"Flow {flow_id} is not valid JSON: {exc}",
				details={"flow_id": flow_id, "reason": str(exc)},
			) from exc

		try:
			flow = Flow.model_validate(_normalize_legacy(data))
		except ValidationError as exc:
			issues = _pydantic_issues(exc)
			raise FlowSchemaInvalid(
				f"Flow {flow_id} failed validation",
				details={"flow_id": flow_id, "issues": [i.__dict__ for i in issues]},
			) from exc

		for node in flow.nodes:
			apply_sdlc_defaults(node)
		read_only = flow.schema_version > CURRENT_FLOW_SCHEMA_VERSION
		migrated = flow.schema_version < CURRENT_FLOW_SCHEMA_VERSION
		if migrated:
			logger.info(
				"Flow %s migrated in memory from schema %d to %d",
				flow_id, flow.schema_version, CURRENT_FLOW_SCHEMA_VERSION,
			)
			flow.schema_version = CURRENT_FLOW_SCHEMA_VERSION
		if read_only:
			logger.warning("Flow %s uses newer schema %d; loaded read-only", flow_id, flow.schema_version)
		issues = graph_issues(flow)
		for issue in issues:
			logger.warning("Flow %s: %s: %s", flow_id, issue.path, issue.message)
		return FlowLoadResult(flow=flow, read_only=read_only, migrated=migrated, errors=issues)

	def validate(self, data: Any) -> list[ValidationIssue]:
		"""Validate a raw JSON document or a Flow without touching disk."""
		if isinstance(data, Flow):
			return graph_issues(data)
		try:
			flow = Flow.model_validate(_normalize_legacy(data))
		except ValidationError as exc:
			return _pydantic_issues(exc)
		return graph_issues(flow)

	def save(self, flow: Flow) -> Path:
		"""Write ``flow`` at the current schema version.

		Raises:
			FlowSchemaInvalid: The flow has structural problems.
		"""
		issues = self.validate(flow)
		if issues:
			raise FlowSchemaInvalid(
				f"Flow {flow.id} failed validation",
				details={"flow_id": flow.id, "issues": [i.__dict__ for i in issues]},
			)
		data = flow.to_json_dict()
		data["schemaVersion"] = max(flow.schema_version, CURRENT_FLOW_SCHEMA_VERSION)
		self.flows_dir.mkdir(parents=True, exist_ok=True)
		path = self._path(flow.id)
		path.write_text(json.dumps(data, indent=2) + "\n", encoding="utf-8")
		logger.info("Saved flow %s to %s", flow.id, path)
		return path

	def delete(self, flow_id: str) -> None:
		path = self._path(flow_id)
		try:
			path.unlink()
		except FileNotFoundError:
			raise FlowNotFound(f"Flow {flow_id} not found at {path}", details={"flow_id": flow_id}) from None
		logger.info("Deleted flow %s", flow_id)
