"""Artifact references, registration and lineage.

A node declares the files it writes (``outputArtifacts``) and the upstream
files it reads (``inputArtifacts``, referenced as ``@node:<id>.output.<name>``).
Registered artifacts store a project-relative path and a sha256 digest.
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

from flow_control.db import Database
from flow_control.errors import (
	ArtifactInvalid,
	ArtifactNotFound,
	ArtifactPathInvalid,
	ArtifactReferenceError,
)
from flow_control.models import (
	ArtifactDef,
	ArtifactRecord,
	ArtifactRef,
	ContextOverride,
	NodeResultSummary,
)

logger = logging.getLogger(__name__)

REF_PREFIX = "@node:"


@dataclass
class ParsedArtifactRef:
	node_id: str
	artifact_name: str


def build_artifact_id(run_id: str, node_id: str, name: str) -> str:
	return f"{run_id}:{node_id}:{name}"


def parse_artifact_ref(ref: str) -> ParsedArtifactRef:
	"""Parse ``@node:<id>.output.<name>`` or the legacy ``@node:<id>.<name>``."""
	if not ref.startswith(REF_PREFIX):
		raise ArtifactReferenceError(
			f"Artifact reference must start with {REF_PREFIX}: {ref}",
			details={"ref": ref},
		)
	segments = ref[len(REF_PREFIX):].split(".")
	if len(segments) >= 3 and segments[1] == "output":
		node_id, name = segments[0], ".".join(segments[2:])
	elif len(segments) >= 2:
		node_id, name = segments[0], ".".join(segments[1:])
	else:
		raise ArtifactReferenceError(f"Malformed artifact reference: {ref}", details={"ref": ref})
	if not node_id or not name:
		raise ArtifactReferenceError(f"Malformed artifact reference: {ref}", details={"ref": ref})
	return ParsedArtifactRef(node_id=node_id, artifact_name=name)


def hash_file(path: str | Path) -> str:
	digest = hashlib.sha256()
	with open(path, "rb") as f:
		for chunk in iter(lambda: f.read(65536), b""):
			digest.update(chunk)
	return digest.hexdigest()


def to_relative_artifact_path(project_root: str | Path, absolute_path: str | Path) -> str:
	"""Express ``absolute_path`` relative to the project root.

	Raises:
		ArtifactPathInvalid: The path resolves outside the project root.
	"""
	root = Path(project_root).resolve()
	target = Path(absolute_path).resolve()
	if not target.is_relative_to(root):
		raise ArtifactPathInvalid(
			f"Artifact path {absolute_path} is outside project root {project_root}",
			details={"path": str(absolute_path), "project_root": str(project_root)},
		)
	return target.relative_to(root).as_posix()


def resolve_artifact_path(project_root: str | Path, relative_path: str) -> str:
	return str(Path(project_root) / relative_path)


def resolve_input_artifacts(
	run_id: str,
	project_root: str | Path,
	inputs: Iterable[ArtifactRef],
	db: Database,
) -> tuple[dict[str, str], list[ArtifactRecord]]:
	"""Look up a node's declared inputs.

	Returns absolute paths keyed by input name plus the matching records.
	Optional inputs that were never produced are skipped.

	Raises:
		ArtifactReferenceError: A reference is malformed.
		ArtifactNotFound: A required input has not been registered.
	"""
	artifacts: dict[str, str] = {}
	records: list[ArtifactRecord] = []
	for item in inputs:
		parsed = parse_artifact_ref(item.ref)
		artifact_id = build_artifact_id(run_id, parsed.node_id, parsed.artifact_name)
		record = db.get_artifact(artifact_id)
		if record is None:
			if not item.required:
				logger.debug("Optional input %s (%s) not produced, skipping", item.name, item.ref)
				continue
			raise ArtifactNotFound(
				f"Required input artifact {item.name} ({item.ref}) not found",
				details={"artifact_id": artifact_id, "ref": item.ref},
			)
		artifacts[item.name] = resolve_artifact_path(project_root, record.path)
		records.append(record)
	return artifacts, records


def register_output_artifacts(
	run_id: str,
	node_id: str,
	worktree_path: str | Path,
	project_root: str | Path,
	outputs: Iterable[ArtifactDef],
	db: Database,
	input_records: Iterable[ArtifactRecord] = (),
) -> list[ArtifactRecord]:
	"""Validate and persist a node's declared outputs, with lineage to its inputs.

	Raises:
		ArtifactInvalid: An output has no path, or fails its JSON schema hint.
		ArtifactNotFound: The declared file does not exist in the worktree.
		ArtifactPathInvalid: The file is outside the run worktree or the project root.
	"""
	inputs = list(input_records)
	registered: list[ArtifactRecord] = []
	for output in outputs:
		if not output.path:
			raise ArtifactInvalid(
				f"Output artifact {output.name} of node {node_id} has no path",
				details={"name": output.name, "node_id": node_id},
			)
		absolute = Path(worktree_path) / output.path
		if not absolute.resolve().is_relative_to(Path(worktree_path).resolve()):
			raise ArtifactPathInvalid(
				f"Output artifact {output.name} escapes the run worktree: {output.path}",
				details={"name": output.name, "path": output.path, "worktree": str(worktree_path)},
			)
		if not absolute.is_file():
			raise ArtifactNotFound(
				f"Output artifact {output.name} not found at {absolute}",
				details={"name": output.name, "path": str(absolute)},
			)
		if output.schema_hint is not None:
			try:
				json.loads(absolute.read_text(encoding="utf-8"))
			except (ValueError, UnicodeDecodeError) as exc:
				raise ArtifactInvalid(
					f"Output artifact {output.name} is not valid JSON: {exc}",
					details={"name": output.name, "path": str(absolute), "reason": str(exc)},
				) from exc

		record = db.register_artifact(ArtifactRecord(
			id=build_artifact_id(run_id, node_id, output.name),
			run_id=run_id,
			node_id=node_id,
			path=to_relative_artifact_path(project_root, absolute),
			hash=hash_file(absolute),
			meta={"schema": output.schema_hint} if output.schema_hint is not None else None,
		))
		for source in inputs:
			if source.id != record.id:
				db.register_artifact_lineage(record.id, source.id)
		logger.info("Registered artifact %s (%s)", record.id, record.path)
		registered.append(record)
	return registered


def build_context_payload(
	previous_results: Iterable[NodeResultSummary],
	overrides: Iterable[ContextOverride] = (),
) -> dict[str, str]:
	"""Summaries of upstream nodes as prompt variables, with per-node overrides.

	An override with ``value=None`` removes the key.
	"""
	payload: dict[str, str] = {}
	lines = [
		f"[{r.node_id}] {r.summary or ('completed' if r.success else 'failed')}"
		for r in previous_results
	]
	if lines:
		payload["previousSummaries"] = "\n".join(lines)
	for override in overrides:
		if override.value is None:
			payload.pop(override.key, None)
		else:
			payload[override.key] = override.value
	return payload
