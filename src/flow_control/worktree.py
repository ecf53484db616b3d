"""Git worktree lifecycle for runs.

Each run gets its own worktree on a fresh ``run/<run_id>-<suffix>`` branch under
``<project>/.flow-control/worktrees``. The state store keeps the inventory;
``reconcile_with_db`` brings it back in line with what git actually has.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from flow_control.db import Database
from flow_control.errors import (
	BranchCollision,
	DefaultBranchNotFound,
	WorktreeCreateFailed,
	WorktreeListFailed,
	WorktreeMergeConflict,
	WorktreeMergeFailed,
	WorktreeNotFound,
	WorktreeRemoveFailed,
)
from flow_control.models import (
	LiveWorktree,
	MergeResult,
	ReconcileResult,
	WorktreeInfo,
	WorktreeRecord,
)

logger = logging.getLogger(__name__)

STATE_DIR_NAME = ".flow-control"
WORKTREES_DIR_NAME = "worktrees"
MAX_BRANCH_ATTEMPTS = 10
UNKNOWN_BRANCH = "unknown"

_REF_PREFIXES = ("refs/remotes/origin/", "refs/heads/")


@dataclass
class GitResult:
	ok: bool
	stdout: str = ""
	stderr: str = ""
	exit_code: int | None = None


class GitRunner(ABC):
	@abstractmethod
	async def run(self, cwd: str, *args: str) -> GitResult:
		"""Run ``git <args>`` in ``cwd`` without a shell."""


class SubprocessGitRunner(GitRunner):
	async def run(self, cwd: str, *args: str) -> GitResult:
		proc = await asyncio.create_subprocess_exec(
			"git", *args,
			cwd=cwd,
			stdout=asyncio.subprocess.PIPE,
			stderr=asyncio.subprocess.PIPE,
		)
		stdout, stderr = await proc.communicate()
		return GitResult(
			ok=proc.returncode == 0,
			stdout=stdout.decode(errors="replace") if stdout else "",
			stderr=stderr.decode(errors="replace") if stderr else "",
			exit_code=proc.returncode,
		)


def normalize_branch_ref(ref: str) -> str:
	"""Strip ``refs/remotes/origin/`` or ``refs/heads/``; inner slashes survive."""
	ref = ref.strip()
	for prefix in _REF_PREFIXES:
		if ref.startswith(prefix):
			return ref[len(prefix):]
	return ref


def normalize_path(path: str) -> str:
	stripped = str(path).rstrip("/")
	return stripped or "/"


def parse_worktree_porcelain(output: str) -> list[LiveWorktree]:
	"""Parse ``git worktree list --porcelain`` into path/branch entries.

	Records are separated by blank lines. Detached or bare entries have no
	``branch`` line and come back with ``branch=None``.
	"""
	entries: list[LiveWorktree] = []
	current: LiveWorktree | None = None
	for line in output.splitlines():
		line = line.rstrip("\r")
		if not line.strip():
			if current is not None:
				entries.append(current)
				current = None
			continue
		if line.startswith("worktree "):
			if current is not None:
				entries.append(current)
			current = LiveWorktree(path=normalize_path(line[len("worktree "):]))
		elif line.startswith("branch ") and current is not None:
			current.branch = normalize_branch_ref(line[len("branch "):])
	if current is not None:
		entries.append(current)
	return entries


def _random_suffix() -> str:
	return secrets.token_hex(3)


class WorktreeManager:
	"""Provision, merge, remove and reconcile per-run git worktrees."""

	def __init__(
		self,
		project_root: str | Path,
		db: Database,
		git: GitRunner | None = None,
		random_suffix: Callable[[], str] | None = None,
	) -> None:
		self.project_root = Path(project_root)
		self.db = db
		self.git = git or SubprocessGitRunner()
		self._random_suffix = random_suffix or _random_suffix

	@property
	def worktrees_dir(self) -> Path:
		return self.project_root / STATE_DIR_NAME / WORKTREES_DIR_NAME

	async def _git(self, *args: str) -> GitResult:
		return await self.git.run(str(self.project_root), *args)

	async def _branch_exists(self, branch: str) -> bool:
		result = await self._git("show-ref", "--verify", "--quiet", f"refs/heads/{branch}")
		return result.ok

	async def get_default_branch(self) -> str:
		"""Resolve origin's HEAD, falling back to a local main or master."""
		result = await self._git("symbolic-ref", "refs/remotes/origin/HEAD")
		if result.ok and result.stdout.strip():
			return normalize_branch_ref(result.stdout)
		for candidate in ("main", "master"):
			if await self._branch_exists(candidate):
				return candidate
		raise DefaultBranchNotFound(
			f"Could not determine the default branch of {self.project_root}",
			details={"project_root": str(self.project_root)},
		)

	async def _allocate_branch(self, run_id: str) -> tuple[str, str]:
		for _ in range(MAX_BRANCH_ATTEMPTS):
			suffix = self._random_suffix()
			branch = f"run/{run_id}-{suffix}"
			if not await self._branch_exists(branch):
				return branch, suffix
			logger.debug("Branch %s already exists, trying another suffix", branch)
		raise BranchCollision(
			f"Could not find a free branch name for run {run_id} after {MAX_BRANCH_ATTEMPTS} attempts",
			details={"run_id": run_id, "attempts": MAX_BRANCH_ATTEMPTS},
		)

	async def create(self, run_id: str, base_branch: str | None = None) -> WorktreeInfo:
		"""Create a worktree and branch for ``run_id`` and persist it as active."""
		base = base_branch or await self.get_default_branch()
		branch, suffix = await self._allocate_branch(run_id)
		path = self.worktrees_dir / f"{run_id}-{suffix}"
		result = await self._git("worktree", "add", "-b", branch, str(path), base)
		if not result.ok:
			raise WorktreeCreateFailed(
				f"git worktree add failed for run {run_id}: {result.stderr.strip()}",
				details={"stderr": result.stderr, "branch": branch, "path": str(path)},
			)
		record = self.db.create_worktree(WorktreeRecord(
			path=str(path),
			branch=branch,
			base_branch=base,
			run_id=run_id,
			status="active",
		))
		logger.info("Created worktree %s on %s (base %s)", path, branch, base)
		return WorktreeInfo(
			id=record.id,
			path=record.path,
			branch=branch,
			base_branch=base,
			run_id=run_id,
		)

	async def list_live(self) -> list[LiveWorktree]:
		result = await self._git("worktree", "list", "--porcelain")
		if not result.ok:
			raise WorktreeListFailed(
				f"git worktree list failed: {result.stderr.strip()}",
				details={"stderr": result.stderr},
			)
		return parse_worktree_porcelain(result.stdout)

	async def list_worktrees(self) -> list[WorktreeRecord]:
		"""Persisted worktrees that git still knows about."""
		live_paths = {w.path for w in await self.list_live()}
		return [r for r in self.db.list_worktrees() if normalize_path(r.path) in live_paths]

	def _require_record(self, worktree_id: str) -> WorktreeRecord:
		record = self.db.get_worktree(worktree_id)
		if record is None:
			raise WorktreeNotFound(
				f"Worktree {worktree_id} not found",
				details={"worktree_id": worktree_id},
			)
		return record

	async def remove(self, worktree_id: str) -> None:
		record = self._require_record(worktree_id)
		result = await self._git("worktree", "remove", record.path)
		if not result.ok:
			raise WorktreeRemoveFailed(
				f"git worktree remove failed for {record.path}: {result.stderr.strip()}",
				details={"stderr": result.stderr, "worktree_id": worktree_id},
			)
		self.db.update_worktree_status(worktree_id, "abandoned")
		logger.info("Removed worktree %s", record.path)

	async def merge(self, worktree_id: str) -> MergeResult:
		"""Merge the worktree's branch into its base with a merge commit."""
		record = self._require_record(worktree_id)
		base = record.base_branch or await self.get_default_branch()

		checkout = await self._git("checkout", base)
		if not checkout.ok:
			raise WorktreeMergeFailed(
				f"git checkout {base} failed: {checkout.stderr.strip()}",
				details={"stderr": checkout.stderr, "base_branch": base},
			)

		payload = {"worktreeId": worktree_id, "branch": record.branch, "baseBranch": base}
		merge = await self._git("merge", "--no-ff", "--no-edit", record.branch)
		if not merge.ok:
			output = merge.stderr or merge.stdout
			self.db.record_event(
				"worktree_merge_failed",
				run_id=record.run_id,
				payload={**payload, "stderr": output},
			)
			logger.warning("Merge of %s into %s failed", record.branch, base)
			raise WorktreeMergeConflict(
				f"Merging {record.branch} into {base} failed: {output.strip()}",
				details={**payload, "stderr": output},
			)

		self.db.update_worktree_status(worktree_id, "merged")
		self.db.record_event("worktree_merged", run_id=record.run_id, payload=payload)
		logger.info("Merged %s into %s", record.branch, base)
		return MergeResult(worktree_id=worktree_id, branch=record.branch, base_branch=base, merged=True)

	async def reconcile_with_db(self) -> ReconcileResult:
		"""Compare persisted worktrees with ``git worktree list``.

		Records whose path git no longer lists become ``missing``. Live
		worktrees nobody recorded are inserted as ``discovered``. A ``missing``
		record whose path is live again goes back to ``active``.
		"""
		roots = {normalize_path(str(self.project_root)), normalize_path(str(self.project_root.resolve()))}
		live = {w.path: w for w in await self.list_live() if w.path not in roots}
		result = ReconcileResult()
		known: set[str] = set()

		for record in self.db.list_worktrees():
			path = normalize_path(record.path)
			known.add(path)
			if path not in live:
				if record.status != "missing":
					self.db.update_worktree_status(record.id, "missing")
					logger.warning("Worktree %s is gone from git, marking missing", record.path)
				result.missing.append(record.id)
			elif record.status == "missing":
				self.db.update_worktree_status(record.id, "active")
				logger.warning("Worktree %s reappeared, restoring to active", record.path)
				result.restored.append(record.id)
			else:
				result.unchanged.append(record.id)

		for path, entry in live.items():
			if path in known:
				continue
			record = self.db.create_worktree(WorktreeRecord(
				path=path,
				branch=entry.branch or UNKNOWN_BRANCH,
				status="discovered",
			))
			logger.info("Discovered unrecorded worktree %s", path)
			result.discovered.append(record.id)

		return result
