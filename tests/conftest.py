"""Shared pytest fixtures and factory functions for flow-control tests."""

from __future__ import annotations

import itertools
import subprocess
from pathlib import Path
from typing import Any, Callable

import pytest

from flow_control.db import Database
from flow_control.models import Flow, FlowEdge, FlowNode, NodeData


class FixedClock:
	"""Deterministic ISO timestamps, one second apart."""

	def __init__(self, start: str = "2026-01-01T00:00:00+00:00") -> None:
		self.current = start
		self._counter = itertools.count(1)

	def __call__(self) -> str:
		return self.current

	def advance(self) -> str:
		n = next(self._counter)
		self.current = f"2026-01-01T00:{n // 60:02d}:{n % 60:02d}+00:00"
		return self.current


@pytest.fixture()
def clock() -> FixedClock:
	return FixedClock()


@pytest.fixture()
def db(clock: FixedClock) -> Database:
	"""In-memory Database with schema initialized."""
	return Database(":memory:", clock=clock)


def make_flow(
	node_ids: list[str],
	edges: list[tuple[str, str]] | None = None,
	**overrides: Any,
) -> Flow:
	"""Create a Flow from node ids and (source, target) pairs."""
	defaults: dict[str, Any] = {
		"id": "flow1",
		"name": "Test flow",
		"nodes": [FlowNode(id=n, type="task", data=NodeData(label=n)) for n in node_ids],
		"edges": [
			FlowEdge(id=f"{s}->{t}", source=s, target=t) for s, t in (edges or [])
		],
	}
	defaults.update(overrides)
	return Flow(**defaults)


def _git(cwd: Path, *args: str) -> str:
	result = subprocess.run(
		["git", *args], cwd=cwd, capture_output=True, text=True, check=True,
	)
	return result.stdout


@pytest.fixture()
def git_repo(tmp_path: Path) -> Path:
	"""A real git repo on branch main with one commit."""
	repo = tmp_path / "repo"
	repo.mkdir()
	_git(repo, "init", "-b", "main")
	_git(repo, "config", "user.email", "test@test.com")
	_git(repo, "config", "user.name", "Test")
	(repo / "README.md").write_text("# test\n")
	_git(repo, "add", ".")
	_git(repo, "commit", "-m", "initial")
	return repo


@pytest.fixture()
def run_git() -> Callable[..., str]:
	return _git


@pytest.fixture(name="make_flow")
def make_flow_fixture() -> Callable[..., Flow]:
	return make_flow
