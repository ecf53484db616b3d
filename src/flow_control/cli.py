"""CLI interface for flow-control."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
import tomllib
from pathlib import Path
from typing import Any, Awaitable, Callable

from flow_control.config import (
	DEFAULT_CONFIG_NAME,
	STATE_DIR_NAME,
	FlowControlConfig,
	load_config,
	validate_config,
)
from flow_control.controller import RunController, RunOutcome
from flow_control.db import Database
from flow_control.errors import FlowControlError
from flow_control.flow_store import FlowStore
from flow_control.recovery import FileSessionStore, StartupRecovery, resolve_state_db_path
from flow_control.worktree import WorktreeManager

logger = logging.getLogger(__name__)

CONFIG_TEMPLATE = """\
[project]
root = "."

[engine]
concurrency_limit = 2

[lock]
stale_seconds = 30
heartbeat_seconds = 5

[agent]
timeout_sec = 0
env_denylist = []
max_output_mb = 50

# Local overrides for one agent command:
# [agents.my-agent]
# args = ["--fast"]
# timeout_sec = 600
"""


def build_parser() -> argparse.ArgumentParser:
	parser = argparse.ArgumentParser(
		prog="fc",
		description="flow-control - run agent pipelines in isolated git worktrees",
	)
	parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
	sub = parser.add_subparsers(dest="command")

	def add(name: str, help_text: str) -> argparse.ArgumentParser:
		p = sub.add_parser(name, help=help_text)
		p.add_argument("--config", default=DEFAULT_CONFIG_NAME, help="Config file path")
		return p

	add("init", "Write a starter config and flows directory")
	add("recover", "Reconcile worktrees and interrupt orphaned runs")
	add("flows", "List flow definitions")

	run = add("run", "Start a new run of a flow")
	run.add_argument("flow_id")
	run.add_argument("--base-branch", default=None, help="Branch the run's worktree starts from")

	resume = add("resume", "Resume a run, keeping completed nodes")
	resume.add_argument("run_id")

	rerun = add("rerun", "Re-run nodes and everything downstream of them")
	rerun.add_argument("run_id")
	rerun.add_argument("node_ids", nargs="+")

	runs = add("runs", "List runs")
	runs.add_argument("--flow", default=None, help="Only runs of this flow")

	nodes = add("nodes", "Show node states of a run")
	nodes.add_argument("run_id")

	worktrees = add("worktrees", "List worktrees")
	worktrees.add_argument("--all", action="store_true", help="Include records git no longer lists")

	merge = add("merge", "Merge a run's worktree branch into its base branch")
	merge.add_argument("worktree_id")

	remove = add("remove", "Remove a worktree")
	remove.add_argument("worktree_id")

	add("reconcile", "Reconcile stored worktrees with git")

	events = add("events", "Show the event log")
	events.add_argument("--run", default=None)
	events.add_argument("--node", default=None)
	events.add_argument("--type", default=None)
	events.add_argument("--limit", type=int, default=None)

	add("migrations", "Show state database schema status")
	add("validate-config", "Check the config for problems")
	return parser


def _load_config(args: argparse.Namespace) -> FlowControlConfig:
	"""The config file if present, defaults rooted at the cwd otherwise."""
	path = Path(args.config)
	if path.exists():
		return load_config(path)
	logger.debug("No config at %s, using defaults", path)
	return FlowControlConfig()


async def _open_db(config: FlowControlConfig) -> Database:
	path = config.project.db_path or await resolve_state_db_path(config.project.resolved_root)
	return Database(path)


def _with_db(
	args: argparse.Namespace,
	fn: Callable[[FlowControlConfig, Database], Awaitable[int]],
) -> int:
	config = _load_config(args)

	async def go() -> int:
		with await _open_db(config) as db:
			return await fn(config, db)

	return asyncio.run(go())


def _controller(config: FlowControlConfig, db: Database) -> RunController:
	return RunController(
		config,
		db,
		WorktreeManager(config.project.resolved_root, db),
		FlowStore(config.project.resolved_flows_dir),
		session_store=FileSessionStore(config.project.resolved_session_path),
	)


def _print_outcome(outcome: RunOutcome) -> None:
	print(f"Run {outcome.run.id}: {outcome.state}")
	print(f"  worktree: {outcome.worktree.path} ({outcome.worktree.branch})")
	for node_id, state in outcome.result.node_states.items():
		print(f"  [{state}] {node_id}")


def cmd_init(args: argparse.Namespace) -> int:
	"""Write a starter config and create the flows directory."""
	config_path = Path(args.config)
	if config_path.exists():
		print(f"Config already exists: {config_path}")
	else:
		config_path.write_text(CONFIG_TEMPLATE, encoding="utf-8")
		print(f"Wrote {config_path}")
	flows_dir = config_path.resolve().parent / STATE_DIR_NAME / "flows"
	flows_dir.mkdir(parents=True, exist_ok=True)
	print(f"Flows directory: {flows_dir}")
	return 0


def cmd_recover(args: argparse.Namespace) -> int:
	async def go(config: FlowControlConfig, db: Database) -> int:
		root = config.project.resolved_root
		recovery = StartupRecovery(
			root,
			db,
			FlowStore(config.project.resolved_flows_dir),
			WorktreeManager(root, db),
			session_store=FileSessionStore(config.project.resolved_session_path),
			lock_stale_seconds=config.lock.stale_seconds,
			lock_heartbeat_seconds=config.lock.heartbeat_seconds,
		)
		report = await recovery.recover()
		print(f"State database: {report.db_path}")
		print(f"Flows: {len(report.flows)}")
		wt = report.worktrees
		print(
			f"Worktrees: {len(wt.unchanged)} unchanged, {len(wt.missing)} missing, "
			f"{len(wt.discovered)} discovered, {len(wt.restored)} restored"
		)
		if report.interrupted_runs:
			print(f"Interrupted runs: {', '.join(report.interrupted_runs)}")
		if report.last_session and report.last_session.flow_id:
			print(f"Last flow: {report.last_session.flow_id}")
		return 0

	return _with_db(args, go)


def cmd_flows(args: argparse.Namespace) -> int:
	config = _load_config(args)
	results = FlowStore(config.project.resolved_flows_dir).load_all()
	if not results:
		print("No flows found.")
		return 0
	for loaded in results:
		flags = []
		if loaded.read_only:
			flags.append("read-only")
		if loaded.migrated:
			flags.append("migrated")
		if loaded.errors:
			flags.append(f"{len(loaded.errors)} error(s)")
		suffix = f" ({', '.join(flags)})" if flags else ""
		print(f"{loaded.flow.id}: {loaded.flow.name} [{len(loaded.flow.nodes)} nodes]{suffix}")
	return 0


def cmd_run(args: argparse.Namespace) -> int:
	async def go(config: FlowControlConfig, db: Database) -> int:
		outcome = await _controller(config, db).start_run(args.flow_id, args.base_branch)
		_print_outcome(outcome)
		return 0 if outcome.state == "completed" else 1

	return _with_db(args, go)


def cmd_resume(args: argparse.Namespace) -> int:
	async def go(config: FlowControlConfig, db: Database) -> int:
		outcome = await _controller(config, db).resume_run(args.run_id)
		_print_outcome(outcome)
		return 0 if outcome.state == "completed" else 1

	return _with_db(args, go)


def cmd_rerun(args: argparse.Namespace) -> int:
	async def go(config: FlowControlConfig, db: Database) -> int:
		outcome = await _controller(config, db).rerun_nodes(args.run_id, args.node_ids)
		_print_outcome(outcome)
		return 0 if outcome.state == "completed" else 1

	return _with_db(args, go)


def cmd_runs(args: argparse.Namespace) -> int:
	async def go(config: FlowControlConfig, db: Database) -> int:
		runs = db.list_runs(flow_id=args.flow)
		if not runs:
			print("No runs yet.")
			return 0
		for run in runs:
			print(f"[{run.state}] {run.id} flow={run.flow_id} updated={run.updated_at}")
		return 0

	return _with_db(args, go)


def cmd_nodes(args: argparse.Namespace) -> int:
	async def go(config: FlowControlConfig, db: Database) -> int:
		run = db.get_run(args.run_id)
		if run is None:
			print(f"Run not found: {args.run_id}")
			return 1
		print(f"Run {run.id} ({run.state}), flow {run.flow_id}")
		for node in db.list_node_states(run.id):
			error = (node.meta or {}).get("errorMessage")
			detail = f" - {error}" if error else ""
			print(f"  [{node.state}] {node.node_id}{detail}")
		return 0

	return _with_db(args, go)


def cmd_worktrees(args: argparse.Namespace) -> int:
	async def go(config: FlowControlConfig, db: Database) -> int:
		if args.all:
			records = db.list_worktrees()
		else:
			records = await WorktreeManager(config.project.resolved_root, db).list_worktrees()
		if not records:
			print("No worktrees.")
			return 0
		for record in records:
			run = f" run={record.run_id}" if record.run_id else ""
			print(f"[{record.status}] {record.id} {record.branch} {record.path}{run}")
		return 0

	return _with_db(args, go)


def cmd_merge(args: argparse.Namespace) -> int:
	async def go(config: FlowControlConfig, db: Database) -> int:
		with db.hold_lock(config.lock.stale_seconds, config.lock.heartbeat_seconds):
			result = await WorktreeManager(config.project.resolved_root, db).merge(args.worktree_id)
		print(f"Merged {result.branch} into {result.base_branch}")
		return 0

	return _with_db(args, go)


def cmd_remove(args: argparse.Namespace) -> int:
	async def go(config: FlowControlConfig, db: Database) -> int:
		with db.hold_lock(config.lock.stale_seconds, config.lock.heartbeat_seconds):
			await WorktreeManager(config.project.resolved_root, db).remove(args.worktree_id)
		print(f"Removed worktree {args.worktree_id}")
		return 0

	return _with_db(args, go)


def cmd_reconcile(args: argparse.Namespace) -> int:
	async def go(config: FlowControlConfig, db: Database) -> int:
		with db.hold_lock(config.lock.stale_seconds, config.lock.heartbeat_seconds):
			result = await WorktreeManager(config.project.resolved_root, db).reconcile_with_db()
		print(f"Missing: {', '.join(result.missing) or '-'}")
		print(f"Discovered: {', '.join(result.discovered) or '-'}")
		print(f"Restored: {', '.join(result.restored) or '-'}")
		print(f"Unchanged: {len(result.unchanged)}")
		return 0

	return _with_db(args, go)


def cmd_events(args: argparse.Namespace) -> int:
	async def go(config: FlowControlConfig, db: Database) -> int:
		events = db.list_events(run_id=args.run, node_id=args.node, event_type=args.type, limit=args.limit)
		if not events:
			print("No events.")
			return 0
		for event in events:
			scope = "/".join(p for p in (event.run_id, event.node_id) if p)
			payload: Any = json.dumps(event.payload) if event.payload is not None else ""
			print(f"{event.id} {event.created_at} {event.type} {scope} {payload}".rstrip())
		return 0

	return _with_db(args, go)


def cmd_migrations(args: argparse.Namespace) -> int:
	async def go(config: FlowControlConfig, db: Database) -> int:
		status = db.migration_status()
		print(f"Schema version: {status.schema_version}")
		print(f"Applied this run: {', '.join(str(v) for v in status.applied) or 'none'}")
		return 0

	return _with_db(args, go)


def cmd_validate_config(args: argparse.Namespace) -> int:
	"""Validate the config file and report issues."""
	config = load_config(args.config)
	issues = validate_config(config)
	if not issues:
		print("Config OK.")
		return 0
	has_errors = False
	for level, message in issues:
		print(f"[{level.upper()}] {message}")
		if level == "error":
			has_errors = True
	return 1 if has_errors else 0


COMMANDS = {
	"init": cmd_init,
	"recover": cmd_recover,
	"flows": cmd_flows,
	"run": cmd_run,
	"resume": cmd_resume,
	"rerun": cmd_rerun,
	"runs": cmd_runs,
	"nodes": cmd_nodes,
	"worktrees": cmd_worktrees,
	"merge": cmd_merge,
	"remove": cmd_remove,
	"reconcile": cmd_reconcile,
	"events": cmd_events,
	"migrations": cmd_migrations,
	"validate-config": cmd_validate_config,
}


def main(argv: list[str] | None = None) -> int:
	parser = build_parser()
	args = parser.parse_args(argv)
	logging.basicConfig(
		level=logging.DEBUG if args.verbose else logging.INFO,
		format="%(asctime)s %(levelname)s %(name)s: %(message)s",
		datefmt="%H:%M:%S",
		force=True,
	)

	if args.command is None:
		parser.print_help()
		return 0

	handler = COMMANDS.get(args.command)
	if handler is None:
		print(f"Unknown command: {args.command}")
		return 1

	try:
		return handler(args)
	except FlowControlError as exc:
		print(f"Error [{exc.code}]: {exc.message}")
		return 1
	except (FileNotFoundError, tomllib.TOMLDecodeError) as exc:
		print(f"Error: {exc}")
		return 1
	except KeyboardInterrupt:
		print("Interrupted.")
		return 130


if __name__ == "__main__":
	sys.exit(main())
