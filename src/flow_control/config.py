"""TOML configuration loader for flow-control."""

from __future__ import annotations

import os
import re
import shutil
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from flow_control.errors import ConfigError
from flow_control.models import AgentConfig, Flow, ResolvedAgentConfig

DEFAULT_CONFIG_NAME = "flow-control.toml"
STATE_DIR_NAME = ".flow-control"


@dataclass
class ProjectConfig:
	"""Where the project and its state live."""

	root: str = "."
	db_path: str = ""  # empty: <git-common-dir>/flow-control/state.db
	flows_dir: str = ""  # empty: <root>/.flow-control/flows
	session_path: str = ""  # empty: <root>/.flow-control/session.json

	@property
	def resolved_root(self) -> Path:
		return Path(os.path.expanduser(self.root)).resolve()

	@property
	def resolved_flows_dir(self) -> Path:
		if self.flows_dir:
			return Path(os.path.expanduser(self.flows_dir))
		return self.resolved_root / STATE_DIR_NAME / "flows"

	@property
	def resolved_session_path(self) -> Path:
		if self.session_path:
			return Path(os.path.expanduser(self.session_path))
		return self.resolved_root / STATE_DIR_NAME / "session.json"


@dataclass
class EngineConfig:
	concurrency_limit: int = 2


@dataclass
class LockConfig:
	"""State database writer lock timing."""

	stale_seconds: float = 30.0
	heartbeat_seconds: float = 5.0


@dataclass
class AgentDefaults:
	"""Defaults applied to every agent unless the node sets its own."""

	timeout_sec: float = 0  # 0 = no timeout
	env_denylist: list[str] = field(default_factory=list)
	max_output_mb: int = 50
	kill_grace_seconds: float = 5.0
	repository_url: str = ""


@dataclass
class FlowOverride:
	concurrency_limit: int | None = None
	timeout_sec: float | None = None


@dataclass
class AgentOverride:
	"""Local overrides for one agent command, keyed by the command name."""

	args: list[str] | None = None
	adapter_command: str | None = None
	env_denylist: list[str] = field(default_factory=list)
	timeout_sec: float | None = None


@dataclass
class SecurityConfig:
	redact_patterns: list[str] = field(default_factory=list)


@dataclass
class FlowControlConfig:
	"""Top-level flow-control configuration."""

	project: ProjectConfig = field(default_factory=ProjectConfig)
	engine: EngineConfig = field(default_factory=EngineConfig)
	lock: LockConfig = field(default_factory=LockConfig)
	agent: AgentDefaults = field(default_factory=AgentDefaults)
	flows: dict[str, FlowOverride] = field(default_factory=dict)
	agents: dict[str, AgentOverride] = field(default_factory=dict)
	security: SecurityConfig = field(default_factory=SecurityConfig)


def _build_project(data: dict[str, Any], base_dir: Path | None) -> ProjectConfig:
	pc = ProjectConfig()
	for key in ("root", "db_path", "flows_dir", "session_path"):
		if key in data:
			setattr(pc, key, str(data[key]))
	# Relative roots are relative to the config file, not the cwd.
	if base_dir is not None and not Path(os.path.expanduser(pc.root)).is_absolute():
		pc.root = str(base_dir / pc.root)
	return pc


def _build_engine(data: dict[str, Any]) -> EngineConfig:
	ec = EngineConfig()
	if "concurrency_limit" in data:
		ec.concurrency_limit = int(data["concurrency_limit"])
	return ec


def _build_lock(data: dict[str, Any]) -> LockConfig:
	lc = LockConfig()
	if "stale_seconds" in data:
		lc.stale_seconds = float(data["stale_seconds"])
	if "heartbeat_seconds" in data:
		lc.heartbeat_seconds = float(data["heartbeat_seconds"])
	return lc


def _build_agent_defaults(data: dict[str, Any]) -> AgentDefaults:
	ad = AgentDefaults()
	if "timeout_sec" in data:
		ad.timeout_sec = float(data["timeout_sec"])
	if "env_denylist" in data:
		ad.env_denylist = [str(v) for v in data["env_denylist"]]
	if "max_output_mb" in data:
		ad.max_output_mb = int(data["max_output_mb"])
	if "kill_grace_seconds" in data:
		ad.kill_grace_seconds = float(data["kill_grace_seconds"])
	if "repository_url" in data:
		ad.repository_url = str(data["repository_url"])
	return ad


def _build_flow_overrides(data: dict[str, Any]) -> dict[str, FlowOverride]:
	overrides: dict[str, FlowOverride] = {}
	for flow_id, raw in data.items():
		fo = FlowOverride()
		if "concurrency_limit" in raw:
			fo.concurrency_limit = int(raw["concurrency_limit"])
		if "timeout_sec" in raw:
			fo.timeout_sec = float(raw["timeout_sec"])
		overrides[str(flow_id)] = fo
	return overrides


def _build_agent_overrides(data: dict[str, Any]) -> dict[str, AgentOverride]:
	overrides: dict[str, AgentOverride] = {}
	for command, raw in data.items():
		ao = AgentOverride()
		if "args" in raw:
			ao.args = [str(v) for v in raw["args"]]
		if "adapter_command" in raw:
			ao.adapter_command = str(raw["adapter_command"])
		if "env_denylist" in raw:
			ao.env_denylist = [str(v) for v in raw["env_denylist"]]
		if "timeout_sec" in raw:
			ao.timeout_sec = float(raw["timeout_sec"])
		overrides[str(command)] = ao
	return overrides


def _build_security(data: dict[str, Any]) -> SecurityConfig:
	sc = SecurityConfig()
	if "redact_patterns" in data:
		sc.redact_patterns = [str(v) for v in data["redact_patterns"]]
	return sc


def load_config(path: str | Path) -> FlowControlConfig:
	"""Load a flow-control.toml config file.

	Args:
		path: Path to the TOML config file.

	Returns:
		Parsed FlowControlConfig.

	Raises:
		FileNotFoundError: If config file doesn't exist.
		tomllib.TOMLDecodeError: If config is invalid TOML.
		ConfigError: If a value has the wrong type.
	"""
	config_path = Path(path)
	if not config_path.exists():
		raise FileNotFoundError(f"Config file not found: {config_path}")

	with open(config_path, "rb") as f:
		data = tomllib.load(f)

	try:
		return _build_config(data, config_path.resolve().parent)
	except (TypeError, ValueError, AttributeError) as exc:
		raise ConfigError(
			f"Invalid config {config_path}: {exc}",
			details={"path": str(config_path), "reason": str(exc)},
		) from exc


def _build_config(data: dict[str, Any], base_dir: Path) -> FlowControlConfig:
	fc = FlowControlConfig()
	fc.project = _build_project(data.get("project", {}), base_dir)
	if "engine" in data:
		fc.engine = _build_engine(data["engine"])
	if "lock" in data:
		fc.lock = _build_lock(data["lock"])
	if "agent" in data:
		fc.agent = _build_agent_defaults(data["agent"])
	if "flows" in data:
		fc.flows = _build_flow_overrides(data["flows"])
	if "agents" in data:
		fc.agents = _build_agent_overrides(data["agents"])
	if "security" in data:
		fc.security = _build_security(data["security"])
	return fc


def resolve_agent_config(agent: AgentConfig, config: FlowControlConfig, flow_id: str) -> ResolvedAgentConfig:
	"""Merge a node's agent declaration with configured defaults and overrides.

	``[agent]`` values fill in what the node leaves unset. ``[flows.<id>]`` and
	``[agents.<command>]`` are local overrides and win over the node, agent
	overrides last. Deny lists accumulate.
	"""
	resolved = ResolvedAgentConfig(
		command=agent.command,
		args=list(agent.args),
		adapter_command=agent.adapter_command,
		env_allowlist=list(agent.env_allowlist),
		env_denylist=[*config.agent.env_denylist, *agent.env_denylist],
		timeout_sec=agent.timeout_sec if agent.timeout_sec is not None else config.agent.timeout_sec,
	)
	flow_override = config.flows.get(flow_id)
	if flow_override is not None and flow_override.timeout_sec is not None:
		resolved.timeout_sec = flow_override.timeout_sec
	agent_override = config.agents.get(agent.command)
	if agent_override is not None:
		if agent_override.args is not None:
			resolved.args = list(agent_override.args)
		if agent_override.adapter_command is not None:
			resolved.adapter_command = agent_override.adapter_command
		resolved.env_denylist.extend(agent_override.env_denylist)
		if agent_override.timeout_sec is not None:
			resolved.timeout_sec = agent_override.timeout_sec
	return resolved


def resolve_concurrency_limit(config: FlowControlConfig, flow: Flow) -> int:
	"""Local flow override, then the flow's own meta, then the engine default."""
	flow_override = config.flows.get(flow.id)
	if flow_override is not None and flow_override.concurrency_limit is not None:
		return flow_override.concurrency_limit
	if flow.concurrency_limit is not None:
		return flow.concurrency_limit
	return config.engine.concurrency_limit


def validate_config(config: FlowControlConfig) -> list[tuple[str, str]]:
	"""Perform semantic validation of a loaded FlowControlConfig.

	Returns a list of (level, message) tuples where level is 'error' or 'warning'.
	"""
	issues: list[tuple[str, str]] = []

	root = config.project.resolved_root
	if not root.exists():
		issues.append(("error", f"project.root does not exist: {root}"))
	elif not (root / ".git").exists():
		issues.append(("error", f"project.root is not a git repository (no .git): {root}"))

	if config.engine.concurrency_limit < 1:
		issues.append(("warning", f"engine.concurrency_limit below 1 is treated as 1: {config.engine.concurrency_limit}"))
	for flow_id, fo in config.flows.items():
		if fo.concurrency_limit is not None and fo.concurrency_limit < 1:
			issues.append(("warning", f"flows.{flow_id}.concurrency_limit below 1 is treated as 1"))

	if config.lock.heartbeat_seconds <= 0:
		issues.append(("error", "lock.heartbeat_seconds must be positive"))
	if config.lock.heartbeat_seconds >= config.lock.stale_seconds:
		issues.append((
			"error",
			f"lock.heartbeat_seconds ({config.lock.heartbeat_seconds}) must be less than "
			f"lock.stale_seconds ({config.lock.stale_seconds})",
		))

	if config.agent.timeout_sec < 0:
		issues.append(("warning", f"agent.timeout_sec is negative: {config.agent.timeout_sec}"))

	for command, ao in config.agents.items():
		executable = ao.adapter_command or command
		if shutil.which(executable) is None:
			issues.append(("warning", f"agent command not found on PATH: {executable}"))

	for pattern in config.security.redact_patterns:
		try:
			re.compile(pattern)
		except re.error as exc:
			issues.append(("error", f"security.redact_patterns entry {pattern!r} is invalid: {exc}"))

	return issues
