"""Run one node's agent as an external process speaking the stdio JSON protocol.

The agent gets a single JSON task line on stdin, does its work inside the run's
worktree, and may print a result block on stdout:

	===RESULT===
	{"summary": "..."}
	===END===

Everything read back from the agent is passed through the redactor before it
is returned.
"""

from __future__ import annotations

import asyncio
import contextlib
import fnmatch
import json
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Mapping

from flow_control.errors import AgentResultParseError, AgentTimeout
from flow_control.models import AgentResult, AgentTask
from flow_control.redaction import DEFAULT_REDACTOR, Redactor

logger = logging.getLogger(__name__)

RESULT_START = "===RESULT==="
RESULT_END = "===END==="

SAFE_ENV_KEYS = frozenset({"PATH", "HOME", "USER", "SHELL", "LANG", "TERM", "TMPDIR"})
SAFE_ENV_PREFIXES = ("LC_", "XDG_")
DEFAULT_ENV_DENYLIST = ("AWS_*", "GITHUB_TOKEN", "OPENAI_API_KEY")

_MB = 1024 * 1024


def _matches_any(key: str, patterns: list[str] | tuple[str, ...]) -> bool:
	return any(fnmatch.fnmatchcase(key, p) for p in patterns)


def build_agent_env(
	allowlist: list[str] | None = None,
	denylist: list[str] | None = None,
	environ: Mapping[str, str] | None = None,
) -> dict[str, str]:
	"""Build the environment an agent process may see.

	Safe system keys pass through, plus keys matching an ``allowlist`` glob.
	Anything matching the default or task ``denylist`` is dropped, even when
	it was allowed.
	"""
	source = os.environ if environ is None else environ
	allow = list(allowlist or [])
	deny = [*DEFAULT_ENV_DENYLIST, *(denylist or [])]
	env: dict[str, str] = {}
	for key, value in source.items():
		allowed = (
			key in SAFE_ENV_KEYS
			or key.startswith(SAFE_ENV_PREFIXES)
			or _matches_any(key, allow)
		)
		if allowed and not _matches_any(key, deny):
			env[key] = value
	return env


def build_task_payload(task: AgentTask) -> dict[str, Any]:
	"""The JSON object written to the agent's stdin, before redaction."""
	repo: dict[str, Any] = {
		"worktreePath": task.repo.worktree_path,
		"baseBranch": task.repo.base_branch,
		"branch": task.repo.branch,
		"defaultBranch": task.repo.default_branch,
	}
	if task.repo.repository_url is not None:
		repo["repositoryUrl"] = task.repo.repository_url

	context: dict[str, Any] = {
		"runId": task.context.run_id,
		"nodeId": task.context.node_id,
		"flowId": task.context.flow_id,
	}
	if task.context.previous_results is not None:
		previous: list[dict[str, Any]] = []
		for result in task.context.previous_results:
			item: dict[str, Any] = {"nodeId": result.node_id, "success": result.success}
			if result.summary is not None:
				item["summary"] = result.summary
			previous.append(item)
		context["previousResults"] = previous

	payload: dict[str, Any] = {"taskId": task.task_id, "goal": task.goal}
	if task.prompt_template is not None:
		payload["promptTemplate"] = task.prompt_template
	payload["artifacts"] = dict(task.artifacts)
	payload["repo"] = repo
	payload["context"] = context
	if task.constraints is not None:
		payload["constraints"] = task.constraints
	return payload


def extract_result_block(stdout: str) -> str | None:
	"""Return the stripped text between the result markers, if both are present."""
	start = stdout.find(RESULT_START)
	if start == -1:
		return None
	body_start = start + len(RESULT_START)
	end = stdout.find(RESULT_END, body_start)
	if end == -1:
		return None
	return stdout[body_start:end].strip()


def parse_result_block(stdout: str) -> Any:
	"""Parse the JSON result block, or return None when there is none.

	Raises:
		AgentResultParseError: The block is present but not valid JSON.
	"""
	text = extract_result_block(stdout)
	if not text:
		return None
	try:
		return json.loads(text)
	except json.JSONDecodeError as exc:
		raise AgentResultParseError(
			f"Agent result block is not valid JSON: {exc}",
			details={"reason": str(exc)},
		) from exc


# -- Process abstraction --


@dataclass
class SpawnOptions:
	command: str
	args: list[str] = field(default_factory=list)
	cwd: str = ""
	env: dict[str, str] = field(default_factory=dict)


class AgentProcess(ABC):
	"""A running agent process."""

	@abstractmethod
	async def write(self, data: str) -> None:
		"""Write text to the process's stdin."""

	@abstractmethod
	async def end(self) -> None:
		"""Close stdin."""

	@abstractmethod
	async def wait(self) -> int | None:
		"""Wait for exit and return the exit code."""

	@abstractmethod
	def get_stdout(self) -> str:
		"""All stdout captured so far."""

	@abstractmethod
	def get_stderr(self) -> str:
		"""All stderr captured so far."""

	@abstractmethod
	async def cancel(self) -> None:
		"""Stop the process."""


class AgentProcessSpawner(ABC):
	@abstractmethod
	async def spawn(self, options: SpawnOptions) -> AgentProcess:
		"""Start a process without a shell."""


class SubprocessAgentProcess(AgentProcess):
	"""AgentProcess backed by an asyncio subprocess with background output readers."""

	def __init__(
		self,
		proc: asyncio.subprocess.Process,
		max_output_bytes: int = 50 * _MB,
		kill_grace_seconds: float = 5.0,
	) -> None:
		self._proc = proc
		self._max_output_bytes = max_output_bytes
		self._kill_grace_seconds = kill_grace_seconds
		self._stdout = bytearray()
		self._stderr = bytearray()
		self._readers = [
			asyncio.create_task(self._drain(proc.stdout, self._stdout, "stdout")),
			asyncio.create_task(self._drain(proc.stderr, self._stderr, "stderr")),
		]

	@property
	def pid(self) -> int | None:
		return self._proc.pid

	async def _drain(self, stream: asyncio.StreamReader | None, buf: bytearray, name: str) -> None:
		if stream is None:
			return
		truncated = False
		while True:
			chunk = await stream.read(65536)
			if not chunk:
				return
			room = self._max_output_bytes - len(buf)
			if room > 0:
				buf.extend(chunk[:room])
			if len(chunk) > room and not truncated:
				truncated = True
				logger.warning(
					"Agent pid %s %s exceeded %dMB, truncating",
					self._proc.pid, name, self._max_output_bytes // _MB,
				)

	async def write(self, data: str) -> None:
		stdin = self._proc.stdin
		if stdin is None:
			return
		try:
			stdin.write(data.encode())
			await stdin.drain()
		except (BrokenPipeError, ConnectionResetError):
			logger.warning("Agent pid %s closed stdin before the task was written", self._proc.pid)

	async def end(self) -> None:
		stdin = self._proc.stdin
		if stdin is None or stdin.is_closing():
			return
		stdin.close()
		with contextlib.suppress(BrokenPipeError, ConnectionResetError):
			await stdin.wait_closed()

	async def wait(self) -> int | None:
		code = await self._proc.wait()
		await asyncio.gather(*self._readers)
		return code

	def get_stdout(self) -> str:
		return self._stdout.decode(errors="replace")

	def get_stderr(self) -> str:
		return self._stderr.decode(errors="replace")

	async def cancel(self) -> None:
		if self._proc.returncode is not None:
			return
		with contextlib.suppress(ProcessLookupError):
			self._proc.terminate()
		try:
			await asyncio.wait_for(self._proc.wait(), timeout=self._kill_grace_seconds)
		except asyncio.TimeoutError:
			logger.warning("Agent pid %s ignored SIGTERM, killing", self._proc.pid)
			with contextlib.suppress(ProcessLookupError):
				self._proc.kill()
			await self._proc.wait()


class SubprocessSpawner(AgentProcessSpawner):
	def __init__(self, max_output_mb: int = 50, kill_grace_seconds: float = 5.0) -> None:
		self._max_output_bytes = max_output_mb * _MB
		self._kill_grace_seconds = kill_grace_seconds

	async def spawn(self, options: SpawnOptions) -> AgentProcess:
		proc = await asyncio.create_subprocess_exec(
			options.command, *options.args,
			cwd=options.cwd or None,
			env=options.env,
			stdin=asyncio.subprocess.PIPE,
			stdout=asyncio.subprocess.PIPE,
			stderr=asyncio.subprocess.PIPE,
		)
		logger.debug("Spawned agent %s (pid %s) in %s", options.command, proc.pid, options.cwd)
		return SubprocessAgentProcess(
			proc,
			max_output_bytes=self._max_output_bytes,
			kill_grace_seconds=self._kill_grace_seconds,
		)


# -- Adapter --


class AgentAdapter:
	"""Execute agent tasks and track the processes currently running."""

	def __init__(
		self,
		spawner: AgentProcessSpawner | None = None,
		redactor: Redactor | None = None,
	) -> None:
		self.spawner = spawner or SubprocessSpawner()
		self.redactor = redactor or DEFAULT_REDACTOR
		self._running: dict[str, AgentProcess] = {}

	@property
	def running_task_ids(self) -> list[str]:
		return list(self._running)

	async def execute(self, task: AgentTask) -> AgentResult:
		"""Run the agent for ``task`` and collect its redacted output.

		Raises:
			AgentTimeout: The agent outlived ``task.agent.timeout_sec``.
			AgentResultParseError: The result block is not valid JSON.
		"""
		config = task.agent
		command = config.adapter_command or config.command
		env = build_agent_env(config.env_allowlist, config.env_denylist)
		payload = self.redactor.redact(build_task_payload(task))

		process = await self.spawner.spawn(SpawnOptions(
			command=command,
			args=list(config.args),
			cwd=task.repo.worktree_path,
			env=env,
		))
		self._running[task.task_id] = process
		logger.info("Agent started for task %s: %s", task.task_id, command)
		try:
			await process.write(json.dumps(payload) + "\n")
			await process.end()
			exit_code = await self._wait(process, task)
			stdout = process.get_stdout()
			stderr = process.get_stderr()
		finally:
			if self._running.get(task.task_id) is process:
				del self._running[task.task_id]

		result_block = parse_result_block(stdout)
		logger.info("Agent finished for task %s with exit code %s", task.task_id, exit_code)
		return AgentResult(
			success=exit_code == 0,
			exit_code=exit_code,
			stdout=self.redactor.redact_text(stdout),
			stderr=self.redactor.redact_text(stderr),
			result_block=self.redactor.redact(result_block),
		)

	async def _wait(self, process: AgentProcess, task: AgentTask) -> int | None:
		timeout = task.agent.timeout_sec
		if not timeout or timeout <= 0:
			return await process.wait()
		try:
			return await asyncio.wait_for(process.wait(), timeout=timeout)
		except asyncio.TimeoutError:
			logger.warning("Agent for task %s timed out after %ss, cancelling", task.task_id, timeout)
			await process.cancel()
			raise AgentTimeout(
				f"Agent for task {task.task_id} timed out after {timeout}s",
				details={"task_id": task.task_id, "timeout_sec": timeout},
			) from None

	async def cancel(self, task_id: str) -> bool:
		"""Cancel a running task. Unknown ids are ignored."""
		process = self._running.get(task_id)
		if process is None:
			return False
		logger.info("Cancelling agent for task %s", task_id)
		await process.cancel()
		return True
