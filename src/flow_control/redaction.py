"""Credential scrubbing for text that crosses the agent boundary."""

from __future__ import annotations

import re
from typing import Any, Iterable

REDACTED = "[REDACTED]"

# Order matters: the bearer form must win over the bare Authorization form.
DEFAULT_PATTERNS: tuple[re.Pattern[str], ...] = (
	re.compile(r"ghp_[A-Za-z0-9]+"),
	re.compile(r"github_pat_[A-Za-z0-9_]+"),
	re.compile(r"Authorization:\s*Bearer\s+[A-Za-z0-9._\-]+", re.IGNORECASE),
	re.compile(r"Authorization:\s*[A-Za-z0-9._\-]+", re.IGNORECASE),
)


class Redactor:
	"""Apply an ordered list of patterns, replacing every match with a marker."""

	def __init__(
		self,
		patterns: Iterable[re.Pattern[str] | str] = DEFAULT_PATTERNS,
		replacement: str = REDACTED,
	) -> None:
		self.patterns: list[re.Pattern[str]] = [
			re.compile(p) if isinstance(p, str) else p for p in patterns
		]
		self.replacement = replacement

	def with_patterns(self, extra: Iterable[re.Pattern[str] | str]) -> Redactor:
		"""Return a copy that also applies ``extra`` after the current patterns."""
		return Redactor([*self.patterns, *extra], self.replacement)

	def redact_text(self, text: str) -> str:
		for pattern in self.patterns:
			text = pattern.sub(self.replacement, text)
		return text

	def redact(self, value: Any) -> Any:
		"""Redact strings anywhere inside nested dicts and lists."""
		if isinstance(value, str):
			return self.redact_text(value)
		if isinstance(value, dict):
			return {k: self.redact(v) for k, v in value.items()}
		if isinstance(value, (list, tuple)):
			return [self.redact(v) for v in value]
		return value


DEFAULT_REDACTOR = Redactor()
