"""Tests for credential redaction."""

from __future__ import annotations

import re

from flow_control.redaction import DEFAULT_REDACTOR, REDACTED, Redactor


class TestRedactText:
	def test_github_tokens(self) -> None:
		text = "push with ghp_AbC123xyz and github_pat_11AA_bb22 please"
		assert DEFAULT_REDACTOR.redact_text(text) == f"push with {REDACTED} and {REDACTED} please"

	def test_bearer_header_is_one_match(self) -> None:
		assert DEFAULT_REDACTOR.redact_text("Authorization: Bearer abc.def-ghi") == REDACTED

	def test_plain_authorization_header_case_insensitive(self) -> None:
		assert DEFAULT_REDACTOR.redact_text("authorization: token123 rest") == f"{REDACTED} rest"

	def test_clean_text_untouched(self) -> None:
		assert DEFAULT_REDACTOR.redact_text("nothing secret here") == "nothing secret here"

	def test_extra_patterns_apply_after_defaults(self) -> None:
		redactor = DEFAULT_REDACTOR.with_patterns([r"sk-[a-z0-9]+", re.compile("hunter2")])
		assert redactor.redact_text("sk-abc123 hunter2 ghp_x1") == f"{REDACTED} {REDACTED} {REDACTED}"
		assert len(DEFAULT_REDACTOR.patterns) == 4

	def test_custom_replacement(self) -> None:
		assert Redactor(replacement="***").redact_text("ghp_abc") == "***"


class TestRedactStructure:
	def test_nested_values(self) -> None:
		value = {
			"goal": "use ghp_secret1",
			"nested": {"list": ["Authorization: Bearer t0k", 3, None]},
			"count": 2,
		}
		assert DEFAULT_REDACTOR.redact(value) == {
			"goal": f"use {REDACTED}",
			"nested": {"list": [REDACTED, 3, None]},
			"count": 2,
		}

	def test_keys_are_not_redacted(self) -> None:
		assert DEFAULT_REDACTOR.redact({"ghp_key1": "v"}) == {"ghp_key1": "v"}

	def test_non_string_scalars_pass_through(self) -> None:
		assert DEFAULT_REDACTOR.redact(42) == 42
		assert DEFAULT_REDACTOR.redact(None) is None
