"""Tests for secret redaction utilities."""

from agentvault.utils.redaction import redact_for_logging, sanitize_error_message, scrub_values

REDACTED = "***REDACTED***"


class TestRedactForLogging:
    def test_sensitive_keys_redacted(self):
        result = redact_for_logging({"apiKey": "k", "clientSecret": "s", "name": "Main"})
        assert result == {"apiKey": REDACTED, "clientSecret": REDACTED, "name": "Main"}

    def test_container_keys_fully_redacted(self):
        result = redact_for_logging({"fields": {"region": "us-east-1"}, "headers": ["a"]})
        assert result == {"fields": REDACTED, "headers": REDACTED}

    def test_nested_and_lists(self):
        obj = {"outer": {"token": "t", "ok": 1}, "items": [{"password": "p"}, "plain"]}
        assert redact_for_logging(obj) == {
            "outer": {"token": REDACTED, "ok": 1},
            "items": [{"password": REDACTED}, "plain"],
        }

    def test_input_not_mutated(self):
        original = {"token": "t"}
        redact_for_logging(original)
        assert original == {"token": "t"}

    def test_custom_patterns(self):
        assert redact_for_logging({"pin": "1234"}, frozenset({"pin"})) == {"pin": REDACTED}


class TestSanitizeErrorMessage:
    def test_none_passes_through(self):
        assert sanitize_error_message(None) is None

    def test_bearer_header(self):
        msg = sanitize_error_message("failed with Authorization: Bearer abc.def")
        assert "abc.def" not in msg

    def test_key_value_pairs(self):
        msg = sanitize_error_message('api_key=sk-123 and "client_secret": "xyz"')
        assert "sk-123" not in msg
        assert "xyz" not in msg

    def test_truncation(self):
        msg = sanitize_error_message("x" * 100, max_length=20)
        assert len(msg) == 20
        assert msg.endswith("...")


class TestScrubValues:
    def test_literal_values_removed(self):
        assert scrub_values("bad key sk-or-abcdef", ["sk-or-abcdef"]) == f"bad key {REDACTED}"

    def test_short_and_non_string_values_ignored(self):
        assert scrub_values("us-east-1 region 42", ["us", 42]) == "us-east-1 region 42"

    def test_longest_value_first(self):
        """Overlapping secrets leave no partial fragment behind."""
        assert scrub_values("abcdefghij", ["abcdef", "abcdefghij"]) == REDACTED
