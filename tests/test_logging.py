"""Tests for log redaction and correlation ids."""

from testhub.logging import _add_correlation_id, _redact_pii, set_correlation_id


class TestRedaction:
    def test_credentials_and_email_masked(self):
        event = _redact_pii(
            None,
            "info",
            {"event": "x", "email": "alice@example.com", "refresh_token": "eyJhbGciOi.abc.def"},
        )
        assert event["email"] == "al***om"
        assert event["refresh_token"].startswith("ey***")
        assert "alice" not in event["email"]

    def test_prefix_fields_pass_through(self):
        event = _redact_pii(None, "warning", {"event": "x", "token_prefix": "eyJhbGciOi"})
        assert event["token_prefix"] == "eyJhbGciOi"

    def test_non_string_values_untouched(self):
        event = _redact_pii(None, "info", {"event": "x", "token_id": 12})
        assert event["token_id"] == 12


class TestCorrelationId:
    def test_supplied_id_attached(self):
        set_correlation_id("req-42")
        assert _add_correlation_id(None, "info", {"event": "x"})["correlation_id"] == "req-42"

    def test_generated_when_missing(self):
        assert set_correlation_id(None)
