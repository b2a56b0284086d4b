"""Unit tests for the structlog logging configuration and request middleware."""

import structlog

from seller_billing.logging_config import REDACTED, redact_secrets, setup_logging
from seller_billing.middleware import resolve_request_id


class TestSetupLogging:
    def test_setup_logging_runs_without_error_debug(self):
        setup_logging(debug=True)
        logger = structlog.get_logger("test")
        # Should not raise
        logger.info("test_event", key="value")

    def test_setup_logging_runs_without_error_production(self):
        setup_logging(debug=False)
        logger = structlog.get_logger("test")
        # Should not raise
        logger.info("test_event", key="value")


class TestRedactSecrets:
    def test_secret_keys_are_masked(self):
        event = redact_secrets(
            None,
            "info",
            {
                "event": "stripe_configured",
                "webhook_secret": "whsec_123",
                "Authorization": "Bearer sk_live_123",
                "seller_id": "seller-1",
            },
        )

        assert event["webhook_secret"] == REDACTED
        assert event["Authorization"] == REDACTED
        assert event["seller_id"] == "seller-1"
        assert event["event"] == "stripe_configured"


class TestStructlogContextBinding:
    def test_context_binding_works(self):
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id="test-123", seller_id="seller-1")

        bound = structlog.contextvars.get_contextvars()
        assert bound["request_id"] == "test-123"
        assert bound["seller_id"] == "seller-1"

        structlog.contextvars.clear_contextvars()
        assert structlog.contextvars.get_contextvars() == {}


class TestResolveRequestId:
    def test_valid_incoming_id_is_kept(self):
        assert resolve_request_id("req-abc.123") == "req-abc.123"

    def test_invalid_incoming_id_is_replaced(self):
        generated = resolve_request_id("bad id\nwith newline")

        assert generated != "bad id\nwith newline"
        assert len(generated) == 36

    def test_missing_id_is_generated(self):
        assert len(resolve_request_id(None)) == 36
