"""
Test suite for structured logging
"""

import io
import json
import logging

from lease_ledger.logging_config import JSONFormatter, setup_logging, log_action


class TestStructuredLogging:

    def setup_method(self):
        self.logger = setup_logging("DEBUG", logger_name="lease_ledger.test_logging")
        self.stream = io.StringIO()
        self.logger.handlers[0].setStream(self.stream)

    def entries(self):
        return [json.loads(line) for line in self.stream.getvalue().splitlines()]

    def test_log_action_fields(self):
        log_action(self.logger, "info", "Contract CTR-202501-0001 activated",
                   company_id="acme", action="activate_contract", resource="contract:c-1",
                   extra={"property_id": "prop-1"})

        entry = self.entries()[0]
        assert entry["level"] == "INFO"
        assert entry["message"] == "Contract CTR-202501-0001 activated"
        assert entry["company_id"] == "acme"
        assert entry["action"] == "activate_contract"
        assert entry["resource"] == "contract:c-1"
        assert entry["extra"] == {"property_id": "prop-1"}
        assert "correlation_id" not in entry

    def test_level_filtering(self):
        self.logger.setLevel(logging.WARNING)
        log_action(self.logger, "info", "Skipped")
        assert self.stream.getvalue() == ""

    def test_exception_is_formatted(self):
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            self.logger.error("Handler failed", exc_info=True)

        entry = self.entries()[0]
        assert "RuntimeError: boom" in entry["exception"]

    def test_text_format(self):
        logger = setup_logging("INFO", logger_name="lease_ledger.test_text", log_format="text")
        assert not isinstance(logger.handlers[0].formatter, JSONFormatter)
