"""Tests for log_utils — sanitizing untrusted feed values in log output."""

import logging

from log_utils import (
    MAX_ARG_LENGTH,
    _sanitize_value,
    _safe_record_factory,
    configure_logging,
    install_safe_logging,
)


class TestSanitizeValue:
    def test_escapes_newlines(self):
        assert _sanitize_value("line1\nline2") == "line1\\nline2"

    def test_escapes_crlf(self):
        assert _sanitize_value("line1\r\nline2") == "line1\\r\\nline2"

    def test_passes_non_strings(self):
        assert _sanitize_value(42) == 42
        assert _sanitize_value(None) is None

    def test_clips_long_strings(self):
        value = "x" * (MAX_ARG_LENGTH + 50)
        result = _sanitize_value(value)
        assert result.startswith("x" * MAX_ARG_LENGTH)
        assert result.endswith("...(50 more chars)")

    def test_string_at_limit_unchanged(self):
        value = "y" * MAX_ARG_LENGTH
        assert _sanitize_value(value) == value


class TestSafeRecordFactory:
    """Test the factory function directly."""

    def _make_record(self, msg, args):
        return _safe_record_factory(
            "test", logging.INFO, __file__, 0, msg, args, None,
        )

    def test_sanitizes_display_name(self):
        record = self._make_record("[EPG-JOB] Channel %s imported", ("Evil\nName",))
        assert record.getMessage() == "[EPG-JOB] Channel Evil\\nName imported"

    def test_sanitizes_dict_args(self):
        record = self._make_record("url=%(url)s", ({"url": "http://x\r\ny"},))
        assert "\r\n" not in record.getMessage()

    def test_no_args_unchanged(self):
        record = self._make_record("Simple message", None)
        assert record.getMessage() == "Simple message"

    def test_non_string_args_passed_through(self):
        record = self._make_record("Fetched %d bytes in %.1fms", (1024, 3.14))
        assert record.getMessage() == "Fetched 1024 bytes in 3.1ms"


class TestInstallSafeLogging:
    def setup_method(self):
        self._original = logging.getLogRecordFactory()

    def teardown_method(self):
        logging.setLogRecordFactory(self._original)

    def test_installs_factory(self):
        install_safe_logging()
        assert logging.getLogRecordFactory() is _safe_record_factory

    def test_configure_logging_installs_factory(self):
        configure_logging("DEBUG")
        assert logging.getLogRecordFactory() is _safe_record_factory

    def test_logger_uses_factory(self):
        install_safe_logging()
        test_logger = logging.getLogger("test.install")
        record = test_logger.makeRecord(
            "test", logging.INFO, __file__, 0,
            "Preview: %s", ("<html>\n<body>",), None,
        )
        assert record.getMessage() == "Preview: <html>\\n<body>"
