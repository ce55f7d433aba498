"""Tests for log_utils: log injection sanitizer and logging setup."""

import logging

from log_utils import _sanitize_value, _safe_record_factory, install_safe_logging, configure_logging


class TestSanitizeValue:
    def test_strips_newlines(self):
        assert _sanitize_value("line1\nline2") == "line1\\nline2"

    def test_strips_carriage_returns(self):
        assert _sanitize_value("line1\rline2") == "line1\\rline2"

    def test_strips_crlf(self):
        assert _sanitize_value("line1\r\nline2") == "line1\\r\\nline2"

    def test_passes_non_strings(self):
        assert _sanitize_value(42) == 42
        assert _sanitize_value(None) is None

    def test_clean_string_unchanged(self):
        assert _sanitize_value("Attack on Titan [Sub Indo]") == "Attack on Titan [Sub Indo]"


class TestSafeRecordFactory:
    """Test the factory function directly."""

    def _make_record(self, msg, args):
        return _safe_record_factory(
            "test", logging.INFO, __file__, 0, msg, args, None,
        )

    def test_sanitizes_tuple_args(self):
        record = self._make_record("Playlist %s has %d videos", ("Evil\nPlaylist", 5))
        assert record.getMessage() == "Playlist Evil\\nPlaylist has 5 videos"

    def test_sanitizes_dict_args(self):
        record = self._make_record("Playlist %(title)s", ({"title": "Bad\r\nTitle"},))
        assert record.getMessage() == "Playlist Bad\\r\\nTitle"

    def test_sanitizes_preformatted_message(self):
        """f-string messages carry the untrusted text in msg itself."""
        title = "Fake\n2024-01-01 ERROR forged line"
        record = self._make_record(f"[RECONCILE] Skipping irrelevant playlist: {title}", None)
        assert "\n" not in record.getMessage()
        assert "Fake\\n2024-01-01" in record.getMessage()

    def test_non_string_args_passed_through(self):
        record = self._make_record("Count: %d, Ratio: %.1f", (42, 3.14))
        assert record.getMessage() == "Count: 42, Ratio: 3.1"


class TestInstallSafeLogging:
    def setup_method(self):
        self._original = logging.getLogRecordFactory()

    def teardown_method(self):
        logging.setLogRecordFactory(self._original)

    def test_installs_factory(self):
        install_safe_logging()
        assert logging.getLogRecordFactory() is _safe_record_factory

    def test_logger_uses_factory(self):
        install_safe_logging()
        test_logger = logging.getLogger("test.install")
        record = test_logger.makeRecord(
            "test", logging.INFO, __file__, 0,
            "Playlist %s", ("Evil\nName",), None,
        )
        assert record.getMessage() == "Playlist Evil\\nName"

    def test_configure_logging_quiets_httpx(self):
        configure_logging("DEBUG")
        assert logging.getLogRecordFactory() is _safe_record_factory
        assert logging.getLogger("httpx").level == logging.WARNING
