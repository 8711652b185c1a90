import gzip
import io
import logging
import os
from unittest.mock import patch

import pytest

from core.logging_setup import (
    LOG_FILE_NAME,
    QUIET_LOGGERS,
    CompressedRotatingFileHandler,
    SafeStreamHandler,
    setup_logging,
)


@pytest.fixture(autouse=True)
def restore_root_logger():
    root = logging.getLogger()
    saved_handlers, saved_level = root.handlers[:], root.level
    yield
    for handler in root.handlers[:]:
        if handler not in saved_handlers:
            handler.close()
            root.removeHandler(handler)
    root.setLevel(saved_level)


class TestCompressedRotatingFileHandler:
    """Test suite for CompressedRotatingFileHandler."""

    def test_rotation_filename(self, tmp_path):
        handler = CompressedRotatingFileHandler(str(tmp_path / "bot.log"), maxBytes=1024, backupCount=3)
        try:
            assert handler.rotation_filename("bot.log.1") == "bot.log.1.gz"
        finally:
            handler.close()

    def test_rotate_compresses_file(self, tmp_path):
        """rotate() gzips the source into dest and removes the source."""
        source = tmp_path / "source.log"
        dest = tmp_path / "dest.log.gz"
        content = b"heartbeat sent\nreward claimed\n"
        source.write_bytes(content)

        handler = CompressedRotatingFileHandler(str(tmp_path / "bot.log"), maxBytes=1024, backupCount=3)
        try:
            handler.rotate(str(source), str(dest))
        finally:
            handler.close()

        assert not source.exists()
        with gzip.open(dest, "rb") as f:
            assert f.read() == content


class AsciiStream(io.StringIO):
    encoding = "ascii"

    def write(self, s):
        s.encode("ascii")
        return super().write(s)


class TestSafeStreamHandler:
    def test_unencodable_characters_replaced(self):
        stream = AsciiStream()
        handler = SafeStreamHandler(stream)
        handler.setFormatter(logging.Formatter("%(message)s"))
        record = logging.LogRecord("t", logging.INFO, __file__, 1, "💓 Heartbeat sent", None, None)

        handler.emit(record)

        assert stream.getvalue() == "? Heartbeat sent\n"


class TestSetupLogging:
    """Test suite for setup_logging function."""

    def test_default_level_is_info(self, tmp_path):
        with patch("logging.basicConfig") as mock_basic_config:
            setup_logging(log_dir=str(tmp_path))
        assert mock_basic_config.call_args.kwargs["level"] == logging.INFO

    def test_custom_level(self, tmp_path):
        with patch("logging.basicConfig") as mock_basic_config:
            setup_logging("DEBUG", log_dir=str(tmp_path))
        assert mock_basic_config.call_args.kwargs["level"] == logging.DEBUG

    def test_invalid_level_defaults_to_info(self, tmp_path):
        with patch("logging.basicConfig") as mock_basic_config:
            setup_logging("INVALID_LEVEL", log_dir=str(tmp_path))
        assert mock_basic_config.call_args.kwargs["level"] == logging.INFO

    def test_console_and_file_handlers(self, tmp_path):
        with patch("logging.basicConfig") as mock_basic_config:
            setup_logging(log_dir=str(tmp_path / "logs"))
        handlers = mock_basic_config.call_args.kwargs["handlers"]
        try:
            assert len(handlers) == 2
            assert isinstance(handlers[0], SafeStreamHandler)
            assert isinstance(handlers[1], CompressedRotatingFileHandler)
            assert os.path.isdir(tmp_path / "logs")
            assert handlers[1].baseFilename.endswith(LOG_FILE_NAME)
        finally:
            for handler in handlers:
                handler.close()

    def test_no_file_handler_without_log_dir(self):
        with patch("logging.basicConfig") as mock_basic_config:
            setup_logging(log_dir=None)
        assert len(mock_basic_config.call_args.kwargs["handlers"]) == 1

    def test_format(self, tmp_path):
        with patch("logging.basicConfig") as mock_basic_config:
            setup_logging(log_dir=str(tmp_path))
        format_str = mock_basic_config.call_args.kwargs["format"]
        for field in ("%(asctime)s", "%(levelname)s", "%(name)s", "%(message)s"):
            assert field in format_str
        for handler in mock_basic_config.call_args.kwargs["handlers"]:
            handler.close()

    def test_quiets_third_party_loggers(self, tmp_path):
        with patch("logging.basicConfig"):
            setup_logging("DEBUG", log_dir=None)
        for name in QUIET_LOGGERS:
            assert logging.getLogger(name).level == logging.WARNING
