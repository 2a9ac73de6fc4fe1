"""
Tests for structured logging.
"""

import json
import logging

import pytest

from tilesparse.monitoring import (
    ConsoleFormatter,
    JSONFormatter,
    LogConfig,
    configure_logging,
    correlation_context,
    get_correlation_id,
    get_logger,
    log_context,
    log_stage,
)


def make_record(msg="hello", **extra):
    record = logging.LogRecord(
        name="tilesparse.test", level=logging.INFO, pathname=__file__,
        lineno=10, msg=msg, args=(), exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers = root.handlers[:]
    level = root.level
    yield
    for handler in root.handlers[:]:
        root.removeHandler(handler)
        if handler not in handlers:
            handler.close()
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)


class TestJSONFormatter:

    def test_basic_fields(self):
        entry = json.loads(JSONFormatter(LogConfig()).format(make_record()))
        assert entry["level"] == "INFO"
        assert entry["logger"] == "tilesparse.test"
        assert entry["message"] == "hello"
        assert "timestamp" in entry
        assert entry["caller"]["line"] == 10

    def test_extra_fields(self):
        entry = json.loads(JSONFormatter(LogConfig()).format(make_record(stage="pack", num_blocks=4)))
        assert entry["extra"] == {"stage": "pack", "num_blocks": 4}

    def test_correlation_and_context(self):
        with correlation_context("run-1"), log_context(rows=64):
            entry = json.loads(JSONFormatter(LogConfig()).format(make_record()))
        assert entry["correlation_id"] == "run-1"
        assert entry["context"] == {"rows": 64}

    def test_truncates_long_messages(self):
        config = LogConfig(max_message_length=5)
        entry = json.loads(JSONFormatter(config).format(make_record("x" * 20)))
        assert entry["message"] == "xxxxx...[TRUNCATED]"

    def test_optional_fields_disabled(self):
        config = LogConfig(include_timestamp=False, include_caller=False)
        entry = json.loads(JSONFormatter(config).format(make_record()))
        assert "timestamp" not in entry
        assert "caller" not in entry


class TestConsoleFormatter:

    def test_format(self):
        text = ConsoleFormatter(LogConfig(include_timestamp=False)).format(
            make_record(stage="multiply")
        )
        assert "[tilesparse.test]" in text
        assert "hello" in text
        assert "stage=multiply" in text

    def test_short_correlation_id(self):
        with correlation_context("abcdef0123456789"):
            text = ConsoleFormatter(LogConfig()).format(make_record())
        assert "[abcdef01]" in text


class TestContexts:

    def test_correlation_context_generates_id(self):
        with correlation_context() as ctx:
            assert get_correlation_id() == ctx.correlation_id
            assert len(ctx.correlation_id) == 36
        assert get_correlation_id() is None

    def test_nested_log_context(self):
        formatter = JSONFormatter(LogConfig())
        with log_context(a=1):
            with log_context(b=2):
                entry = json.loads(formatter.format(make_record()))
            outer = json.loads(formatter.format(make_record()))
        assert entry["context"] == {"a": 1, "b": 2}
        assert outer["context"] == {"a": 1}


class TestLogStage:

    def test_records_duration_and_context(self, caplog):
        logger = logging.getLogger("tilesparse.test.stage")
        with caplog.at_level(logging.INFO, logger="tilesparse.test.stage"):
            with log_stage(logger, "pack", rows=32) as timer:
                timer.context["num_blocks"] = 4

        record = caplog.records[-1]
        assert record.getMessage() == "Completed stage pack"
        assert record.stage == "pack"
        assert record.rows == 32
        assert record.num_blocks == 4
        assert record.duration_ms >= 0
        assert timer.duration_ms >= 0

    def test_failed_stage(self, caplog):
        logger = logging.getLogger("tilesparse.test.stage")
        with caplog.at_level(logging.INFO, logger="tilesparse.test.stage"):
            with pytest.raises(RuntimeError):
                with log_stage(logger, "multiply"):
                    raise RuntimeError("boom")

        record = caplog.records[-1]
        assert record.getMessage() == "Failed stage multiply"
        assert record.error_type == "RuntimeError"


class TestConfigureLogging:

    def test_configure_console(self, restore_root_logger):
        config = configure_logging(level="DEBUG", json_format=False)
        root = logging.getLogger()
        assert config.level == "DEBUG"
        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, ConsoleFormatter)

    def test_file_output_is_json(self, restore_root_logger, tmp_path):
        path = tmp_path / "pipeline.log"
        configure_logging(level="INFO", json_format=False, output_file=str(path))
        get_logger("tilesparse.test.file").info("written")
        for handler in logging.getLogger().handlers:
            handler.flush()

        entry = json.loads(path.read_text().strip().splitlines()[-1])
        assert entry["message"] == "written"

    def test_module_levels(self, restore_root_logger):
        configure_logging(level="INFO", module_levels={"tilesparse.test.quiet": "ERROR"})
        assert get_logger("tilesparse.test.quiet").level == logging.ERROR
        assert get_logger("tilesparse.test.loud").level == logging.INFO
        configure_logging(level="INFO")
