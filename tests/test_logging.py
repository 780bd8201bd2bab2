"""Tests for logging configuration, formatters and context propagation."""

import importlib
import json
import logging
import sys
from datetime import datetime, timezone

import pytest

from jobalerts.logging import ComponentLoggerAdapter, get_logger
from jobalerts.logging.config import (
    ContextualFilter,
    JSONFormatter,
    KeyValueFormatter,
    configure_logging,
)
from jobalerts.logging.context import (
    clear_log_context,
    get_log_context,
    log_context,
    pop_log_context,
    push_log_context,
)


@pytest.fixture
def logger():
    test_logger = logging.getLogger("test_logger")
    test_logger.setLevel(logging.DEBUG)
    test_logger.handlers.clear()
    yield test_logger
    test_logger.handlers.clear()


@pytest.fixture
def restore_root():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield root
    root.handlers[:] = handlers
    root.setLevel(level)


def make_record(logger, message="Test message", level=logging.INFO, **extra):
    record = logger.makeRecord("test", level, "test.py", 1, message, (), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestJSONFormatter:
    def test_mandatory_fields(self, logger):
        output = JSONFormatter().format(make_record(logger))

        log_obj = json.loads(output)
        assert log_obj["level"] == "INFO"
        assert log_obj["logger"] == "test"
        assert log_obj["message"] == "Test message"
        assert log_obj["timestamp"].endswith("Z")

    def test_extra_fields(self, logger):
        record = make_record(
            logger,
            event="queue.job.completed",
            queue_job_id=42,
            scheduled_for=datetime(2025, 1, 6, 8, 0, tzinfo=timezone.utc),
            job_ids=[1, 2],
            opaque=object(),
        )

        log_obj = json.loads(JSONFormatter().format(record))

        assert log_obj["event"] == "queue.job.completed"
        assert log_obj["queue_job_id"] == 42
        assert log_obj["scheduled_for"] == "2025-01-06T08:00:00+00:00"
        assert log_obj["job_ids"] == [1, 2]
        assert log_obj["opaque"].startswith("<object object")

    def test_exception_info(self, logger):
        try:
            raise ValueError("broken payload")
        except ValueError:
            record = logger.makeRecord("test", logging.ERROR, "test.py", 1, "failed", (), sys.exc_info())

        log_obj = json.loads(JSONFormatter().format(record))

        assert "ValueError: broken payload" in log_obj["exc_info"]


class TestKeyValueFormatter:
    def test_extras_are_sorted_and_quoted(self, logger):
        formatter = KeyValueFormatter("[%(levelname)s] %(message)s")
        record = make_record(
            logger,
            queue="alert-matching",
            error="disk full",
            retry=True,
            alert_id=None,
            service="job-alerts",
        )

        output = formatter.format(record)

        assert output == '[INFO] Test message alert_id=null error="disk full" queue=alert-matching retry=true'

    def test_no_extras(self, logger):
        formatter = KeyValueFormatter("%(message)s")

        assert formatter.format(make_record(logger)) == "Test message"


class TestContextualFilter:
    def test_adds_service_and_context(self, logger):
        record = make_record(logger)

        with log_context(run_id="abc", frequency="daily"):
            ContextualFilter(environment="staging").filter(record)

        assert record.service == "job-alerts"
        assert record.environment == "staging"
        assert record.run_id == "abc"
        assert record.frequency == "daily"

    def test_explicit_extra_wins_over_context(self, logger):
        record = make_record(logger, queue="notifications")

        with log_context(queue="alert-matching"):
            ContextualFilter().filter(record)

        assert record.queue == "notifications"


class TestLogContext:
    def test_nested_contexts(self):
        with log_context(run_id="r1"):
            with log_context(alert_id=5):
                assert get_log_context() == {"run_id": "r1", "alert_id": 5}
            assert get_log_context() == {"run_id": "r1"}
        assert get_log_context() == {}

    def test_push_and_pop(self):
        token = push_log_context(queue="job-index")
        assert get_log_context()["queue"] == "job-index"

        pop_log_context(token)
        assert "queue" not in get_log_context()

    def test_context_restored_after_exception(self):
        with pytest.raises(RuntimeError):
            with log_context(alert_id=9):
                raise RuntimeError("boom")

        assert get_log_context() == {}

    def test_clear(self):
        push_log_context(a=1)
        clear_log_context()

        assert get_log_context() == {}


class TestGetLogger:
    def test_component_adapter_merges_extra(self, caplog):
        log = get_logger("jobalerts.test", component="queue")
        assert isinstance(log, ComponentLoggerAdapter)

        with caplog.at_level(logging.INFO, logger="jobalerts.test"):
            log.info("hello", extra={"event": "test.event"})

        record = caplog.records[-1]
        assert record.component == "queue"
        assert record.event == "test.event"

    def test_without_component(self):
        assert isinstance(get_logger("jobalerts.plain"), logging.Logger)


class TestConfigureLogging:
    def test_json_output(self, restore_root, capsys):
        configure_logging(level="DEBUG", format_type="json", environment="test")

        get_logger("jobalerts.smoke", component="smoke").info("smoke", extra={"event": "smoke.ok"})

        lines = [json.loads(line) for line in capsys.readouterr().out.strip().splitlines()]
        smoke = [line for line in lines if line["message"] == "smoke"][0]
        assert smoke["component"] == "smoke"
        assert smoke["environment"] == "test"
        assert smoke["event"] == "smoke.ok"

    def test_quiets_worker_loggers(self, restore_root):
        configure_logging(level="INFO")

        assert logging.getLogger("celery.app.trace").level == logging.WARNING
        assert logging.getLogger("celery.worker.strategy").level == logging.WARNING
        assert logging.getLogger().level == logging.INFO

    def test_invalid_level(self, restore_root):
        with pytest.raises(ValueError, match="Invalid log level"):
            configure_logging(level="LOUD")

    def test_invalid_format(self, restore_root):
        with pytest.raises(ValueError, match="Invalid log format"):
            configure_logging(format_type="xml")


class TestPackageExports:
    def test_context_helpers_reexported(self):
        import jobalerts.logging as package
        from jobalerts.logging import context

        assert package.log_context is context.log_context
        assert package.push_log_context is context.push_log_context
        assert package.pop_log_context is context.pop_log_context
        assert set(package.__all__) >= {"get_logger", "log_context", "clear_log_context"}

    def test_consumers_import_cleanly(self):
        for module in ("jobalerts.matching.orchestrator", "jobalerts.queue.runtime", "jobalerts.main"):
            assert importlib.import_module(module) is not None
