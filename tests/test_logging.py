"""Tests for structured logging output."""

import json
import logging
import sys

import pytest

from ossuary.backends.inmemory import InMemoryAdapter
from ossuary.core.errors import BackendRuntimeError
from ossuary.core.events import EVENT_IDLE
from ossuary.core.logging import JSONFormatter, configure_queue_logger, get_logger
from ossuary.core.queue import Queue


class LogCapture(logging.Handler):
    """Custom handler to capture log records for testing."""

    def __init__(self):
        super().__init__()
        self.records: list[logging.LogRecord] = []

    def emit(self, record: logging.LogRecord) -> None:
        self.records.append(record)


class ExplodingAdapter(InMemoryAdapter):
    name = "exploding"

    async def queue_exists(self, name: str) -> bool:
        raise TimeoutError("backend timed out")


@pytest.fixture
def log_capture(queue):
    """Capture records from the facade logger at DEBUG level.

    Depends on ``queue`` so the queue is built before the level is lowered.
    """
    logger = configure_queue_logger()
    handler = LogCapture()
    original_level = logger.level

    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG)

    yield handler

    logger.removeHandler(handler)
    logger.setLevel(original_level)


def make_record(**extra) -> logging.LogRecord:
    record = logging.LogRecord(
        name="ossuary.queue",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg="Sent message to %s",
        args=("jobs",),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_formatter_emits_base_fields():
    data = json.loads(JSONFormatter().format(make_record()))

    assert data["level"] == "INFO"
    assert data["message"] == "Sent message to jobs"
    assert data["logger"] == "ossuary.queue"
    assert data["timestamp"].endswith("+00:00")


def test_formatter_orders_queue_fields_first():
    record = make_record(attempt=2, state="idle", queue="jobs", adapter="memory", message_id="abc")
    data = json.loads(JSONFormatter().format(record))

    assert list(data)[4:8] == ["queue", "adapter", "message_id", "state"]
    assert data["attempt"] == 2


def test_formatter_stringifies_unserializable_extras():
    data = json.loads(JSONFormatter().format(make_record(payload=object())))
    assert data["payload"].startswith("<object object")


def test_formatter_includes_exception():
    try:
        raise ValueError("boom")
    except ValueError:
        record = make_record()
        record.exc_info = sys.exc_info()

    data = json.loads(JSONFormatter().format(record))
    assert "ValueError: boom" in data["exc_info"]


def test_loggers_are_configured_once():
    first = configure_queue_logger()
    second = configure_queue_logger(logging.WARNING)

    assert first is second
    assert len(second.handlers) == 1
    assert isinstance(second.handlers[0].formatter, JSONFormatter)
    assert second.level == logging.WARNING
    assert second.propagate is False

    other = get_logger("ossuary.test")
    assert isinstance(other.handlers[0].formatter, JSONFormatter)
    configure_queue_logger()


async def test_send_logs_message_id(log_capture, queue):
    sent = await queue.send("X")

    [record] = [r for r in log_capture.records if "Sent message" in r.getMessage()]
    assert record.queue == "queueTest"
    assert record.adapter == "memory"
    assert record.message_id == queue.get_message_info(sent).message_id


async def test_backend_failure_is_logged(log_capture):
    queue = Queue("jobs", ExplodingAdapter())

    with pytest.raises(BackendRuntimeError):
        await queue.ensure_queue()

    [record] = [r for r in log_capture.records if r.levelno == logging.ERROR]
    assert record.queue == "jobs"
    assert record.adapter == "exploding"
    assert "backend timed out" in record.error


async def test_poller_logs_state_transitions(log_capture, queue):
    queue.events.attach(EVENT_IDLE, lambda event: event.stop_await())
    await queue.await_messages()

    states = [r.state for r in log_capture.records if hasattr(r, "state")]
    assert states == ["polling", "idle", "stopped"]
