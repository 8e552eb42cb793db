import json
import logging

import pytest

from airquality_exporter.logs import JSONFormatter, setup_logging


def make_record(msg, *args, extra=None, level=logging.INFO):
    record = logging.LogRecord("airquality_exporter.test", level, __file__, 1, msg, args, None)
    for key, value in (extra or {}).items():
        setattr(record, key, value)
    return record


def test_formats_message_as_json():
    line = JSONFormatter().format(make_record("Setting sensor cycle %s", 5))
    entry = json.loads(line)

    assert entry["msg"] == "Setting sensor cycle 5"
    assert entry["level"] == "INFO"
    assert entry["logger"] == "airquality_exporter.test"
    assert "time" in entry


def test_includes_extra_fields():
    record = make_record("Device API response timeout", extra={"retries": 0, "call": "set_passive_mode"})
    entry = json.loads(JSONFormatter().format(record))

    assert entry["retries"] == 0
    assert entry["call"] == "set_passive_mode"
    assert "args" not in entry
    assert "levelno" not in entry


def test_unserializable_extra_is_stringified():
    record = make_record("Getting sensor measurement error", extra={"error": IOError("boom")})
    entry = json.loads(JSONFormatter().format(record))

    assert entry["error"] == "boom"


@pytest.fixture()
def root_logger():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield root
    for handler in root.handlers[:]:
        if handler not in handlers:
            root.removeHandler(handler)
    for handler in handlers:
        if handler not in root.handlers:
            root.addHandler(handler)
    root.setLevel(level)


def test_setup_logging_verbose_enables_debug(root_logger):
    setup_logging(True)

    assert root_logger.level == logging.DEBUG
    assert isinstance(root_logger.handlers[0].formatter, JSONFormatter)


def test_setup_logging_default_is_info(root_logger):
    setup_logging(False)

    assert root_logger.level == logging.INFO
    assert not logging.getLogger("airquality_exporter.controller").isEnabledFor(logging.DEBUG)
