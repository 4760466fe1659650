import logging

from orbitour.utils.logging_setup import (
    ContextFilter,
    LOG_FORMAT,
    LOG_PROJECT_ID,
    LOG_SEGMENT_ID,
    LOG_TRANSPORT,
    configure_logging,
    log_context,
)


def _record():
    return logging.LogRecord("test.logger", logging.INFO, __file__, 1, "hello", (), None)


def test_context_filter_defaults():
    record = _record()
    ContextFilter().filter(record)
    assert record.project_id == "-"
    assert record.segment_id == "-"
    assert record.transport == "-"


def test_context_filter_injects_values():
    project_token = LOG_PROJECT_ID.set("project_1")
    segment_token = LOG_SEGMENT_ID.set("wp1-wp2")
    transport_token = LOG_TRANSPORT.set("direct")
    try:
        record = _record()
        ContextFilter().filter(record)
        assert record.project_id == "project_1"
        assert record.segment_id == "wp1-wp2"
        assert record.transport == "direct"
    finally:
        LOG_TRANSPORT.reset(transport_token)
        LOG_SEGMENT_ID.reset(segment_token)
        LOG_PROJECT_ID.reset(project_token)


def test_log_context_sets_and_resets():
    with log_context(project_id="p1", transport="proxied"):
        with log_context(segment_id="s1"):
            record = _record()
            ContextFilter().filter(record)
            assert (record.project_id, record.segment_id, record.transport) == ("p1", "s1", "proxied")
        assert LOG_SEGMENT_ID.get() is None
    assert LOG_PROJECT_ID.get() is None
    assert LOG_TRANSPORT.get() is None


def test_formatting_uses_expected_fields():
    record = _record()
    ContextFilter().filter(record)
    formatted = logging.Formatter(LOG_FORMAT).format(record)
    assert "test.logger" in formatted
    assert "hello" in formatted
    assert "|" in formatted


def test_configure_logging_writes_context_to_file(tmp_path):
    root = logging.getLogger()
    saved_handlers = list(root.handlers)
    saved_filters = list(root.filters)
    saved_level = root.level
    saved_flag = getattr(root, "_orbitour_logging_configured", False)
    log_file = tmp_path / "logs" / "run.log"
    try:
        configure_logging(log_file=str(log_file), level="DEBUG", force=True)
        with log_context(project_id="tour-9"):
            logging.getLogger("orbitour.test").info("written")
        for handler in root.handlers:
            handler.flush()
        content = log_file.read_text(encoding="utf-8")
        assert "tour-9" in content
        assert "written" in content
    finally:
        for handler in list(root.handlers):
            root.removeHandler(handler)
            if handler not in saved_handlers:
                handler.close()
        for log_filter in list(root.filters):
            root.removeFilter(log_filter)
        for handler in saved_handlers:
            root.addHandler(handler)
        for log_filter in saved_filters:
            root.addFilter(log_filter)
        root.setLevel(saved_level)
        root._orbitour_logging_configured = saved_flag
