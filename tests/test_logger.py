from __future__ import annotations

import contextvars
import logging

from stageflow.logger import (
    CorrelationIdFilter,
    Diagnostics,
    get_correlation_id,
    get_logger,
    set_correlation_id,
)


def test_correlation_id_defaults_to_dash():
    assert contextvars.Context().run(get_correlation_id) == "-"


def test_set_correlation_id_is_visible_in_context():
    def scoped():
        assert set_correlation_id("abc") == "abc"
        return get_correlation_id()

    assert contextvars.copy_context().run(scoped) == "abc"


def test_set_correlation_id_generates_one_when_missing():
    cid = contextvars.copy_context().run(set_correlation_id)
    assert len(cid) == 36


def test_filter_stamps_record_with_current_id():
    def scoped():
        set_correlation_id("req-7")
        record = logging.LogRecord("stageflow", logging.INFO, __file__, 1, "hi", None, None)
        assert CorrelationIdFilter().filter(record) is True
        return record.correlation_id

    assert contextvars.copy_context().run(scoped) == "req-7"


def test_get_logger_does_not_duplicate_handlers():
    logger = get_logger("stageflow.tests.logger")
    again = get_logger("stageflow.tests.logger", level=logging.DEBUG)

    assert again is logger
    assert len(logger.handlers) == 1
    assert logger.level == logging.DEBUG


def test_diagnostics_warns_once_per_key(caplog):
    diagnostics = Diagnostics(logging.getLogger("stageflow.tests.diag"))

    with caplog.at_level(logging.WARNING, logger="stageflow.tests.diag"):
        assert diagnostics.warn_once("k", "first %s", 1) is True
        assert diagnostics.warn_once("k", "first %s", 2) is False

    assert [r.getMessage() for r in caplog.records] == ["first 1"]
    assert diagnostics.seen() == {"k"}
    diagnostics.clear()
    assert diagnostics.seen() == set()
