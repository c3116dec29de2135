import logging

from pgleaderlease._logging import NDLogger, get_logger
from pgleaderlease.models import Phase


class TestNDLogger:
    def test_format_simple(self):
        nd = NDLogger(logging.getLogger("test_nd"))
        msg = nd._format("event_name", {"key": "val"})
        assert msg == "event_name key=val"

    def test_format_no_extra(self):
        assert get_logger("test_fmt")._format("ev", {}) == "ev"

    def test_format_quotes_empty_and_spaced_values(self):
        msg = get_logger("test_quote")._format("ev", {"a": "", "b": "two words"})
        assert "a=''" in msg
        assert "b='two words'" in msg

    def test_format_renders_enum_values(self):
        msg = get_logger("test_enum")._format("ev", {"phase": Phase.LEADER})
        assert "phase=leader" in msg

    def test_bind_creates_new(self):
        nd = get_logger("test")
        bound = nd.bind(identity="a")
        assert bound is not nd
        assert "identity=a" in bound._format("ev", {})

    def test_bind_merges_context(self):
        msg = get_logger("test").bind(a=1).bind(b=2)._format("ev", {})
        assert "a=1" in msg
        assert "b=2" in msg

    def test_bind_does_not_mutate_parent(self):
        nd = get_logger("test_immutable").bind(x=1)
        nd.bind(y=2)
        msg = nd._format("ev", {})
        assert "x=1" in msg
        assert "y=2" not in msg

    def test_logging_methods(self, caplog):
        log = logging.getLogger("test_methods")
        log.setLevel(logging.DEBUG)
        nd = NDLogger(log)
        with caplog.at_level(logging.DEBUG, logger="test_methods"):
            nd.debug("debug_event", x=1)
            nd.info("info_event", x=2)
            nd.warning("warn_event", x=3)
            nd.error("error_event", x=4)
        levels = {r.message.split()[0]: r.levelno for r in caplog.records}
        assert levels == {
            "debug_event": logging.DEBUG,
            "info_event": logging.INFO,
            "warn_event": logging.WARNING,
            "error_event": logging.ERROR,
        }

    def test_disabled_level_is_skipped(self, caplog):
        log = logging.getLogger("test_disabled")
        with caplog.at_level(logging.WARNING, logger="test_disabled"):
            NDLogger(log).debug("quiet_event")
        assert not any("quiet_event" in r.message for r in caplog.records)

    def test_exception_method(self, caplog):
        nd = NDLogger(logging.getLogger("test_exception"))
        with caplog.at_level(logging.ERROR, logger="test_exception"):
            try:
                raise ValueError("boom")
            except ValueError:
                nd.exception("exc_event", detail="test")
        record = next(r for r in caplog.records if "exc_event" in r.message)
        assert record.exc_info is not None

    def test_get_logger_default_name(self):
        nd = get_logger()
        assert isinstance(nd, NDLogger)
        assert nd._logger.name == "pgleaderlease"
