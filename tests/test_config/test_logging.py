import io
import json

import structlog

import coding_agent.config as config_module
from coding_agent.config import Config
from coding_agent.logging import configure_logging, get_logger


def test_json_logging_respects_level_and_binds_context(monkeypatch):
    cfg = Config()
    cfg.logging.format = "json"
    monkeypatch.setattr(config_module, "_config", cfg)
    stream = io.StringIO()
    try:
        configure_logging(level="INFO", stream=stream)
        log = get_logger("test")
        with structlog.contextvars.bound_contextvars(session_id="s1"):
            log.debug("hidden")
            log.info("Tool called", tool="read_file")

        lines = [json.loads(line) for line in stream.getvalue().splitlines()]
    finally:
        structlog.reset_defaults()

    assert len(lines) == 1
    assert lines[0]["event"] == "Tool called"
    assert lines[0]["tool"] == "read_file"
    assert lines[0]["session_id"] == "s1"
    assert lines[0]["level"] == "info"
    assert "timestamp" in lines[0]
