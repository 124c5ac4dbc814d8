import json

import pytest
import structlog

from olly.config import get_config
from olly.logging import configure_logging, turn_context


@pytest.fixture(autouse=True)
def reset_structlog():
    yield
    structlog.reset_defaults()


def test_sink_receives_plain_lines_tagged_with_the_turn():
    lines: list[str] = []
    configure_logging("INFO", sink=lines.append)
    log = structlog.get_logger("olly.test")

    with turn_context("s-1", "plan"):
        log.info("Tool executed", tool="read_file")
    log.debug("hidden")

    assert len(lines) == 1
    assert "Tool executed" in lines[0]
    assert "session_id=s-1" in lines[0]
    assert "mode=plan" in lines[0]
    assert "\x1b[" not in lines[0]


def test_json_format_and_level_from_config():
    cfg = get_config()
    cfg.logging.format = "json"
    cfg.logging.level = "warning"
    lines: list[str] = []
    configure_logging(sink=lines.append)
    log = structlog.get_logger("olly.test")

    log.info("ignored")
    log.warning("Loop detected", attempts=3)

    assert len(lines) == 1
    entry = json.loads(lines[0])
    assert entry["event"] == "Loop detected"
    assert entry["level"] == "warning"
    assert "session_id" not in entry
