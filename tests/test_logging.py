import json

import pytest
import structlog

from pkg_bottles import logging as bottle_logging
from pkg_bottles.logging import (
    CompactJSONRenderer,
    add_timestamp,
    flatten_event,
    get_logger,
    level_filter,
)


def test_flatten_event_spreads_dict_events():
    """Dict-style events become a plain event name plus fields"""
    event_dict = {"event": {"event": "shell_spawned", "pid": 42}}
    result = flatten_event(None, "info", event_dict)

    assert result["event"] == "shell_spawned"
    assert result["pid"] == 42


def test_flatten_event_leaves_string_events():
    result = flatten_event(None, "info", {"event": "plain"})
    assert result == {"event": "plain"}


def test_compact_json_renderer():
    """Renderer emits one JSON line with data grouped"""
    output = CompactJSONRenderer()(
        None,
        "info",
        {
            "timestamp": "2024-01-01T00:00:00+00:00",
            "level": "info",
            "event": "pool_create",
            "line": 10,
            "key": "abc",
        },
    )

    data = json.loads(output)
    assert "\n" not in output
    assert data["ts"] == "2024-01-01T00:00:00+00:00"
    assert data["lvl"] == "info"
    assert data["msg"] == "pool_create"
    assert data["line"] == 10
    assert data["data"] == {"key": "abc"}


def test_add_timestamp_keeps_existing():
    assert add_timestamp(None, "info", {"timestamp": "x"})["timestamp"] == "x"
    assert "timestamp" in add_timestamp(None, "info", {})


@pytest.mark.parametrize(
    "method,dropped",
    [
        ("debug", True),
        ("info", False),
        ("warning", False),
        ("error", False),
    ],
)
def test_level_filter(monkeypatch, method, dropped):
    """Events below the configured level are dropped"""
    monkeypatch.setattr(bottle_logging, "STDERR_LOG_LEVEL", "INFO")

    if dropped:
        with pytest.raises(structlog.DropEvent):
            level_filter(None, method, {"event": "x"})
    else:
        assert level_filter(None, method, {"event": "x"}) == {"event": "x"}


def test_get_logger():
    logger = get_logger("pkg_bottles.test")
    assert hasattr(logger, "info")
    assert hasattr(logger, "warning")
