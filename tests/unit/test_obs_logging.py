import json
import logging

from nearfeed.obs import logging as obs_logging


def _record(**extra) -> logging.LogRecord:
    record = logging.LogRecord("nearfeed.test", logging.INFO, __file__, 1, "post created", None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_coordinates_are_coarsened_and_text_redacted():
    assert obs_logging.sanitize_field("latitude", 40.71283) == 40.71
    assert obs_logging.sanitize_field("lon", "not a number") == "[redacted]"
    assert obs_logging.sanitize_field("content", "secret note") == "[redacted]"
    assert obs_logging.sanitize_field("post_id", "p1") == "p1"


def test_formatter_includes_bound_context():
    tokens = obs_logging.bind_context(user_id="user-1", search_context="r=5.0km", operation="create_post")
    try:
        payload = json.loads(obs_logging.JSONLogFormatter().format(_record(post_id="p1", lon=-74.00601)))
    finally:
        obs_logging.reset_context(tokens)

    assert payload["msg"] == "post created"
    assert payload["user_id"] == "user-1"
    assert payload["search_context"] == "r=5.0km"
    assert payload["operation"] == "create_post"
    assert payload["post_id"] == "p1"
    assert payload["lon"] == -74.0


def test_long_values_are_truncated():
    value = obs_logging.sanitize_field("note", "x" * 1000)
    assert len(value) < 300
