from __future__ import annotations

import logging

from log_setup import RedactKeysFilter


def _record(msg, *args) -> logging.LogRecord:
    return logging.LogRecord("t", logging.INFO, __file__, 1, msg, args, None)


def test_keys_in_arguments_are_redacted():
    record = _record("calling with %s", "sk-proj-abcdefghijklmnop")
    assert RedactKeysFilter().filter(record)
    assert record.getMessage() == "calling with sk-***"


def test_messages_without_keys_are_untouched():
    record = _record("run=%s  %d images", "abc", 1)
    RedactKeysFilter().filter(record)
    assert record.args == ("abc", 1)
    assert record.getMessage() == "run=abc  1 images"
