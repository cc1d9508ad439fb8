"""Centralised logging configuration.

Call configure() once at startup (from app.py or ad_cli.py).
All modules then use logging.getLogger(__name__) normally.

Output:
  console  — INFO level (or ADPIRATE_LOG_LEVEL), compact single-line format
  logs/app.log — DEBUG level, full format, rotating (5 × 5 MB)

Anything shaped like an OpenAI key is masked before it reaches a handler.
"""

from __future__ import annotations

import logging
import logging.handlers
import os
import re
from pathlib import Path
from typing import Optional

LOGS_DIR = Path(__file__).parent / "logs"
LOG_FILE  = LOGS_DIR / "app.log"

_CONSOLE_FMT = "%(asctime)s  %(levelname)-7s  %(name)s — %(message)s"
_FILE_FMT    = "%(asctime)s  %(levelname)-7s  %(name)-20s  %(filename)s:%(lineno)d — %(message)s"
_DATE_FMT    = "%Y-%m-%d %H:%M:%S"

_KEY_RE = re.compile(r"sk-[A-Za-z0-9_\-]{8,}")


class RedactKeysFilter(logging.Filter):
    """Replace API keys in the rendered message with a fixed marker."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = _KEY_RE.sub("sk-***", message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


def configure(level: Optional[str] = None, log_file: Path = LOG_FILE) -> None:
    """Set up console + rotating file handlers.  Safe to call multiple times."""
    root = logging.getLogger()
    if root.handlers:
        return  # Already configured

    level = level or os.environ.get("ADPIRATE_LOG_LEVEL", "INFO")
    log_file.parent.mkdir(parents=True, exist_ok=True)

    root.setLevel(logging.DEBUG)  # lowest gate; handlers apply their own levels
    redact = RedactKeysFilter()

    # ── Console ──
    ch = logging.StreamHandler()
    ch.setLevel(getattr(logging, level.upper(), logging.INFO))
    ch.setFormatter(logging.Formatter(_CONSOLE_FMT, datefmt=_DATE_FMT))
    ch.addFilter(redact)
    root.addHandler(ch)

    # ── Rotating file ──
    fh = logging.handlers.RotatingFileHandler(
        log_file,
        maxBytes=5 * 1024 * 1024,   # 5 MB
        backupCount=5,
        encoding="utf-8",
    )
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(logging.Formatter(_FILE_FMT, datefmt=_DATE_FMT))
    fh.addFilter(redact)
    root.addHandler(fh)

    # Quieten noisy third-party loggers
    for noisy in ("urllib3", "httpx", "httpcore", "werkzeug", "openai"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
