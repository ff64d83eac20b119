"""
Log hygiene for values that originate upstream.

Feed URLs, channel names and provider error bodies all come from sources we
do not control. The record factory installed here escapes line breaks in log
arguments so a hostile display-name cannot forge log entries (CWE-117), and
clips oversized values such as error previews of binary garbage.
"""

import logging

_ORIGINAL_FACTORY = logging.getLogRecordFactory()

# Longest string argument written to a log line
MAX_ARG_LENGTH = 2000

_LINE_BREAKS = str.maketrans({"\r": "\\r", "\n": "\\n"})


def _sanitize_value(value):
    """Escape line breaks and clip long strings; other types pass through."""
    if not isinstance(value, str):
        return value
    value = value.translate(_LINE_BREAKS)
    overflow = len(value) - MAX_ARG_LENGTH
    if overflow > 0:
        value = f"{value[:MAX_ARG_LENGTH]}...({overflow} more chars)"
    return value


def _safe_record_factory(*args, **kwargs):
    record = _ORIGINAL_FACTORY(*args, **kwargs)
    if isinstance(record.args, dict):
        record.args = {key: _sanitize_value(val) for key, val in record.args.items()}
    elif isinstance(record.args, tuple) and record.args:
        record.args = tuple(map(_sanitize_value, record.args))
    return record


def install_safe_logging() -> None:
    """Route every LogRecord through the sanitizing factory."""
    logging.setLogRecordFactory(_safe_record_factory)


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging with the format used across the backend."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    install_safe_logging()
