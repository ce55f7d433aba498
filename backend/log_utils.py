"""
Logging setup for the catalog backend.

Playlist and video titles come straight from the upstream feed and may
contain newlines or control characters that would forge extra log lines
(CWE-117). The record factory installed here escapes them in every log
argument before formatting.

Call configure_logging() once at process start.
"""

import logging

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

_ORIGINAL_FACTORY = logging.getLogRecordFactory()


def _sanitize_value(value):
    """Escape CR/LF in a string argument; leave other types untouched."""
    if isinstance(value, str):
        return value.replace('\r\n', '\\r\\n').replace('\r', '\\r').replace('\n', '\\n')
    return value


def _safe_record_factory(*args, **kwargs):
    record = _ORIGINAL_FACTORY(*args, **kwargs)
    if record.args:
        if isinstance(record.args, dict):
            record.args = {k: _sanitize_value(v) for k, v in record.args.items()}
        elif isinstance(record.args, tuple):
            record.args = tuple(_sanitize_value(a) for a in record.args)
    else:
        # f-string messages arrive already formatted
        record.msg = _sanitize_value(record.msg)
    return record


def install_safe_logging():
    """Install the sanitizing LogRecord factory globally."""
    logging.setLogRecordFactory(_safe_record_factory)


def configure_logging(level: str = "INFO") -> None:
    """
    Configure root logging for the web app and the worker.

    Installs the sanitizing factory, sets the shared format, and quiets
    httpx request logging (its URLs carry the feed API key) below WARNING.
    """
    install_safe_logging()
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)
    logging.getLogger("httpx").setLevel(logging.WARNING)
