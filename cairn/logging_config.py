import logging
import os
import re
import sys
from typing import Iterable, Optional

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
MASK = "***MASKED***"


class SensitiveDataFilter(logging.Filter):
    """Mask passphrases in log records.

    Known secret values are replaced wherever they appear; ``passphrase=...``
    style assignments are masked even when the value is not known.
    """

    PATTERNS = [
        (re.compile(r'(pass(?:word|phrase)["\']?\s*[:=]\s*["\']?)([^"\'}\s,]+)', re.IGNORECASE), r"\1" + MASK),
        (re.compile(r'(secret["\']?\s*[:=]\s*["\']?)([^"\'}\s,]+)', re.IGNORECASE), r"\1" + MASK),
    ]

    def __init__(self, secrets: Iterable[str] = ()):
        super().__init__()
        self.secrets = [s for s in secrets if s]

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = self._mask(record.msg)
        if record.args:
            if isinstance(record.args, dict):
                record.args = {k: self._mask_value(v) for k, v in record.args.items()}
            elif isinstance(record.args, tuple):
                record.args = tuple(self._mask_value(arg) for arg in record.args)
        return True

    def _mask(self, text: str) -> str:
        for secret in self.secrets:
            text = text.replace(secret, MASK)
        for pattern, replacement in self.PATTERNS:
            text = pattern.sub(replacement, text)
        return text

    def _mask_value(self, value):
        if isinstance(value, str):
            return self._mask(value)
        if isinstance(value, BaseException):
            return self._mask(str(value))
        return value


def setup_logging(log_level: Optional[str] = None, secrets: Iterable[str] = ()) -> logging.Logger:
    """Configure the ``cairn`` logger hierarchy once, writing to stderr.

    The level defaults to ``CAIRN_LOG_LEVEL`` (or WARNING). Calling again
    updates the level and the masked secrets without adding handlers.
    """
    if log_level is None:
        log_level = os.getenv("CAIRN_LOG_LEVEL", "WARNING")
    level = getattr(logging, str(log_level).upper(), logging.WARNING)

    logger = logging.getLogger("cairn")
    logger.setLevel(level)
    logger.propagate = False

    secrets = list(secrets)
    for handler in logger.handlers:
        handler.setLevel(level)
        for f in handler.filters:
            if isinstance(f, SensitiveDataFilter):
                f.secrets = [s for s in secrets if s]
    if logger.handlers:
        return logger

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
    handler.addFilter(SensitiveDataFilter(secrets))
    logger.addHandler(handler)
    return logger


def register_secret(value: str) -> None:
    """Mask ``value`` in everything the ``cairn`` handlers emit from now on."""
    for handler in logging.getLogger("cairn").handlers:
        for f in handler.filters:
            if isinstance(f, SensitiveDataFilter) and value and value not in f.secrets:
                f.secrets.append(value)
