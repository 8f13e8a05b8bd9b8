from __future__ import annotations

import logging
import re
from copy import copy, deepcopy
from typing import Any
from urllib.parse import unquote

from uvicorn.config import LOGGING_CONFIG
from uvicorn.logging import AccessFormatter as UvicornAccessFormatter

PACKAGE_LOGGER = "epreader"

# Reader ids travel as a query parameter on every API call.
_USER_PARAM = re.compile(r"(?<=[?&]user_id=)[^&#]*")


def _decode_path(value: str) -> str:
    try:
        return unquote(value, encoding="utf-8", errors="replace")
    except Exception:
        return value


def access_path(value: str) -> str:
    """Decode percent-escapes in a request path and mask the reader id."""
    return _decode_path(_USER_PARAM.sub("-", value))


class Utf8AccessFormatter(UvicornAccessFormatter):
    """Access log lines with readable book and section paths."""

    def formatMessage(self, record):  # type: ignore[override]
        try:
            client_addr, method, full_path, http_version, status_code = record.args
        except (TypeError, ValueError):
            return super().formatMessage(record)
        if isinstance(full_path, str):
            full_path = access_path(full_path)
        new_record = copy(record)
        new_record.args = (client_addr, method, full_path, http_version, status_code)
        return super().formatMessage(new_record)


def build_uvicorn_log_config(debug: bool = False) -> dict[str, Any]:
    """Uvicorn logging config that also routes the ``epreader`` loggers."""
    config = deepcopy(LOGGING_CONFIG)
    formatter = config.get("formatters", {}).get("access")
    if isinstance(formatter, dict):
        formatter["()"] = "epreader.logging_utils.Utf8AccessFormatter"
    config.setdefault("loggers", {})[PACKAGE_LOGGER] = {
        "handlers": ["default"],
        "level": "DEBUG" if debug else "INFO",
        "propagate": False,
    }
    return config


def set_debug_logging(enabled: bool) -> None:
    """Configure console logging for CLI runs; ``enabled`` turns on DEBUG output."""
    logger = logging.getLogger(PACKAGE_LOGGER)
    logger.setLevel(logging.DEBUG if enabled else logging.INFO)
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("[%(name)s] %(levelname)s: %(message)s"))
        logger.addHandler(handler)
        logger.propagate = False
