"""Diagnostic logging for the plugin.

stdout belongs to the CNI result, so log records go to an append-only file
(falling back to stderr when the file cannot be opened). Each line carries
the container id so interleaved invocations can be told apart.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path

from eni_cni.config import settings

# Attributes every LogRecord has; anything else was passed via `extra=`
_STANDARD_ATTRS = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None)).keys()
) | {"message", "asctime"}


class PluginJSONFormatter(logging.Formatter):
    """One JSON object per line."""

    def __init__(self, container_id: str = ""):
        super().__init__()
        self.container_id = container_id

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "service": "eni-cni",
            "container_id": self.container_id,
            "message": record.getMessage(),
        }
        extra = {
            key: value
            for key, value in vars(record).items()
            if key not in _STANDARD_ATTRS
        }
        if extra:
            payload["extra"] = extra
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class PluginTextFormatter(logging.Formatter):
    """Timestamped single-line text, container id truncated to the run id."""

    def __init__(self, container_id: str = ""):
        super().__init__(
            fmt="%(asctime)s - %(levelname)s [%(run_id)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
        self.run_id = container_id[:8] or "-"

    def format(self, record: logging.LogRecord) -> str:
        record.run_id = self.run_id
        return super().format(record)


def _build_handler() -> logging.Handler:
    log_path = Path(settings.log_file)
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        return logging.FileHandler(log_path, mode="a", encoding="utf-8")
    except OSError:
        return logging.StreamHandler(sys.stderr)


def setup_plugin_logging(container_id: str = "") -> None:
    """Configure the root logger for one plugin invocation."""
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    handler = _build_handler()
    if settings.log_format.lower() == "json":
        handler.setFormatter(PluginJSONFormatter(container_id=container_id))
    else:
        handler.setFormatter(PluginTextFormatter(container_id=container_id))

    root.addHandler(handler)
    root.setLevel(settings.log_level.upper())

    # boto's debug output would drown the plugin's own lines
    for noisy in ("botocore", "boto3", "urllib3", "httpx", "httpcore"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
