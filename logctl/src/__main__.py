from __future__ import annotations

import json
import logging
import os
import re
import signal
import threading

from logctl.src.config import load_config
from logctl.src.controller import build_controller
from logctl.src.health import start_health_server
from logctl.src.kube import build_apps_api, load_kube_configuration
from logctl.src.metrics import METRICS

RUNTIME_VERSION = "0.1.0"

# Credentials can reach the log through API error bodies or a config
# server URL with user info in it.
_SECRET_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"(?i)(bearer\s+)[A-Za-z0-9._~+/=-]+"), r"\1[REDACTED]"),
    (
        re.compile(r"(?i)(\b(?:authorization|token|password|secret)\b\s*[:=]\s*)[^\s,;]+"),
        r"\1[REDACTED]",
    ),
    (re.compile(r"(?i)(\bhttps?://)[^/\s:@]+:[^/\s@]+@"), r"\1[REDACTED]@"),
)


def redact_sensitive_text(value: str) -> str:
    for pattern, replacement in _SECRET_PATTERNS:
        value = pattern.sub(replacement, value)
    return value


class JSONFormatter(logging.Formatter):
    """One JSON object per line, with secrets masked in the message and traceback."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        if record.exc_info and record.exc_info[0] is not None:
            entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(entry)


def configure_logging() -> None:
    """Send JSON logs to stderr at ``LOG_LEVEL`` (``INFO`` when unset or unknown)."""
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    logging.root.addHandler(handler)
    level_name = os.getenv("LOG_LEVEL", "INFO").upper()
    logging.root.setLevel(getattr(logging, level_name, logging.INFO))


def _install_signal_handlers(shutdown_event: threading.Event) -> None:
    logger = logging.getLogger(__name__)

    def _handle_signal(signum: int, frame: object) -> None:
        logger.info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    for signum in (signal.SIGTERM, signal.SIGINT):
        signal.signal(signum, _handle_signal)


def main() -> None:
    """Run the controller until SIGTERM or SIGINT."""
    configure_logging()
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    config = load_config()
    load_kube_configuration(context=config.kube_context)
    controller = build_controller(config=config, apps_api=build_apps_api())
    health_server = start_health_server(ready=controller.ready, port=config.health_port)

    shutdown_event = threading.Event()
    _install_signal_handlers(shutdown_event)

    logging.getLogger(__name__).info(
        "Watching Deployments in %s for annotation %s",
        config.namespace or "all namespaces",
        config.profiles.annotation_key,
    )
    try:
        controller.run(stop_event=shutdown_event)
    finally:
        health_server.shutdown()


if __name__ == "__main__":
    main()
