from __future__ import annotations

import argparse
import json
import logging
import os
import re
import signal
import threading
from collections.abc import Sequence

from exposer.src.controller import (
    CacheSyncError,
    InformerStoppedError,
    build_controller_from_env,
    env_int,
)
from exposer.src.health import start_health_server
from exposer.src.kube import build_clients, load_kube_configuration
from exposer.src.metrics import METRICS

RUNTIME_VERSION = "0.1.0"
# Structured context accepted through ``extra=`` and copied into the JSON line.
STRUCTURED_FIELDS = ("workload", "event", "kind", "object")
_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|passwd|secret|api[_-]?key)\b\s*[:=]\s*)([^\s,;]+)"
        ),
        r"\1[REDACTED]",
    ),
    (
        re.compile(r"(?i)(client-(?:certificate|key)-data\s*[:=]\s*)([^\s,;]+)"),
        r"\1[REDACTED]",
    ),
)


def redact_sensitive_text(value: str) -> str:
    redacted = value
    for pattern, replacement in _REDACTION_RULES:
        redacted = pattern.sub(replacement, redacted)
    return redacted


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects for structured log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        for field_name in STRUCTURED_FIELDS:
            value = getattr(record, field_name, None)
            if value is not None:
                log_entry[field_name] = str(value)
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def configure_logging(level_name: str) -> None:
    """Send JSON log lines to stderr at *level_name* (unknown names fall back to INFO)."""
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    logging.root.addHandler(handler)
    logging.root.setLevel(getattr(logging, level_name.upper(), logging.INFO))
    # The kubernetes client logs full request bodies at DEBUG.
    logging.getLogger("kubernetes").setLevel(logging.WARNING)


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="exposer",
        description="Create a Service and an Ingress for every Deployment",
    )
    parser.add_argument(
        "--kubeconfig",
        default=os.getenv("KUBECONFIG"),
        help=(
            "Path to a kubeconfig file (defaults to $KUBECONFIG, then ~/.kube/config). "
            "Falls back to in-cluster configuration when it cannot be loaded."
        ),
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    """Controller entrypoint: configure logging, load credentials and run until signalled."""
    args = parse_args(argv)
    configure_logging(os.getenv("LOG_LEVEL", "INFO"))
    logger = logging.getLogger(__name__)
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    load_kube_configuration(args.kubeconfig)
    core_api, apps_api, networking_api = build_clients()
    controller = build_controller_from_env(
        core_api=core_api,
        apps_api=apps_api,
        networking_api=networking_api,
    )

    health_port = env_int("HEALTH_PORT", 8080, minimum=1, maximum=65535)
    health_server = start_health_server(ready=controller.ready, port=health_port)

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        logger.info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    exit_code = 0
    try:
        controller.run(shutdown_event=shutdown_event)
    except (CacheSyncError, InformerStoppedError) as exc:
        logger.error("Controller cannot continue: %s", exc)
        exit_code = 1
    finally:
        health_server.shutdown()

    logger.info("Controller stopped")
    return exit_code


if __name__ == "__main__":
    raise SystemExit(main())
