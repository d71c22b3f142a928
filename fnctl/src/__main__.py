from __future__ import annotations

import json
import logging
import os
import re
import signal
import threading

from fnctl.src.controller import build_controller_from_env
from fnctl.src.health import start_health_server
from fnctl.src.kube import build_clients, load_kube_configuration
from fnctl.src.metrics import METRICS
from fnctl.src.watcher import ChangeWatcher

RUNTIME_VERSION = "0.1.0"
REDACTED = "[REDACTED]"
_SECRET_KEYS = ("authorization", "token", "password", "passwd", "secret", r"api[_-]?key")
_SECRET_QUERY_PARAMS = ("token", "access_token", "api_key", "password")
# Each pattern keeps group 1 (the key or scheme) and masks what follows it.
_REDACTIONS: tuple[re.Pattern[str], ...] = (
    re.compile(r"(?i)(bearer\s+)[A-Za-z0-9._~+/=-]+"),
    re.compile(rf"(?i)(\b(?:{'|'.join(_SECRET_KEYS)})\b\s*[:=]\s*)[^\s,;]+"),
    re.compile(rf"(?i)([?&](?:{'|'.join(_SECRET_QUERY_PARAMS)})=)[^&\s]+"),
)
# Client libraries that log request details at DEBUG.
_NOISY_LOGGERS = ("kubernetes", "urllib3")


def redact_sensitive_text(value: str) -> str:
    for pattern in _REDACTIONS:
        value = pattern.sub(rf"\g<1>{REDACTED}", value)
    return value


class JSONFormatter(logging.Formatter):
    """One JSON object per line: ``ts``, ``level``, ``logger``, ``thread``, ``msg``
    and, for exceptions, ``error``. Secrets are masked in ``msg`` and ``error``."""

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


def configure_logging(level: str | None = None) -> None:
    """Route the root logger through :class:`JSONFormatter` at ``LOG_LEVEL``."""
    level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    logging.root.handlers[:] = [handler]
    logging.root.setLevel(getattr(logging, level_name, logging.INFO))
    if logging.root.level <= logging.DEBUG:
        for name in _NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.INFO)


def main() -> None:
    """Controller entrypoint: configure logging, register the resource, and run the reconcile loop."""
    configure_logging()
    logger = logging.getLogger(__name__)

    load_kube_configuration()
    controller = build_controller_from_env(build_clients())
    config = controller.config
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
            "namespace": config.namespace,
        }
    )

    if config.register_crd:
        controller.client.create_resource(
            poll_interval_seconds=config.resource_poll_interval_seconds,
            timeout_seconds=config.resource_wait_timeout_seconds,
        )

    watcher = ChangeWatcher(
        client=controller.client,
        namespace=config.namespace,
        watch_timeout_seconds=config.watch_timeout_seconds,
    )

    shutdown_event = threading.Event()
    unexpected_exit = threading.Event()

    def _run_loop() -> None:
        try:
            controller.run(watcher, shutdown_event)
            if not shutdown_event.is_set():
                logger.error("Reconcile loop exited without a stop signal; terminating process")
                unexpected_exit.set()
        except Exception:
            logger.exception("Reconcile loop crashed")
            unexpected_exit.set()
        finally:
            shutdown_event.set()

    loop_thread = threading.Thread(target=_run_loop, name="fnctl-reconcile", daemon=True)

    health_server = start_health_server(
        ready=watcher.ready,
        port=config.health_port,
        alive=loop_thread.is_alive,
    )

    def _request_shutdown(signum: int, _frame: object) -> None:
        logger.info("Received %s, shutting down", signal.Signals(signum).name)
        shutdown_event.set()

    for signum in (signal.SIGTERM, signal.SIGINT):
        signal.signal(signum, _request_shutdown)

    watcher.start(shutdown_event)
    loop_thread.start()

    shutdown_event.wait()
    watcher.request_stop()
    loop_thread.join(timeout=config.watch_timeout_seconds + 15)
    if loop_thread.is_alive():
        logger.error("Reconcile loop did not stop in time")

    health_server.shutdown()
    logger.info("Controller stopped")
    if unexpected_exit.is_set():
        raise SystemExit(1)


if __name__ == "__main__":
    main()
