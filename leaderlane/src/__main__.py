from __future__ import annotations

import json
import logging
import os
import re
import signal
import threading

from leaderlane.src.config import ConfigError, DirectorConfig, load_config
from leaderlane.src.controller import DirectorController, build_controller
from leaderlane.src.health import start_health_server
from leaderlane.src.kube import KubeClients, build_clients, load_kube_configuration
from leaderlane.src.leader import LeaseLeaderElector, default_identity
from leaderlane.src.metrics import METRICS

RUNTIME_VERSION = "0.1.0"
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
        re.compile(r"(?i)([?&](?:token|access_token|api_key|password)=)([^&\s]+)"),
        r"\1[REDACTED]",
    ),
)

LOGGER = logging.getLogger(__name__)


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
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def configure_logging() -> None:
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    log_handler = logging.StreamHandler()
    log_handler.setFormatter(JSONFormatter())
    logging.root.addHandler(log_handler)
    logging.root.setLevel(getattr(logging, log_level, logging.INFO))


class ControllerRunner:
    """Run a fresh :class:`DirectorController` on a thread each time this replica becomes active."""

    def __init__(
        self,
        config: DirectorConfig,
        clients: KubeClients,
        shutdown_event: threading.Event,
    ) -> None:
        self.config = config
        self.clients = clients
        self.shutdown_event = shutdown_event
        self.controller: DirectorController | None = None
        self.failed = False
        self._thread: threading.Thread | None = None
        self._stop = threading.Event()
        self._lock = threading.Lock()

    def is_ready(self) -> bool:
        controller = self.controller
        return controller is not None and controller.is_ready()

    def statuses(self) -> list[dict[str, object]]:
        controller = self.controller
        return controller.director.statuses() if controller is not None else []

    def _run(self, controller: DirectorController, stop: threading.Event) -> None:
        unexpected_exit = False
        try:
            controller.run_forever(shutdown_event=stop)
            unexpected_exit = not stop.is_set() and not self.shutdown_event.is_set()
            if unexpected_exit:
                LOGGER.error(
                    "Controller exited without a stop signal (%s); terminating process",
                    controller.fatal_error or "unknown reason",
                )
        except Exception:
            unexpected_exit = True
            LOGGER.exception("Controller thread crashed")
        finally:
            if unexpected_exit:
                self.failed = True
                self.shutdown_event.set()

    def start(self) -> None:
        with self._lock:
            if self.shutdown_event.is_set():
                return
            if self._thread is not None and self._thread.is_alive():
                LOGGER.error(
                    "Refusing to start a new controller while the previous one is still running"
                )
                self.failed = True
                self.shutdown_event.set()
                return
            self._stop = threading.Event()
            self.controller = build_controller(self.config, self.clients)
            self._thread = threading.Thread(
                target=self._run, args=(self.controller, self._stop), daemon=True
            )
            self._thread.start()

    def stop(self) -> None:
        with self._lock:
            self._stop.set()
            if self.controller is not None:
                self.controller.request_stop()
            if self._thread is None:
                return
            timeout = self.config.leader_election.controller_stop_timeout_seconds
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                LOGGER.error(
                    "Controller did not stop within %ss during leadership handoff; "
                    "forcing process shutdown",
                    timeout,
                )
                self.failed = True
                self.shutdown_event.set()
                return
            self._thread = None

    def run_in_foreground(self) -> None:
        """Run without election until shutdown (single-replica deployments)."""
        self.controller = build_controller(self.config, self.clients)
        self._run(self.controller, self.shutdown_event)


def main() -> int:
    """Director entrypoint: load config, elect the active replica and run the controller.

    Returns the process exit code: non-zero when configuration, identity or
    namespace cannot be determined, or when the controller stops on its own.
    """
    configure_logging()
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    try:
        config = load_config()
        election = config.leader_election
        identity = (election.identity or default_identity()) if election.enabled else ""
        load_kube_configuration()
        clients = build_clients(qps=config.api_qps, burst=config.api_burst)
    except ConfigError as exc:
        LOGGER.error("Invalid configuration: %s", exc)
        return 1
    except Exception:
        LOGGER.exception("Failed to initialize the director")
        return 1

    shutdown_event = threading.Event()
    runner = ControllerRunner(config, clients, shutdown_event)
    leader_ready = threading.Event() if election.enabled else None
    health_server = start_health_server(
        ready=runner.is_ready,
        port=config.health_port,
        leader=leader_ready,
        statuses=runner.statuses,
    )

    def _handle_signal(signum: int, frame: object) -> None:
        LOGGER.info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    if election.enabled:
        elector = LeaseLeaderElector.from_config(clients.coordination, election, identity)

        def on_started_leading() -> None:
            if leader_ready is not None:
                leader_ready.set()
            runner.start()

        def on_stopped_leading() -> None:
            if leader_ready is not None:
                leader_ready.clear()
            runner.stop()

        elector.run(
            on_started_leading=on_started_leading,
            on_stopped_leading=on_stopped_leading,
            stop_event=shutdown_event,
        )
        runner.stop()
    else:
        runner.run_in_foreground()

    health_server.shutdown()
    LOGGER.info("Director stopped")
    return 1 if runner.failed else 0


if __name__ == "__main__":
    raise SystemExit(main())
