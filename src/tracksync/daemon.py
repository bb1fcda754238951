"""
tracksync daemon -- keeps a replica synced in the background.

Runs the auto-sync scheduler and exposes a small local HTTP API so
a desktop shell or status bar can query sync state and nudge a sync:

    GET  /status   engine, scheduler and daemon state
    GET  /ping     liveness
    POST /sync     resume-style trigger: sync now if one is due

SIGUSR1 is the same "app regained foreground" trigger for hosts that
prefer signals over HTTP.
"""

from __future__ import annotations

import json
import logging
import os
import signal
import threading
from datetime import datetime, timezone
from http.server import BaseHTTPRequestHandler, HTTPServer
from pathlib import Path
from typing import Optional

from . import TRACKSYNC_HOME
from .sync.engine import SyncEngine
from .sync.scheduler import DEFAULT_TICK_SECONDS, AutoSyncScheduler

logger = logging.getLogger("tracksync.daemon")

DEFAULT_PORT = 7788
PID_FILE = "daemon.pid"
LOG_DIR = "logs"


class DaemonConfig:
    """Configuration for the daemon process.

    Attributes:
        home: Replica home directory.
        tick_interval: Seconds between auto-sync due-checks.
        port: HTTP API port for local queries (0 picks a free port).
        log_file: Path for daemon log output.
    """

    def __init__(
        self,
        home: Optional[Path] = None,
        tick_interval: float = DEFAULT_TICK_SECONDS,
        port: int = DEFAULT_PORT,
    ):
        self.home = (home or Path(TRACKSYNC_HOME)).expanduser()
        self.tick_interval = tick_interval
        self.port = port

        log_dir = self.home / LOG_DIR
        log_dir.mkdir(parents=True, exist_ok=True)
        self.log_file = log_dir / "daemon.log"


class DaemonState:
    """Thread-safe mutable daemon state. All access is lock-protected."""

    def __init__(self):
        self._lock = threading.Lock()
        self.started_at: Optional[datetime] = None
        self.last_trigger: Optional[datetime] = None
        self.triggers: int = 0
        self.errors: list[str] = []
        self.running: bool = False

    def snapshot(self) -> dict:
        """Return a JSON-safe copy of the current state."""
        with self._lock:
            return {
                "running": self.running,
                "started_at": self.started_at.isoformat() if self.started_at else None,
                "uptime_seconds": (
                    (datetime.now(timezone.utc) - self.started_at).total_seconds()
                    if self.started_at
                    else 0
                ),
                "last_trigger": self.last_trigger.isoformat() if self.last_trigger else None,
                "triggers": self.triggers,
                "recent_errors": self.errors[-10:],
                "pid": os.getpid(),
            }

    def record_trigger(self) -> None:
        with self._lock:
            self.last_trigger = datetime.now(timezone.utc)
            self.triggers += 1

    def record_error(self, error: str) -> None:
        """Record an error, keeping only the last 50."""
        with self._lock:
            ts = datetime.now(timezone.utc).isoformat()
            self.errors.append(f"[{ts}] {error}")
            if len(self.errors) > 50:
                self.errors = self.errors[-50:]


class DaemonService:
    """The background sync process.

    Args:
        config: Daemon configuration.
        engine: Sync engine to drive. Defaults to one for ``config.home``.
    """

    def __init__(self, config: DaemonConfig, engine: Optional[SyncEngine] = None):
        self.config = config
        self.engine = engine or SyncEngine(config.home)
        self.scheduler = AutoSyncScheduler(self.engine, tick_seconds=config.tick_interval)
        self.state = DaemonState()
        self._stop_event = threading.Event()
        self._threads: list[threading.Thread] = []
        self._server: Optional[HTTPServer] = None

    @property
    def port(self) -> Optional[int]:
        """Port the API actually bound, once started."""
        return self._server.server_address[1] if self._server else None

    def start(self, install_signals: bool = True) -> None:
        """Start the scheduler and the HTTP API.

        Args:
            install_signals: Register SIGTERM/SIGINT/SIGUSR1 handlers.
                Only possible from the main thread.
        """
        self._write_pid()
        self._setup_logging()
        if install_signals:
            self._setup_signals()

        self.state.running = True
        self.state.started_at = datetime.now(timezone.utc)

        logger.info(
            "Daemon starting -- home=%s port=%d tick=%ss target=%s interval=%s",
            self.config.home,
            self.config.port,
            self.config.tick_interval,
            self.engine.settings.target.value,
            self.engine.settings.interval.value,
        )

        self.scheduler.start()
        self._start_api_server()
        logger.info("Daemon started -- PID %d", os.getpid())

    def stop(self) -> None:
        """Gracefully stop the daemon."""
        logger.info("Daemon stopping...")
        self._stop_event.set()
        self.state.running = False
        self.scheduler.stop()

        if self._server:
            self._server.shutdown()
            self._server.server_close()

        for t in self._threads:
            t.join(timeout=5)

        self._remove_pid()
        logger.info("Daemon stopped.")

    def run_forever(self) -> None:
        """Block until stop is signaled."""
        try:
            while not self._stop_event.is_set():
                self._stop_event.wait(timeout=1)
        except KeyboardInterrupt:
            pass
        finally:
            self.stop()

    def resume(self) -> threading.Thread:
        """The host regained foreground: re-read settings and check now.

        Returns:
            The worker thread running the check.
        """
        self.state.record_trigger()
        self.engine.reload_settings()
        if self.engine.settings.auto_sync_enabled and not self.scheduler.running:
            worker = threading.Thread(
                target=self.scheduler.start, name="tracksync-resume", daemon=True
            )
            worker.start()
            return worker
        if not self.engine.settings.auto_sync_enabled:
            self.scheduler.stop()
        return self.scheduler.trigger()

    def status(self) -> dict:
        """Daemon, scheduler, and engine state in one JSON-safe dict."""
        return {
            **self.state.snapshot(),
            "scheduler": {
                "running": self.scheduler.running,
                "tick_seconds": self.scheduler.tick_seconds,
                "last_error": self.scheduler.last_error,
            },
            "sync": self.engine.status_report(),
        }

    def _start_api_server(self) -> None:
        """Start the local HTTP API server in a background thread."""
        service = self

        class DaemonHandler(BaseHTTPRequestHandler):
            """HTTP handler for the daemon API."""

            def do_GET(self):
                if self.path == "/status":
                    self._json_response(service.status())
                elif self.path == "/ping":
                    self._json_response({"pong": True, "pid": os.getpid()})
                else:
                    self._json_response(
                        {"endpoints": ["/status", "/ping", "/sync"]},
                        status=404,
                    )

            def do_POST(self):
                if self.path == "/sync":
                    service.resume()
                    self._json_response({"triggered": True}, status=202)
                else:
                    self._json_response({"error": "not found"}, status=404)

            def _json_response(self, data: dict, status: int = 200):
                body = json.dumps(data, indent=2, default=str).encode()
                self.send_response(status)
                self.send_header("Content-Type", "application/json")
                self.send_header("Content-Length", str(len(body)))
                self.end_headers()
                self.wfile.write(body)

            def log_message(self, format, *args):
                logger.debug("API: %s", format % args)

        try:
            self._server = HTTPServer(("127.0.0.1", self.config.port), DaemonHandler)
            t = threading.Thread(
                target=self._server.serve_forever,
                name="tracksync-api",
                daemon=True,
            )
            t.start()
            self._threads.append(t)
            logger.info("API server listening on http://127.0.0.1:%d", self.port)
        except OSError as exc:
            logger.error("Failed to start API server: %s", exc)
            self.state.record_error(f"API server: {exc}")

    def _setup_logging(self) -> None:
        """Attach the daemon log file to the root logger."""
        handler = logging.FileHandler(self.config.log_file)
        handler.setFormatter(
            logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s")
        )
        root = logging.getLogger()
        root.addHandler(handler)
        root.setLevel(logging.INFO)

    def _setup_signals(self) -> None:
        """Register shutdown and resume signal handlers."""
        for sig in (signal.SIGTERM, signal.SIGINT):
            signal.signal(sig, self._handle_stop)
        if hasattr(signal, "SIGUSR1"):
            signal.signal(signal.SIGUSR1, self._handle_resume)

    def _handle_stop(self, signum, frame):
        logger.info("Received signal %s -- stopping", signal.Signals(signum).name)
        self._stop_event.set()

    def _handle_resume(self, signum, frame):
        logger.info("Received signal %s -- checking sync", signal.Signals(signum).name)
        self.resume()

    def _write_pid(self) -> None:
        pid_path = self.config.home / PID_FILE
        pid_path.parent.mkdir(parents=True, exist_ok=True)
        pid_path.write_text(str(os.getpid()), encoding="utf-8")

    def _remove_pid(self) -> None:
        pid_path = self.config.home / PID_FILE
        if pid_path.exists():
            pid_path.unlink()


def read_pid(home: Optional[Path] = None) -> Optional[int]:
    """Read the daemon PID from the PID file.

    Returns:
        PID as int, or None if not running. A stale PID file is removed.
    """
    home = (home or Path(TRACKSYNC_HOME)).expanduser()
    pid_path = home / PID_FILE
    if not pid_path.exists():
        return None
    try:
        pid = int(pid_path.read_text(encoding="utf-8").strip())
        os.kill(pid, 0)
        return pid
    except (ValueError, ProcessLookupError, PermissionError):
        pid_path.unlink(missing_ok=True)
        return None


def is_running(home: Optional[Path] = None) -> bool:
    return read_pid(home) is not None


def get_daemon_status(port: int = DEFAULT_PORT) -> Optional[dict]:
    """Query the running daemon's status via its HTTP API.

    Returns:
        Status dict from the daemon, or None if unreachable.
    """
    import requests

    try:
        resp = requests.get(f"http://127.0.0.1:{port}/status", timeout=3)
        resp.raise_for_status()
        return resp.json()
    except (requests.RequestException, ValueError):
        return None


def trigger_daemon_sync(port: int = DEFAULT_PORT) -> bool:
    """Ask a running daemon to check for a due sync.

    Returns:
        True if the daemon accepted the request.
    """
    import requests

    try:
        resp = requests.post(f"http://127.0.0.1:{port}/sync", timeout=3)
        return resp.status_code == 202
    except requests.RequestException:
        return False
