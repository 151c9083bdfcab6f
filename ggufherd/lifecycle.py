"""
lifecycle.py — Start, find and stop the llama-server for a catalogued model

All servers share one configured port, so at most one model is served at a
time. The active server is recorded in a small JSON slot file
(slug → pid → port → model path); the OS process table is still consulted
on every call because servers can be started or killed behind our back.

Usage:
    mgr = ServerManager(Catalog(settings.db_path), settings)
    mgr.ensure_running("qwen-math")    # spawns + waits for the port if needed
    mgr.running()                      # [(ServerProcess, slug), ...]
    mgr.kill("qwen-math")
    mgr.kill_all()
"""

from __future__ import annotations
import json
import logging
import signal
import sys
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional

from .catalog import Catalog
from .config import Settings
from .errors import Conflict, NotRunning, StartupTimeout
from .processes import ProcessTable, ServerProcess, port_open, spawn_server

logger = logging.getLogger(__name__)


@dataclass
class ServerSlot:
    slug: str
    pid: int
    port: int
    model_path: str
    log_file: str
    started_at: str


@dataclass
class StartResult:
    slug: str
    pid: Optional[int]
    port: int
    log_file: Optional[str]
    started: bool       # False when an existing server was reused


@dataclass
class KillReport:
    pid: int
    ok: bool
    error: str = ""


def _dot():
    print(".", end="", flush=True, file=sys.stderr)


def _dots_done():
    print("", file=sys.stderr)


class ServerManager:
    """Keeps one llama-server reachable for the requested slug."""

    def __init__(
        self,
        catalog: Catalog,
        settings: Settings,
        processes: Optional[ProcessTable] = None,
        probe: Optional[Callable[[], bool]] = None,
        spawn: Callable[[list, Path], int] = spawn_server,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.catalog = catalog
        self.settings = settings
        self.processes = processes or ProcessTable(settings.server_bin)
        self.probe = probe or (lambda: port_open(settings.host, settings.port))
        self.spawn = spawn
        self.sleep = sleep
        self.clock = clock
        self.state_file = Path(settings.state_file).expanduser()

    # ------------------------------------------------------------------
    # Slot file
    # ------------------------------------------------------------------

    def _load_slot(self) -> Optional[ServerSlot]:
        if not self.state_file.exists():
            return None
        try:
            return ServerSlot(**json.loads(self.state_file.read_text()))
        except (ValueError, TypeError) as exc:
            logger.warning("Ignoring unreadable server state %s: %s", self.state_file, exc)
            return None

    def _save_slot(self, slot: ServerSlot):
        self.state_file.parent.mkdir(parents=True, exist_ok=True)
        self.state_file.write_text(json.dumps(asdict(slot), indent=2))

    def _clear_slot(self):
        self.state_file.unlink(missing_ok=True)

    def status(self) -> Optional[ServerSlot]:
        """The recorded active server, or None once its process has gone."""
        slot = self._load_slot()
        if slot is not None and not self.processes.is_alive(slot.pid):
            logger.debug("Dropping stale server slot for %s (pid %d)", slot.slug, slot.pid)
            self._clear_slot()
            return None
        return slot

    # ------------------------------------------------------------------
    # Query
    # ------------------------------------------------------------------

    def _label(self, proc: ServerProcess) -> str:
        if proc.model_path:
            record = self.catalog.find_by_path(proc.model_path)
            if record is not None:
                return record.slug
            slug = self.catalog.slug_for_file_name(proc.model_file)
            if slug:
                return slug
        return "unknown"

    def running(self) -> list[tuple[ServerProcess, str]]:
        return [(proc, self._label(proc)) for proc in self.processes.servers()]

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    def ensure_running(self, slug: str) -> StartResult:
        """
        Make sure a server for *slug* is up. Records the request in the
        catalog's last_used even when the server was already running.

        Raises NotFound for unknown slugs, Conflict when the port is held by
        another model's server, StartupTimeout when the new server never
        opens its port (the process is left running).
        """
        model_path = self.catalog.resolve(slug)
        self.catalog.touch_last_used(slug)
        port = self.settings.port

        servers = self.processes.servers()
        for proc in servers:
            if proc.serves(model_path):
                logger.info("Server for model %s is already running.", slug)
                slot = self._load_slot()
                log_file = slot.log_file if slot and slot.pid == proc.pid else None
                return StartResult(slug, proc.pid, proc.port or port, log_file, started=False)

        holders = [p for p in servers if p.port == port]
        if holders:
            raise Conflict(
                f"Port {port} is already serving '{self._label(holders[0])}' "
                f"(PID {holders[0].pid}). Kill it before starting '{slug}'."
            )
        if self.probe():
            raise Conflict(f"Port {port} is in use by another process.")

        log_file = self.settings.log_file(slug)
        argv = [self.settings.server_bin, "-m", model_path, "--port", str(port)]
        logger.info("Starting server for model %s...", slug)
        pid = self.spawn(argv, log_file)
        logger.info("Server started with PID %d. Logs: %s", pid, log_file)
        self._save_slot(ServerSlot(
            slug=slug,
            pid=pid,
            port=port,
            model_path=model_path,
            log_file=str(log_file),
            started_at=datetime.now(timezone.utc).isoformat(),
        ))

        try:
            self.wait_for_ready(log_file)
        except KeyboardInterrupt:
            logger.warning("Interrupted; server PID %d left running. Logs: %s", pid, log_file)
            raise
        return StartResult(slug, pid, port, str(log_file), started=True)

    def wait_for_ready(self, log_file: str | Path | None = None) -> float:
        """Poll the server port until it accepts connections. Returns seconds waited."""
        timeout = self.settings.startup_timeout
        start = self.clock()
        polls = 0
        try:
            while not self.probe():
                elapsed = self.clock() - start
                if elapsed >= timeout:
                    raise StartupTimeout(timeout, log_file)
                if polls % self.settings.progress_every == 0:
                    _dot()
                self.sleep(self.settings.poll_interval)
                polls += 1
        finally:
            if polls:
                _dots_done()
        elapsed = self.clock() - start
        logger.info("Server is ready after %d seconds.", elapsed)
        return elapsed

    # ------------------------------------------------------------------
    # Stop
    # ------------------------------------------------------------------

    def kill(self, slug: str) -> list[KillReport]:
        """SIGTERM every server for *slug*. No wait, no exit check."""
        record = self.catalog.get(slug)
        slot = self.status()

        pids = []
        if record is not None:
            pids = [p.pid for p in self.processes.servers() if p.serves(record.file_path)]
        if slot is not None and slot.slug == slug and slot.pid not in pids:
            pids.append(slot.pid)
        if not pids:
            raise NotRunning(f"No running server found for model '{slug}'.")

        reports = []
        for pid in pids:
            try:
                self.processes.signal(pid, signal.SIGTERM)
            except OSError as exc:
                logger.error("Failed to terminate server for model '%s' (PID: %d): %s", slug, pid, exc)
                reports.append(KillReport(pid, ok=False, error=str(exc)))
            else:
                logger.info("Server for model '%s' (PID: %d) terminated.", slug, pid)
                reports.append(KillReport(pid, ok=True))

        if slot is not None and slot.slug == slug:
            self._clear_slot()
        return reports

    def kill_all(self) -> list[int]:
        """SIGTERM every server, wait the grace period, SIGKILL survivors."""
        pids = [p.pid for p in self.processes.servers()]
        self._clear_slot()
        if not pids:
            logger.warning("No running llama-server processes found.")
            return []

        logger.info("Killing all llama-server processes...")
        for pid in pids:
            try:
                self.processes.signal(pid, signal.SIGTERM)
            except ProcessLookupError:
                pass
            except OSError as exc:
                logger.error("Failed to signal PID %d: %s", pid, exc)

        self.sleep(self.settings.kill_grace)

        for pid in pids:
            if not self.processes.is_alive(pid):
                continue
            try:
                self.processes.signal(pid, signal.SIGKILL)
            except OSError as exc:
                logger.error("Failed to force-kill PID %d: %s", pid, exc)
        logger.info("All llama-server processes terminated.")
        return pids
