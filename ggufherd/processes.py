"""
processes.py — llama-server processes (via psutil) and the server port

The OS process table is the only ground truth about which models are being
served, since servers outlive the command that started them. ProcessTable
re-reads it on every call; nothing is cached. psutil returns argv
intact, so model paths containing spaces are matched correctly.

Processes are identified by executable name plus the exact `-m` model path
argument, so two models whose names are substrings of each other never
match each other.
"""

from __future__ import annotations
import logging
import os
import signal
import socket
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import psutil

from .errors import GGUFError

logger = logging.getLogger(__name__)


@dataclass
class ServerProcess:
    pid: int
    argv: list[str] = field(default_factory=list)
    model_path: Optional[str] = None
    port: Optional[int] = None

    @property
    def model_file(self) -> str:
        return Path(self.model_path).name if self.model_path else ""

    def serves(self, model_path: str | Path) -> bool:
        return self.model_path is not None and self.model_path == str(model_path)


def parse_server_argv(argv: list[str]) -> tuple[Optional[str], Optional[int]]:
    """Pull the model path and port out of a llama-server command line."""
    model_path: Optional[str] = None
    port: Optional[int] = None
    for i, arg in enumerate(argv):
        value = None
        if "=" in arg and arg.startswith("--"):
            arg, value = arg.split("=", 1)
        elif i + 1 < len(argv):
            value = argv[i + 1]
        if arg in ("-m", "--model") and value is not None:
            model_path = value
        elif arg == "--port" and value is not None:
            try:
                port = int(value)
            except ValueError:
                pass
    return model_path, port


class ProcessTable:
    """Snapshot queries over the OS process list."""

    def __init__(self, server_bin: str):
        self.server_name = Path(server_bin).name

    def servers(self) -> list[ServerProcess]:
        """Every running process whose executable is the configured server."""
        own = os.getpid()
        found = []
        for proc in psutil.process_iter(["pid", "cmdline"]):
            pid = proc.info["pid"]
            argv = proc.info["cmdline"] or []
            if pid == own or not argv or Path(argv[0]).name != self.server_name:
                continue
            model_path, port = parse_server_argv(argv)
            found.append(ServerProcess(pid=pid, argv=argv, model_path=model_path, port=port))
        return found

    def is_alive(self, pid: int) -> bool:
        try:
            return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
        except psutil.NoSuchProcess:
            return False
        except psutil.AccessDenied:
            return True

    def signal(self, pid: int, sig: int = signal.SIGTERM):
        """Send *sig* to *pid*. psutil errors surface as the matching OSError."""
        try:
            proc = psutil.Process(pid)
            if sig == signal.SIGTERM:
                proc.terminate()
            elif sig == signal.SIGKILL:
                proc.kill()
            else:
                proc.send_signal(sig)
        except psutil.NoSuchProcess as exc:
            raise ProcessLookupError(f"No such process: {pid}") from exc
        except psutil.AccessDenied as exc:
            raise PermissionError(f"Not permitted to signal PID {pid}") from exc


def spawn_server(argv: list[str], log_file: str | Path) -> int:
    """Start *argv* detached from this process, output to *log_file*. Returns the pid."""
    log_file = Path(log_file)
    log_file.parent.mkdir(parents=True, exist_ok=True)
    logger.debug("Spawning: %s", " ".join(argv))
    with open(log_file, "ab") as fh:
        try:
            proc = subprocess.Popen(
                argv,
                stdin=subprocess.DEVNULL,
                stdout=fh,
                stderr=subprocess.STDOUT,
                start_new_session=True,
            )
        except OSError as exc:
            raise GGUFError(
                f"Could not start {argv[0]}: {exc.strerror or exc}. "
                "Set LLAMA_SERVER to the llama-server binary."
            ) from exc
    return proc.pid


def port_open(host: str, port: int, timeout: float = 1.0) -> bool:
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False
