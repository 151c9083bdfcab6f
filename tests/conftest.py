"""Shared fixtures: isolated settings/catalog and a scriptable process table."""

import signal

import pytest

from ggufherd.catalog import Catalog
from ggufherd.config import Settings


class FakeProcessTable:
    """Stands in for ProcessTable; tests set .procs and inspect .signals."""

    def __init__(self, procs=None):
        self.procs = list(procs or [])
        self.alive = {p.pid for p in self.procs}
        self.signals = []
        self.fail_on = {}          # pid -> OSError to raise when signalled
        self.survivors = set()     # pids that ignore SIGTERM

    def servers(self):
        return [p for p in self.procs if p.pid in self.alive]

    def is_alive(self, pid):
        return pid in self.alive

    def signal(self, pid, sig):
        self.signals.append((pid, sig))
        if pid in self.fail_on:
            raise self.fail_on[pid]
        if sig == signal.SIGKILL or pid not in self.survivors:
            self.alive.discard(pid)


class FakeClock:
    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def settings(tmp_path):
    return Settings(
        models_dir=tmp_path / "models",
        db_path=tmp_path / "gguf.db",
        state_file=tmp_path / "server.json",
        log_dir=tmp_path / "logs",
        server_bin="/usr/bin/llama-server",
        settle_delay=0,
    )


@pytest.fixture
def catalog(settings):
    return Catalog(settings.db_path)


@pytest.fixture
def clock():
    return FakeClock()
