"""Shared test fixtures for VM-Ports."""

from __future__ import annotations

from pathlib import Path
from typing import Iterable, List, Optional, Tuple

import pytest

from vmports.constants import LEASE_DIR_NAME
from vmports.leases import LeaseStore
from vmports.models import ForwardingRule, MachineConfig


class FakeClock:
    """Manually advanced clock for lease expiry tests."""

    def __init__(self, now: float = 1_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class StubProber:
    """Port prober with fixed answers that records every probe."""

    def __init__(self, open_ports: Iterable[int] = ()) -> None:
        self.open_ports = set(open_ports)
        self.calls: List[Tuple[Optional[str], int]] = []

    def __call__(self, host_ip: Optional[str], host_port: int) -> bool:
        self.calls.append((host_ip, host_port))
        return host_port in self.open_ports

    @property
    def probed_ports(self) -> List[int]:
        return [port for _, port in self.calls]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def data_dir(tmp_path) -> Path:
    path = tmp_path / "machine"
    path.mkdir()
    return path


@pytest.fixture
def env_dir(tmp_path) -> Path:
    path = tmp_path / "state"
    path.mkdir()
    return path


@pytest.fixture
def lease_dir(env_dir) -> Path:
    return env_dir / LEASE_DIR_NAME


@pytest.fixture
def lease_store(lease_dir, clock) -> LeaseStore:
    return LeaseStore(lease_dir, clock=clock, owner="pass-a")


@pytest.fixture
def make_machine(data_dir, env_dir):
    """Build a MachineConfig rooted in the test data and state dirs."""

    def _make(*rules: ForwardingRule, usable=range(2200, 2251), name: str = "test-vm") -> MachineConfig:
        return MachineConfig(
            name=name,
            data_dir=data_dir,
            env_dir=env_dir,
            forwarded_ports=list(rules),
            usable_port_range=usable,
        )

    return _make


# All environment variables that parse_env()/load_machines() read.
_PARSE_ENV_VARS = [
    "PORT_COLLISION_REPAIR",
    "PORT_COLLISION_REMAP",
    "PORT_COLLISION_EXTRA_IN_USE",
    "USABLE_PORT_RANGE",
    "LEASE_TTL",
    "LOCK_RETRY_INTERVAL",
    "LOCK_MAX_ATTEMPTS",
    "SSH_PORT",
]


@pytest.fixture
def clean_env(monkeypatch):
    """Clear every environment variable the configuration layer reads."""
    for key in _PARSE_ENV_VARS:
        monkeypatch.delenv(key, raising=False)


@pytest.fixture
def make_prober():
    """Return a factory for StubProber instances."""
    return StubProber
