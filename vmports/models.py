"""Data models for VM-Ports."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, NamedTuple, Optional, Set

from vmports.constants import DEFAULT_USABLE_PORT_RANGE, WILDCARD_HOST_IP
from vmports.utils import lease_key

# host port -> host IPs (or "*") claimed by machines handled earlier in the batch
ExtraInUse = Dict[int, Set[str]]
RemapTable = Dict[int, int]


def normalize_host_ip(host_ip: Optional[str]) -> str:
    """Map an absent or empty host IP to the wildcard marker."""
    if host_ip is None or not host_ip.strip():
        return WILDCARD_HOST_IP
    return host_ip.strip()


@dataclass(frozen=True)
class ForwardingRule:
    guest_port: int
    host_port: int
    host_ip: Optional[str] = None
    protocol: str = "tcp"
    disabled: bool = False
    auto_correct: bool = False
    id: Optional[str] = None

    @property
    def arbitrated(self) -> bool:
        """Only enabled TCP rules take part in collision handling."""
        return not self.disabled and self.protocol == "tcp"


class ResolvedForward(NamedTuple):
    rule: ForwardingRule
    host_port: int
    original_host_port: int
    repaired: bool = False

    @property
    def guest_port(self) -> int:
        return self.rule.guest_port

    @property
    def host_ip(self) -> Optional[str]:
        return self.rule.host_ip

    @property
    def protocol(self) -> str:
        return self.rule.protocol


@dataclass
class MachineConfig:
    name: str
    data_dir: Path
    # shared by every machine on the host: lease markers and the collision lock live here
    env_dir: Path
    forwarded_ports: List[ForwardingRule] = field(default_factory=list)
    usable_port_range: range = DEFAULT_USABLE_PORT_RANGE


@dataclass(frozen=True)
class Lease:
    host_ip: Optional[str]
    host_port: int
    owner: str
    created_at: float

    @property
    def key(self) -> str:
        return lease_key(self.host_ip, self.host_port)

    def is_expired(self, now: float, ttl: float) -> bool:
        return self.created_at < now - ttl


class PassState(enum.Enum):
    IDLE = "idle"
    LOCKING = "locking"
    SCANNING = "scanning"
    RESOLVING = "resolving"
    CLEANING = "cleaning"
    DONE = "done"
    ERRORED = "errored"
