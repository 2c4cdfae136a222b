"""Time-bounded forwarded port leases for VM-Ports.

A lease is a small marker file under ``<state dir>/fp-leases`` that
claims a (host IP, host port) pair for the pass that created it. Markers
older than the TTL are purged lazily by whichever pass scans the directory
next, so a crashed invocation never holds a port for longer than the TTL.
"""

from __future__ import annotations

import time
import uuid
from pathlib import Path
from typing import Callable, Dict, List, Optional

from vmports.constants import LEASE_TTL_SECONDS, WILDCARD_HOST_IP
from vmports.exceptions import LeaseConflictError
from vmports.models import Lease
from vmports.utils import ensure_directory, lease_key, log


class LeaseStore:
    """Create, check, expire and release lease markers in one directory."""

    def __init__(
        self,
        lease_dir: Path,
        ttl: float = LEASE_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
        owner: Optional[str] = None,
    ) -> None:
        self.lease_dir = lease_dir
        self.ttl = ttl
        self.clock = clock
        self.owner = owner or uuid.uuid4().hex
        self._owned: Dict[str, Lease] = {}

    @property
    def owned(self) -> List[Lease]:
        return list(self._owned.values())

    def check(self, host_ip: Optional[str], host_port: int) -> bool:
        """Return True if a live lease exists for the key, purging expired ones."""
        key = lease_key(host_ip, host_port)
        return any(lease_path.name == key for lease_path, _ in self._scan())

    def acquire(self, host_ip: Optional[str], host_port: int) -> Lease:
        ensure_directory(self.lease_dir)
        lease = Lease(host_ip=host_ip, host_port=host_port, owner=self.owner, created_at=self.clock())
        lease_path = self.lease_dir / lease.key
        try:
            with open(lease_path, "x") as f:
                f.write(self._serialize(lease))
        except FileExistsError:
            raise LeaseConflictError(f"Lease {lease.key} is already held in {self.lease_dir}")
        self._owned[lease.key] = lease
        log("DEBUG", f"Leased host port {host_port} (host_ip={host_ip or WILDCARD_HOST_IP})")
        return lease

    def check_and_acquire(self, host_ip: Optional[str], host_port: int) -> bool:
        """Claim the key unless it is already leased. Returns True on collision."""
        if self.check(host_ip, host_port):
            return True
        try:
            self.acquire(host_ip, host_port)
        except LeaseConflictError:
            return True
        return False

    def release_all(self) -> None:
        """Delete every marker this store created. Safe to call repeatedly."""
        for key, lease in list(self._owned.items()):
            lease_path = self.lease_dir / key
            if lease_path.is_file():
                on_disk = self._read(lease_path)
                if on_disk.owner == lease.owner:
                    lease_path.unlink(missing_ok=True)
                    log("DEBUG", f"Released lease {key}")
                else:
                    log("DEBUG", f"Lease {key} was taken over by {on_disk.owner}; leaving it")
            del self._owned[key]

    def leases(self) -> List[Lease]:
        """Return all live leases, purging expired ones."""
        return [lease for _, lease in self._scan()]

    def _scan(self):
        ensure_directory(self.lease_dir)
        now = self.clock()
        live = []
        for child in sorted(self.lease_dir.iterdir()):
            if not child.is_file():
                continue
            lease = self._read(child)
            if lease.is_expired(now, self.ttl):
                # another pass may purge the same marker concurrently
                child.unlink(missing_ok=True)
                log("DEBUG", f"Purged expired lease {child.name}")
                continue
            live.append((child, lease))
        return live

    @staticmethod
    def _serialize(lease: Lease) -> str:
        host_ip = lease.host_ip or WILDCARD_HOST_IP
        return f"{lease.created_at:.3f}\n{lease.owner}\n{host_ip}\n{lease.host_port}\n"

    @staticmethod
    def _read(lease_path: Path) -> Lease:
        lines = lease_path.read_text().splitlines()
        try:
            created_at = float(lines[0])
        except (IndexError, ValueError):
            created_at = lease_path.stat().st_mtime
        owner = lines[1].strip() if len(lines) > 1 else ""
        host_ip: Optional[str] = lines[2].strip() if len(lines) > 2 else None
        if host_ip == WILDCARD_HOST_IP:
            host_ip = None
        try:
            host_port = int(lines[3])
        except (IndexError, ValueError):
            host_port = int(lease_path.name.rsplit("_", 1)[-1]) if lease_path.name[-1:].isdigit() else 0
        return Lease(host_ip=host_ip, host_port=host_port, owner=owner, created_at=created_at)
