"""Forwarded port collision detection and repair for VM-Ports.

A pass runs under the ``fpcollision`` process lock shared by every machine:

1. every configured host port (disabled rules included) is taken out of the
   machine's usable port range, together with the ports claimed by machines
   handled earlier in the batch;
2. each enabled TCP rule is remapped if asked to, then checked against the
   batch claims, the host itself and the lease directory. A rule found in
   collision is either repaired from the usable ports (smallest first) or
   reported.

Leases taken during the pass are released once the caller is done with the
resolved rules, whatever the outcome.
"""

from __future__ import annotations

import signal
import threading
from contextlib import contextmanager
from typing import Callable, Iterable, Iterator, List, Optional, Set, TypeVar, Union

from vmports.constants import LEASE_DIR_NAME, LOCK_LABEL, WILDCARD_HOST_IP
from vmports.exceptions import (
    ForwardPortAutolistEmpty,
    ForwardPortCollision,
    PassInterrupted,
)
from vmports.leases import LeaseStore
from vmports.lock import ProcessLock
from vmports.models import (
    ExtraInUse,
    ForwardingRule,
    MachineConfig,
    PassState,
    RemapTable,
    ResolvedForward,
    normalize_host_ip,
)
from vmports.prober import PortProber, SocketPortProber
from vmports.utils import log

T = TypeVar("T")


def normalize_extra_in_use(extra_in_use: Union[None, ExtraInUse, Iterable[int]]) -> ExtraInUse:
    """Accept either a port -> host IPs mapping or a bare list of ports.

    A bare port claims every interface.
    """
    if not extra_in_use:
        return {}
    if isinstance(extra_in_use, dict):
        return {int(port): set(ips) for port, ips in extra_in_use.items()}
    return {int(port): {WILDCARD_HOST_IP} for port in extra_in_use}


def is_forwarded_already(extra_in_use: ExtraInUse, host_port: int, host_ip: Optional[str]) -> bool:
    """Return True if a machine handled earlier in the batch already forwards the port."""
    host_ip = normalize_host_ip(host_ip)
    if host_port not in extra_in_use:
        return False

    claims = extra_in_use[host_port]
    if host_ip == WILDCARD_HOST_IP:
        # An entry with no claimants does not own the port.
        return len(claims) != 0
    if WILDCARD_HOST_IP in claims:
        return True
    return host_ip in claims


class CollisionDetector:
    """Decide whether a host IP/port pair is taken, leasing it when it is not."""

    def __init__(self, extra_in_use: ExtraInUse, prober: PortProber, lease_store: LeaseStore) -> None:
        self.extra_in_use = extra_in_use
        self.prober = prober
        self.lease_store = lease_store

    def in_use(self, host_ip: Optional[str], host_port: int) -> bool:
        if is_forwarded_already(self.extra_in_use, host_port, host_ip):
            log("DEBUG", f"Host port {host_port} is forwarded by another machine in this run")
            return True
        if self.prober(host_ip, host_port):
            log("DEBUG", f"Host port {host_port} is already accepting connections")
            return True
        if self.lease_store.check_and_acquire(host_ip, host_port):
            log("DEBUG", f"Host port {host_port} is leased by another pass")
            return True
        return False


class RepairAllocator:
    """Hand out replacement ports from the usable pool, smallest first."""

    def __init__(self, detector: CollisionDetector) -> None:
        self.detector = detector

    def repair(self, pool: Set[int], host_ip: Optional[str]) -> Optional[int]:
        """Return a free port taken from ``pool``, or None once the pool is empty.

        Every candidate tried is removed from ``pool``.
        """
        while pool:
            candidate = min(pool)
            pool.discard(candidate)
            if self.detector.in_use(host_ip, candidate):
                log("INFO", f"Repaired port also in use: {candidate}. Trying another...")
                continue
            return candidate
        return None


class ForwardedPortCollisionHandler:
    """Resolve one machine's forwarded ports against everything else on the host."""

    def __init__(
        self,
        machine: MachineConfig,
        repair: bool = False,
        extra_in_use: Union[None, ExtraInUse, Iterable[int]] = None,
        remap: Optional[RemapTable] = None,
        prober: Optional[PortProber] = None,
        lease_store: Optional[LeaseStore] = None,
        lock: Optional[ProcessLock] = None,
    ) -> None:
        self.machine = machine
        self.repair_enabled = repair
        self.extra_in_use = normalize_extra_in_use(extra_in_use)
        self.remap: RemapTable = dict(remap or {})
        self.prober: PortProber = prober or SocketPortProber()
        self.lease_store = lease_store or LeaseStore(machine.env_dir / LEASE_DIR_NAME)
        self.lock = lock or ProcessLock(machine.env_dir, LOCK_LABEL)
        self.state = PassState.IDLE
        self.notices: List[str] = []

    def call(self, body: Callable[[List[ResolvedForward]], T]) -> T:
        """Resolve the rules, hand them to ``body`` and always release the leases."""
        with self._terminate_on_signal():
            try:
                resolved = self.resolve()
                return body(resolved)
            finally:
                self.recover()

    def resolve(self) -> List[ResolvedForward]:
        try:
            self.state = PassState.LOCKING
            with self.lock.held():
                resolved = self._handle()
        except BaseException:
            self.state = PassState.ERRORED
            raise
        return resolved

    def recover(self) -> None:
        """Release every lease taken by this pass."""
        errored = self.state == PassState.ERRORED
        self.state = PassState.CLEANING
        try:
            self.lease_store.release_all()
        except BaseException:
            self.state = PassState.ERRORED
            raise
        self.state = PassState.ERRORED if errored else PassState.DONE

    def _handle(self) -> List[ResolvedForward]:
        log("INFO", f"Detecting any forwarded port collisions for '{self.machine.name}'...")
        log("DEBUG", f"Extra in use: {self.extra_in_use!r}")
        log("DEBUG", f"Remap: {self.remap!r}")
        log("DEBUG", f"Repair: {self.repair_enabled!r}")

        self.state = PassState.SCANNING
        usable_ports = self._usable_ports()

        self.state = PassState.RESOLVING
        detector = CollisionDetector(self.extra_in_use, self.prober, self.lease_store)
        allocator = RepairAllocator(detector)
        resolved: List[ResolvedForward] = []
        for rule in self.machine.forwarded_ports:
            resolved.append(self._resolve_rule(rule, detector, allocator, usable_ports))
        return resolved

    def _usable_ports(self) -> Set[int]:
        usable_ports = set(self.machine.usable_port_range)
        usable_ports.difference_update(self.extra_in_use.keys())
        for rule in self.machine.forwarded_ports:
            usable_ports.discard(rule.host_port)
        return usable_ports

    def _resolve_rule(
        self,
        rule: ForwardingRule,
        detector: CollisionDetector,
        allocator: RepairAllocator,
        usable_ports: Set[int],
    ) -> ResolvedForward:
        if rule.disabled:
            log("DEBUG", f"Skipping disabled port {rule.host_port}.")
            return ResolvedForward(rule, rule.host_port, rule.host_port)
        if rule.protocol != "tcp":
            log("DEBUG", f"Skipping {rule.host_port} because {rule.protocol.upper()} protocol.")
            return ResolvedForward(rule, rule.host_port, rule.host_port)

        host_port = rule.host_port
        if host_port in self.remap:
            remap_port = self.remap[host_port]
            log("DEBUG", f"Remap port override: {host_port} => {remap_port}")
            host_port = remap_port

        if not detector.in_use(rule.host_ip, host_port):
            return ResolvedForward(rule, host_port, rule.host_port)

        if not self.repair_enabled or not rule.auto_correct:
            raise ForwardPortCollision(guest_port=rule.guest_port, host_port=host_port)

        log("INFO", f"Attempting to repair FP collision: {host_port}")
        repaired_port = allocator.repair(usable_ports, rule.host_ip)
        if repaired_port is None:
            raise ForwardPortAutolistEmpty(
                vm_name=self.machine.name,
                guest_port=rule.guest_port,
                host_port=host_port,
            )

        notice = f"Fixed port collision for {rule.guest_port} => {host_port}. Now on port {repaired_port}."
        self.notices.append(notice)
        log("INFO", notice)
        return ResolvedForward(rule, repaired_port, rule.host_port, repaired=True)

    @contextmanager
    def _terminate_on_signal(self) -> Iterator[None]:
        """Turn SIGTERM into an exception so lease cleanup still runs."""
        if threading.current_thread() is not threading.main_thread():
            yield
            return

        def _interrupt(signum, frame):
            raise PassInterrupted(f"Interrupted by signal {signum} while handling forwarded ports")

        prev_sigterm = signal.signal(signal.SIGTERM, _interrupt)
        try:
            yield
        finally:
            signal.signal(signal.SIGTERM, prev_sigterm)
