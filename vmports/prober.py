"""Host port liveness probing for VM-Ports."""

from __future__ import annotations

import errno
import ipaddress
import socket
import sys
from typing import List, Optional, Protocol, Tuple

try:
    import psutil  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("psutil is required but not installed") from exc

from vmports.constants import PORT_PROBE_TIMEOUT, WILDCARD_ADDRESS
from vmports.utils import log

# errno values that mean "nothing is listening there" rather than a probe failure
_NOT_OPEN_ERRNOS = {
    errno.ECONNREFUSED,
    errno.EHOSTUNREACH,
    errno.ENETUNREACH,
    errno.ENOTCONN,
    errno.EADDRNOTAVAIL,
    errno.ETIMEDOUT,
}


class PortProber(Protocol):
    def __call__(self, host_ip: Optional[str], host_port: int) -> bool:
        ...


def is_port_open(host: str, port: int, timeout: float = PORT_PROBE_TIMEOUT) -> bool:
    """Return True if something accepts TCP connections on host:port."""
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except socket.timeout:
        return False
    except OSError as exc:
        if exc.errno in _NOT_OPEN_ERRNOS:
            return False
        raise


def ipv4_interfaces() -> List[Tuple[str, str]]:
    """Return ``(interface, address)`` for every local IPv4 address."""
    interfaces: List[Tuple[str, str]] = []
    for name, addrs in sorted(psutil.net_if_addrs().items()):
        for addr in addrs:
            if addr.family == socket.AF_INET and addr.address:
                interfaces.append((name, addr.address))
    return interfaces


class SocketPortProber:
    """Default prober: connect to the port and see whether anything answers.

    Where the wildcard address cannot be probed directly (Windows), every local
    IPv4 interface is probed instead and the port only counts as taken when no
    interface has it free.
    """

    def __init__(self, wildcard_per_interface: Optional[bool] = None, timeout: float = PORT_PROBE_TIMEOUT) -> None:
        if wildcard_per_interface is None:
            wildcard_per_interface = sys.platform.startswith("win")
        self.wildcard_per_interface = wildcard_per_interface
        self.timeout = timeout

    def __call__(self, host_ip: Optional[str], host_port: int) -> bool:
        test_host_ip = host_ip or WILDCARD_ADDRESS
        if self.wildcard_per_interface and test_host_ip == WILDCARD_ADDRESS:
            return self._probe_all_interfaces(host_port)

        if test_host_ip != WILDCARD_ADDRESS and not self._is_local(test_host_ip):
            log("WARN", f"host IP address is not local to this device host_ip={test_host_ip}")
        return is_port_open(test_host_ip, host_port, self.timeout)

    def _probe_all_interfaces(self, host_port: int) -> bool:
        log("DEBUG", f"Testing port {host_port} on all IPv4 interfaces...")
        available = []
        for name, address in ipv4_interfaces():
            log("DEBUG", f"Testing {name} with IP address {address}")
            if not is_port_open(address, host_port, self.timeout):
                available.append(name)
        if not available:
            log("DEBUG", f"Cannot forward port {host_port} on any interfaces.")
            return True
        log("DEBUG", f"Port {host_port} will forward to the guest on the following interfaces: {available}")
        return False

    @staticmethod
    def _is_local(host_ip: str) -> bool:
        try:
            if ipaddress.ip_address(host_ip).is_loopback:
                return True
        except ValueError:
            # hostnames are resolved by the connect itself
            return True
        return any(address == host_ip for _, address in ipv4_interfaces())
