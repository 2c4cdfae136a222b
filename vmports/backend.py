"""libvirt backend adapter for VM-Ports."""

from __future__ import annotations

from typing import Dict, List, Optional, Set
from xml.etree.ElementTree import ParseError, fromstring

try:
    import libvirt  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit(f"libvirt python bindings not available: {exc}")

from vmports.constants import LIBVIRT_URI, WILDCARD_HOST_IP
from vmports.exceptions import BackendError
from vmports.models import ExtraInUse
from vmports.utils import log


def _connect(uri: str = LIBVIRT_URI) -> "libvirt.virConnect":
    try:
        conn = libvirt.open(uri)
    except libvirt.libvirtError as exc:
        raise BackendError(f"Failed to open libvirt connection to {uri}: {exc}") from exc
    if conn is None:
        raise BackendError(f"Failed to open libvirt connection to {uri}")
    return conn


def list_running_domains(conn: "libvirt.virConnect") -> List["libvirt.virDomain"]:
    try:
        return list(conn.listAllDomains(libvirt.VIR_CONNECT_LIST_DOMAINS_ACTIVE))
    except libvirt.libvirtError as exc:
        raise BackendError(f"Failed to list running domains: {exc}") from exc


def parse_forwarded_ports(domain_xml: str) -> ExtraInUse:
    """Extract ``host port -> host IPs`` from a domain's ``<portForward>`` elements."""
    try:
        root = fromstring(domain_xml)
    except ParseError as exc:
        raise BackendError(f"Cannot parse domain XML: {exc}") from exc

    used: Dict[int, Set[str]] = {}
    for pf_el in root.iter("portForward"):
        if pf_el.get("proto", "tcp") != "tcp":
            continue
        address = pf_el.get("address") or WILDCARD_HOST_IP
        for range_el in pf_el.iter("range"):
            start = range_el.get("start")
            if start is None:
                continue
            end = range_el.get("end") or start
            for port in range(int(start), int(end) + 1):
                used.setdefault(port, set()).add(address)
    return used


def read_used_ports(exclude: Optional[str] = None, uri: str = LIBVIRT_URI) -> ExtraInUse:
    """Return the host ports forwarded by every other running domain."""
    used: Dict[int, Set[str]] = {}
    conn = _connect(uri)
    try:
        for domain in list_running_domains(conn):
            try:
                name = domain.name()
                # Ignore our own used ports
                if name == exclude:
                    continue
                domain_xml = domain.XMLDesc(0)
            except libvirt.libvirtError as exc:
                if exc.get_error_code() != libvirt.VIR_ERR_NO_DOMAIN:
                    raise BackendError(f"Failed to read domain XML: {exc}") from exc
                log("DEBUG", "A domain went away while reading its ports; ignoring")
                continue
            for port, addresses in parse_forwarded_ports(domain_xml).items():
                used.setdefault(port, set()).update(addresses)
    finally:
        conn.close()
    return used
