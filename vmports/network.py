"""Network XML generation for resolved forwarded ports."""

from __future__ import annotations

from typing import Iterable, List, Optional, Tuple
from xml.etree.ElementTree import Element, SubElement, tostring

from vmports.models import ResolvedForward
from vmports.utils import log


def _element_to_str(root: Element) -> str:
    """Serialize an ElementTree element to a pretty-printed XML string without declaration."""
    from xml.dom.minidom import parseString

    raw = tostring(root, encoding="unicode")
    return parseString(raw).documentElement.toprettyxml(indent="  ").strip()


def active_forwards(resolved: Iterable[ResolvedForward]) -> List[ResolvedForward]:
    """Drop disabled rules; they are never handed to the backend."""
    return [fwd for fwd in resolved if not fwd.rule.disabled]


def render_port_forwards_xml(
    resolved: Iterable[ResolvedForward],
    mac_address: Optional[str] = None,
    model: str = "virtio",
) -> Tuple[str, int]:
    """Render a passt user-mode interface carrying the resolved forwards.

    Returns the XML and the number of ``<portForward>`` elements written.
    """
    iface = Element("interface", type="user")
    if mac_address:
        SubElement(iface, "mac", address=mac_address.lower())
    SubElement(iface, "backend", type="passt")
    SubElement(iface, "ip", family="ipv4", address="10.0.2.15", prefix="24")
    SubElement(iface, "model", type=model)

    count = 0
    for fwd in active_forwards(resolved):
        attrs = {"proto": fwd.protocol}
        if fwd.host_ip:
            attrs["address"] = fwd.host_ip
        pf_el = SubElement(iface, "portForward", **attrs)
        SubElement(pf_el, "range", start=str(fwd.host_port), to=str(fwd.guest_port))
        count += 1
    if count == 0:
        log("DEBUG", "No forwarded ports to render")
    return _element_to_str(iface), count
