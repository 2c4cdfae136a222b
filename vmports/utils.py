"""Utility functions for VM-Ports."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

from vmports.constants import (
    _LEASE_KEY_UNSAFE_RE,
    _LOG_VERBOSE,
    PORT_RANGE_RE,
    TRUTHY,
    WILDCARD_HOST_IP,
)
from vmports.exceptions import ManagerError


def log(level: str, message: str) -> None:
    """Lightweight structured logging compatible with existing colour expectation."""
    if level == "DEBUG" and not _LOG_VERBOSE:
        return
    colours = {
        "INFO": "\033[0;34m",
        "WARN": "\033[1;33m",
        "ERROR": "\033[0;31m",
        "SUCCESS": "\033[0;32m",
        "DEBUG": "\033[0;90m",
    }
    colour = colours.get(level, "")
    reset = "\033[0m" if colour else ""
    print(f"{colour}[{level}]{reset} {message}", flush=True)


def get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(name, default)


def get_env_bool(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.lower() in TRUTHY


def parse_int_env(name: str, default: str, min_val: int = 1, max_val: Optional[int] = None) -> int:
    raw = get_env(name, default)
    assert raw is not None
    try:
        value = int(raw)
    except ValueError:
        raise ManagerError(f"{name} must be an integer (got '{raw}')")
    if value < min_val:
        raise ManagerError(f"{name} must be >= {min_val} (got {value})")
    if max_val is not None and value > max_val:
        raise ManagerError(f"{name} must be <= {max_val} (got {value})")
    return value


def parse_float_env(name: str, default: str, min_val: float = 0.0) -> float:
    raw = get_env(name, default)
    assert raw is not None
    try:
        value = float(raw)
    except ValueError:
        raise ManagerError(f"{name} must be a number (got '{raw}')")
    if value < min_val:
        raise ManagerError(f"{name} must be >= {min_val} (got {value})")
    return value


def parse_port(raw, label: str) -> int:
    try:
        value = int(raw)
    except (TypeError, ValueError):
        raise ManagerError(f"{label} must be an integer (got '{raw}')")
    if not (1 <= value <= 65535):
        raise ManagerError(f"{label} {value} out of range (1-65535)")
    return value


def parse_port_range(raw: str, label: str = "port range") -> range:
    """Parse ``2200-2250`` (or ``2200..2250``) into an inclusive range."""
    match = PORT_RANGE_RE.match(str(raw))
    if not match:
        raise ManagerError(f"Invalid {label} '{raw}'. Use the form start-end (e.g. '2200-2250')")
    start = parse_port(match.group(1), label)
    end = parse_port(match.group(2), label)
    if end < start:
        raise ManagerError(f"Invalid {label} '{raw}': end {end} is below start {start}")
    return range(start, end + 1)


def lease_key(host_ip: Optional[str], host_port: int) -> str:
    """Return the lease file name for a host IP/port pair.

    The IP component is left out for the wildcard so that ``8080`` and
    ``127_0_0_1_8080`` stay distinct markers.
    """
    if host_ip is None or not host_ip.strip() or host_ip.strip() == WILDCARD_HOST_IP:
        return str(host_port)
    safe_ip = _LEASE_KEY_UNSAFE_RE.sub("_", host_ip.strip())
    return f"{safe_ip}_{host_port}"


def ensure_directory(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)
