"""Global constants and path configuration for VM-Ports."""

from __future__ import annotations

import os
import re
from pathlib import Path

DEFAULT_CONFIG_PATH = Path(os.environ.get("MACHINES_CONFIG", "/config/machines.yaml"))

# DATA_DIR provides a single mount point for all persistent data.
_DATA_DIR = os.environ.get("DATA_DIR")
if _DATA_DIR:
    STATE_DIR = Path(_DATA_DIR) / "state"
else:
    STATE_DIR = Path(os.environ.get("STATE_DIR", "/var/lib/vm-ports"))
LIBVIRT_URI = os.environ.get("LIBVIRT_URI", "qemu:///system")
TRUTHY = {"1", "true", "yes", "on"}

# Leases live in <state dir>/fp-leases, shared by every machine, and expire after LEASE_TTL_SECONDS.
# Machine-private state defaults to <state dir>/machines/<name>.
LEASE_DIR_NAME = "fp-leases"
MACHINES_DIR_NAME = "machines"
LEASE_TTL_SECONDS = 60
LOCK_LABEL = "fpcollision"
LOCK_RETRY_INTERVAL = 1.0

WILDCARD_HOST_IP = "*"
WILDCARD_ADDRESS = "0.0.0.0"
DEFAULT_USABLE_PORT_RANGE = range(2200, 2251)
PORT_PROBE_TIMEOUT = 0.5

DEFAULT_SSH_GUEST_PORT = 22
DEFAULT_SSH_HOST_PORT = 2222
DEFAULT_SSH_HOST_IP = "127.0.0.1"

SUPPORTED_PROTOCOLS = {"tcp", "udp"}

_LOG_VERBOSE = os.environ.get("LOG_VERBOSE", "").lower() in {"1", "true", "yes", "on"}

PORT_RANGE_RE = re.compile(r"^\s*(\d+)\s*(?:-|\.\.)\s*(\d+)\s*$")
_LEASE_KEY_UNSAFE_RE = re.compile(r"[^0-9A-Za-z]")
